"""
Admin route handlers: event control, content, users, teams and platform.
"""

import asyncio
import logging
import secrets
from typing import Any, Dict, Optional

from aiohttp import WSMsgType, web

from .broadcast import EVENT_STATE, SUBMISSIONS, LiveBroadcaster
from .errors import NotFoundError, PermissionDenied, ValidationError
from .middleware import require_admin
from .models import Category, Difficulty, Role
from .web_handlers import parse_int, read_json

logger = logging.getLogger(__name__)


def _require_bool(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be true or false")
    return value


def _non_negative_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value


def parse_challenge_fields(
    data: Dict[str, Any],
    flag_re: Any,
    partial: bool = False,
) -> Dict[str, Any]:
    """
    Validate a challenge payload and map it onto storage fields.

    @param data: JSON body, dynamicScoring given as a nested object
    @param flag_re: Compiled flag format the stored flag must satisfy
    @param partial: Allow missing fields (updates)
    @return: Field dictionary accepted by DatabaseManager
    """
    fields: Dict[str, Any] = {}

    for key in ("title", "description"):
        if key in data:
            value = data[key]
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{key} is required")
            fields[key] = value.strip()
        elif not partial:
            raise ValidationError(f"{key} is required")

    if "category" in data:
        categories = [c.value for c in Category]
        if data["category"] not in categories:
            raise ValidationError(f"category must be one of {', '.join(categories)}")
        fields["category"] = data["category"]
    elif not partial:
        raise ValidationError("category is required")

    if "difficulty" in data:
        difficulties = [d.value for d in Difficulty]
        if data["difficulty"] not in difficulties:
            raise ValidationError(f"difficulty must be one of {', '.join(difficulties)}")
        fields["difficulty"] = data["difficulty"]
    elif not partial:
        raise ValidationError("difficulty is required")

    if "points" in data:
        fields["points"] = _non_negative_int(data["points"], "points")
    elif not partial:
        raise ValidationError("points is required")

    if "flag" in data:
        flag = data["flag"]
        if not isinstance(flag, str) or not flag_re.fullmatch(flag):
            raise ValidationError("flag does not match the flag format")
        fields["flag"] = flag.strip()
    elif not partial:
        raise ValidationError("flag is required")

    for key, field_name in (
        ("isVisible", "is_visible"),
        ("submissionsAllowed", "submissions_allowed"),
    ):
        if key in data:
            fields[field_name] = _require_bool(data, key)

    dynamic = data.get("dynamicScoring")
    if dynamic is not None:
        if not isinstance(dynamic, dict):
            raise ValidationError("dynamicScoring must be an object")
        if "enabled" in dynamic:
            fields["dynamic_enabled"] = _require_bool(dynamic, "enabled")
        for key in ("initial", "minimum", "decay"):
            if key in dynamic:
                fields[f"dynamic_{key}"] = _non_negative_int(
                    dynamic[key], f"dynamicScoring.{key}"
                )

        initial = fields.get("dynamic_initial")
        minimum = fields.get("dynamic_minimum")
        if initial and minimum and minimum > initial:
            raise ValidationError("dynamicScoring.minimum cannot exceed initial")

    return fields


class AdminHandlers:
    """Handles admin-only web routes."""

    def __init__(
        self,
        db_manager: Any,
        config: Any,
        events: Any,
        processor: Any,
        standings: Any,
        broadcaster: LiveBroadcaster,
    ) -> None:
        self.db = db_manager
        self.config = config
        self.events = events
        self.processor = processor
        self.standings = standings
        self.broadcaster = broadcaster

    # Event

    async def api_event_start(
        self,
        request: web.Request,
    ) -> web.Response:
        admin = require_admin(request)
        state = await self.events.start(admin.id)
        return web.json_response(
            {"success": True, "message": "CTF event started", "data": state.to_dict()}
        )

    async def api_event_end(
        self,
        request: web.Request,
    ) -> web.Response:
        admin = require_admin(request)
        state = await self.events.end(admin.id)
        return web.json_response(
            {"success": True, "message": "CTF event ended", "data": state.to_dict()}
        )

    async def api_event_history(
        self,
        request: web.Request,
    ) -> web.Response:
        require_admin(request)
        limit = min(parse_int(request.query.get("limit"), "limit", default=50), 500)
        history = await self.events.history(limit)
        return web.json_response({"success": True, "data": history})

    # Challenges

    async def api_create_challenge(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Create a challenge.

        @param request: HTTP request with the challenge body
        @return: JSON response with the stored challenge, flag included
        """
        require_admin(request)
        data = await read_json(request)
        fields = parse_challenge_fields(data, self.processor.flag_re)

        challenge = await self.db.create_challenge(fields)
        return web.json_response(
            {"success": True, "data": challenge.to_dict(include_flag=True)}, status=201
        )

    async def api_update_challenge(
        self,
        request: web.Request,
    ) -> web.Response:
        require_admin(request)
        challenge_id = parse_int(request.match_info["challenge_id"], "challenge id")
        data = await read_json(request)
        fields = parse_challenge_fields(data, self.processor.flag_re, partial=True)

        challenge = await self.db.update_challenge(challenge_id, fields)
        if challenge is None:
            raise NotFoundError("Challenge not found")
        return web.json_response(
            {"success": True, "data": challenge.to_dict(include_flag=True)}
        )

    async def api_delete_challenge(
        self,
        request: web.Request,
    ) -> web.Response:
        require_admin(request)
        challenge_id = parse_int(request.match_info["challenge_id"], "challenge id")
        if not await self.db.delete_challenge(challenge_id):
            raise NotFoundError("Challenge not found")
        await self.standings.invalidate()
        return web.json_response({"success": True, "data": {}})

    # Users

    async def api_create_user(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Provision a user and issue its API token.

        The token is only ever returned here.

        @param request: HTTP request with {"username", "email"?, "role"?}
        @return: JSON response with the user and its api_token
        """
        require_admin(request)
        data = await read_json(request)

        username = data.get("username")
        if not isinstance(username, str) or not username.strip():
            raise ValidationError("username is required")

        role = data.get("role", Role.USER.value)
        if role not in [r.value for r in Role]:
            raise ValidationError("role must be user or admin")

        api_token = secrets.token_urlsafe(32)
        user = await self.db.create_user(
            username.strip(), api_token, role=role, email=data.get("email")
        )
        return web.json_response(
            {"success": True, "data": {**user.to_dict(), "api_token": api_token}},
            status=201,
        )

    async def api_list_users(
        self,
        request: web.Request,
    ) -> web.Response:
        require_admin(request)
        users = await self.db.list_users(request.query.get("search"))
        return web.json_response(
            {"success": True, "count": len(users), "data": [u.to_dict() for u in users]}
        )

    async def _update_user(self, request: web.Request, **flags: Any) -> web.Response:
        user_id = parse_int(request.match_info["user_id"], "user id")
        user = await self.db.update_user_flags(user_id, **flags)
        if user is None:
            raise NotFoundError("User not found")
        await self.standings.invalidate()
        return web.json_response({"success": True, "data": user.to_dict()})

    async def api_block_user(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Block or unblock a user.

        @param request: HTTP request with {"isBlocked": bool, "reason"?: str}
        @return: JSON response with the updated user
        """
        require_admin(request)
        data = await read_json(request)
        is_blocked = _require_bool(data, "isBlocked")

        user_id = parse_int(request.match_info["user_id"], "user id")
        target = await self.db.get_user(user_id)
        if target is None:
            raise NotFoundError("User not found")
        if target.is_admin and is_blocked:
            raise PermissionDenied("Admin accounts cannot be blocked")

        reason = data.get("reason") if is_blocked else None
        logger.info("User %s %s", user_id, "blocked" if is_blocked else "unblocked")
        return await self._update_user(
            request, is_blocked=is_blocked, blocked_reason=reason
        )

    async def api_submission_permission(
        self,
        request: web.Request,
    ) -> web.Response:
        require_admin(request)
        data = await read_json(request)
        return await self._update_user(
            request, can_submit_flags=_require_bool(data, "canSubmitFlags")
        )

    async def api_scoreboard_visibility(
        self,
        request: web.Request,
    ) -> web.Response:
        require_admin(request)
        data = await read_json(request)
        return await self._update_user(
            request, show_in_scoreboard=_require_bool(data, "showInScoreboard")
        )

    # Teams

    async def api_create_team(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Create a team with its initial members.

        @param request: HTTP request with {"name", "description"?, "members"?: [user ids], "maxMembers"?}
        @return: JSON response with the stored team
        """
        admin = require_admin(request)
        data = await read_json(request)

        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name is required")

        members = data.get("members", [])
        if not isinstance(members, list) or not all(
            isinstance(m, int) and not isinstance(m, bool) for m in members
        ):
            raise ValidationError("members must be a list of user ids")

        custom_cap = "maxMembers" in data
        if custom_cap:
            max_members = parse_int(data["maxMembers"], "maxMembers")
        else:
            max_members = self.config.get("teams", "max_members")

        team = await self.db.create_team(
            name.strip(),
            created_by=admin.id,
            member_ids=members,
            max_members=max_members,
            description=data.get("description") or "",
            custom_cap=custom_cap,
        )
        await self.standings.invalidate()
        return web.json_response({"success": True, "data": team.to_dict()}, status=201)

    async def api_delete_team(
        self,
        request: web.Request,
    ) -> web.Response:
        require_admin(request)
        team_id = parse_int(request.match_info["team_id"], "team id")
        if not await self.db.delete_team(team_id):
            raise NotFoundError("Team not found")
        await self.standings.invalidate()
        return web.json_response({"success": True, "data": {}})

    async def api_add_team_member(
        self,
        request: web.Request,
    ) -> web.Response:
        require_admin(request)
        team_id = parse_int(request.match_info["team_id"], "team id")
        user_id = parse_int(request.match_info["user_id"], "user id")

        team = await self.db.add_team_member(
            team_id, user_id, default_cap=self.config.get("teams", "max_members")
        )
        await self.standings.invalidate()
        return web.json_response({"success": True, "data": team.to_dict()})

    async def api_remove_team_member(
        self,
        request: web.Request,
    ) -> web.Response:
        require_admin(request)
        team_id = parse_int(request.match_info["team_id"], "team id")
        user_id = parse_int(request.match_info["user_id"], "user id")

        team = await self.db.remove_team_member(team_id, user_id)
        await self.standings.invalidate()
        return web.json_response({"success": True, "data": team.to_dict()})

    # Platform

    async def api_platform_submissions(
        self,
        request: web.Request,
    ) -> web.Response:
        """Open or close submissions on every challenge."""
        require_admin(request)
        data = await read_json(request)
        allowed = _require_bool(data, "submissionsAllowed")

        updated = await self.db.set_submissions_allowed_all(allowed)
        logger.info(
            "Submissions %s on %d challenges", "opened" if allowed else "closed", updated
        )
        return web.json_response(
            {"success": True, "data": {"submissionsAllowed": allowed, "updated": updated}}
        )

    async def api_platform_scoreboard(
        self,
        request: web.Request,
    ) -> web.Response:
        """Turn the public scoreboard on or off and persist the choice."""
        require_admin(request)
        data = await read_json(request)
        enabled = _require_bool(data, "enabled")

        self.config.set_feature("scoreboard_enabled", enabled)
        saved = self.config.save_config()
        logger.info("Scoreboard %s", "enabled" if enabled else "disabled")
        return web.json_response(
            {"success": True, "data": {"enabled": enabled, "persisted": saved}}
        )

    async def api_platform_reset(
        self,
        request: web.Request,
    ) -> web.Response:
        admin = require_admin(request)
        counts = await self.db.reset_platform()
        await self.standings.invalidate()
        logger.warning("Platform reset requested by admin %s", admin.id)
        return web.json_response({"success": True, "data": counts})

    async def api_submissions(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Submission audit log.

        @param request: HTTP request with optional userId, challengeId, correct, page, limit
        @return: JSON response with submissions, newest first
        """
        require_admin(request)
        query = request.query

        user_id: Optional[int] = None
        challenge_id: Optional[int] = None
        if "userId" in query:
            user_id = parse_int(query["userId"], "userId")
        if "challengeId" in query:
            challenge_id = parse_int(query["challengeId"], "challengeId")

        page = parse_int(query.get("page"), "page", default=1)
        limit = min(parse_int(query.get("limit"), "limit", default=100), 500)

        submissions = await self.db.list_submissions(
            user_id=user_id,
            challenge_id=challenge_id,
            correct_only=query.get("correct") == "true",
            limit=limit,
            offset=(page - 1) * limit,
        )
        return web.json_response(
            {"success": True, "count": len(submissions), "page": page, "data": submissions}
        )

    async def live(
        self,
        request: web.Request,
    ) -> web.WebSocketResponse:
        """
        Websocket feed of event state changes and submissions.

        Each socket gets a bounded queue drained by its own writer task;
        when a slow client lets the queue fill up, new messages for that
        client are dropped.

        @param request: HTTP upgrade request; token may be passed as ?token=
        @return: The websocket response once the client disconnects
        """
        admin = require_admin(request)
        if not self.config.is_feature_enabled("live_monitor"):
            raise NotFoundError("Live monitor is disabled")

        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        outbox: asyncio.Queue = asyncio.Queue(maxsize=self.config.get("live", "queue_size"))

        async def forward(message: Dict[str, Any]) -> None:
            try:
                outbox.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Live monitor for admin %s is lagging, message dropped", admin.id)

        async def writer() -> None:
            while not ws.closed:
                message = await outbox.get()
                try:
                    await ws.send_json(message)
                except ConnectionResetError:
                    break

        self.broadcaster.subscribe(EVENT_STATE, forward)
        self.broadcaster.subscribe(SUBMISSIONS, forward)
        sender: Optional[asyncio.Task] = None
        logger.info("Admin %s connected to live monitor", admin.id)

        try:
            # messages queued meanwhile are written after the snapshot
            state = await self.events.get_state()
            await ws.send_json({"channel": EVENT_STATE, "type": "snapshot", **state.to_dict()})
            sender = asyncio.create_task(writer())

            async for msg in ws:
                if msg.type == WSMsgType.TEXT and msg.data == "ping":
                    await ws.send_str("pong")
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("Live monitor connection error: %s", ws.exception())
        finally:
            self.broadcaster.unsubscribe(EVENT_STATE, forward)
            self.broadcaster.unsubscribe(SUBMISSIONS, forward)
            if sender is not None:
                sender.cancel()
                try:
                    await sender
                except asyncio.CancelledError:
                    pass
            logger.info("Admin %s disconnected from live monitor", admin.id)

        return ws
