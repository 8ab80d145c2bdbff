"""
Web route handlers for players and the public scoreboard.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from aiohttp import web
from jinja2 import Environment, FileSystemLoader

from .errors import NotFoundError, ScoreboardDisabled, ValidationError
from .middleware import current_user, require_user
from .models import RejectReason, SubmissionOutcome, SubmissionResult
from .scoring import current_value

TEMPLATES_PATH = Path(__file__).parent / "templates"

REJECT_STATUS = {
    RejectReason.EVENT_NOT_ACTIVE: 403,
    RejectReason.INVALID_FLAG_FORMAT: 400,
    RejectReason.CHALLENGE_NOT_FOUND: 404,
    RejectReason.SUBMISSIONS_CLOSED: 403,
    RejectReason.USER_NOT_FOUND: 404,
    RejectReason.USER_BLOCKED: 403,
    RejectReason.SUBMISSION_FORBIDDEN: 403,
    RejectReason.RATE_LIMITED: 429,
}


def parse_int(value: Any, name: str, default: Optional[int] = None, minimum: int = 1) -> int:
    """Parse a positive integer from a path or query parameter."""
    if value is None:
        if default is None:
            raise ValidationError(f"{name} is required")
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    if number < minimum:
        raise ValidationError(f"{name} must be at least {minimum}")
    return number


async def read_json(request: web.Request) -> Dict[str, Any]:
    """Request body as a JSON object."""
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def client_ip(request: web.Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote or ""


def format_timestamp(timestamp: Optional[str]) -> str:
    try:
        dt = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        return dt.strftime("%Y-%m-%d %H:%M")
    except (ValueError, TypeError, AttributeError):
        return timestamp[:19] if timestamp else "-"


class WebHandlers:
    """Handles player-facing web routes and responses."""

    def __init__(
        self,
        db_manager: Any,
        config: Any,
        events: Any,
        processor: Any,
        standings: Any,
        templates_path: Path = TEMPLATES_PATH,
    ) -> None:
        self.db = db_manager
        self.config = config
        self.events = events
        self.processor = processor
        self.standings = standings

        self.jinja_env = Environment(
            loader=FileSystemLoader(str(templates_path)),
            autoescape=True,
            auto_reload=False,  # Disable auto-reload for performance
            cache_size=50,
        )

    def decorate_ranks(
        self,
        standings: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        """
        Add display fields for the HTML scoreboard.

        @param standings: Ranked entries from the aggregator
        @return: Copies with rank_class and formatted_date added
        """
        decorated = []

        for entry in standings:
            rank_class = ""
            if entry["rank"] == 1:
                rank_class = "gold"
            elif entry["rank"] == 2:
                rank_class = "silver"
            elif entry["rank"] == 3:
                rank_class = "bronze"

            decorated.append(
                {
                    **entry,
                    "rank_class": rank_class,
                    "formatted_date": format_timestamp(entry.get("last_solve_time")),
                }
            )

        return decorated

    async def web_index(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Public scoreboard page.

        @param request: HTTP request, optional ?type=teams|users
        @return: HTTP response with rendered scoreboard page
        """
        kind = request.query.get("type", "teams")
        state = await self.events.get_state()

        disabled = False
        try:
            standings = await self.standings.get_standings(kind, is_admin=False)
        except ScoreboardDisabled:
            standings, disabled = [], True

        template = self.jinja_env.get_template("scoreboard.html")
        html = template.render(
            title="Scoreboard",
            kind=kind,
            standings=self.decorate_ranks(standings),
            event=state.to_dict(),
            disabled=disabled,
            config=self.config,
        )
        return web.Response(text=html, content_type="text/html")

    async def api_event_status(
        self,
        _: web.Request,
    ) -> web.Response:
        state = await self.events.get_state()
        data = state.to_dict()
        data.pop("cycle")
        return web.json_response({"success": True, "data": data})

    async def api_challenges(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Paginated challenge list.

        Non-admins (and anonymous callers) only see visible challenges.

        @param request: HTTP request with optional page and limit query parameters
        @return: JSON response containing the page of challenges
        """
        user = current_user(request)
        is_admin = bool(user and user.is_admin)

        page = parse_int(request.query.get("page"), "page", default=1)
        limit = parse_int(request.query.get("limit"), "limit", default=10)
        limit = min(limit, 100)

        challenges, total = await self.db.list_challenges(
            visible_only=not is_admin, limit=limit, offset=(page - 1) * limit
        )

        return web.json_response(
            {
                "success": True,
                "count": len(challenges),
                "total": total,
                "page": page,
                "pages": (total + limit - 1) // limit,
                "data": [
                    c.to_dict(current_value=self._current_value(c)) for c in challenges
                ],
            }
        )

    def _current_value(self, challenge) -> int:
        return current_value(
            challenge,
            default_decay=self.config.get("scoring", "default_decay"),
            minimum_ratio=self.config.get("scoring", "minimum_ratio"),
        )

    async def api_challenge_detail(
        self,
        request: web.Request,
    ) -> web.Response:
        challenge_id = parse_int(request.match_info["challenge_id"], "challenge id")
        challenge = await self.db.get_challenge(challenge_id)

        user = current_user(request)
        is_admin = bool(user and user.is_admin)
        if challenge is None or (not challenge.is_visible and not is_admin):
            raise NotFoundError("Challenge not found")

        data = challenge.to_dict(current_value=self._current_value(challenge))
        data["solved_by"] = await self.db.challenge_solvers(challenge_id)
        return web.json_response({"success": True, "data": data})

    def _submission_response(self, result: SubmissionResult) -> web.Response:
        body: Dict[str, Any] = {"success": result.accepted, **result.to_dict()}

        if result.outcome is SubmissionOutcome.ACCEPTED:
            body["message"] = f'Challenge "{result.challenge_title}" solved successfully!'
            return web.json_response(body)

        if result.outcome is SubmissionOutcome.INCORRECT:
            body["message"] = "Incorrect flag"
            return web.json_response(body, status=400)

        if result.outcome is SubmissionOutcome.DUPLICATE_SOLVE:
            body["message"] = "You have already solved this challenge"
            return web.json_response(body, status=409)

        body["message"] = self._reject_message(result)
        return web.json_response(body, status=REJECT_STATUS[result.reason])

    def _reject_message(self, result: SubmissionResult) -> str:
        reason = result.reason
        if reason is RejectReason.EVENT_NOT_ACTIVE:
            return "CTF event is not running. Submissions are not accepted."
        if reason is RejectReason.INVALID_FLAG_FORMAT:
            prefix = self.config.get("flag", "prefix")
            return f"Invalid flag format. Flag must be in {prefix}{{...}} format"
        if reason is RejectReason.CHALLENGE_NOT_FOUND:
            return "Challenge not found"
        if reason is RejectReason.SUBMISSIONS_CLOSED:
            return "Submissions for this challenge are currently blocked"
        if reason is RejectReason.USER_NOT_FOUND:
            return "User not found"
        if reason is RejectReason.USER_BLOCKED:
            return "Your account is blocked"
        if reason is RejectReason.SUBMISSION_FORBIDDEN:
            return "You are not allowed to submit flags"
        return (
            f"Too many attempts. Please wait {result.remaining_seconds} seconds "
            "before trying again."
        )

    async def api_submit_flag(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Submit a flag for a challenge.

        @param request: HTTP request with {"flag": "..."} body
        @return: JSON response describing the outcome
        """
        user = require_user(request)
        challenge_id = parse_int(request.match_info["challenge_id"], "challenge id")
        data = await read_json(request)

        result = await self.processor.submit(
            user.id,
            challenge_id,
            data.get("flag"),
            ip_address=client_ip(request),
            user_agent=request.headers.get("User-Agent", "Unknown"),
        )
        return self._submission_response(result)

    async def api_scoreboard(
        self,
        request: web.Request,
    ) -> web.Response:
        user = require_user(request)
        kind = request.query.get("type", "teams")
        standings = await self.standings.get_standings(kind, is_admin=user.is_admin)
        return web.json_response({"success": True, "type": kind, "data": standings})

    async def api_progression(
        self,
        request: web.Request,
    ) -> web.Response:
        user = require_user(request)
        kind = request.query.get("type", "teams")
        limit = min(parse_int(request.query.get("limit"), "limit", default=10), 50)
        progression = await self.standings.get_progression(
            kind, limit=limit, is_admin=user.is_admin
        )
        return web.json_response({"success": True, "data": progression})

    async def api_me(
        self,
        request: web.Request,
    ) -> web.Response:
        user = require_user(request)
        data = user.to_dict()
        data["solved_challenges"] = await self.db.solved_challenges(user.id)
        return web.json_response({"success": True, "data": data})

    async def api_teams(
        self,
        request: web.Request,
    ) -> web.Response:
        require_user(request)
        teams = await self.db.list_teams()
        return web.json_response({"success": True, "count": len(teams), "data": teams})

    async def api_team_detail(
        self,
        request: web.Request,
    ) -> web.Response:
        require_user(request)
        team_id = parse_int(request.match_info["team_id"], "team id")
        team = await self.db.get_team(team_id)
        if team is None:
            raise NotFoundError("Team not found")
        return web.json_response({"success": True, "data": team.to_dict()})
