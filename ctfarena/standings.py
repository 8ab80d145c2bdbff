"""
Team and player standings.

Team points are the sum of member points at read time. Results are
cached for a few seconds under keys tagged with the event cycle; once the
event has ended the first computed standings are kept until a restart
opens a new cycle or an admin change drops the cache.
"""

import logging
from typing import Any, Dict, List

from .cache import CacheBackend, CacheError
from .errors import ScoreboardDisabled, ValidationError
from .event_state import EventStateStore
from .models import EventStatus

logger = logging.getLogger(__name__)

KINDS = ("teams", "users")
CACHE_PREFIX = "scoreboard:"


class ScoreboardAggregator:
    """Computes ranked standings with caching and end-of-event freeze."""

    def __init__(
        self,
        db: Any,
        events: EventStateStore,
        cache: CacheBackend,
        config: Any,
    ) -> None:
        self.db = db
        self.events = events
        self.cache = cache
        self.config = config

    async def invalidate(self) -> int:
        """
        Drop every cached scoreboard, frozen ones included.

        @return: Number of cache entries removed
        """
        try:
            return await self.cache.delete_pattern(CACHE_PREFIX)
        except CacheError as e:
            logger.warning("Failed to invalidate scoreboard cache: %s", e)
            return 0

    def _check_enabled(self, is_admin: bool) -> None:
        if not is_admin and not self.config.is_feature_enabled("scoreboard_enabled"):
            raise ScoreboardDisabled()

    @staticmethod
    def _check_kind(kind: str) -> None:
        if kind not in KINDS:
            raise ValidationError(f"Unknown scoreboard type: {kind}")

    async def _cached(self, key: str) -> Any:
        try:
            return await self.cache.get(key)
        except CacheError as e:
            logger.warning("Scoreboard cache read error: %s", e)
            return None

    async def _store(self, key: str, value: Any, ttl: int = None) -> None:
        try:
            await self.cache.set(key, value, ttl=ttl)
        except CacheError as e:
            logger.warning("Scoreboard cache write error: %s", e)

    async def get_standings(
        self,
        kind: str,
        is_admin: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Ranked standings for teams or users.

        @param kind: "teams" or "users"
        @param is_admin: Admins also see entries hidden from the scoreboard
        @return: Ranked entries, best first, each with a 1-based rank
        """
        self._check_kind(kind)
        self._check_enabled(is_admin)

        audience = "admin" if is_admin else "public"
        state = await self.events.get_state()
        frozen = state.status is EventStatus.ENDED

        if frozen:
            key = f"{CACHE_PREFIX}frozen:{state.cycle}:{kind}:{audience}"
            ttl = None
        else:
            key = f"{CACHE_PREFIX}{state.cycle}:{kind}:{audience}"
            ttl = self.config.get("scoreboard", "cache_ttl")

        cached = await self._cached(key)
        if cached is not None:
            return cached

        standings = await self.compute_standings(kind, is_admin)
        await self._store(key, standings, ttl)
        return standings

    async def compute_standings(
        self,
        kind: str,
        is_admin: bool,
    ) -> List[Dict[str, Any]]:
        if kind == "teams":
            rows = await self.db.team_standings(
                include_hidden=is_admin,
                limit=self.config.get("scoreboard", "max_teams"),
            )
        else:
            rows = await self.db.user_standings(
                include_hidden=is_admin,
                limit=self.config.get("scoreboard", "max_users"),
            )

        for rank, row in enumerate(rows, 1):
            row["rank"] = rank
        return rows

    async def get_progression(
        self,
        kind: str,
        limit: int = 10,
        is_admin: bool = False,
    ) -> Dict[str, Any]:
        """
        Score over time for the top teams or users.

        @param kind: "teams" or "users"
        @param limit: Number of series to return
        @param is_admin: Bypasses the scoreboard toggle and includes hidden entries
        @return: {"type", "series": [{"id", "name", "data": [{"time", "score"}]}], "start_time", "end_time"}
        """
        self._check_kind(kind)
        self._check_enabled(is_admin)

        audience = "admin" if is_admin else "public"
        key = f"{CACHE_PREFIX}progression:{kind}:{audience}:{limit}"
        cached = await self._cached(key)
        if cached is not None:
            return cached

        series: Dict[int, Dict[str, Any]] = {}
        times = []

        for row in await self.db.solve_timeline(kind, include_hidden=is_admin):
            entry = series.setdefault(
                row["entity_id"],
                {"id": row["entity_id"], "name": row["name"], "data": [], "score": 0},
            )
            entry["score"] += row["points"] or 0
            entry["data"].append({"time": row["submitted_at"], "score": entry["score"]})
            times.append(row["submitted_at"])

        top = sorted(series.values(), key=lambda e: e["score"], reverse=True)[:limit]
        result = {
            "type": kind,
            "series": [
                {"id": e["id"], "name": e["name"], "data": e["data"]} for e in top
            ],
            "start_time": min(times) if times else None,
            "end_time": max(times) if times else None,
        }

        await self._store(key, result, self.config.get("scoreboard", "progression_cache_ttl"))
        return result
