"""
Competition lifecycle: not_started -> started -> ended, with restarts.

The durable row lives in SQLite; reads go through the cache because every
flag submission asks for the state. Transitions overwrite the cache
entry, which is what makes the long TTL safe.
"""

import logging
import sqlite3
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from .broadcast import EVENT_STATE, LiveBroadcaster
from .cache import CacheBackend, CacheError
from .errors import InvalidTransition, ValidationError
from .models import EventState, EventStatus, utcnow

logger = logging.getLogger(__name__)

CACHE_KEY = "ctf:event:state"

START = "start"
RESTART = "restart"
END = "end"


def plan_transition(
    current: EventState,
    requested: str,
    actor_id: Optional[int],
    now: str,
) -> Tuple[str, EventState]:
    """
    Work out the transition for a start/end request.

    Starting an ended event is tagged ``restart`` and opens a new cycle;
    solves and submissions from earlier cycles are kept.

    @param current: State before the transition
    @param requested: "start" or "end"
    @param actor_id: Admin asking for it
    @param now: Timestamp to stamp on the new state
    @return: (action tag, new state)
    """
    if requested == START:
        if current.status is EventStatus.STARTED:
            raise InvalidTransition("CTF event is already started")

        action = RESTART if current.status is EventStatus.ENDED else START
        return action, EventState(
            status=EventStatus.STARTED,
            started_at=now,
            ended_at=None,
            started_by=actor_id,
            ended_by=None,
            cycle=current.cycle + 1,
        )

    if requested == END:
        if current.status is EventStatus.ENDED:
            raise InvalidTransition("CTF event is already ended")
        if current.status is EventStatus.NOT_STARTED:
            raise InvalidTransition("Cannot end event that has not been started")

        return END, replace(
            current,
            status=EventStatus.ENDED,
            ended_at=now,
            ended_by=actor_id,
        )

    raise ValidationError(f"Unknown event action: {requested}")


class EventStateStore:
    """Reads and transitions the event state singleton."""

    def __init__(
        self,
        db: Any,
        cache: CacheBackend,
        broadcaster: LiveBroadcaster,
        cache_ttl: int = 3600,
    ) -> None:
        self.db = db
        self.cache = cache
        self.broadcaster = broadcaster
        self.cache_ttl = cache_ttl

    async def get_state(self) -> EventState:
        """
        Current event state, from cache when possible.

        Never raises: if the database cannot be read the event is reported
        as not started, which blocks submissions.

        @return: Event state
        """
        try:
            cached = await self.cache.get(CACHE_KEY)
            if cached:
                return EventState.from_dict(cached)
        except CacheError as e:
            logger.warning("Event state cache miss or error: %s", e)

        try:
            state = await self.db.load_event_state()
        except (sqlite3.Error, OSError) as e:
            logger.error("Error fetching event state from database: %s", e)
            return EventState()

        await self._cache_state(state)
        return state

    async def is_accepting_submissions(self) -> bool:
        state = await self.get_state()
        return state.status is EventStatus.STARTED

    async def _cache_state(self, state: EventState) -> None:
        try:
            await self.cache.set(CACHE_KEY, state.to_dict(), ttl=self.cache_ttl)
        except CacheError as e:
            logger.warning("Failed to cache event state: %s", e)

    async def transition(
        self,
        requested: str,
        actor_id: Optional[int],
    ) -> EventState:
        """
        Start or end the event.

        @param requested: "start" or "end"
        @param actor_id: Admin performing the change
        @return: The new state
        """
        now = utcnow()
        action, state = await self.db.transition_event_state(
            lambda current: plan_transition(current, requested, actor_id, now),
            actor_id,
        )

        await self._cache_state(state)
        logger.info(
            "CTF event %s by admin %s (cycle %d)", action, actor_id, state.cycle
        )

        self.broadcaster.publish(
            EVENT_STATE,
            {"type": f"event_{action}", "action": action, **state.to_dict()},
        )
        return state

    async def start(self, actor_id: Optional[int]) -> EventState:
        return await self.transition(START, actor_id)

    async def end(self, actor_id: Optional[int]) -> EventState:
        return await self.transition(END, actor_id)

    async def history(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.db.list_event_transitions(limit)
