"""
Fire-and-forget notifications for live dashboards.

Publishing never waits on a subscriber: each delivery runs as its own
task. With a shared cache the messages also go out over pub/sub, and a
relay task feeds messages published by other instances to the local
subscribers.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .cache import CacheBackend, CacheError

logger = logging.getLogger(__name__)

EVENT_STATE = "event_state"
SUBMISSIONS = "submissions"
CHANNELS = (EVENT_STATE, SUBMISSIONS)

Subscriber = Callable[[Dict[str, Any]], Awaitable[None]]


class LiveBroadcaster:
    """Fans messages out to in-process subscribers and the cache's pub/sub."""

    def __init__(
        self,
        cache: Optional[CacheBackend] = None,
        channel_prefix: str = "ctf:",
        relay_retry: float = 5,
    ) -> None:
        self.cache = cache
        self.channel_prefix = channel_prefix
        self.relay_retry = relay_retry
        self.instance_id = uuid.uuid4().hex
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()
        self._relay: Optional[asyncio.Task] = None

    def subscribe(self, channel: str, callback: Subscriber) -> None:
        self._subscribers[channel].append(callback)

    def unsubscribe(self, channel: str, callback: Subscriber) -> None:
        try:
            self._subscribers[channel].remove(callback)
        except ValueError:
            pass

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers[channel])

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _call(
        self,
        callback: Subscriber,
        channel: str,
        message: Dict[str, Any],
    ) -> None:
        try:
            await callback(message)
        except Exception:
            logger.exception("Live subscriber failed on %s", channel)

    async def _publish_shared(
        self,
        channel: str,
        message: Dict[str, Any],
    ) -> None:
        try:
            await self.cache.publish(
                self.channel_prefix + channel, {**message, "origin": self.instance_id}
            )
        except CacheError as e:
            logger.warning("Failed to publish %s: %s", channel, e)

    def deliver(
        self,
        channel: str,
        message: Dict[str, Any],
    ) -> None:
        """Hand ``message`` to the local subscribers of ``channel`` only."""
        for callback in list(self._subscribers[channel]):
            self._spawn(self._call(callback, channel, message))

    def publish(
        self,
        channel: str,
        payload: Dict[str, Any],
    ) -> None:
        """
        Send ``payload`` to every subscriber of ``channel``.

        Returns at once. Nobody acknowledges anything: a failing
        subscriber is logged and skipped, and a failing cache publish
        is logged.

        @param channel: EVENT_STATE or SUBMISSIONS
        @param payload: JSON-serialisable message
        """
        message = {"channel": channel, **payload}
        self.deliver(channel, message)

        if self.cache is not None and self.cache.shared:
            self._spawn(self._publish_shared(channel, message))

    async def drain(self) -> None:
        """Wait until every delivery scheduled so far has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _relay_message(
        self,
        shared_channel: str,
        message: Dict[str, Any],
    ) -> None:
        if message.pop("origin", None) == self.instance_id:
            return
        channel = shared_channel[len(self.channel_prefix):]
        if channel in CHANNELS:
            self.deliver(channel, message)

    async def _run_relay(self) -> None:
        channels = [self.channel_prefix + c for c in CHANNELS]
        while True:
            try:
                async for shared_channel, message in self.cache.subscribe(channels):
                    self._relay_message(shared_channel, message)
            except CacheError as e:
                logger.warning("Live relay lost its subscription: %s", e)
            await asyncio.sleep(self.relay_retry)

    def start_relay(self) -> None:
        """
        Subscribe to the shared channels so other instances' messages
        reach local subscribers. No-op without a shared cache.
        """
        if self.cache is None or not self.cache.shared or self._relay is not None:
            return
        self._relay = asyncio.create_task(self._run_relay())
        logger.info("Live relay started for instance %s", self.instance_id)

    async def close(self) -> None:
        tasks = list(self._pending)
        if self._relay is not None:
            tasks.append(self._relay)
            self._relay = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
