import asyncio
import json

import pytest

from ctfarena.broadcast import EVENT_STATE, SUBMISSIONS, LiveBroadcaster
from ctfarena.cache import CacheError, MemoryCache


class HubCache(MemoryCache):
    """MemoryCache whose pub/sub reaches every instance attached to the same hub."""

    shared = True

    def __init__(self, hub):
        super().__init__()
        self.hub = hub
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, message))
        for queue in list(self.hub):
            queue.put_nowait((channel, json.loads(json.dumps(message))))

    async def subscribe(self, channels):
        queue = asyncio.Queue()
        self.hub.append(queue)
        try:
            while True:
                channel, message = await queue.get()
                if channel in channels:
                    yield channel, message
        finally:
            self.hub.remove(queue)


async def wait_for_subscribers(hub, count):
    while len(hub) < count:
        await asyncio.sleep(0)


@pytest.fixture
async def pair():
    hub = []
    first = LiveBroadcaster(HubCache(hub))
    second = LiveBroadcaster(HubCache(hub))
    first.start_relay()
    second.start_relay()
    await asyncio.wait_for(wait_for_subscribers(hub, 2), timeout=1)
    yield first, second
    await first.close()
    await second.close()


async def test_publish_returns_before_subscribers_finish():
    broadcaster = LiveBroadcaster(MemoryCache())
    release = asyncio.Event()
    received = []

    async def slow(message):
        await release.wait()
        received.append(message)

    broadcaster.subscribe(SUBMISSIONS, slow)
    broadcaster.publish(SUBMISSIONS, {"type": "submission"})
    assert received == []

    release.set()
    await broadcaster.drain()
    assert received == [{"channel": SUBMISSIONS, "type": "submission"}]


async def test_unsubscribed_callback_is_not_called():
    broadcaster = LiveBroadcaster()
    received = []

    async def listener(message):
        received.append(message)

    broadcaster.subscribe(EVENT_STATE, listener)
    broadcaster.unsubscribe(EVENT_STATE, listener)
    broadcaster.unsubscribe(EVENT_STATE, listener)
    broadcaster.publish(EVENT_STATE, {"type": "event_start"})
    await broadcaster.drain()

    assert received == []
    assert broadcaster.subscriber_count(EVENT_STATE) == 0


async def test_memory_cache_gets_no_relay():
    broadcaster = LiveBroadcaster(MemoryCache())
    broadcaster.start_relay()
    assert broadcaster._relay is None


async def test_messages_reach_other_instances_once(pair):
    first, second = pair
    local, remote = [], []
    delivered = asyncio.Event()

    async def on_first(message):
        local.append(message)

    async def on_second(message):
        remote.append(message)
        delivered.set()

    first.subscribe(SUBMISSIONS, on_first)
    second.subscribe(SUBMISSIONS, on_second)

    first.publish(SUBMISSIONS, {"type": "submission", "user_id": 7})
    await asyncio.wait_for(delivered.wait(), timeout=1)
    await asyncio.sleep(0.05)
    await first.drain()

    assert remote == [{"channel": SUBMISSIONS, "type": "submission", "user_id": 7}]
    # the publishing instance skips its own echo from the shared channel
    assert len(local) == 1
    assert "origin" not in local[0]


async def test_shared_publish_is_tagged_with_origin(pair):
    first, _ = pair
    first.publish(EVENT_STATE, {"type": "event_end"})
    await first.drain()

    channel, message = first.cache.published[0]
    assert channel == "ctf:event_state"
    assert message["origin"] == first.instance_id


async def test_relay_resubscribes_after_cache_error():
    attempts = []
    reconnected = asyncio.Event()

    class FlakyCache(MemoryCache):
        shared = True

        async def subscribe(self, channels):
            attempts.append(channels)
            if len(attempts) == 1:
                raise CacheError("connection lost")
            reconnected.set()
            await asyncio.Event().wait()
            yield

    broadcaster = LiveBroadcaster(FlakyCache(), relay_retry=0)
    broadcaster.start_relay()
    await asyncio.wait_for(reconnected.wait(), timeout=1)
    await broadcaster.close()

    assert len(attempts) == 2
    assert attempts[0] == ["ctf:event_state", "ctf:submissions"]
