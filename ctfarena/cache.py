"""
Cache backends for event state and scoreboards.

MemoryCache is enough for a single process. RedisCache shares entries
between instances so an event transition made on one of them is seen by
all of them.
"""

import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """The cache backend could not serve a request."""


class CacheBackend:
    """Async key/value interface with TTLs, prefix drops and pub/sub."""

    # True when other instances see the same entries and messages
    shared = False

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def delete_pattern(self, prefix: str) -> int:
        raise NotImplementedError

    async def publish(self, channel: str, message: Any) -> None:
        raise NotImplementedError

    def subscribe(self, channels: List[str]) -> AsyncIterator[Tuple[str, Any]]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryCache(CacheBackend):
    """In-process cache; values are JSON round-tripped like in Redis."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        # key -> (payload, expires_at or None)
        self._cache: Dict[str, Tuple[str, Optional[float]]] = {}

    async def get(
        self,
        key: str,
    ) -> Optional[Any]:
        """
        Get value from cache if valid.

        @param key: String cache key to lookup
        @return: Cached data if valid, None if expired or not found
        """
        if key in self._cache:
            payload, expires_at = self._cache[key]

            if expires_at is None or self._clock() < expires_at:
                return json.loads(payload)
            else:
                # Expired, remove from cache
                del self._cache[key]
        return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
    ) -> None:
        """
        Set value in cache.

        @param key: String cache key to store data under
        @param value: JSON-serialisable data to cache
        @param ttl: Lifetime in seconds, None keeps it until deleted
        """
        expires_at = self._clock() + ttl if ttl else None
        self._cache[key] = (json.dumps(value), expires_at)

    async def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    async def delete_pattern(
        self,
        prefix: str,
    ) -> int:
        """
        Invalidate cache entries whose key starts with ``prefix``.

        @param prefix: Key prefix to drop
        @return: Number of entries removed
        """
        keys_to_remove = [k for k in self._cache if k.startswith(prefix)]
        for key in keys_to_remove:
            del self._cache[key]
        return len(keys_to_remove)

    async def publish(self, channel: str, message: Any) -> None:
        # not shared, local subscribers are reached by the broadcaster
        return None


class RedisCache(CacheBackend):
    """Redis-backed cache shared between instances."""

    shared = True

    def __init__(
        self,
        redis_url: str,
        max_connections: int = 20,
    ) -> None:
        self.redis_url = redis_url
        self._redis = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=max_connections,
        )

    async def get(self, key: str) -> Optional[Any]:
        try:
            payload = await self._redis.get(key)
        except RedisError as e:
            raise CacheError(f"GET {key} failed: {e}") from e
        return json.loads(payload) if payload is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self._redis.set(key, json.dumps(value), ex=ttl)
        except RedisError as e:
            raise CacheError(f"SET {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as e:
            raise CacheError(f"DEL {key} failed: {e}") from e

    async def delete_pattern(self, prefix: str) -> int:
        removed = 0
        try:
            async for key in self._redis.scan_iter(match=f"{prefix}*"):
                removed += await self._redis.delete(key)
        except RedisError as e:
            raise CacheError(f"prefix drop {prefix} failed: {e}") from e
        return removed

    async def publish(self, channel: str, message: Any) -> None:
        try:
            await self._redis.publish(channel, json.dumps(message))
        except RedisError as e:
            raise CacheError(f"PUBLISH {channel} failed: {e}") from e

    async def subscribe(
        self,
        channels: List[str],
    ) -> AsyncIterator[Tuple[str, Any]]:
        """
        Listen on pub/sub channels until cancelled.

        @param channels: Channel names to subscribe to
        @return: Async iterator of (channel, decoded message)
        """
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(*channels)
            async for item in pubsub.listen():
                if item["type"] != "message":
                    continue
                try:
                    message = json.loads(item["data"])
                except ValueError:
                    logger.warning("Dropping malformed message on %s", item["channel"])
                    continue
                yield item["channel"], message
        except RedisError as e:
            raise CacheError(f"SUBSCRIBE {', '.join(channels)} failed: {e}") from e
        finally:
            await pubsub.aclose()

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("Redis connection closed.")


def create_cache(config: Any) -> CacheBackend:
    """
    Build the cache backend selected in the configuration.

    @param config: CTFConfig instance
    @return: MemoryCache or RedisCache
    """
    if config.get("cache", "backend") == "redis":
        url = config.get("cache", "redis_url")
        logger.info("Using Redis cache at %s", url)
        return RedisCache(url)
    return MemoryCache()
