"""TTL caches for verified credentials and snapshot reads.

Each cache is owned by one service and invalidated explicitly by it. The
in-process implementation is enough for a single worker; the Redis one
shares entries (and invalidations) across instances.

Every delete bumps a per-key generation. A reader takes generation(key)
before loading from storage and passes it to set(); the entry is only
stored if no invalidation happened in between, so a slow read can never
put a superseded value back after a write.
"""
import logging
import time
from typing import Optional, Protocol

from redis.exceptions import RedisError, WatchError

logger = logging.getLogger(__name__)

# Generation counters must outlive any in-flight read
_GENERATION_TTL_SECONDS = 86400


class TTLCache(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def generation(self, key: str) -> int:
        ...

    async def set(self, key: str, value: str, generation: Optional[int] = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def clear(self) -> None:
        ...


class MemoryTTLCache:
    """Dict cache mapping key -> (value, stored_at)."""

    def __init__(self, ttl_seconds: int, max_entries: int = 10000):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: dict[str, tuple[str, float]] = {}
        self._generations: dict[str, int] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if (time.monotonic() - entry[1]) >= self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        return entry[0]

    async def generation(self, key: str) -> int:
        return self._generations.get(key, 0)

    async def set(self, key: str, value: str, generation: Optional[int] = None) -> None:
        if self.ttl_seconds <= 0:
            return
        if generation is not None and self._generations.get(key, 0) != generation:
            logger.debug(f"Not caching {key}: invalidated during load")
            return
        if key not in self._entries and len(self._entries) >= self.max_entries:
            # Evict ~10% oldest entries
            oldest = sorted(self._entries, key=lambda k: self._entries[k][1])
            for k in oldest[:max(1, self.max_entries // 10)]:
                self._entries.pop(k, None)
        self._entries[key] = (value, time.monotonic())

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)
        self._generations[key] = self._generations.get(key, 0) + 1

    async def clear(self) -> None:
        for key in set(self._entries) | set(self._generations):
            self._generations[key] = self._generations.get(key, 0) + 1
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisTTLCache:
    """Redis cache using SET EX.

    Failures degrade to a miss (reads) or an error log (writes); entries
    still expire after ttl_seconds, which bounds staleness. Generations are
    INCR counters next to the entries; conditional sets WATCH them.
    """

    def __init__(self, client, namespace: str, ttl_seconds: int, key_prefix: str = "relay:"):
        self._client = client
        self._prefix = f"{key_prefix}cache:{namespace}:"
        self._generation_prefix = f"{key_prefix}cache-gen:{namespace}:"
        self.ttl_seconds = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _generation_key(self, key: str) -> str:
        return f"{self._generation_prefix}{key}"

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(self._key(key))
        except RedisError as e:
            logger.warning(f"Cache GET failed for {key}: {e}")
            return None

    async def generation(self, key: str) -> int:
        """Current generation, or -1 (never matches) when Redis is unreachable."""
        try:
            value = await self._client.get(self._generation_key(key))
        except RedisError as e:
            logger.warning(f"Cache generation lookup failed for {key}: {e}")
            return -1
        return int(value) if value else 0

    async def set(self, key: str, value: str, generation: Optional[int] = None) -> None:
        if self.ttl_seconds <= 0:
            return
        try:
            if generation is None:
                await self._client.set(self._key(key), value, ex=self.ttl_seconds)
                return
            generation_key = self._generation_key(key)
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(generation_key)
                current = await pipe.get(generation_key)
                if (int(current) if current else 0) != generation:
                    logger.debug(f"Not caching {key}: invalidated during load")
                    return
                pipe.multi()
                pipe.set(self._key(key), value, ex=self.ttl_seconds)
                await pipe.execute()
        except WatchError:
            logger.debug(f"Not caching {key}: invalidated during load")
        except RedisError as e:
            logger.warning(f"Cache SET failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        generation_key = self._generation_key(key)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incr(generation_key)
                pipe.expire(generation_key, _GENERATION_TTL_SECONDS)
                pipe.delete(self._key(key))
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Cache DELETE failed for {key}: {e}")

    async def clear(self) -> None:
        keys = [k async for k in self._client.scan_iter(match=f"{self._prefix}*")]
        for key in keys:
            await self.delete(key[len(self._prefix):])


def create_cache(settings, namespace: str, ttl_seconds: int, redis_client=None) -> TTLCache:
    """Build a cache per settings.CACHE_BACKEND (memory | redis).

    Falls back to memory when Redis is requested without REDIS_URL.
    """
    if settings.CACHE_BACKEND == "redis":
        if redis_client is None and settings.REDIS_URL:
            import redis.asyncio as redis_lib
            redis_client = redis_lib.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        if redis_client is not None:
            return RedisTTLCache(
                redis_client, namespace, ttl_seconds, key_prefix=settings.REDIS_KEY_PREFIX
            )
        logger.warning("CACHE_BACKEND=redis but REDIS_URL not set, using memory cache")
    return MemoryTTLCache(ttl_seconds, max_entries=settings.CACHE_MAX_ENTRIES)
