"""
Key/value stores backing the response cache and the version registry.

`RedisCacheStore` is the production backend and is shared by every service
instance. `MemoryCacheStore` keeps everything in the current process and is
meant for single-instance local development (mock database mode) and tests.
Both raise `CacheUnavailableError` when the backend cannot be reached.
"""

import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import CacheUnavailableError
from shared.logging import get_logger


class RedisCacheStore:
    """Redis-backed cache store."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.logger = get_logger("orders.cache.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                health_check_interval=30,
            )
        return self._redis

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis cache store closed")

    async def get(self, key: str) -> Optional[str]:
        try:
            client = await self._get_redis()
            return await client.get(key)
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        try:
            client = await self._get_redis()
            return await client.mget(list(keys))
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        try:
            client = await self._get_redis()
            await client.set(key, value, px=_to_millis(ttl_seconds))
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Atomically set `key` only when it does not exist (SET NX PX)."""
        try:
            client = await self._get_redis()
            return bool(await client.set(key, value, px=_to_millis(ttl_seconds), nx=True))
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def delete(self, key: str) -> None:
        try:
            client = await self._get_redis()
            await client.delete(key)
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def incr(self, key: str) -> int:
        """Atomically increment an integer counter (INCR)."""
        try:
            client = await self._get_redis()
            return int(await client.incr(key))
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def flush(self) -> None:
        try:
            client = await self._get_redis()
            await client.flushdb()
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def ping(self) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except (RedisError, OSError):
            return False


class MemoryCacheStore:
    """Process-local cache store with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        record = self._data.get(key)
        if record is None:
            return None
        value, expires_at = record
        if expires_at is not None and self.clock() > expires_at:
            del self._data[key]
            return None
        return value

    async def close(self) -> None:
        self._data.clear()

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [self._live(key) for key in keys]

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        self._data[key] = (value, self.clock() + ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self.clock() + ttl_seconds)
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def incr(self, key: str) -> int:
        current = self._live(key)
        value = int(current or 0) + 1
        expires_at = self._data[key][1] if current is not None else None
        self._data[key] = (str(value), expires_at)
        return value

    async def flush(self) -> None:
        self._data.clear()

    async def ping(self) -> bool:
        return True


def _to_millis(ttl_seconds: float) -> int:
    return max(1, int(ttl_seconds * 1000))


def create_cache_store(backend: str, redis_url: str):
    """Build the cache store selected by configuration."""
    if backend == "memory":
        return MemoryCacheStore()
    return RedisCacheStore(redis_url)
