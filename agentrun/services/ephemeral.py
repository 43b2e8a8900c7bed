"""Ephemeral key/value store with atomic primitives.

Sequence counters, completion flags, rate-limit windows, circuit-breaker state
and budget caches all live here. Every mutation is a single atomic primitive
(increment, set-if-absent, compare-and-set); callers never read-then-write.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Protocol

from redis.asyncio import Redis

from agentrun.core.config import get_settings


logger = logging.getLogger(__name__)


class EphemeralStore(Protocol):
    async def incr(self, key: str, *, ttl_s: int, sliding: bool = False) -> int:
        """Atomically increment and return the new value.

        The TTL is applied when the key is created; ``sliding`` refreshes it on
        every call instead.
        """
        ...

    async def set_if_absent(self, key: str, value: str, *, ttl_s: int) -> bool:
        ...

    async def compare_and_set(self, key: str, expected: str | None, value: str, *, ttl_s: int) -> bool:
        """Write ``value`` only if the current value equals ``expected`` (None = absent)."""
        ...

    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str, *, ttl_s: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def expire(self, key: str, *, ttl_s: int) -> bool:
        ...

    async def ttl(self, key: str) -> float | None:
        """Remaining lifetime in seconds, or None when the key is missing."""
        ...


_INCR_LUA = r"""
local value = redis.call("INCR", KEYS[1])
if ARGV[2] == "1" or value == 1 or redis.call("TTL", KEYS[1]) == -1 then
  redis.call("EXPIRE", KEYS[1], tonumber(ARGV[1]))
end
return value
"""

_CAS_LUA = r"""
local current = redis.call("GET", KEYS[1])
if ARGV[1] == "0" then
  if current then
    return 0
  end
elseif current ~= ARGV[2] then
  return 0
end
redis.call("SET", KEYS[1], ARGV[3], "EX", tonumber(ARGV[4]))
return 1
"""


class RedisEphemeralStore:
    def __init__(self, redis: Redis, *, prefix: str) -> None:
        self._redis = redis
        self._prefix = prefix
        self._incr = redis.register_script(_INCR_LUA)
        self._cas = redis.register_script(_CAS_LUA)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def incr(self, key: str, *, ttl_s: int, sliding: bool = False) -> int:
        value = await self._incr(keys=[self._key(key)], args=[max(1, ttl_s), "1" if sliding else "0"])
        return int(value)

    async def set_if_absent(self, key: str, value: str, *, ttl_s: int) -> bool:
        result = await self._redis.set(self._key(key), value, ex=max(1, ttl_s), nx=True)
        return bool(result)

    async def compare_and_set(self, key: str, expected: str | None, value: str, *, ttl_s: int) -> bool:
        args = ["0", ""] if expected is None else ["1", expected]
        result = await self._cas(keys=[self._key(key)], args=[*args, value, max(1, ttl_s)])
        return bool(int(result))

    async def get(self, key: str) -> str | None:
        value = await self._redis.get(self._key(key))
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)

    async def set(self, key: str, value: str, *, ttl_s: int) -> None:
        await self._redis.set(self._key(key), value, ex=max(1, ttl_s))

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def expire(self, key: str, *, ttl_s: int) -> bool:
        return bool(await self._redis.expire(self._key(key), max(1, ttl_s)))

    async def ttl(self, key: str) -> float | None:
        remaining_ms = await self._redis.pttl(self._key(key))
        if remaining_ms is None or remaining_ms < 0:
            return None
        return remaining_ms / 1000.0


class InMemoryEphemeralStore:
    """Per-process store for dev and tests.

    A single asyncio lock serializes every primitive, which gives the same
    atomicity guarantees as the Redis scripts within one event loop.
    """

    def __init__(self, *, time_source: Callable[[], float] | None = None) -> None:
        self._time = time_source or time.monotonic
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> tuple[str, float] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._time():
            # Natural expiry.
            del self._data[key]
            return None
        return entry

    async def incr(self, key: str, *, ttl_s: int, sliding: bool = False) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                value, expires_at = 1, self._time() + ttl_s
            else:
                value = int(entry[0]) + 1
                expires_at = self._time() + ttl_s if sliding else entry[1]
            self._data[key] = (str(value), expires_at)
            return value

    async def set_if_absent(self, key: str, value: str, *, ttl_s: int) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._time() + ttl_s)
            return True

    async def compare_and_set(self, key: str, expected: str | None, value: str, *, ttl_s: int) -> bool:
        async with self._lock:
            entry = self._live(key)
            current = entry[0] if entry else None
            if current != expected:
                return False
            self._data[key] = (value, self._time() + ttl_s)
            return True

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, *, ttl_s: int) -> None:
        async with self._lock:
            self._data[key] = (value, self._time() + ttl_s)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def expire(self, key: str, *, ttl_s: int) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._time() + ttl_s)
            return True

    async def ttl(self, key: str) -> float | None:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return entry[1] - self._time()


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()
_memory_store: InMemoryEphemeralStore | None = None


async def get_redis() -> Redis:
    # Cache one client per event loop; loop-bound pools break across test loops.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


async def get_ephemeral_store() -> EphemeralStore:
    global _memory_store
    settings = get_settings()
    if settings.ephemeral_backend == "memory":
        if _memory_store is None:
            logger.warning("ephemeral_store_in_memory single_process_only=true")
            _memory_store = InMemoryEphemeralStore()
        return _memory_store
    redis = await get_redis()
    return RedisEphemeralStore(redis, prefix=settings.ephemeral_prefix)


def reset_ephemeral_store() -> None:
    # Allow tests to drop the shared in-process store between cases.
    global _memory_store
    _memory_store = None
