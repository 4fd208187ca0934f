from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from redis.asyncio import from_url as redis_from_url

_default_logger = logging.getLogger("uvicorn.error")


class CounterStore(Protocol):
    async def get(self, key: str) -> int | None: ...

    async def increment(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> None: ...


class RedisClientFactory(Protocol):
    def __call__(self, redis_url: str) -> Any: ...


class InMemoryCounterStore:
    """Process-local counters with lazy expiry.

    The lock makes ``increment`` atomic across tasks sharing this store.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._values: dict[str, int] = {}
        self._expires_at: dict[str, float] = {}

    async def get(self, key: str) -> int | None:
        async with self._lock:
            self._evict_if_expired_locked(key)
            return self._values.get(key)

    async def increment(self, key: str) -> int:
        async with self._lock:
            self._evict_if_expired_locked(key)
            value = self._values.get(key, 0) + 1
            self._values[key] = value
            return value

    async def expire(self, key: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._evict_if_expired_locked(key)
            if key not in self._values:
                return
            self._expires_at[key] = self._clock() + max(0, int(ttl_seconds))
            self._prune_locked()

    def __len__(self) -> int:
        return len(self._values)

    def _evict_if_expired_locked(self, key: str) -> None:
        until = self._expires_at.get(key)
        if until is not None and self._clock() >= until:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def _prune_locked(self) -> None:
        now = self._clock()
        expired = [key for key, until in self._expires_at.items() if now >= until]
        for key in expired:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)


class RedisCounterStore:
    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> int | None:
        value = await self._redis.get(key)
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return int(value)

    async def increment(self, key: str) -> int:
        return int(await self._redis.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> None:
        await self._redis.expire(key, int(ttl_seconds))

    async def close(self) -> None:
        close = getattr(self._redis, "aclose", None) or getattr(
            self._redis, "close", None
        )
        if close is not None:
            await close()


class FallbackCounterStore:
    """Durable store that degrades to a local one on the first backend error.

    The switch is permanent for the process lifetime and logged exactly once.
    Counts already held by the durable store are not visible after the switch,
    so usage under-reports rather than blocks.
    """

    def __init__(
        self,
        primary: CounterStore,
        fallback: CounterStore,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._logger = logger or _default_logger
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    async def get(self, key: str) -> int | None:
        if not self._degraded:
            try:
                return await self._primary.get(key)
            except Exception as exc:
                self._degrade("get", exc)
        return await self._fallback.get(key)

    async def increment(self, key: str) -> int:
        if not self._degraded:
            try:
                return await self._primary.increment(key)
            except Exception as exc:
                self._degrade("increment", exc)
        return await self._fallback.increment(key)

    async def expire(self, key: str, ttl_seconds: int) -> None:
        if not self._degraded:
            try:
                await self._primary.expire(key, ttl_seconds)
                return
            except Exception as exc:
                self._degrade("expire", exc)
        await self._fallback.expire(key, ttl_seconds)

    async def close(self) -> None:
        close = getattr(self._primary, "close", None)
        if close is not None:
            await close()

    def _degrade(self, operation: str, exc: Exception) -> None:
        if self._degraded:
            return
        self._degraded = True
        self._logger.warning(
            "counter_store_degraded operation=%s error_type=%s error=%s fallback=in_memory",
            operation,
            exc.__class__.__name__,
            str(exc),
        )


def build_counter_store(
    redis_url: str | None = None,
    logger: logging.Logger | None = None,
    create_redis_client: RedisClientFactory | None = None,
    clock: Callable[[], float] = time.time,
) -> CounterStore:
    log = logger or _default_logger
    local = InMemoryCounterStore(clock=clock)
    if not redis_url:
        log.warning("counter_store_unconfigured fallback=in_memory")
        return local

    factory = create_redis_client or build_redis_client
    try:
        client = factory(redis_url)
    except (RuntimeError, ValueError) as exc:
        log.warning(
            "counter_store_redis_unavailable reason=%s fallback=in_memory",
            str(exc),
        )
        return local
    return FallbackCounterStore(RedisCounterStore(client), local, logger=log)


def build_redis_client(redis_url: str) -> Any:
    return redis_from_url(redis_url, decode_responses=False)
