from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from free_tier_router.routing_defaults import (
    DEFAULT_QUOTA_KEY_PREFIX,
    QUOTA_TTL_SECONDS,
)
from free_tier_router.runtime.counter_store import CounterStore

logger = logging.getLogger("uvicorn.error")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotaTracker:
    """Per-client free usage, bucketed by UTC day.

    Reads fail open: an unreadable counter counts as zero usage so storage
    trouble never blocks a client.
    """

    def __init__(
        self,
        store: CounterStore,
        daily_limit: int,
        *,
        key_prefix: str = DEFAULT_QUOTA_KEY_PREFIX,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._daily_limit = max(0, int(daily_limit))
        self._key_prefix = key_prefix
        self._now = now

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    def key_for(self, client_key: str) -> str:
        today = self._now().astimezone(timezone.utc).date().isoformat()
        return f"{self._key_prefix}:{client_key}:{today}"

    async def daily_usage(self, client_key: str) -> int:
        key = self.key_for(client_key)
        try:
            value = await self._store.get(key)
        except Exception as exc:
            logger.error(
                "quota_read_failed key=%s error_type=%s error=%s",
                key,
                exc.__class__.__name__,
                str(exc),
            )
            return 0
        return max(0, int(value or 0))

    async def record_billable_use(self, client_key: str) -> int:
        key = self.key_for(client_key)
        try:
            count = await self._store.increment(key)
            if count == 1:
                await self._store.expire(key, QUOTA_TTL_SECONDS)
        except Exception as exc:
            logger.error(
                "quota_write_failed key=%s error_type=%s error=%s",
                key,
                exc.__class__.__name__,
                str(exc),
            )
            return 1
        return count

    def remaining(self, usage: int) -> int:
        return max(0, self._daily_limit - int(usage))
