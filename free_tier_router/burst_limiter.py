from __future__ import annotations

import math
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from free_tier_router.routing_defaults import (
    DEFAULT_BURST_MAX_CLIENTS,
    DEFAULT_BURST_MAX_REQUESTS,
    DEFAULT_BURST_WINDOW_SECONDS,
)


@dataclass(slots=True)
class BurstLimiterConfig:
    window_seconds: float = DEFAULT_BURST_WINDOW_SECONDS
    max_per_window: int = DEFAULT_BURST_MAX_REQUESTS
    max_clients: int = DEFAULT_BURST_MAX_CLIENTS


@dataclass(slots=True)
class _Window:
    count: int
    window_end: float


class BurstLimiter:
    """Fixed-window request counter per client, held only in process memory.

    Windows reset as a whole, not sliding: a client bursting on both sides of
    a window boundary can get close to twice ``max_per_window`` through in a
    short span. Records are lost on restart.

    ``allow`` never awaits, so on a single event loop each call is atomic.
    """

    def __init__(
        self,
        config: BurstLimiterConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or BurstLimiterConfig()
        self._clock = clock
        self._max_clients = max(1, int(self._config.max_clients))
        self._windows: OrderedDict[str, _Window] = OrderedDict()

    @property
    def config(self) -> BurstLimiterConfig:
        return self._config

    def allow(self, client_key: str) -> bool:
        now = self._clock()
        window = self._windows.get(client_key)
        if window is None or now > window.window_end:
            self._windows[client_key] = _Window(
                count=1,
                window_end=now + self._config.window_seconds,
            )
            self._windows.move_to_end(client_key)
            if len(self._windows) > self._max_clients:
                self._windows.popitem(last=False)
            return True

        if window.count >= self._config.max_per_window:
            return False
        window.count += 1
        return True

    def retry_after_seconds(self, client_key: str) -> int:
        window = self._windows.get(client_key)
        if window is None:
            return 0
        remaining = window.window_end - self._clock()
        return max(1, math.ceil(remaining))

    def __len__(self) -> int:
        return len(self._windows)
