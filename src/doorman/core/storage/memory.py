"""
In-memory counter store.

Counters live in a dict owned by this process:
- Fast: no network calls, no serialization
- Not shared: every instance counts its own traffic only
- Not durable: everything is lost on restart

Deployments with more than one instance must use RedisCounterStore,
otherwise the limits are enforced per instance and under-count real traffic.
"""

import time
from dataclasses import dataclass
from typing import Callable

from doorman.core.storage.base import CounterStore, WindowCount


@dataclass
class _Window:
    count: int
    started_at: float
    duration: float

    @property
    def reset_at(self) -> float:
        return self.started_at + self.duration


class InMemoryCounterStore(CounterStore):
    """
    Fixed-window counters in a plain dictionary.

    Expiry is checked lazily on access. Once the table grows past
    ``max_keys`` expired windows are swept on the next increment.

    Concurrency:
        increment() never awaits between reading and writing a window, so
        it is atomic with respect to other coroutines on the same event
        loop. It is NOT thread-safe.
    """

    name = "memory"

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        max_keys: int = 50_000,
    ) -> None:
        self._clock = clock
        self._max_keys = max_keys
        self._windows: dict[str, _Window] = {}

    async def increment(self, key: str, window_seconds: int) -> WindowCount:
        now = self._clock()
        if len(self._windows) >= self._max_keys:
            self._sweep(now)

        window = self._windows.get(key)
        if window is None or now >= window.reset_at:
            window = _Window(count=1, started_at=now, duration=window_seconds)
            self._windows[key] = window
        else:
            window.count += 1

        return WindowCount(count=window.count, reset_at=window.reset_at)

    async def get(self, key: str) -> WindowCount | None:
        window = self._windows.get(key)
        if window is None:
            return None
        if self._clock() >= window.reset_at:
            del self._windows[key]
            return None
        return WindowCount(count=window.count, reset_at=window.reset_at)

    async def ping(self) -> bool:
        return True

    def _sweep(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for key in expired:
            del self._windows[key]

    # =========================================================================
    # Utility Methods (not part of interface, useful for testing)
    # =========================================================================

    def clear(self) -> None:
        self._windows.clear()

    def keys(self) -> list[str]:
        now = self._clock()
        return [k for k, w in self._windows.items() if now < w.reset_at]
