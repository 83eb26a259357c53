"""
Abstract base class for counter stores.

This module defines the contract every counter store must follow. Limiters
and the slowdown stage only ever talk to this interface, so the backing
storage can be swapped without touching admission logic:
- InMemoryCounterStore: single process, lost on restart
- RedisCounterStore: shared across instances, survives restarts
- FallbackCounterStore: Redis first, memory when Redis is unreachable
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class WindowCount:
    """
    Snapshot of one fixed-window counter after an increment.

    Attributes:
        count: Hits recorded in the current window, including this one.
        reset_at: Unix timestamp when the current window ends.
    """

    count: int
    reset_at: float


class CounterStore(ABC):
    """
    Keyed fixed-window counters with store-enforced expiry.

    Implementations must guarantee:
    - Atomic increments: concurrent callers on one key never lose a hit.
    - Fixed windows: a missing or expired counter restarts at count=1 with
      a fresh window; otherwise the count grows and reset_at is unchanged.
    - StoreUnavailable is raised when the backing connection is down, never
      an unbounded wait.

    Example:
        >>> store = InMemoryCounterStore()
        >>> await store.increment("signup:ip:203.0.113.7", 3600)
        WindowCount(count=1, reset_at=1699903600.0)
    """

    name: str = "abstract"

    async def connect(self) -> None:
        """Establish the backing connection. No-op for local stores."""

    @abstractmethod
    async def increment(self, key: str, window_seconds: int) -> WindowCount:
        """
        Record one hit for ``key`` and return the window state after it.

        Args:
            key: Namespaced rate-limit key, e.g. "signup:email:user@x.com".
            window_seconds: Window length; also the counter's TTL.

        Raises:
            StoreUnavailable: the backing store cannot be reached.
        """

    @abstractmethod
    async def get(self, key: str) -> WindowCount | None:
        """
        Read a counter without recording a hit.

        Only used by diagnostics; admission always goes through increment.
        """

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the backing store is reachable."""

    async def close(self) -> None:
        """Release the backing connection."""

    async def status(self) -> dict[str, Any]:
        return {"backend": self.name, "connected": await self.ping()}
