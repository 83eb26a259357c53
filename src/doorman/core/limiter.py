"""
Fixed-window rate limiter and the guard contract shared by admission stages.

A guard inspects one request and either returns an AdmissionDecision, or
None when it has no quota to report (the slowdown stage). The pipeline
treats any decision with ``admitted=False`` as final.
"""

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

import structlog

from doorman.core.keys import AdmissionRequest, KeyStrategy
from doorman.core.storage.base import CounterStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class AdmissionDecision:
    """
    Immutable outcome of one guard for one request.

    Attributes:
        admitted: Whether the request may proceed past this guard.
        limit: Maximum hits allowed in the window.
        remaining: Hits left in the current window (0 when rejected).
        reset_at: Unix timestamp when the window resets.
        retry_after: Whole seconds to wait, only set when rejected.
        guard: Name of the guard that produced the decision.
        message: Human readable explanation for rejections.

    Example headers this maps to:
        X-RateLimit-Limit: {limit}
        X-RateLimit-Remaining: {remaining}
        X-RateLimit-Reset: {reset_at}
        Retry-After: {retry_after}  (only on 429 responses)
    """

    admitted: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int | None = None
    guard: str = ""
    message: str = ""


class Guard(ABC):
    name: str

    @abstractmethod
    async def check(self, request: AdmissionRequest) -> AdmissionDecision | None:
        """Evaluate one request. Called once per request, in pipeline order."""


@dataclass(frozen=True)
class LimiterConfig:
    """One guarded dimension of one route. Shared read-only by all requests."""

    scope: str
    key_strategy: KeyStrategy
    max_count: int
    window_seconds: int
    message: str = "Too many requests, please try again later."

    def key_for(self, request: AdmissionRequest) -> str:
        return f"{self.scope}:{self.key_strategy(request)}"


class RateLimiter(Guard):
    """
    Admits a request iff its bucket count after increment is <= max_count.

    Every call consumes one hit, admitted or not; there is no way to check
    without counting. Use ``inspect`` for read-only diagnostics.
    """

    def __init__(
        self,
        name: str,
        config: LimiterConfig,
        store: CounterStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.config = config
        self._store = store
        self._clock = clock

    async def check(self, request: AdmissionRequest) -> AdmissionDecision:
        key = self.config.key_for(request)
        window = await self._store.increment(key, self.config.window_seconds)

        limit = self.config.max_count
        if window.count <= limit:
            return AdmissionDecision(
                admitted=True,
                limit=limit,
                remaining=limit - window.count,
                reset_at=window.reset_at,
                guard=self.name,
            )

        retry_after = max(1, math.ceil(window.reset_at - self._clock()))
        logger.warning(
            "rate_limit_exceeded",
            guard=self.name,
            scope=self.config.scope,
            client=request.client_address,
            path=request.path,
            limit=limit,
            remaining=0,
            retry_after=retry_after,
        )
        return AdmissionDecision(
            admitted=False,
            limit=limit,
            remaining=0,
            reset_at=window.reset_at,
            retry_after=retry_after,
            guard=self.name,
            message=self.config.message,
        )

    async def inspect(self, request: AdmissionRequest) -> dict:
        """Current counter for the caller's key, without recording a hit."""
        key = self.config.key_for(request)
        window = await self._store.get(key)
        count = window.count if window else 0
        return {
            "guard": self.name,
            "scope": self.config.scope,
            "count": count,
            "limit": self.config.max_count,
            "remaining": max(0, self.config.max_count - count),
            "resetAt": int(window.reset_at) if window else None,
        }
