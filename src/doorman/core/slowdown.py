import asyncio
from typing import Awaitable, Callable

import structlog

from doorman.core.keys import AdmissionRequest, KeyStrategy, by_client_address
from doorman.core.limiter import AdmissionDecision, Guard
from doorman.core.storage.base import CounterStore

logger = structlog.get_logger()

# 2**30 * base is far past any sane cap
_MAX_EXPONENT = 30


class SlowDown(Guard):
    """
    Delays repeat callers with exponential backoff. Never rejects.

    The first ``threshold`` hits in a window pass untouched. After that the
    delay doubles per hit starting at ``base_ms`` and is capped at
    ``cap_ms``. With threshold=2, base=1000, cap=30000, hits 3, 4, 5 wait
    1s, 2s, 4s and hit 10 waits the 30s cap.

    Hits are counted in their own scope, independent of any limiter.
    """

    name = "slowdown"

    def __init__(
        self,
        store: CounterStore,
        scope: str,
        window_seconds: int,
        threshold: int,
        base_ms: int,
        cap_ms: int,
        key_strategy: KeyStrategy = by_client_address,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self.scope = scope
        self.window_seconds = window_seconds
        self.threshold = threshold
        self.base_ms = base_ms
        self.cap_ms = cap_ms
        self._key_strategy = key_strategy
        self._sleep = sleep

    def delay_ms(self, hits: int) -> int:
        if hits <= self.threshold:
            return 0
        exponent = min(hits - self.threshold - 1, _MAX_EXPONENT)
        return min(self.base_ms * 2**exponent, self.cap_ms)

    async def check(self, request: AdmissionRequest) -> AdmissionDecision | None:
        key = f"{self.scope}:{self._key_strategy(request)}"
        window = await self._store.increment(key, self.window_seconds)

        delay = self.delay_ms(window.count)
        if delay:
            logger.info(
                "request_delayed",
                scope=self.scope,
                client=request.client_address,
                path=request.path,
                hits=window.count,
                delay_ms=delay,
            )
            await self._sleep(delay / 1000)
        return None
