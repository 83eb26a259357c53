import time
from typing import Any, Callable

import structlog

from doorman.core.errors import StoreUnavailable
from doorman.core.storage.base import CounterStore, WindowCount
from doorman.core.storage.memory import InMemoryCounterStore

logger = structlog.get_logger()


class FallbackCounterStore(CounterStore):
    """
    Routes counters to a primary store, degrading to a local one.

    When the primary cannot be reached (at connect time or on any later
    call) the request is served from the fallback store instead of failing,
    and the primary is left alone for ``recheck_seconds`` before it is
    tried again. Counters recorded during a degraded period stay in the
    fallback and are not merged back.
    """

    def __init__(
        self,
        primary: CounterStore,
        fallback: CounterStore | None = None,
        recheck_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._primary = primary
        self._fallback = fallback or InMemoryCounterStore()
        self._recheck_seconds = recheck_seconds
        self._clock = clock
        self._degraded_until: float | None = None

    @property
    def name(self) -> str:
        return self._fallback.name if self.degraded else self._primary.name

    @property
    def degraded(self) -> bool:
        return self._degraded_until is not None

    def _mark_degraded(self, exc: StoreUnavailable, event: str) -> None:
        first = self._degraded_until is None
        self._degraded_until = self._clock() + self._recheck_seconds
        log = logger.warning if first else logger.debug
        log(
            event,
            primary=self._primary.name,
            fallback=self._fallback.name,
            error=str(exc),
            recheck_seconds=self._recheck_seconds,
        )

    def _use_primary(self) -> bool:
        return self._degraded_until is None or self._clock() >= self._degraded_until

    async def connect(self) -> None:
        try:
            await self._primary.connect()
        except StoreUnavailable as exc:
            self._mark_degraded(exc, "counter_store_fallback")
            return
        logger.info("counter_store_connected", backend=self._primary.name)

    async def increment(self, key: str, window_seconds: int) -> WindowCount:
        if self._use_primary():
            try:
                result = await self._primary.increment(key, window_seconds)
            except StoreUnavailable as exc:
                self._mark_degraded(exc, "counter_store_fallback")
            else:
                if self._degraded_until is not None:
                    self._degraded_until = None
                    logger.info("counter_store_recovered", backend=self._primary.name)
                return result
        return await self._fallback.increment(key, window_seconds)

    async def get(self, key: str) -> WindowCount | None:
        if self._use_primary():
            try:
                return await self._primary.get(key)
            except StoreUnavailable as exc:
                self._mark_degraded(exc, "counter_store_fallback")
        return await self._fallback.get(key)

    async def ping(self) -> bool:
        return await self._primary.ping()

    async def close(self) -> None:
        await self._primary.close()
        await self._fallback.close()

    async def status(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "primary": self._primary.name,
            "connected": await self._primary.ping(),
            "degraded": self.degraded,
        }
