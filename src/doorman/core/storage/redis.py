import time

import structlog
from redis.asyncio import Redis, from_url
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from doorman.core.errors import StoreUnavailable
from doorman.core.storage.base import CounterStore, WindowCount

logger = structlog.get_logger()


class RedisCounterStore(CounterStore):
    """
    Fixed-window counters shared across instances through Redis.

    INCR and the window TTL are applied in one Lua script, so concurrent
    increments on a key are never lost and a window can never be left
    without an expiry.
    """

    name = "redis"

    # Returns: [count_after_increment, window_ttl_ms]
    _LUA_SCRIPT = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])

    local current = redis.call('INCR', key)
    local ttl = redis.call('PTTL', key)

    -- New window, or a counter that somehow lost its expiry
    if current == 1 or ttl < 0 then
        redis.call('PEXPIRE', key, window_ms)
        ttl = window_ms
    end

    return {current, ttl}
    """

    def __init__(self, redis: Redis, prefix: str = "doorman"):
        self._redis = redis
        self._prefix = prefix

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        connect_timeout: float = 2.0,
        socket_timeout: float = 1.0,
        retries: int = 3,
    ) -> "RedisCounterStore":
        client = from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            socket_timeout=socket_timeout,
            retry=Retry(ExponentialBackoff(cap=1.0, base=0.05), retries),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            health_check_interval=30,
        )
        return cls(client)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def connect(self) -> None:
        try:
            await self._redis.ping()
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"redis unreachable: {exc}") from exc

    async def increment(self, key: str, window_seconds: int) -> WindowCount:
        now = time.time()
        try:
            count, ttl_ms = await self._redis.eval(
                self._LUA_SCRIPT, 1, self._key(key), int(window_seconds * 1000)
            )
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"redis increment failed: {exc}") from exc

        return WindowCount(count=int(count), reset_at=now + int(ttl_ms) / 1000)

    async def get(self, key: str) -> WindowCount | None:
        now = time.time()
        redis_key = self._key(key)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.get(redis_key)
                pipe.pttl(redis_key)
                raw, ttl_ms = await pipe.execute()
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"redis read failed: {exc}") from exc

        if raw is None or ttl_ms is None or int(ttl_ms) < 0:
            return None
        return WindowCount(count=int(raw), reset_at=now + int(ttl_ms) / 1000)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("counter_store_closed", backend=self.name)
