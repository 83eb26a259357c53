"""
Service context: every long-lived handle the app needs, with one lifecycle.

Built once at startup, stored on ``app.state.context`` and closed on
shutdown after in-flight requests drain.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

import structlog

from doorman.config import Settings
from doorman.core.keys import by_client_address, by_credential, by_email, by_fingerprint
from doorman.core.limiter import LimiterConfig, RateLimiter
from doorman.core.pipeline import AdmissionPipeline
from doorman.core.slowdown import SlowDown
from doorman.core.storage.base import CounterStore
from doorman.core.storage.fallback import FallbackCounterStore
from doorman.core.storage.memory import InMemoryCounterStore
from doorman.core.storage.redis import RedisCounterStore
from doorman.services.accounts import AccountBackend, SupabaseAdminClient
from doorman.services.mail import Mailer, SmtpMailer
from doorman.services.signup import SignupOrchestrator

logger = structlog.get_logger()

BYPASS_PATHS = ("/health", "/docs", "/redoc", "/openapi.json", "/static/")


def build_counter_store(settings: Settings) -> CounterStore:
    if not settings.redis_url:
        return InMemoryCounterStore()
    primary = RedisCounterStore.from_url(
        settings.redis_url,
        connect_timeout=settings.redis_connect_timeout,
        socket_timeout=settings.redis_socket_timeout,
        retries=settings.redis_retries,
    )
    return FallbackCounterStore(primary, recheck_seconds=settings.store_recheck_seconds)


def build_pipelines(
    settings: Settings,
    store: CounterStore,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> dict[str, AdmissionPipeline]:
    def limiter(name: str, config: LimiterConfig) -> RateLimiter:
        return RateLimiter(name, config, store)

    def slowdown(scope: str) -> SlowDown:
        return SlowDown(
            store,
            scope=scope,
            window_seconds=settings.slowdown_window_seconds,
            threshold=settings.slowdown_threshold,
            base_ms=settings.slowdown_base_ms,
            cap_ms=settings.slowdown_cap_ms,
            sleep=sleep,
        )

    ip_limit = dict(max_count=settings.signup_ip_max, window_seconds=settings.signup_ip_window_seconds)
    email_limit = dict(
        max_count=settings.signup_email_max, window_seconds=settings.signup_email_window_seconds
    )

    global_pipeline = AdmissionPipeline(
        "global",
        [
            limiter(
                "global",
                LimiterConfig(
                    scope="global",
                    key_strategy=by_credential,
                    max_count=settings.global_max,
                    window_seconds=settings.global_window_seconds,
                ),
            )
        ],
        bypass_paths=BYPASS_PATHS,
    )

    signup_pipeline = AdmissionPipeline(
        "signup",
        [
            slowdown("signup-slowdown"),
            limiter(
                "ip",
                LimiterConfig(
                    scope="signup",
                    key_strategy=by_client_address,
                    message="Too many signup attempts from this network, please try again later.",
                    **ip_limit,
                ),
            ),
            limiter(
                "email",
                LimiterConfig(
                    scope="signup",
                    key_strategy=by_email,
                    message="Too many signup attempts for this email, please try again later.",
                    **email_limit,
                ),
            ),
            limiter(
                "device",
                LimiterConfig(
                    scope="signup",
                    key_strategy=by_fingerprint,
                    max_count=settings.signup_device_max,
                    window_seconds=settings.signup_device_window_seconds,
                    message="Too many signup attempts from this device, please try again later.",
                ),
            ),
        ],
        bypass_paths=BYPASS_PATHS,
    )

    resend_pipeline = AdmissionPipeline(
        "resend",
        [
            slowdown("resend-slowdown"),
            limiter(
                "ip",
                LimiterConfig(
                    scope="resend",
                    key_strategy=by_client_address,
                    message="Too many requests from this network, please try again later.",
                    **ip_limit,
                ),
            ),
            limiter(
                "email",
                LimiterConfig(
                    scope="resend",
                    key_strategy=by_email,
                    message="Too many requests for this email, please try again later.",
                    **email_limit,
                ),
            ),
        ],
        bypass_paths=BYPASS_PATHS,
    )

    return {"global": global_pipeline, "signup": signup_pipeline, "resend": resend_pipeline}


class ServiceContext:
    def __init__(
        self,
        settings: Settings,
        store: CounterStore,
        accounts: AccountBackend,
        mailer: Mailer,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.store = store
        self.accounts = accounts
        self.mailer = mailer
        self.pipelines = build_pipelines(settings, store, sleep=sleep)
        self.orchestrator = SignupOrchestrator(
            accounts,
            mailer,
            redirect_url=settings.signup_redirect_url,
            link_ttl_minutes=settings.confirmation_link_ttl_minutes,
            rollback_on_email_failure=settings.rollback_on_email_failure,
        )
        self.started_at = time.time()
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @classmethod
    def from_settings(cls, settings: Settings) -> ServiceContext:
        if not settings.auth_configured:
            logger.warning("auth_backend_unconfigured", hint="set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        if not settings.mail_configured:
            logger.warning("mail_relay_unconfigured", hint="set SMTP_USERNAME and SMTP_PASSWORD")

        accounts = SupabaseAdminClient.create(
            settings.supabase_url,
            settings.supabase_service_role_key.get_secret_value(),
            timeout=settings.auth_timeout_seconds,
        )
        mailer = SmtpMailer(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password.get_secret_value(),
            sender_name=settings.mail_from_name,
            use_tls=settings.smtp_use_tls,
            timeout=settings.mail_timeout_seconds,
        )
        return cls(settings, build_counter_store(settings), accounts, mailer)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    @asynccontextmanager
    async def track(self) -> AsyncIterator[None]:
        self._in_flight += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    async def open(self) -> None:
        await self.store.connect()
        self.started_at = time.time()
        logger.info(
            "service_started",
            store=self.store.name,
            pipelines={name: repr(p) for name, p in self.pipelines.items()},
        )

    async def drain(self, timeout: float) -> bool:
        """Wait for in-flight requests to finish. False if the deadline hit."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning("shutdown_drain_timeout", in_flight=self._in_flight, timeout=timeout)
            return False
        return True

    async def aclose(self) -> None:
        await self.drain(self.settings.shutdown_grace_seconds)
        await self.store.close()
        await self.accounts.aclose()
        logger.info("service_stopped")
