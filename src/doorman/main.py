from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from doorman.api.middleware import RateLimitMiddleware
from doorman.api.responses import register_error_handlers
from doorman.api.routes import router
from doorman.config import Settings, get_settings
from doorman.context import ServiceContext
from doorman.core.logging import setup_logging

logger = structlog.get_logger()


def create_app(settings: Settings | None = None, context: ServiceContext | None = None) -> FastAPI:
    """
    Build the ASGI app.

    ``context`` is normally built from settings during startup; tests pass
    a prepared one with fake collaborators.
    """
    settings = settings or (context.settings if context else get_settings())
    setup_logging(settings.log_level, settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifecycle manager.
        Opens the counter store at startup; on shutdown waits for in-flight
        requests (up to the grace period) before closing connections.
        """
        ctx = context or ServiceContext.from_settings(settings)
        await ctx.open()
        app.state.context = ctx
        try:
            yield
        finally:
            await ctx.aclose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    # Added first so it sits inside CORS; preflights skip admission
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    register_error_handlers(app)
    app.include_router(router)
    return app


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "doorman.main:app",
        host=settings.host,
        port=settings.port,
        timeout_graceful_shutdown=int(settings.shutdown_grace_seconds),
        proxy_headers=False,
    )


app = create_app()
