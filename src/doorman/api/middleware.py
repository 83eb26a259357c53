from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
import structlog

from doorman.api.responses import rate_limit_headers, rate_limited_response
from doorman.core.keys import AdmissionRequest

logger = structlog.get_logger()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    App-wide admission: runs the global pipeline before any route.

    Also counts in-flight requests so shutdown can wait for them, and binds
    the request fields every log event carries.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        context = getattr(request.app.state, "context", None)
        if context is None:
            logger.warning("middleware_uninitialized_skipping")
            return await call_next(request)

        admission = AdmissionRequest.from_http(request, context.settings.trusted_proxy_hops)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            client=admission.client_address,
            path=admission.path,
            method=admission.method,
        )

        async with context.track():
            outcome = await context.pipelines["global"].run(admission)
            if not outcome.admitted:
                return rate_limited_response(outcome.decision)

            response = await call_next(request)

        # Route-level guards report tighter quotas; keep theirs
        if outcome.decision is not None and "X-RateLimit-Limit" not in response.headers:
            for key, value in rate_limit_headers(outcome.decision).items():
                response.headers[key] = value

        return response
