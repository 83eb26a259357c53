import json
from typing import Any

import structlog
from fastapi import FastAPI, Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from doorman.core.errors import DoormanError, PayloadTooLarge, RateLimitExceeded, SignupValidationError
from doorman.core.limiter import AdmissionDecision

logger = structlog.get_logger()


def rate_limit_headers(decision: AdmissionDecision) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(int(decision.reset_at)),
    }
    if not decision.admitted:
        headers["Retry-After"] = str(decision.retry_after or 1)
    return headers


def rate_limited_response(decision: AdmissionDecision) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": decision.message,
            "retryAfter": decision.retry_after or 1,
            "limit": decision.limit,
            "remaining": decision.remaining,
        },
        headers=rate_limit_headers(decision),
    )


async def read_json_body(request: Request, max_bytes: int) -> dict[str, Any]:
    """
    Read and decode a capped JSON object body.

    The cap is enforced while streaming, so a chunked body with no
    Content-Length stops being read as soon as it goes over ``max_bytes``.
    An empty body decodes to ``{}`` so required-field validation reports it.
    """
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLarge()

    chunks = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > max_bytes:
            raise PayloadTooLarge()
        chunks.append(chunk)
    raw = b"".join(chunks)
    if not raw.strip():
        return {}

    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise SignupValidationError("Malformed JSON body") from None
    if not isinstance(payload, dict):
        raise SignupValidationError("Request body must be a JSON object")
    return payload


async def doorman_error_handler(request: Request, exc: DoormanError) -> JSONResponse:
    headers = dict(getattr(request.state, "rate_limit_headers", None) or {})

    if isinstance(exc, RateLimitExceeded):
        return rate_limited_response(exc.decision)

    if exc.status_code >= 500:
        logger.error(
            "request_failed",
            error_type=type(exc).__name__,
            state=exc.state,
            status_code=exc.status_code,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.public_message},
        headers=headers,
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", error_type=type(exc).__name__)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DoormanError, doorman_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
