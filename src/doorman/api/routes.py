from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel

from doorman.api.responses import rate_limit_headers, read_json_body
from doorman.context import ServiceContext
from doorman.core.errors import MissingKeyInput, RateLimitExceeded
from doorman.core.keys import AdmissionRequest
from doorman.core.limiter import RateLimiter

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    uptime: float
    store: dict[str, Any]


class SignupResponse(BaseModel):
    message: str
    email: str


class RateLimitStatusResponse(BaseModel):
    client: str
    counters: list[dict[str, Any]]


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context


async def admit(request: Request, context: ServiceContext, pipeline: str, email: Any = None) -> None:
    """Run a route pipeline; raises RateLimitExceeded on the first rejection."""
    admission = AdmissionRequest.from_http(request, context.settings.trusted_proxy_hops, email=email)
    outcome = await context.pipelines[pipeline].run(admission)
    if outcome.decision is not None:
        request.state.rate_limit_headers = rate_limit_headers(outcome.decision)
    if not outcome.admitted:
        raise RateLimitExceeded(outcome.decision)


def _apply_headers(request: Request, response: Response) -> None:
    for key, value in (getattr(request.state, "rate_limit_headers", None) or {}).items():
        response.headers[key] = value


@router.get("/health", response_model=HealthResponse)
async def health_check(context: ServiceContext = Depends(get_context)):
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime=round(context.uptime, 3),
        store=await context.store.status(),
    )


@router.post("/api/signup", response_model=SignupResponse)
async def signup(
    request: Request,
    response: Response,
    context: ServiceContext = Depends(get_context),
):
    payload = await read_json_body(request, context.settings.max_body_bytes)
    await admit(request, context, "signup", email=payload.get("email"))

    result = await context.orchestrator.signup(payload)
    _apply_headers(request, response)
    return SignupResponse(message=result.message, email=result.email)


@router.post("/api/signup/resend", response_model=SignupResponse)
async def resend_confirmation(
    request: Request,
    response: Response,
    context: ServiceContext = Depends(get_context),
):
    payload = await read_json_body(request, context.settings.max_body_bytes)
    await admit(request, context, "resend", email=payload.get("email"))

    result = await context.orchestrator.resend(payload)
    _apply_headers(request, response)
    return SignupResponse(message=result.message, email=result.email)


@router.get("/api/rate-limit/status", response_model=RateLimitStatusResponse)
async def rate_limit_status(
    request: Request,
    email: str | None = Query(default=None),
    context: ServiceContext = Depends(get_context),
):
    """Caller's own signup counters. Debugging aid, off unless configured."""
    if not context.settings.expose_rate_limit_status:
        raise HTTPException(status_code=404, detail="Not Found")

    admission = AdmissionRequest.from_http(request, context.settings.trusted_proxy_hops, email=email)
    counters = []
    for guard in context.pipelines["signup"].guards:
        if not isinstance(guard, RateLimiter):
            continue
        try:
            counters.append(await guard.inspect(admission))
        except MissingKeyInput:
            continue
    return RateLimitStatusResponse(client=admission.client_address, counters=counters)
