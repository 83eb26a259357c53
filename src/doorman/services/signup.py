"""
Signup orchestration.

One request walks a small state machine:

    RECEIVED -> VALIDATED -> LINK_GENERATED -> EMAIL_SENT -> COMPLETED

and stops in REJECTED_INVALID, EXTERNAL_AUTH_FAILED or
EMAIL_DELIVERY_FAILED on error. The raised exception carries the terminal
state so callers and tests can tell where the request stopped.

Account creation and mail delivery do not share a transaction. When
delivery fails the remote account stays in place unless the rollback
policy is switched on; the user recovers through the resend endpoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Mapping

import structlog

from doorman.core.errors import (
    AccountNotFound,
    AlreadyRegistered,
    DoormanError,
    EmailDeliveryFailed,
    ExternalProviderError,
    SignupValidationError,
)
from doorman.services.accounts import AccountBackend
from doorman.services.mail import Mailer
from doorman.services.templates import (
    CONFIRMATION_SUBJECT,
    RESEND_SUBJECT,
    render_confirmation_email,
    render_resend_email,
)
from doorman.services.validation import parse_resend, parse_signup

logger = structlog.get_logger()


class SignupState(StrEnum):
    RECEIVED = "received"
    VALIDATED = "validated"
    LINK_GENERATED = "link_generated"
    EMAIL_SENT = "email_sent"
    COMPLETED = "completed"
    REJECTED_INVALID = "rejected_invalid"
    EXTERNAL_AUTH_FAILED = "external_auth_failed"
    EMAIL_DELIVERY_FAILED = "email_delivery_failed"


@dataclass(frozen=True)
class SignupResult:
    email: str
    state: SignupState
    message: str


def _fail(exc: DoormanError, state: SignupState) -> DoormanError:
    exc.state = state
    return exc


class SignupOrchestrator:
    def __init__(
        self,
        accounts: AccountBackend,
        mailer: Mailer,
        redirect_url: str,
        link_ttl_minutes: int = 5,
        rollback_on_email_failure: bool = False,
    ) -> None:
        self._accounts = accounts
        self._mailer = mailer
        self._redirect_url = redirect_url
        self._link_ttl_minutes = link_ttl_minutes
        self._rollback_on_email_failure = rollback_on_email_failure

    @staticmethod
    def _transition(state: SignupState, **fields: Any) -> SignupState:
        logger.info("signup_transition", state=state.value, **fields)
        return state

    async def signup(self, payload: Mapping[str, Any]) -> SignupResult:
        self._transition(SignupState.RECEIVED)
        try:
            request = parse_signup(payload)
        except SignupValidationError as exc:
            self._transition(SignupState.REJECTED_INVALID, field=exc.field)
            raise _fail(exc, SignupState.REJECTED_INVALID)
        self._transition(SignupState.VALIDATED)

        try:
            link = await self._accounts.generate_signup_link(
                request.email,
                request.password,
                {"first_name": request.first_name, "last_name": request.last_name},
                self._redirect_url,
            )
        except AlreadyRegistered as exc:
            logger.info("signup_duplicate", provider_code=exc.code)
            raise _fail(exc, SignupState.EXTERNAL_AUTH_FAILED)
        except ExternalProviderError as exc:
            logger.error(
                "signup_link_failed",
                provider_code=exc.code,
                provider_status=exc.provider_status,
                error=str(exc),
            )
            if type(exc) is not ExternalProviderError:
                # Only "already registered" is surfaced precisely on signup
                failure = ExternalProviderError(str(exc), code=exc.code, status=exc.provider_status)
                raise _fail(failure, SignupState.EXTERNAL_AUTH_FAILED) from exc
            raise _fail(exc, SignupState.EXTERNAL_AUTH_FAILED)
        self._transition(SignupState.LINK_GENERATED, user_id=link.user_id)

        html = render_confirmation_email(request.first_name, link.action_link, self._link_ttl_minutes)
        try:
            await self._mailer.send_mail(request.email, CONFIRMATION_SUBJECT, html)
        except EmailDeliveryFailed as exc:
            logger.error("email_delivery_failed", user_id=link.user_id, error=str(exc))
            await self._compensate(link.user_id)
            raise _fail(exc, SignupState.EMAIL_DELIVERY_FAILED)
        self._transition(SignupState.EMAIL_SENT)

        self._transition(SignupState.COMPLETED)
        return SignupResult(
            email=request.email,
            state=SignupState.COMPLETED,
            message="Confirmation email sent successfully",
        )

    async def _compensate(self, user_id: str | None) -> None:
        if not self._rollback_on_email_failure:
            return
        if not user_id:
            logger.warning("signup_rollback_skipped", reason="no_user_id")
            return
        try:
            await self._accounts.delete_user(user_id)
        except ExternalProviderError as exc:
            logger.error("signup_rollback_failed", user_id=user_id, provider_code=exc.code)
            return
        logger.info("signup_rolled_back", user_id=user_id)

    async def resend(self, payload: Mapping[str, Any]) -> SignupResult:
        """
        Mail a fresh link to an existing account.

        Unknown emails get the same result as known ones so the endpoint
        cannot be used to probe which addresses have accounts.
        """
        request = parse_resend(payload)
        message = "If an account exists for this email, a new link has been sent"
        try:
            link = await self._accounts.generate_login_link(request.email, self._redirect_url)
        except AccountNotFound:
            logger.info("resend_unknown_account")
            return SignupResult(email=request.email, state=SignupState.COMPLETED, message=message)
        except ExternalProviderError as exc:
            logger.error("resend_link_failed", provider_code=exc.code, error=str(exc))
            raise _fail(exc, SignupState.EXTERNAL_AUTH_FAILED)

        html = render_resend_email(link.action_link, self._link_ttl_minutes)
        try:
            await self._mailer.send_mail(request.email, RESEND_SUBJECT, html)
        except EmailDeliveryFailed as exc:
            logger.error("email_delivery_failed", user_id=link.user_id, error=str(exc))
            raise _fail(exc, SignupState.EMAIL_DELIVERY_FAILED)

        return SignupResult(email=request.email, state=SignupState.COMPLETED, message=message)
