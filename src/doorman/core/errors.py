"""
Error taxonomy for the signup relay.

Every error the service raises on purpose derives from ``DoormanError`` and
carries the HTTP status it maps to plus a message that is safe to show the
client. Internal detail (provider codes, exception text) stays on the
exception object for logging and never reaches the response body.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from doorman.core.limiter import AdmissionDecision


class DoormanError(Exception):
    status_code: int = 500
    public_message: str = "Internal server error"
    # Terminal signup state, set by the orchestrator when it raises
    state: str | None = None

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)


class SignupValidationError(DoormanError):
    """Client input is malformed. Never retried."""

    status_code = 400

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field
        self.public_message = message


class MissingKeyInput(SignupValidationError):
    """A key strategy could not derive its bucket key from the request."""


class PayloadTooLarge(DoormanError):
    status_code = 413
    public_message = "Request body too large"


class RateLimitExceeded(DoormanError):
    status_code = 429
    public_message = "rate_limit_exceeded"

    def __init__(self, decision: AdmissionDecision) -> None:
        super().__init__(decision.message)
        self.decision = decision


class StoreUnavailable(DoormanError):
    """The counter store backing connection is down."""


class ExternalProviderError(DoormanError):
    public_message = "Error processing signup"

    def __init__(self, message: str, code: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.provider_status = status


class AlreadyRegistered(ExternalProviderError):
    status_code = 409
    public_message = "An account with this email already exists"


class AccountNotFound(ExternalProviderError):
    status_code = 404
    public_message = "Account not found"


class EmailDeliveryFailed(DoormanError):
    public_message = "Error sending confirmation email"
