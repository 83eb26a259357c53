"""Validation and normalization of signup payloads."""

from __future__ import annotations

import re
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from doorman.core.errors import SignupValidationError

EMAIL_PATTERN = re.compile(r"^[^\s@<>]+@[^\s@<>]+\.[^\s@<>]+$")
NAME_MAX_LENGTH = 50
PASSWORD_MIN_LENGTH = 8

_MESSAGES = {
    "email": "A valid email address is required",
    "password": f"Password must be at least {PASSWORD_MIN_LENGTH} characters",
    "firstName": f"First name must be at most {NAME_MAX_LENGTH} characters",
    "lastName": f"Last name must be at most {NAME_MAX_LENGTH} characters",
}
_FIELD_NAMES = {"first_name": "firstName", "last_name": "lastName"}
REQUIRED_MESSAGE = "Email and password are required"


def normalize_email(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def check_email(value: str) -> str:
    if not EMAIL_PATTERN.match(value):
        raise ValueError("invalid email")
    return value


def clean_name(value: Any) -> Any:
    """Trim and drop angle brackets so names are safe to drop into HTML."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.replace("<", "").replace(">", "").strip()
    return value


class SignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    email: str = Field(max_length=254)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)
    first_name: str = Field(default="", alias="firstName", max_length=NAME_MAX_LENGTH)
    last_name: str = Field(default="", alias="lastName", max_length=NAME_MAX_LENGTH)

    lower_email = field_validator("email", mode="before")(normalize_email)
    validate_email = field_validator("email")(check_email)
    sanitize_names = field_validator("first_name", "last_name", mode="before")(clean_name)


class ResendRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    email: str = Field(max_length=254)

    lower_email = field_validator("email", mode="before")(normalize_email)
    validate_email = field_validator("email")(check_email)


def _to_signup_error(exc: ValidationError) -> SignupValidationError:
    error = exc.errors(include_url=False)[0]
    loc = str(error["loc"][0]) if error["loc"] else ""
    field = _FIELD_NAMES.get(loc, loc)
    return SignupValidationError(_MESSAGES.get(field, "Invalid request"), field=field)


def parse_signup(payload: Mapping[str, Any]) -> SignupRequest:
    """
    Validate a decoded JSON body into a normalized SignupRequest.

    Raises:
        SignupValidationError: with the offending field and a message that
            is safe to return to the client.
    """
    for required in ("email", "password"):
        if not payload.get(required):
            raise SignupValidationError(REQUIRED_MESSAGE, field=required)
    try:
        return SignupRequest.model_validate(dict(payload))
    except ValidationError as exc:
        raise _to_signup_error(exc) from None


def parse_resend(payload: Mapping[str, Any]) -> ResendRequest:
    if not payload.get("email"):
        raise SignupValidationError("Email is required", field="email")
    try:
        return ResendRequest.model_validate(dict(payload))
    except ValidationError as exc:
        raise _to_signup_error(exc) from None
