"""Shared fakes for the external collaborators."""

from typing import Any, Mapping

import pytest

from doorman.config import Settings
from doorman.core.errors import AccountNotFound, AlreadyRegistered, EmailDeliveryFailed, ExternalProviderError
from doorman.services.accounts import AccountBackend, GeneratedLink
from doorman.services.mail import Mailer


class FakeAccounts(AccountBackend):
    """Remembers registered emails; a second signup reports a duplicate."""

    def __init__(self) -> None:
        self.registered: dict[str, str] = {}
        self.deleted: list[str] = []
        self.calls: list[tuple[str, Any]] = []
        self.fail_with: ExternalProviderError | None = None
        self.closed = False

    async def generate_signup_link(
        self,
        email: str,
        password: str,
        metadata: Mapping[str, Any],
        redirect_url: str,
    ) -> GeneratedLink:
        self.calls.append(("signup", {"email": email, "metadata": dict(metadata), "redirect": redirect_url}))
        if self.fail_with is not None:
            raise self.fail_with
        if email in self.registered:
            raise AlreadyRegistered("A user with this email address has already been registered", code="email_exists")
        user_id = f"user-{len(self.registered) + 1}"
        self.registered[email] = user_id
        return GeneratedLink(action_link=f"https://auth.example.test/verify?token={user_id}", user_id=user_id)

    async def generate_login_link(self, email: str, redirect_url: str) -> GeneratedLink:
        self.calls.append(("login", {"email": email}))
        if email not in self.registered:
            raise AccountNotFound("User not found", code="user_not_found", status=404)
        return GeneratedLink(action_link="https://auth.example.test/magic?token=abc", user_id=self.registered[email])

    async def delete_user(self, user_id: str) -> None:
        self.deleted.append(user_id)

    async def aclose(self) -> None:
        self.closed = True


class FakeMailer(Mailer):
    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.fail = False

    async def send_mail(self, to: str, subject: str, html: str) -> None:
        if self.fail:
            raise EmailDeliveryFailed("relay rejected the message")
        self.sent.append({"to": to, "subject": subject, "html": html})


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def build_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = dict(
        log_json=False,
        log_level="WARNING",
        redis_url=None,
        supabase_url="https://project.supabase.test",
        supabase_service_role_key="service-key",
        smtp_username="shop@example.test",
        smtp_password="app-password",
        shutdown_grace_seconds=0.5,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings_factory():
    return build_settings


@pytest.fixture
def accounts() -> FakeAccounts:
    return FakeAccounts()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
