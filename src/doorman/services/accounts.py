"""
Account backend capability.

The relay never stores accounts itself; it asks the hosted auth service to
create the user and hand back a confirmation link, which is then mailed by
our own relay instead of the provider's.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping

import httpx
import structlog

from doorman.core.errors import AccountNotFound, AlreadyRegistered, ExternalProviderError

logger = structlog.get_logger()

DUPLICATE_CODES = frozenset({"email_exists", "user_already_exists"})
NOT_FOUND_CODES = frozenset({"user_not_found"})


@dataclass(frozen=True)
class GeneratedLink:
    action_link: str
    user_id: str | None = None


class AccountBackend(ABC):
    @abstractmethod
    async def generate_signup_link(
        self,
        email: str,
        password: str,
        metadata: Mapping[str, Any],
        redirect_url: str,
    ) -> GeneratedLink:
        """
        Create the account and return its confirmation link.

        Raises:
            AlreadyRegistered: the email already has an account.
            ExternalProviderError: any other provider failure.
        """

    @abstractmethod
    async def generate_login_link(self, email: str, redirect_url: str) -> GeneratedLink:
        """
        Magic link for an existing account, used to resend confirmation.

        Raises:
            AccountNotFound: no account for this email.
            ExternalProviderError: any other provider failure.
        """

    @abstractmethod
    async def delete_user(self, user_id: str) -> None:
        """Remove an account. Only used by the compensation policy."""

    async def aclose(self) -> None:
        pass


class SupabaseAdminClient(AccountBackend):
    """GoTrue admin REST API, authenticated with the service role key."""

    def __init__(self, base_url: str, service_key: str, client: httpx.AsyncClient) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }

    @classmethod
    def create(cls, base_url: str, service_key: str, timeout: float = 10.0) -> SupabaseAdminClient:
        return cls(base_url, service_key, httpx.AsyncClient(timeout=httpx.Timeout(timeout)))

    async def _request(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        account_lookup: bool = False,
    ) -> dict[str, Any]:
        url = f"{self._base_url}/auth/v1{path}"
        try:
            response = await self._client.request(method, url, json=json, headers=self._headers)
        except httpx.HTTPError as exc:
            raise ExternalProviderError(f"auth provider unreachable: {exc}", code="network_error") from exc

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}

        if response.is_error:
            raise _provider_error(response.status_code, body, account_lookup=account_lookup)
        return body if isinstance(body, dict) else {}

    async def generate_signup_link(
        self,
        email: str,
        password: str,
        metadata: Mapping[str, Any],
        redirect_url: str,
    ) -> GeneratedLink:
        body = await self._request(
            "POST",
            "/admin/generate_link",
            json={
                "type": "signup",
                "email": email,
                "password": password,
                "data": dict(metadata),
                "redirect_to": redirect_url,
            },
        )
        return _parse_link(body)

    async def generate_login_link(self, email: str, redirect_url: str) -> GeneratedLink:
        body = await self._request(
            "POST",
            "/admin/generate_link",
            json={"type": "magiclink", "email": email, "redirect_to": redirect_url},
            account_lookup=True,
        )
        return _parse_link(body)

    async def delete_user(self, user_id: str) -> None:
        await self._request("DELETE", f"/admin/users/{user_id}", account_lookup=True)

    async def aclose(self) -> None:
        await self._client.aclose()


def _provider_error(status: int, body: Any, account_lookup: bool = False) -> ExternalProviderError:
    """
    Map a failed admin call onto the error taxonomy.

    A 404 only means "no such account" for calls that look one up; elsewhere
    it is a misrouted request and stays an opaque provider failure.
    """
    if not isinstance(body, dict):
        body = {}
    code = body.get("error_code") or body.get("code")
    message = str(body.get("msg") or body.get("message") or body.get("error_description") or "")
    code = str(code) if code is not None else None

    lowered = message.lower()
    if code in DUPLICATE_CODES or "already been registered" in lowered or "already registered" in lowered:
        return AlreadyRegistered(message or "already registered", code=code, status=status)
    if account_lookup and (code in NOT_FOUND_CODES or status == 404):
        return AccountNotFound(message or "user not found", code=code, status=status)
    return ExternalProviderError(message or f"auth provider returned {status}", code=code, status=status)


def _parse_link(body: Mapping[str, Any]) -> GeneratedLink:
    # GoTrue returns the link at top level; some proxies nest it
    properties = body.get("properties") or {}
    link = body.get("action_link") or properties.get("action_link")
    if not link:
        raise ExternalProviderError("auth provider returned no action link", code="missing_link")

    user = body.get("user") or {}
    user_id = user.get("id") or body.get("id")
    return GeneratedLink(action_link=str(link), user_id=str(user_id) if user_id else None)
