"""
Key strategies: how a request is mapped to a rate-limit bucket.

Each strategy is a pure function ``(AdmissionRequest) -> str`` returning the
``<dimension>:<value>`` part of a key. The limiter prefixes its own scope,
so the full key reads ``<scope>:<dimension>:<value>``, e.g.
``signup:email:user@example.com``. Different dimensions of one request
always produce different keys and therefore independent quotas.
"""

from __future__ import annotations

import hashlib
import ipaddress
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from doorman.core.errors import MissingKeyInput

KeyStrategy = Callable[["AdmissionRequest"], str]

FINGERPRINT_HEADERS = ("user-agent", "accept-language", "accept-encoding")
FINGERPRINT_LENGTH = 16
API_KEY_HEADER = "x-api-key"


@dataclass(frozen=True)
class AdmissionRequest:
    """
    The slice of an HTTP request the admission layer looks at.

    ``client_address`` is already canonicalized and proxy-unwrapped;
    ``headers`` keys are lower-case.
    """

    method: str
    path: str
    client_address: str
    headers: Mapping[str, str] = field(default_factory=dict)
    email: Any = None

    @classmethod
    def from_http(
        cls,
        request: Any,
        trusted_proxy_hops: int = 0,
        email: Any = None,
    ) -> AdmissionRequest:
        """Build from a Starlette request."""
        peer = request.client.host if request.client else None
        headers = {k.lower(): v for k, v in request.headers.items()}
        return cls(
            method=request.method,
            path=request.url.path,
            client_address=resolve_client_address(
                peer, headers.get("x-forwarded-for"), trusted_proxy_hops
            ),
            headers=headers,
            email=email,
        )


def canonical_address(raw: str) -> str:
    """
    Normalize an IP address so textual variants share one bucket.

    IPv6 is compressed but never truncated to a prefix; IPv4-mapped IPv6
    collapses to the plain IPv4 form. Values that are not IP addresses are
    returned trimmed and lower-cased.
    """
    value = raw.strip()
    if value.startswith("[") and "]" in value:
        value = value[1 : value.index("]")]
    value = value.split("%", 1)[0]
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return raw.strip().lower()
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        return str(address.ipv4_mapped)
    return address.compressed


def resolve_client_address(
    peer: str | None,
    forwarded_for: str | None,
    trusted_proxy_hops: int = 0,
) -> str:
    """
    Pick the caller address, trusting only the configured number of proxies.

    The X-Forwarded-For chain plus the socket peer is read right to left;
    each trusted hop is one proxy we own, so the address just before the
    last trusted hop is the client. With zero trusted hops the header is
    ignored entirely.
    """
    chain: list[str] = []
    if trusted_proxy_hops > 0 and forwarded_for:
        chain = [part.strip() for part in forwarded_for.split(",") if part.strip()]
    chain.append(peer or "unknown")

    index = max(len(chain) - 1 - trusted_proxy_hops, 0)
    return canonical_address(chain[index])


def _digest(value: str, length: int = FINGERPRINT_LENGTH) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def by_client_address(request: AdmissionRequest) -> str:
    return f"ip:{request.client_address}"


def by_email(request: AdmissionRequest) -> str:
    email = request.email
    if not isinstance(email, str) or not email.strip():
        raise MissingKeyInput("Email and password are required", field="email")
    return f"email:{email.strip().lower()}"


def by_fingerprint(request: AdmissionRequest) -> str:
    """
    Device fingerprint over a short header tuple plus the caller address.

    Browsers with identical headers behind one NAT share a fingerprint.
    That false positive is accepted; the tuple is deliberately small.
    """
    parts = [request.headers.get(name, "") for name in FINGERPRINT_HEADERS]
    parts.append(request.client_address)
    return f"device:{_digest('|'.join(parts))}"


def by_credential(request: AdmissionRequest) -> str:
    # Raw API keys never end up in the store
    api_key = request.headers.get(API_KEY_HEADER, "").strip()
    if api_key:
        return f"api:{_digest(api_key)}"
    return by_client_address(request)
