"""
HTTP-level tests: the FastAPI app with in-memory counters and fake
account/mail collaborators. Callers are told apart by X-Forwarded-For with
one trusted proxy hop.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from doorman.context import ServiceContext
from doorman.core.errors import ExternalProviderError
from doorman.core.storage.memory import InMemoryCounterStore
from doorman.main import create_app
from doorman.services.accounts import SupabaseAdminClient

CALLER_A = {"X-Forwarded-For": "203.0.113.10"}
CALLER_B = {"X-Forwarded-For": "198.51.100.20"}


def signup_body(email: str = "jane@example.com") -> dict:
    return {"email": email, "password": "correct-horse", "firstName": "Jane", "lastName": "Doe"}


@pytest.fixture
def make_client(settings_factory, accounts, mailer, sleeper):
    clients = []

    def factory(**overrides) -> TestClient:
        defaults = dict(
            trusted_proxy_hops=1,
            signup_ip_max=5,
            signup_email_max=10,
            signup_device_max=10,
            expose_rate_limit_status=True,
        )
        defaults.update(overrides)
        settings = settings_factory(**defaults)
        context = ServiceContext(settings, InMemoryCounterStore(), accounts, mailer, sleep=sleeper)
        client = TestClient(create_app(context=context))
        client.__enter__()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


# =============================================================================
# Signup
# =============================================================================


class TestSignup:
    def test_success(self, client, mailer) -> None:
        response = client.post("/api/signup", json=signup_body("Jane@Example.com"), headers=CALLER_A)

        assert response.status_code == 200
        assert response.json() == {"message": "Confirmation email sent successfully", "email": "jane@example.com"}
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert "X-RateLimit-Reset" in response.headers
        assert len(mailer.sent) == 1

    def test_validation_error(self, client, accounts) -> None:
        response = client.post("/api/signup", json={"email": "jane@example.com", "password": "short"}, headers=CALLER_A)

        assert response.status_code == 400
        assert response.json() == {"error": "Password must be at least 8 characters"}
        assert accounts.calls == []

    def test_missing_email_is_rejected(self, client) -> None:
        response = client.post("/api/signup", json={"password": "correct-horse"}, headers=CALLER_A)

        assert response.status_code == 400
        assert response.json() == {"error": "Email and password are required"}

    @pytest.mark.parametrize("body", ["{not json", "[1, 2, 3]", '"just a string"'])
    def test_body_must_be_a_json_object(self, client, body) -> None:
        response = client.post(
            "/api/signup", content=body, headers={**CALLER_A, "Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert "error" in response.json()

    def test_body_size_is_capped(self, client, accounts) -> None:
        body = signup_body()
        body["padding"] = "x" * (11 * 1024)

        response = client.post("/api/signup", json=body, headers=CALLER_A)

        assert response.status_code == 413
        assert response.json() == {"error": "Request body too large"}
        assert accounts.calls == []

    def test_duplicate_is_409(self, client) -> None:
        client.post("/api/signup", json=signup_body(), headers=CALLER_A)

        response = client.post("/api/signup", json=signup_body(), headers=CALLER_A)

        assert response.status_code == 409
        assert response.json() == {"error": "An account with this email already exists"}
        assert response.headers["X-RateLimit-Remaining"] == "3"

    def test_provider_failure_is_generic_500(self, client, accounts) -> None:
        accounts.fail_with = ExternalProviderError("relation users does not exist", code="unexpected_failure")

        response = client.post("/api/signup", json=signup_body(), headers=CALLER_A)

        assert response.status_code == 500
        assert response.json() == {"error": "Error processing signup"}

    def test_email_failure_is_500(self, client, mailer) -> None:
        mailer.fail = True

        response = client.post("/api/signup", json=signup_body(), headers=CALLER_A)

        assert response.status_code == 500
        assert response.json() == {"error": "Error sending confirmation email"}


# =============================================================================
# Admission
# =============================================================================


class TestAdmission:
    def test_ip_limit_then_dimension_independence(self, client) -> None:
        statuses = [
            client.post("/api/signup", json=signup_body(), headers=CALLER_A).status_code for _ in range(5)
        ]
        assert statuses == [200, 409, 409, 409, 409]

        blocked = client.post("/api/signup", json=signup_body(), headers=CALLER_A)
        assert blocked.status_code == 429
        payload = blocked.json()
        assert payload["error"] == "rate_limit_exceeded"
        assert payload["retryAfter"] > 0
        assert payload["limit"] == 5
        assert payload["remaining"] == 0
        assert int(blocked.headers["Retry-After"]) > 0

        other_caller = client.post("/api/signup", json=signup_body(), headers=CALLER_B)
        assert other_caller.status_code == 409

    def test_ip_rejection_does_not_consume_email_quota(self, client) -> None:
        for _ in range(6):
            client.post("/api/signup", json=signup_body(), headers=CALLER_A)

        status = client.get("/api/rate-limit/status", params={"email": "jane@example.com"}, headers=CALLER_A)
        counters = {c["guard"]: c for c in status.json()["counters"]}

        assert counters["ip"]["count"] == 6
        assert counters["email"]["count"] == 5
        assert counters["device"]["count"] == 5

    def test_email_limit_spans_callers(self, make_client) -> None:
        client = make_client(signup_email_max=2)
        client.post("/api/signup", json=signup_body(), headers=CALLER_A)
        client.post("/api/signup", json=signup_body("JANE@example.com"), headers=CALLER_B)

        response = client.post(
            "/api/signup", json=signup_body(), headers={"X-Forwarded-For": "192.0.2.99"}
        )

        assert response.status_code == 429
        assert response.json()["limit"] == 2

    def test_slowdown_delays_repeat_callers(self, client, sleeper) -> None:
        for _ in range(4):
            client.post("/api/signup", json=signup_body(), headers=CALLER_A)

        assert sleeper.delays == [1.0, 2.0]

    def test_global_limiter_covers_other_routes(self, make_client) -> None:
        client = make_client(global_max=2)
        for _ in range(2):
            assert client.get("/api/rate-limit/status", headers=CALLER_A).status_code == 200

        response = client.get("/api/rate-limit/status", headers=CALLER_A)

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "2"

    def test_health_bypasses_admission(self, make_client) -> None:
        client = make_client(global_max=1)
        statuses = [client.get("/health", headers=CALLER_A).status_code for _ in range(5)]

        assert statuses == [200] * 5


# =============================================================================
# Other Routes
# =============================================================================


class TestRoutes:
    def test_health(self, client) -> None:
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["store"] == {"backend": "memory", "connected": True}
        assert body["uptime"] >= 0
        assert "timestamp" in body

    def test_status_endpoint_disabled_by_default(self, make_client) -> None:
        client = make_client(expose_rate_limit_status=False)

        response = client.get("/api/rate-limit/status", headers=CALLER_A)

        assert response.status_code == 404
        assert "error" in response.json()

    def test_status_without_email_skips_email_counter(self, client) -> None:
        body = client.get("/api/rate-limit/status", headers=CALLER_A).json()

        assert body["client"] == "203.0.113.10"
        assert [c["guard"] for c in body["counters"]] == ["ip", "device"]

    def test_resend(self, client, mailer) -> None:
        client.post("/api/signup", json=signup_body(), headers=CALLER_A)

        response = client.post("/api/signup/resend", json={"email": "jane@example.com"}, headers=CALLER_A)

        assert response.status_code == 200
        assert response.json()["email"] == "jane@example.com"
        assert len(mailer.sent) == 2


# =============================================================================
# Boundaries
# =============================================================================


class TestBoundaries:
    def test_chunked_body_without_length_is_capped(self, client, accounts) -> None:
        def body():
            yield b'{"email": "jane@example.com", "padding": "'
            for _ in range(50):
                yield b"x" * 1024
            yield b'"}'

        response = client.post(
            "/api/signup", content=body(), headers={**CALLER_A, "Content-Type": "application/json"}
        )

        assert response.status_code == 413
        assert response.json() == {"error": "Request body too large"}
        assert accounts.calls == []

    def test_misrouted_provider_404_is_generic_500(self, settings_factory, mailer, sleeper) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(404, json={"message": "no Route matched with those values"})
        )
        accounts = SupabaseAdminClient(
            "https://project.supabase.test", "service-key", httpx.AsyncClient(transport=transport)
        )
        settings = settings_factory(trusted_proxy_hops=1)
        context = ServiceContext(settings, InMemoryCounterStore(), accounts, mailer, sleep=sleeper)

        with TestClient(create_app(context=context)) as client:
            response = client.post("/api/signup", json=signup_body(), headers=CALLER_A)

        assert response.status_code == 500
        assert response.json() == {"error": "Error processing signup"}
        assert mailer.sent == []

    def test_dimension_independence_under_default_limits(self, settings_factory, accounts, mailer, sleeper) -> None:
        settings = settings_factory(trusted_proxy_hops=1)
        context = ServiceContext(settings, InMemoryCounterStore(), accounts, mailer, sleep=sleeper)

        with TestClient(create_app(context=context)) as client:
            statuses = [
                client.post("/api/signup", json=signup_body(), headers=CALLER_A).status_code for _ in range(6)
            ]
            other_caller = client.post("/api/signup", json=signup_body(), headers=CALLER_B)

        assert statuses == [200, 409, 409, 409, 409, 429]
        assert other_caller.status_code == 409
