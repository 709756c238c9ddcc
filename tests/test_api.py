"""HTTP tests for the /v1/auth routes.

Covers the envelope shape, error codes, Retry-After on throttling and the
login, refresh, logout and session listing flow end to end.
"""

import pytest
from argon2 import PasswordHasher, Type
from fastapi.testclient import TestClient

from authsession import app as app_module
from authsession.service.runtime import get_runtime

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    runtime = get_runtime()
    runtime.credentials._pwd_hasher = PasswordHasher(
        time_cost=1, memory_cost=8, parallelism=1, type=Type.ID
    )
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def registered(client):
    response = client.post(
        "/v1/auth/register", json={"email": "api@example.com", "password": PASSWORD}
    )
    assert response.status_code == 201
    return response.json()["data"]


def _login(client, email="api@example.com", password=PASSWORD, user_agent=CHROME_UA, **body):
    return client.post(
        "/v1/auth/login",
        json={"email": email, "password": password, **body},
        headers={"User-Agent": user_agent},
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    def test_register_returns_user(self, client):
        response = client.post(
            "/v1/auth/register", json={"email": "New@Example.com", "password": PASSWORD}
        )
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "new@example.com"
        assert body["request_id"]

    def test_duplicate_email_conflicts(self, client, registered):
        response = client.post(
            "/v1/auth/register", json={"email": "api@example.com", "password": PASSWORD}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "password": PASSWORD},
            {"email": "api@example.com", "password": "short"},
            {"email": "api@example.com"},
        ],
    )
    def test_invalid_payload(self, client, payload):
        response = client.post("/v1/auth/register", json=payload)
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"


class TestLogin:
    def test_login_envelope(self, client, registered):
        response = _login(client)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 7 * 24 * 3600
        assert data["user_id"] == registered["user_id"]
        assert data["access_token"] and data["refresh_token"] and data["session_id"]
        assert response.headers["Cache-Control"] == "no-store"

    def test_bad_credentials(self, client, registered):
        response = _login(client, password="wrong-password")
        assert response.status_code == 401
        error = response.json()["error"]
        assert error == {
            "code": "unauthorized",
            "message": "email or password incorrect",
            "details": None,
        }

    def test_throttled_login_sets_retry_after(self, client, registered):
        for _ in range(5):
            assert _login(client, password="wrong-password").status_code == 401
        response = _login(client)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "900"
        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"] == {"retry_after": 900}


class TestAuthenticatedRoutes:
    def test_me(self, client, registered):
        tokens = _login(client).json()["data"]
        response = client.get("/v1/auth/me", headers=_bearer(tokens["access_token"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == "api@example.com"
        assert data["session_id"] == tokens["session_id"]

    def test_missing_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["code"] == "unauthorized"

    def test_garbage_token_gets_generic_message(self, client):
        response = client.get("/v1/auth/me", headers=_bearer("not.a.jwt"))
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["message"] == "session invalid, log in again"
        assert error["details"] is None

    def test_sessions_marks_current(self, client, registered):
        first = _login(client).json()["data"]
        _login(client, user_agent="curl/8.4.0")
        response = client.get("/v1/auth/sessions", headers=_bearer(first["access_token"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["stats"]["active_sessions"] == 2
        current = [s for s in data["sessions"] if s["current"]]
        assert [s["session_id"] for s in current] == [first["session_id"]]
        assert all("refresh_token" not in s for s in data["sessions"])

    def test_security_alerts_report_new_device(self, client, registered):
        first = _login(client).json()["data"]
        second = _login(client, user_agent="curl/8.4.0")
        assert second.json()["data"]["new_device"] is True
        response = client.get(
            "/v1/auth/security-alerts", headers=_bearer(first["access_token"])
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert [a["type"] for a in data["alerts"]] == ["new_login"]
        assert data["stats"]["total_alerts"] == 1


class TestTokenLifecycle:
    def test_refresh_then_old_access_rejected(self, client, registered):
        first = _login(client).json()["data"]
        response = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": first["refresh_token"]},
            headers=_bearer(first["access_token"]),
        )
        assert response.status_code == 200
        second = response.json()["data"]
        assert second["session_id"] == first["session_id"]

        assert client.get("/v1/auth/me", headers=_bearer(first["access_token"])).status_code == 401
        assert client.get("/v1/auth/me", headers=_bearer(second["access_token"])).status_code == 200

        reused = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert reused.status_code == 401

    def test_logout_is_idempotent(self, client, registered):
        tokens = _login(client).json()["data"]
        for _ in range(2):
            response = client.post(
                "/v1/auth/logout",
                json={"refresh_token": tokens["refresh_token"]},
                headers=_bearer(tokens["access_token"]),
            )
            assert response.status_code == 200
            assert response.json()["status"] == "ok"
        assert client.get("/v1/auth/me", headers=_bearer(tokens["access_token"])).status_code == 401

    def test_logout_without_body(self, client, registered):
        tokens = _login(client).json()["data"]
        response = client.post("/v1/auth/logout", headers=_bearer(tokens["access_token"]))
        assert response.status_code == 200

    def test_logout_requires_token(self, client):
        assert client.post("/v1/auth/logout").status_code == 401

    def test_logout_all(self, client, registered):
        first = _login(client).json()["data"]
        second = _login(client, user_agent="curl/8.4.0").json()["data"]
        response = client.post("/v1/auth/logout-all", headers=_bearer(first["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "logged out of 2 sessions"
        for tokens in (first, second):
            me = client.get("/v1/auth/me", headers=_bearer(tokens["access_token"]))
            assert me.status_code == 401


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "version": app_module.__version__,
            "redis": "disabled",
            "scheduler": "stopped",
        }

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/auth/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
