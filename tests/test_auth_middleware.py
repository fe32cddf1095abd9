"""HTTP-level tests for access token checks on protected routes."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from tutorgate import app as app_module
from tutorgate.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def user():
    runtime = get_runtime()
    user = runtime.store.create_user("mw@example.com", role="student")
    return user


def _mint(user, *, minutes_ago: int = 0) -> str:
    tokens = get_runtime().auth.tokens
    issued = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
    token, _ = tokens.mint_access_token(user.id, user.role, str(uuid.uuid4()), now=issued)
    return token


class TestAuthFailures:
    def test_missing_token_is_no_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "no_token"
        assert response.headers["www-authenticate"] == 'Bearer error="no_token"'

    def test_non_bearer_scheme_is_no_token(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert response.json()["error"]["code"] == "no_token"

    def test_garbage_token_is_invalid(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer abc.def.ghi"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_non_ascii_signature_is_invalid(self, client, user):
        header, payload, _ = _mint(user).split(".")
        # sent as raw bytes; the server decodes header values as latin-1
        raw = f"Bearer {header}.{payload}.sig\u00e9".encode("latin-1")
        response = client.get("/v1/auth/me", headers={"Authorization": raw})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_expired_token_is_token_expired(self, client, user):
        token = _mint(user, minutes_ago=16)
        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_expired"

    def test_codes_are_distinct(self, client, user):
        codes = {
            client.get("/v1/auth/me").json()["error"]["code"],
            client.get("/v1/auth/me", headers={"Authorization": "Bearer x"}).json()["error"]["code"],
            client.get(
                "/v1/auth/me", headers={"Authorization": f"Bearer {_mint(user, minutes_ago=30)}"}
            ).json()["error"]["code"],
        }
        assert codes == {"no_token", "invalid_token", "token_expired"}


class TestAuthSuccess:
    def test_valid_bearer(self, client, user):
        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {_mint(user)}"})
        assert response.status_code == 200
        assert response.json()["data"]["id"] == user.id

    def test_access_cookie(self, client, user):
        client.cookies.set("access_token", _mint(user))
        response = client.get("/v1/auth/me")
        assert response.status_code == 200

    def test_header_wins_over_cookie(self, client, user):
        client.cookies.set("access_token", "junk")
        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {_mint(user)}"})
        assert response.status_code == 200

    def test_security_headers_and_request_id(self, client, user):
        response = client.get(
            "/v1/auth/me",
            headers={"Authorization": f"Bearer {_mint(user)}", "X-Request-ID": "req-123"},
        )
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["Cache-Control"].startswith("no-store")
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestHealth:
    def test_healthz_reports_memory_store(self, client):
        response = client.get("/healthz")
        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
