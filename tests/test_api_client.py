"""Tests for the async API client against a scripted transport."""

import asyncio
import json

import httpx
import pytest

from tutorgate.client.api import ApiClient
from tutorgate.client.errors import ApiError, SessionExpired
from tutorgate.client.tokens import TokenStore


def _ok(data, status_code=200):
    return httpx.Response(status_code, json={"status": "ok", "data": data, "request_id": "r"})


def _error(status_code, code, message="nope"):
    return httpx.Response(
        status_code,
        json={
            "status": "error",
            "error": {"code": code, "message": message, "details": None},
            "request_id": "r",
        },
    )


class FakeServer:
    """Minimal stand-in for the auth API with rotating tokens."""

    def __init__(self):
        self.generation = 1
        self.refresh_calls = 0
        self.refresh_failure = None
        self.seen = []

    @property
    def access(self):
        return f"access-{self.generation}"

    @property
    def refresh(self):
        return f"refresh-{self.generation}"

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        auth = request.headers.get("authorization")
        self.seen.append((request.method, path, auth))
        if path == "/v1/auth/login":
            body = json.loads(request.content)
            if body["password"] != "Good@123":
                return _error(401, "invalid_credentials", "invalid credentials")
            return _ok({"access_token": self.access, "refresh_token": self.refresh})
        if path == "/v1/auth/refresh":
            self.refresh_calls += 1
            # let other in-flight requests pile up behind this one
            await asyncio.sleep(0.05)
            if self.refresh_failure:
                return _error(401, self.refresh_failure)
            body = json.loads(request.content)
            if body["refresh_token"] != self.refresh:
                return _error(401, "security_alert")
            self.generation += 1
            return _ok({"access_token": self.access, "refresh_token": self.refresh})
        if path == "/v1/auth/logout":
            return _ok({"message": "logged out"})
        if not auth:
            return _error(401, "no_token")
        if auth != f"Bearer {self.access}":
            return _error(401, "token_expired")
        if path == "/v1/auth/me":
            return _ok({"id": "u1"})
        if path == "/v1/auth/sessions":
            return _ok({"items": [{"id": "s1"}]})
        if path == "/v1/auth/logout-all":
            return _ok({"revoked": 2})
        return _error(404, "not_found")


@pytest.fixture
def server():
    return FakeServer()


def _client(server, **kwargs):
    return ApiClient("http://api.test", transport=httpx.MockTransport(server), **kwargs)


class TestRequests:
    async def test_login_stores_tokens(self, server):
        async with _client(server) as client:
            await client.login("a@x.com", "Good@123")
            assert client.tokens.access_token == "access-1"
            assert (await client.me())["id"] == "u1"

    async def test_login_failure_raises_api_error(self, server):
        async with _client(server) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.login("a@x.com", "wrong")
        assert excinfo.value.status_code == 401
        assert excinfo.value.code == "invalid_credentials"

    async def test_expired_request_replays_once(self, server):
        async with _client(server) as client:
            await client.login("a@x.com", "Good@123")
            client.tokens.set("access-0", "refresh-1")

            sessions = await client.list_sessions()

        assert sessions == [{"id": "s1"}]
        assert server.refresh_calls == 1
        assert [s for s in server.seen if s[1] == "/v1/auth/sessions"][-1][2] == "Bearer access-2"

    async def test_concurrent_expiries_make_one_refresh(self, server):
        async with _client(server) as client:
            await client.login("a@x.com", "Good@123")
            client.tokens.set("access-0", "refresh-1")

            results = await asyncio.gather(*(client.me() for _ in range(8)))

        assert results == [{"id": "u1"}] * 8
        assert server.refresh_calls == 1
        assert client.tokens.access_token == "access-2"

    async def test_refresh_failure_signals_once(self, server):
        signals = []
        async with _client(server, on_session_expired=signals.append) as client:
            await client.login("a@x.com", "Good@123")
            client.tokens.set("access-0", "refresh-1")
            server.refresh_failure = "revoked"

            results = await asyncio.gather(
                *(client.me() for _ in range(5)), return_exceptions=True
            )

        assert all(isinstance(r, SessionExpired) for r in results)
        assert len(signals) == 1
        assert signals[0].code == "revoked"
        assert server.refresh_calls == 1
        assert client.tokens.access_token is None

    async def test_other_401s_are_not_refreshed(self, server):
        async with _client(server, tokens=TokenStore()) as client:
            with pytest.raises(ApiError) as excinfo:
                await client.me()
        assert excinfo.value.code == "no_token"
        assert server.refresh_calls == 0


class TestLogout:
    async def test_logout_clears_tokens_and_posts_refresh_token(self, server):
        async with _client(server) as client:
            await client.login("a@x.com", "Good@123")
            await client.logout()
            assert not client.tokens
        method, path, _ = server.seen[-1]
        assert (method, path) == ("POST", "/v1/auth/logout")

    async def test_logout_all(self, server):
        async with _client(server) as client:
            await client.login("a@x.com", "Good@123")
            assert await client.logout_all() == 2
            assert not client.tokens
