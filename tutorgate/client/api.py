from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import httpx

from tutorgate.client.errors import ApiError, SessionExpired
from tutorgate.client.refresh import RefreshCoordinator
from tutorgate.client.tokens import TokenStore
from tutorgate.logging import get_logger

logger = get_logger(__name__)


class ApiClient:
    """Async client for the auth API that refreshes expired access tokens.

    Requests carry ``Authorization: Bearer <access>``. A ``token_expired``
    response is handed to the shared ``RefreshCoordinator`` and the request is
    replayed once with the new token; every other error is raised as
    ``ApiError``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        tokens: Optional[TokenStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        on_session_expired: Optional[Callable[[SessionExpired], None]] = None,
    ) -> None:
        self.tokens = tokens or TokenStore()
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )
        self.coordinator = RefreshCoordinator(
            self.tokens, self._refresh_call, on_session_expired=on_session_expired
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _error_from(response: httpx.Response) -> ApiError:
        try:
            body = response.json()
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return ApiError(
                response.status_code,
                error.get("code") or "server_error",
                error.get("message") or response.reason_phrase,
                details=error.get("details"),
            )
        return ApiError(response.status_code, "server_error", response.reason_phrase)

    def _unwrap(self, response: httpx.Response) -> Any:
        if response.status_code >= 400:
            raise self._error_from(response)
        return response.json().get("data")

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        return await self._client.request(method, path, json=json, headers=headers)

    async def _refresh_call(self, refresh_token: str) -> tuple[str, Optional[str]]:
        response = await self._send(
            "POST", "/v1/auth/refresh", json={"refresh_token": refresh_token}
        )
        data = self._unwrap(response)
        return data["access_token"], data.get("refresh_token")

    async def request(
        self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Send an authenticated request, refreshing once on ``token_expired``."""
        token = self.tokens.access_token
        response = await self._send(method, path, json=json, token=token)
        if response.status_code == 401 and self._error_from(response).code == "token_expired":
            token = await self.coordinator.obtain_fresh_token(token)
            response = await self._send(method, path, json=json, token=token)
        return self._unwrap(response)

    def _store_auth(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.tokens.set(data["access_token"], data["refresh_token"])
        return data

    async def signup(
        self, email: str, password: str, *, name: Optional[str] = None, role: str = "student"
    ) -> Dict[str, Any]:
        response = await self._send(
            "POST",
            "/v1/auth/signup",
            json={"email": email, "password": password, "name": name, "role": role},
        )
        return self._store_auth(self._unwrap(response))

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        response = await self._send(
            "POST", "/v1/auth/login", json={"email": email, "password": password}
        )
        return self._store_auth(self._unwrap(response))

    async def refresh(self) -> str:
        """Force a refresh through the coordinator and return the new access token."""
        return await self.coordinator.obtain_fresh_token()

    async def logout(self) -> None:
        refresh_token = self.tokens.refresh_token
        self.tokens.clear()
        if not refresh_token:
            return
        try:
            response = await self._send(
                "POST", "/v1/auth/logout", json={"refresh_token": refresh_token}
            )
            self._unwrap(response)
        except (httpx.HTTPError, ApiError) as exc:
            # local tokens are already gone; the server copy expires on its own
            logger.warning("client_logout_failed", error=str(exc))

    async def logout_all(self) -> int:
        data = await self.request("POST", "/v1/auth/logout-all")
        self.tokens.clear()
        return int(data.get("revoked", 0))

    async def list_sessions(self) -> List[Dict[str, Any]]:
        data = await self.request("GET", "/v1/auth/sessions")
        return data["items"]

    async def revoke_session(self, session_id: str) -> None:
        await self.request("DELETE", f"/v1/auth/sessions/{session_id}")

    async def me(self) -> Dict[str, Any]:
        return await self.request("GET", "/v1/auth/me")

    async def change_password(self, current_password: str, new_password: str) -> int:
        data = await self.request(
            "POST",
            "/v1/auth/password/change",
            json={"current_password": current_password, "new_password": new_password},
        )
        return int(data.get("sessions_revoked", 0))


__all__ = ["ApiClient"]
