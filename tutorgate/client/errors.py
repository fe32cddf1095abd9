from __future__ import annotations

from typing import Any, Optional


class ApiError(Exception):
    """An error envelope returned by the auth API."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        *,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class SessionExpired(Exception):
    """The refresh token could not be exchanged; the user must sign in again.

    ``code`` carries the server's reason (``revoked``, ``security_alert``,
    ``invalid_token``...) or ``no_token`` when nothing was stored locally.
    """

    def __init__(self, code: str, message: str = "session expired") -> None:
        super().__init__(message)
        self.code = code
        self.message = message
