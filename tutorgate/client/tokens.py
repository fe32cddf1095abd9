from __future__ import annotations

import threading
from typing import Optional


class TokenStore:
    """In-memory holder for the client's current token pair."""

    def __init__(
        self, access_token: Optional[str] = None, refresh_token: Optional[str] = None
    ) -> None:
        self._lock = threading.Lock()
        self._access_token = access_token
        self._refresh_token = refresh_token

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._refresh_token

    def set(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        with self._lock:
            self._access_token = access_token
            # servers that do not rotate may omit the refresh token
            if refresh_token:
                self._refresh_token = refresh_token

    def clear(self) -> None:
        with self._lock:
            self._access_token = None
            self._refresh_token = None

    def __bool__(self) -> bool:
        return bool(self._access_token or self._refresh_token)
