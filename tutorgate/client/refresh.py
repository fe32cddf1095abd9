from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, Tuple

from tutorgate.client.errors import ApiError, SessionExpired
from tutorgate.client.tokens import TokenStore
from tutorgate.logging import get_logger

logger = get_logger(__name__)

RefreshCall = Callable[[str], Awaitable[Tuple[str, Optional[str]]]]

IDLE = "idle"
REFRESHING = "refreshing"


class RefreshCoordinator:
    """Single-flight refresh of an expired access token.

    The first caller to report an expired token performs the refresh; every
    caller arriving while it is in flight waits in a FIFO queue and receives
    the same outcome. A failed refresh is terminal for the whole batch: local
    tokens are cleared, every waiter gets ``SessionExpired`` and
    ``on_session_expired`` fires once.
    """

    def __init__(
        self,
        tokens: TokenStore,
        refresh: RefreshCall,
        *,
        on_session_expired: Optional[Callable[[SessionExpired], None]] = None,
    ) -> None:
        self.tokens = tokens
        self._refresh = refresh
        self._on_session_expired = on_session_expired
        self._state = IDLE
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def state(self) -> str:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._waiters)

    async def obtain_fresh_token(self, stale_token: Optional[str] = None) -> str:
        """Return an access token newer than ``stale_token``.

        Raises:
            SessionExpired: the refresh failed or there is no refresh token.
        """
        if self._state == REFRESHING:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            return await waiter

        current = self.tokens.access_token
        if stale_token is not None and current and current != stale_token:
            # another caller already refreshed after this request went out
            return current

        refresh_token = self.tokens.refresh_token
        if not refresh_token:
            # nothing to refresh with, so no network call and no signal
            raise SessionExpired("no_token", "no refresh token available")

        self._state = REFRESHING
        try:
            access_token, refresh_token = await self._refresh(refresh_token)
        except asyncio.CancelledError:
            self._state = IDLE
            self._drain(cancel=True)
            raise
        except Exception as exc:
            expired = self._expired_from(exc)
            self._state = IDLE
            self.tokens.clear()
            self._drain(error=expired)
            logger.info("client_session_expired", code=expired.code)
            if self._on_session_expired is not None:
                self._on_session_expired(expired)
            if expired is exc:
                raise
            raise expired from exc

        self.tokens.set(access_token, refresh_token)
        self._state = IDLE
        self._drain(token=access_token)
        return access_token

    def _drain(
        self,
        *,
        token: Optional[str] = None,
        error: Optional[BaseException] = None,
        cancel: bool = False,
    ) -> None:
        waiters, self._waiters = self._waiters, deque()
        while waiters:
            waiter = waiters.popleft()
            if waiter.done():
                continue
            if cancel:
                waiter.cancel()
            elif error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token)

    @staticmethod
    def _expired_from(exc: Exception) -> SessionExpired:
        if isinstance(exc, SessionExpired):
            return exc
        if isinstance(exc, ApiError):
            return SessionExpired(exc.code, exc.message)
        return SessionExpired("refresh_failed", str(exc) or type(exc).__name__)


__all__ = ["RefreshCoordinator", "IDLE", "REFRESHING"]
