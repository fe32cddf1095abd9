from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis

_REVOKED_KEY = "auth:session:revoked:{session_id}"


class RedisCache:
    """Thin Redis wrapper for the revoked-session denylist.

    Entries only need to outlive the access tokens minted for the session, so
    callers pass the access-token lifetime as the TTL.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def mark_session_revoked(self, session_id: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(
                _REVOKED_KEY.format(session_id=session_id), "1", ex=ttl_seconds
            )

    async def is_session_revoked(self, session_id: str) -> bool:
        return bool(await self.client.exists(_REVOKED_KEY.format(session_id=session_id)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes async methods so callers can await it exactly like
    ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def mark_session_revoked(self, session_id: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(_REVOKED_KEY.format(session_id=session_id), "1", ex=ttl_seconds)

    async def is_session_revoked(self, session_id: str) -> bool:
        return bool(self.client.exists(_REVOKED_KEY.format(session_id=session_id)))

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
