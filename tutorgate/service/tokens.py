from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from tutorgate.config import Settings
from tutorgate.logging import get_logger
from tutorgate.service.errors import (
    InvalidTokenError,
    RevokedError,
    SecurityAlertError,
    TokenExpiredError,
)
from tutorgate.storage.models import Session, User

logger = get_logger(__name__)

_REFRESH_SECRET_BYTES = 48


class TokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_session_by_rotated_hash(self, refresh_token_hash: str) -> Optional[Session]: ...

    def rotate_session_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        last_used_at: datetime,
        *,
        user_agent: str | None = None,
    ) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> bool: ...

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: str | None = None
    ) -> int: ...


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    refresh_token_hash: str
    session_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    role: str
    session_id: Optional[str]
    issued_at: datetime
    expires_at: datetime
    jti: Optional[str] = None


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8", "surrogatepass")).hexdigest()


def parse_refresh_token(token: Optional[str]) -> Optional[str]:
    """Return the session id embedded in a refresh token, or None if malformed."""
    if not token or "." not in token:
        return None
    session_id, _, secret = token.partition(".")
    if not secret:
        return None
    try:
        return str(uuid.UUID(session_id))
    except ValueError:
        return None


class TokenIssuer:
    """Mints, verifies and rotates the access/refresh token pair.

    Access tokens are HS256 JWTs verified without any I/O. Refresh tokens are
    ``<session_id>.<random>`` strings whose SHA-256 digest is the only thing
    the store ever sees.
    """

    def __init__(
        self,
        settings: Settings,
        store: TokenStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        """Check structure, algorithm, signature, issuer and audience.

        Expiry is left to the caller so it can be reported separately.
        """
        # header values arrive latin-1 decoded; a real token is always ASCII
        if not token.isascii():
            raise InvalidTokenError("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("malformed token")
        # pin the algorithm; never trust the header to choose one
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("unsupported token algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode("ascii"), sig_b64.encode("ascii")):
            raise InvalidTokenError("invalid token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("invalid token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("invalid token audience")
        return payload

    def mint_access_token(
        self, user_id: str, role: str, session_id: str, *, now: Optional[datetime] = None
    ) -> tuple[str, datetime]:
        now = now or self._now()
        issued_at = int(now.timestamp())
        expires_at = int((now + self.access_ttl).timestamp())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "sid": session_id,
            "role": role,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": expires_at,
        }
        return self._encode_jwt(payload), datetime.fromtimestamp(expires_at, tz=timezone.utc)

    def _new_refresh_token(self, session_id: str) -> tuple[str, str]:
        token = f"{session_id}.{secrets.token_urlsafe(_REFRESH_SECRET_BYTES)}"
        return token, hash_refresh_token(token)

    def issue(self, user: User, *, session_id: Optional[str] = None) -> IssuedTokens:
        """Mint a fresh pair for ``user``. Nothing is persisted here.

        A new session id is allocated unless one is supplied; the caller
        stores ``refresh_token_hash`` under that id.
        """
        now = self._now()
        session_id = session_id or str(uuid.uuid4())
        access_token, access_expires_at = self.mint_access_token(
            user.id, user.role, session_id, now=now
        )
        refresh_token, refresh_hash = self._new_refresh_token(session_id)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_token_hash=refresh_hash,
            session_id=session_id,
            access_expires_at=access_expires_at,
            refresh_expires_at=now + self.refresh_ttl,
        )

    def verify_access(self, token: str) -> AccessClaims:
        """Validate an access token. Pure: no store or cache lookups.

        Raises:
            InvalidTokenError: malformed, forged, or not an access token.
            TokenExpiredError: genuine but ``now >= exp``.
        """
        payload = self._decode_jwt(token)
        if payload.get("token_type") != "access" or not payload.get("sub"):
            raise InvalidTokenError("not an access token")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", exp_ts))
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("token has no valid expiry")
        if self._now().timestamp() >= exp_ts:
            raise TokenExpiredError("access token expired")
        return AccessClaims(
            user_id=str(payload["sub"]),
            role=str(payload.get("role") or "student"),
            session_id=payload.get("sid"),
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=payload.get("jti"),
        )

    def _raise_reuse(self, session: Session, reason: str) -> None:
        revoked = self.store.revoke_user_sessions(session.user_id)
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=session.user_id,
            session_id=session.id,
            reason=reason,
            sessions_revoked=revoked,
        )
        raise SecurityAlertError(
            "refresh token reuse detected; all sessions revoked",
            user_id=session.user_id,
        )

    def rotate(
        self,
        session_id: str,
        presented_refresh_token: str,
        *,
        user_agent: Optional[str] = None,
    ) -> tuple[Session, IssuedTokens]:
        """Exchange a refresh token for a new pair, invalidating the old one.

        Raises:
            InvalidTokenError: unknown session or unrecognised token.
            TokenExpiredError: the session is past ``expires_at``.
            RevokedError: the session was logged out.
            SecurityAlertError: an already-rotated token was replayed, or a
                concurrent rotation consumed it first. Every session of the
                user is revoked before this is raised.
        """
        presented_hash = hash_refresh_token(presented_refresh_token)
        session = self.store.get_session(session_id)
        if session is None:
            raise InvalidTokenError("invalid refresh token")

        if not hmac.compare_digest(session.refresh_token_hash, presented_hash):
            previous = self.store.find_session_by_rotated_hash(presented_hash)
            if previous is not None and previous.id == session.id:
                self._raise_reuse(session, "rotated_token_replayed")
            raise InvalidTokenError("invalid refresh token")

        now = self._now()
        if session.is_expired(now):
            raise TokenExpiredError("refresh token expired")
        if session.revoked:
            raise RevokedError("session revoked")

        user = self.store.get_user(session.user_id)
        if user is None:
            raise InvalidTokenError("invalid refresh token")
        if not user.is_active:
            self.store.revoke_session(session.id)
            raise RevokedError("session revoked")

        access_token, access_expires_at = self.mint_access_token(
            user.id, user.role, session.id, now=now
        )
        refresh_token, refresh_hash = self._new_refresh_token(session.id)
        updated = self.store.rotate_session_hash(
            session.id, presented_hash, refresh_hash, now, user_agent=user_agent
        )
        if updated is None:
            current = self.store.get_session(session.id)
            if current is not None and current.revoked and current.refresh_token_hash == presented_hash:
                # logout landed between our read and the swap
                raise RevokedError("session revoked")
            self._raise_reuse(session, "concurrent_rotation")

        self.logger.info("refresh_token_rotated", user_id=user.id, session_id=session.id)
        return updated, IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_token_hash=refresh_hash,
            session_id=session.id,
            access_expires_at=access_expires_at,
            refresh_expires_at=updated.expires_at,
        )


__all__ = [
    "AccessClaims",
    "IssuedTokens",
    "TokenIssuer",
    "hash_refresh_token",
    "parse_refresh_token",
]
