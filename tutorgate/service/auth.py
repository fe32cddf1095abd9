from __future__ import annotations

import base64
import hashlib
import os
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Union

from tutorgate.config import Settings
from tutorgate.logging import get_logger
from tutorgate.service.credentials import (
    CredentialVerifier,
    check_password_strength,
    normalize_email,
)
from tutorgate.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NoTokenError,
    NotFoundError,
    RevokedError,
    SecurityAlertError,
    ValidationError,
)
from tutorgate.service.tokens import (
    IssuedTokens,
    TokenIssuer,
    hash_refresh_token,
    parse_refresh_token,
)
from tutorgate.storage.errors import ConstraintViolation
from tutorgate.storage.models import ROLES, Session, User
from tutorgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

SELF_SERVICE_ROLES = ("student", "teacher")
_RESET_TOKEN_BYTES = 32


def _hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8", "surrogatepass")).hexdigest()


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "student",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def set_login_state(
        self,
        user_id: str,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
    ) -> Optional[User]: ...

    def save_password_reset(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    def consume_password_reset(self, token_hash: str) -> Optional[tuple[str, datetime]]: ...

    def create_session(
        self,
        user_id: str,
        refresh_token_hash: str,
        *,
        session_id: str | None = None,
        ttl_minutes: int = 7 * 24 * 60,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        now: datetime | None = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_session_by_hash(self, refresh_token_hash: str) -> Optional[Session]: ...

    def list_user_sessions(
        self, user_id: str, *, include_inactive: bool = False, now: datetime | None = None
    ) -> List[Session]: ...

    def revoke_session(self, session_id: str) -> bool: ...

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: str | None = None
    ) -> int: ...

    def purge_expired_sessions(self, before: datetime) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: Optional[str] = None


class AuthService:
    """Login, refresh, logout and per-request authentication."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        credentials: Optional[CredentialVerifier] = None,
        reset_notifier: Optional[Callable[[User, str], None]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.credentials = credentials or CredentialVerifier(store, settings, clock=self._clock)
        self.tokens = TokenIssuer(settings, store, clock=self._clock)
        # delivers reset tokens; email sending lives outside this package
        self.reset_notifier = reset_notifier
        self.logger = logger
        # in-process denylist used when strict revocation runs without Redis
        self._state_lock = threading.Lock()
        self._revoked_sessions: dict[str, datetime] = {}

    def _now(self) -> datetime:
        return self._clock()

    # session lifecycle ---------------------------------------------------

    def _start_session(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[Session, IssuedTokens]:
        tokens = self.tokens.issue(user)
        session = self.store.create_session(
            user.id,
            tokens.refresh_token_hash,
            session_id=tokens.session_id,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            now=self._now(),
        )
        self.logger.info("session_created", user_id=user.id, session_id=session.id)
        return session, tokens

    async def signup(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        role: str = "student",
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[User, Session, IssuedTokens]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        if role not in SELF_SERVICE_ROLES:
            raise ValidationError(
                "role not allowed for signup", detail={"allowed": list(SELF_SERVICE_ROLES)}
            )
        check_password_strength(password)
        try:
            user = self.store.create_user(normalize_email(email), name, role=role)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.credentials.set_password(user.id, password)
        self.logger.info("user_signed_up", user_id=user.id, role=role)
        session, tokens = self._start_session(user, user_agent=user_agent, ip_addr=ip_addr)
        return user, session, tokens

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[User, Session, IssuedTokens]:
        user = self.credentials.verify(email, password)
        session, tokens = self._start_session(user, user_agent=user_agent, ip_addr=ip_addr)
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return user, session, tokens

    async def complete_oauth(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        provider: str = "google",
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[User, Session, IssuedTokens]:
        """Turn a verified identity from an OAuth provider into a normal session.

        The code exchange with the provider happens upstream; by the time we
        get here the email address is trusted.
        """
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("provider returned no email")
        user = self.store.get_user_by_email(normalized)
        if user is None:
            try:
                user = self.store.create_user(normalized, name, email_verified=True)
            except ConstraintViolation:
                user = self.store.get_user_by_email(normalized)
                if user is None:
                    raise
            else:
                # unusable password marker: password login can never succeed
                marker = base64.urlsafe_b64encode(os.urandom(24)).decode()
                self.store.save_password(user.id, marker, "oauth")
                self.logger.info("oauth_user_created", user_id=user.id, provider=provider)
        if not user.is_active:
            self.logger.warning("oauth_login_inactive", user_id=user.id, provider=provider)
            raise InvalidCredentialsError("invalid credentials")
        session, tokens = self._start_session(user, user_agent=user_agent, ip_addr=ip_addr)
        return user, session, tokens

    async def refresh(
        self, refresh_token: Optional[str], *, user_agent: Optional[str] = None
    ) -> tuple[Session, IssuedTokens]:
        """Rotate ``refresh_token``; see ``TokenIssuer.rotate`` for failure modes."""
        session_id = parse_refresh_token(refresh_token)
        if session_id is None:
            raise InvalidTokenError("invalid refresh token")
        try:
            return self.tokens.rotate(session_id, refresh_token, user_agent=user_agent)
        except SecurityAlertError as exc:
            if exc.user_id:
                await self._deny_user_sessions(exc.user_id, include_inactive=True)
            raise

    async def logout(self, refresh_token: Optional[str]) -> bool:
        """Revoke the session behind ``refresh_token``. Never fails.

        Returns True only when this call changed a session from active to
        revoked.
        """
        if not refresh_token:
            return False
        session = self.store.find_session_by_hash(hash_refresh_token(refresh_token))
        if session is None:
            self.logger.info("logout_unknown_token")
            return False
        revoked = self.store.revoke_session(session.id)
        await self._deny_session(session.id)
        self.logger.info(
            "logout", user_id=session.user_id, session_id=session.id, changed=revoked
        )
        return revoked

    async def logout_all(self, user_id: str) -> int:
        await self._deny_user_sessions(user_id)
        count = self.store.revoke_user_sessions(user_id)
        self.logger.info("logout_all", user_id=user_id, sessions_revoked=count)
        return count

    def list_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_user_sessions(user_id, now=self._now())

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        """Revoke one of the caller's own sessions.

        Raises:
            NotFoundError: the session does not exist or belongs to someone else.
        """
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("session not found")
        revoked = self.store.revoke_session(session_id)
        await self._deny_session(session_id)
        self.logger.info("session_revoked", user_id=user_id, session_id=session_id, changed=revoked)
        return revoked

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
    ) -> int:
        """Replace the password and sign out every other device.

        Returns the number of sessions revoked.
        """
        user = self.store.get_user(user_id)
        if user is None or not self.credentials.check_password(user, current_password):
            raise InvalidCredentialsError("invalid credentials")
        check_password_strength(new_password)
        self.credentials.set_password(user_id, new_password)
        others = [
            s.id for s in self.store.list_user_sessions(user_id, now=self._now())
            if s.id != current_session_id
        ]
        count = self.store.revoke_user_sessions(user_id, except_session_id=current_session_id)
        for session_id in others:
            await self._deny_session(session_id)
        self.logger.info("password_changed", user_id=user_id, sessions_revoked=count)
        return count

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a single-use reset token for ``email`` and hand it to the mailer.

        Only the token's SHA-256 is stored. Returns the raw token, or None when
        no active account owns the address; callers must answer both cases
        the same way.
        """
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None or not user.is_active:
            self.logger.info("password_reset_unknown_account")
            return None
        token = secrets.token_urlsafe(_RESET_TOKEN_BYTES)
        expires_at = self._now() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.save_password_reset(user.id, _hash_reset_token(token), expires_at)
        self.logger.info("password_reset_requested", user_id=user.id)
        if self.reset_notifier is not None:
            self.reset_notifier(user, token)
        return token

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[User, Session, IssuedTokens]:
        """Consume a reset token, set the new password and sign in afresh.

        Every existing session is revoked first, so refresh tokens held by
        whoever knew the old password stop working.

        Raises:
            ValidationError: weak password, or an unknown, used or expired token.
        """
        check_password_strength(new_password)
        entry = self.store.consume_password_reset(_hash_reset_token(token or ""))
        if entry is None:
            raise ValidationError("invalid or expired reset token")
        user_id, expires_at = entry
        if self._now() >= expires_at:
            self.logger.info("password_reset_expired", user_id=user_id)
            raise ValidationError("invalid or expired reset token")
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise ValidationError("invalid or expired reset token")

        self.credentials.set_password(user.id, new_password)
        if user.failed_login_attempts or user.locked_until:
            user = (
                self.store.set_login_state(user.id, failed_login_attempts=0, locked_until=None)
                or user
            )
        await self._deny_user_sessions(user.id)
        revoked = self.store.revoke_user_sessions(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        session, tokens = self._start_session(user, user_agent=user_agent, ip_addr=ip_addr)
        return user, session, tokens

    async def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        """Change a role and revoke sessions so old access tokens stop carrying it."""
        if role not in ROLES:
            raise ValidationError("unknown role", detail={"allowed": list(ROLES)})
        user = self.store.update_user_role(user_id, role)
        if user:
            await self.logout_all(user_id)
            self.logger.info("user_role_updated", user_id=user_id, new_role=role)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def purge_expired_sessions(self) -> int:
        """Delete sessions that expired or were revoked more than one refresh TTL ago."""
        before = self._now() - timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        purged = self.store.purge_expired_sessions(before)
        with self._state_lock:
            now = self._now()
            for session_id, until in list(self._revoked_sessions.items()):
                if until <= now:
                    self._revoked_sessions.pop(session_id, None)
        if purged:
            self.logger.info("sessions_purged", count=purged)
        return purged

    # per-request authentication -----------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        cookie_token: Optional[str] = None,
        required_role: Optional[str] = None,
    ) -> AuthContext:
        """Resolve the caller from a bearer header or ``access_token`` cookie.

        Stateless by default: the session is not looked up, so a revoked
        session's access token stays usable until it expires unless strict
        revocation is switched on.

        Raises:
            NoTokenError: nothing to authenticate with.
            InvalidTokenError: malformed or forged token.
            TokenExpiredError: token past its expiry.
            RevokedError: strict revocation is on and the session is revoked.
            ForbiddenError: authenticated but lacking ``required_role``.
        """
        token = self._extract_bearer(authorization) or cookie_token
        if not token:
            raise NoTokenError("authentication required")
        claims = self.tokens.verify_access(token)
        if (
            self.settings.strict_session_revocation
            and claims.session_id
            and await self._is_session_denied(claims.session_id)
        ):
            raise RevokedError("session revoked")
        if required_role and not self._role_allows(claims.role, required_role):
            raise ForbiddenError("insufficient role", detail={"required": required_role})
        return AuthContext(
            user_id=claims.user_id, role=claims.role, session_id=claims.session_id
        )

    def _role_allows(self, role: str, required: str) -> bool:
        return role == required or role == "admin"

    # strict revocation denylist -----------------------------------------

    def _deny_ttl_seconds(self) -> int:
        return int(self.settings.access_token_ttl_minutes * 60)

    async def _deny_session(self, session_id: str) -> None:
        if not self.settings.strict_session_revocation:
            return
        ttl = self._deny_ttl_seconds()
        if self.cache:
            try:
                await self.cache.mark_session_revoked(session_id, ttl)
                return
            except Exception as exc:
                self.logger.warning(
                    "session_denylist_write_failed", session_id=session_id, error=str(exc)
                )
        with self._state_lock:
            self._revoked_sessions[session_id] = self._now() + timedelta(seconds=ttl)

    async def _deny_user_sessions(self, user_id: str, *, include_inactive: bool = False) -> None:
        if not self.settings.strict_session_revocation:
            return
        for session in self.store.list_user_sessions(
            user_id, include_inactive=include_inactive, now=self._now()
        ):
            await self._deny_session(session.id)

    async def _is_session_denied(self, session_id: str) -> bool:
        with self._state_lock:
            until = self._revoked_sessions.get(session_id)
            if until is not None and until > self._now():
                return True
        if self.cache:
            try:
                return await self.cache.is_session_revoked(session_id)
            except Exception as exc:
                # fail open
                self.logger.warning(
                    "session_denylist_check_failed", session_id=session_id, error=str(exc)
                )
        return False
