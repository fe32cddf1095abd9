from __future__ import annotations

import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tutorgate.config import Settings
from tutorgate.logging import get_logger
from tutorgate.service.errors import InvalidCredentialsError, ValidationError
from tutorgate.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_INVALID_CREDENTIALS = "invalid credentials"
# nil UUID; never assigned to an account
_NO_SUCH_USER = "00000000-0000-0000-0000-000000000000"


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def set_login_state(
        self,
        user_id: str,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
    ) -> Optional[User]: ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def check_password_strength(password: str) -> str:
    """Require 8-128 characters drawn from at least three character classes.

    Raises:
        ValidationError: listing what the password is missing.
    """
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"must be at most {MAX_PASSWORD_LENGTH} characters")
    classes = sum(
        (
            any(c.islower() for c in password),
            any(c.isupper() for c in password),
            any(c.isdigit() for c in password),
            any(c in string.punctuation or c.isspace() for c in password),
        )
    )
    if classes < 3:
        problems.append(
            "must mix at least three of lower-case, upper-case, digits and symbols"
        )
    if problems:
        raise ValidationError("password too weak", detail={"password": problems})
    return password


class CredentialVerifier:
    """Checks an email/password pair against the stored argon2id hash.

    Every rejection raises the same ``InvalidCredentialsError`` and costs one
    argon2 verification, whether the email is unknown, the account is locked
    or inactive, or the password is wrong.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        password_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, password_hash, algo)

    def _matches(self, stored_hash: Optional[str], password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash or self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def check_password(self, user: User, password: str) -> bool:
        """Verify ``password`` for a known user without touching lockout state."""
        record = self.store.get_password_record(user.id)
        if not record or record[1] != PASSWORD_ALGO:
            self._matches(None, password)
            return False
        return self._matches(record[0], password)

    def verify(self, email: str, password: str) -> User:
        """Return the user owning ``email`` if ``password`` is correct.

        Every rejection costs one argon2 verification and one login-state
        write, so an unknown address cannot be told apart by timing.

        Raises:
            InvalidCredentialsError: for every failure mode, with one message.
        """
        now = self._clock()
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None:
            self._matches(None, password)
            # updates no row; matches the write a real failure makes
            self.store.set_login_state(
                _NO_SUCH_USER, failed_login_attempts=0, locked_until=None
            )
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)

        if user.is_locked(now):
            self._matches(None, password)
            self._keep_login_state(user)
            self.logger.warning(
                "login_failed", reason="locked", user_id=user.id, locked_until=user.locked_until.isoformat()
            )
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)

        valid = self.check_password(user, password)
        if not user.is_active:
            self._keep_login_state(user)
            self.logger.warning("login_failed", reason="inactive", user_id=user.id)
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        if not valid:
            self._record_failure(user, now)
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)

        if user.failed_login_attempts or user.locked_until:
            user = (
                self.store.set_login_state(
                    user.id, failed_login_attempts=0, locked_until=None
                )
                or user
            )
        return user

    def _keep_login_state(self, user: User) -> None:
        self.store.set_login_state(
            user.id,
            failed_login_attempts=user.failed_login_attempts,
            locked_until=user.locked_until,
        )

    def _record_failure(self, user: User, now: datetime) -> None:
        attempts = user.failed_login_attempts
        if user.locked_until is not None and user.locked_until <= now:
            # previous lock has lapsed, start a fresh window
            attempts = 0
        attempts += 1
        locked_until = None
        if attempts >= self.settings.max_login_attempts:
            locked_until = now + timedelta(minutes=self.settings.login_lockout_minutes)
            self.logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=attempts,
                locked_until=locked_until.isoformat(),
            )
        else:
            self.logger.info(
                "login_failed", reason="bad_password", user_id=user.id, attempts=attempts
            )
        self.store.set_login_state(
            user.id, failed_login_attempts=attempts, locked_until=locked_until
        )


__all__ = [
    "CredentialVerifier",
    "PASSWORD_ALGO",
    "check_password_strength",
    "normalize_email",
]
