from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from tutorgate.logging import get_logger
from tutorgate.storage.errors import ConstraintViolation
from tutorgate.storage.models import Session, User, utcnow


class MemoryStore:
    """Dict-backed store for users, credentials and sessions.

    Every mutation runs under a single re-entrant lock and is flushed to
    ``<fs_root>/state/auth_store.json`` so a dev server keeps its logins across
    restarts.
    """

    def __init__(self, fs_root: str = "/tmp/tutorgate") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # superseded refresh token hash -> owning session id
        self.rotated_hashes: Dict[str, str] = {}
        # reset token hash -> (user id, expiry); one outstanding token per user
        self.password_resets: Dict[str, tuple[str, datetime]] = {}
        # RLock so helpers can re-enter while a caller holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def ping(self) -> bool:
        return True

    # users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "student",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, role=role)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=is_active)

    def set_login_state(
        self,
        user_id: str,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            failed_login_attempts=failed_login_attempts,
            locked_until=locked_until,
        )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def save_password_reset(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        """Store a reset token hash, replacing any earlier token for the user."""
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for password reset", {"user_id": user_id}
                )
            self.password_resets = {
                h: entry for h, entry in self.password_resets.items() if entry[0] != user_id
            }
            self.password_resets[token_hash] = (user_id, expires_at)
            self._persist_state()

    def consume_password_reset(self, token_hash: str) -> Optional[tuple[str, datetime]]:
        """Remove and return ``(user_id, expires_at)`` for a reset token hash."""
        with self._data_lock:
            entry = self.password_resets.pop(token_hash, None)
            if entry is not None:
                self._persist_state()
            return entry

    # sessions ------------------------------------------------------------

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
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                refresh_token_hash=refresh_token_hash,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                session_id=session_id,
                now=now,
            )
            if sess.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"session_id": sess.id})
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def find_session_by_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == refresh_token_hash
                ),
                None,
            )

    def find_session_by_rotated_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self.rotated_hashes.get(refresh_token_hash)
            return self.sessions.get(session_id) if session_id else None

    def list_user_sessions(
        self, user_id: str, *, include_inactive: bool = False, now: datetime | None = None
    ) -> List[Session]:
        now = now or utcnow()
        with self._data_lock:
            results = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and (include_inactive or s.is_valid(now))
            ]
            return sorted(results, key=lambda s: s.created_at, reverse=True)

    def rotate_session_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        last_used_at: datetime,
        *,
        user_agent: str | None = None,
    ) -> Optional[Session]:
        """Swap the refresh hash only if it still equals ``expected_hash``.

        Returns ``None`` when another rotation won the race or the session
        was revoked in the meantime.
        """
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked or sess.refresh_token_hash != expected_hash:
                return None
            sess.refresh_token_hash = new_hash
            sess.last_used_at = last_used_at
            if user_agent:
                sess.user_agent = user_agent
            self.rotated_hashes[expected_hash] = session_id
            self._persist_state()
            return sess

    def revoke_session(self, session_id: str) -> bool:
        """Mark a session revoked. Returns False when it was missing or already revoked."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked:
                return False
            sess.revoked = True
            sess.revoked_at = utcnow()
            self._persist_state()
            return True

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: str | None = None
    ) -> int:
        with self._data_lock:
            now = utcnow()
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.revoked or sess.id == except_session_id:
                    continue
                sess.revoked = True
                sess.revoked_at = now
                count += 1
            if count:
                self._persist_state()
            return count

    def purge_expired_sessions(self, before: datetime) -> int:
        """Drop sessions that expired, or were revoked, before ``before``."""
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.expires_at < before
                or (sess.revoked and sess.revoked_at is not None and sess.revoked_at < before)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                dropped = set(stale)
                self.rotated_hashes = {
                    h: sid for h, sid in self.rotated_hashes.items() if sid not in dropped
                }
                self._persist_state()
            return len(stale)

    # persistence ---------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "rotated_hashes": self.rotated_hashes,
            "password_resets": [
                {
                    "token_hash": token_hash,
                    "user_id": user_id,
                    "expires_at": self._serialize_datetime(expires_at),
                }
                for token_hash, (user_id, expires_at) in self.password_resets.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.rotated_hashes = dict(data.get("rotated_hashes", {}))
        self.password_resets = {
            entry["token_hash"]: (
                entry["user_id"],
                self._deserialize_datetime(entry["expires_at"]),
            )
            for entry in data.get("password_resets", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "failed_login_attempts": user.failed_login_attempts,
            "locked_until": self._serialize_datetime(user.locked_until),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            role=data.get("role", "student"),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token_hash": session.refresh_token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "last_used_at": self._serialize_datetime(session.last_used_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
            "revoked": session.revoked,
            "revoked_at": self._serialize_datetime(session.revoked_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_hash=data["refresh_token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_used_at=self._deserialize_datetime(data["last_used_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            revoked=data.get("revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )
