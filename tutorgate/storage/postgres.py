from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tutorgate.logging import get_logger
from tutorgate.storage.errors import ConstraintViolation, StoreUnavailable
from tutorgate.storage.models import Session, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'student',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL UNIQUE,
        user_agent TEXT,
        ip_addr TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS auth_session_rotated_hash (
        token_hash TEXT PRIMARY KEY,
        session_id UUID NOT NULL REFERENCES auth_session(id) ON DELETE CASCADE,
        rotated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token_hash TEXT PRIMARY KEY,
        user_id UUID NOT NULL UNIQUE REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed users, credentials and sessions."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        """Borrow a pooled connection, surfacing outages as ``StoreUnavailable``."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("session store unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            role=row.get("role", "student"),
            is_active=row.get("is_active", True),
            email_verified=row.get("email_verified", False),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
            failed_login_attempts=row.get("failed_login_attempts", 0) or 0,
            locked_until=row.get("locked_until"),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at") or row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            revoked=row.get("revoked", False),
            revoked_at=row.get("revoked_at"),
        )

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "student",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        email = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, is_active, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, name, role, is_active, email_verified),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, "role = %s", (role,))

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, "is_active = %s", (is_active,))

    def set_login_state(
        self,
        user_id: str,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "failed_login_attempts = %s, locked_until = %s",
            (failed_login_attempts, locked_until),
        )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def save_password_reset(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (token_hash, user_id, expires_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET token_hash = EXCLUDED.token_hash,
                        expires_at = EXCLUDED.expires_at,
                        created_at = now()
                    """,
                    (token_hash, user_id, expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for password reset", {"user_id": user_id}
            )

    def consume_password_reset(self, token_hash: str) -> Optional[tuple[str, datetime]]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM password_reset_token WHERE token_hash = %s RETURNING user_id, expires_at",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return str(row["user_id"]), row["expires_at"]

    # sessions
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
        sess = Session.new(
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            session_id=session_id,
            now=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token_hash, user_agent, ip_addr, created_at, last_used_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.refresh_token_hash,
                        sess.user_agent,
                        sess.ip_addr,
                        sess.created_at,
                        sess.last_used_at,
                        sess.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": sess.id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            uuid.UUID(str(session_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_rotated_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.* FROM auth_session_rotated_hash r
                JOIN auth_session s ON s.id = r.session_id
                WHERE r.token_hash = %s
                """,
                (refresh_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_user_sessions(
        self, user_id: str, *, include_inactive: bool = False, now: datetime | None = None
    ) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE user_id = %s"
        params: tuple = (user_id,)
        if not include_inactive:
            query += " AND revoked = FALSE AND expires_at > %s"
            params = (user_id, now or utcnow())
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._session_from_row(row) for row in rows]

    def rotate_session_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        last_used_at: datetime,
        *,
        user_agent: str | None = None,
    ) -> Optional[Session]:
        """Conditional single-row update; ``None`` means the CAS lost."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token_hash = %s,
                    last_used_at = %s,
                    user_agent = COALESCE(%s, user_agent)
                WHERE id = %s AND refresh_token_hash = %s AND revoked = FALSE
                RETURNING *
                """,
                (new_hash, last_used_at, user_agent, session_id, expected_hash),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                """
                INSERT INTO auth_session_rotated_hash (token_hash, session_id, rotated_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (token_hash) DO NOTHING
                """,
                (expected_hash, session_id, last_used_at),
            )
        return self._session_from_row(row)

    def revoke_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET revoked = TRUE, revoked_at = now() WHERE id = %s AND revoked = FALSE",
                (session_id,),
            )
            return result.rowcount > 0

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: str | None = None
    ) -> int:
        query = "UPDATE auth_session SET revoked = TRUE, revoked_at = now() WHERE user_id = %s AND revoked = FALSE"
        params: tuple = (user_id,)
        if except_session_id:
            query += " AND id <> %s"
            params = (user_id, except_session_id)
        with self._connect() as conn:
            result = conn.execute(query, params)
            return result.rowcount

    def purge_expired_sessions(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at < %s OR (revoked AND revoked_at < %s)",
                (before, before),
            )
            return result.rowcount
