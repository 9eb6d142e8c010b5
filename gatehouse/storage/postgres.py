from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import SessionRecord, User, ensure_utc

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        email VARCHAR(255) NOT NULL UNIQUE,
        password_hash VARCHAR(255) NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verification_token VARCHAR(255) UNIQUE,
        email_verification_expires TIMESTAMPTZ,
        password_reset_token VARCHAR(255) UNIQUE,
        password_reset_expires TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK ((email_verification_token IS NULL) = (email_verification_expires IS NULL)),
        CHECK ((password_reset_token IS NULL) = (password_reset_expires IS NULL))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        session_token VARCHAR(255) NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_accessed TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_id_idx ON sessions (user_id)",
    "CREATE INDEX IF NOT EXISTS sessions_expires_at_idx ON sessions (expires_at)",
)

_USER_COLUMNS = """
    id, name, email, password_hash, email_verified,
    email_verification_token, email_verification_expires,
    password_reset_token, password_reset_expires, created_at, updated_at
"""


def _opt_utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


class PostgresStore:
    """Postgres-backed credential store and durable session table."""

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

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``users`` and ``sessions`` tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            email_verified=bool(row["email_verified"]),
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires=_opt_utc(row.get("email_verification_expires")),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=_opt_utc(row.get("password_reset_expires")),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
        )

    @staticmethod
    def _row_to_session(row: dict[str, Any]) -> SessionRecord:
        return SessionRecord(
            token=row["session_token"],
            user_id=row["user_id"],
            created_at=ensure_utc(row["created_at"]),
            last_accessed=ensure_utc(row["last_accessed"]),
            expires_at=ensure_utc(row["expires_at"]),
        )

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE {where} = %s",
                (value,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # users
    def create_user(self, name: str, email: str, password_hash: str) -> User:
        email = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (name, email, password_hash)
                    VALUES (%s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (name, email, password_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email.strip().lower())

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        return self._fetch_user("email_verification_token", token)

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        return self._fetch_user("password_reset_token", token)

    def set_email_verification_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE users
                SET email_verification_token = %s,
                    email_verification_expires = %s,
                    updated_at = now()
                WHERE id = %s
                """,
                (token, expires_at, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def mark_email_verified(self, user_id: int) -> Optional[User]:
        """Set the verified flag and clear the verification token pair together."""
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users
                SET email_verified = TRUE,
                    email_verification_token = NULL,
                    email_verification_expires = NULL,
                    updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password_reset_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE users
                SET password_reset_token = %s,
                    password_reset_expires = %s,
                    updated_at = now()
                WHERE id = %s
                """,
                (token, expires_at, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def update_password(self, user_id: int, password_hash: str) -> None:
        """Store a new hash and clear the reset token pair in one write."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE users
                SET password_hash = %s,
                    password_reset_token = NULL,
                    password_reset_expires = NULL,
                    updated_at = now()
                WHERE id = %s
                """,
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})

    # sessions
    def create_session(
        self,
        token: str,
        user_id: int,
        *,
        created_at: datetime,
        expires_at: datetime,
    ) -> SessionRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO sessions (user_id, session_token, expires_at, created_at, last_accessed)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING session_token, user_id, created_at, last_accessed, expires_at
                    """,
                    (user_id, token, expires_at, created_at, created_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists", {"field": "token"})
        return self._row_to_session(row)

    def get_session_with_user(
        self, token: str
    ) -> Optional[tuple[SessionRecord, User]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.session_token, s.user_id, s.created_at AS session_created_at,
                       s.last_accessed, s.expires_at,
                       u.id, u.name, u.email, u.password_hash, u.email_verified,
                       u.email_verification_token, u.email_verification_expires,
                       u.password_reset_token, u.password_reset_expires,
                       u.created_at, u.updated_at
                FROM sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.session_token = %s
                """,
                (token,),
            ).fetchone()
        if not row:
            return None
        record = self._row_to_session({**row, "created_at": row["session_created_at"]})
        return record, self._row_to_user(row)

    def touch_session(self, token: str, last_accessed: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE sessions
                SET last_accessed = GREATEST(last_accessed, %s)
                WHERE session_token = %s
                """,
                (last_accessed, token),
            )

    def delete_session(self, token: str) -> Optional[int]:
        """Remove a session row, returning the owning user id if one existed."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM sessions WHERE session_token = %s RETURNING user_id",
                (token,),
            ).fetchone()
        return row["user_id"] if row else None

    def list_user_sessions(self, user_id: int, now: datetime) -> List[SessionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT session_token, user_id, created_at, last_accessed, expires_at
                FROM sessions
                WHERE user_id = %s AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def delete_user_sessions(self, user_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE expires_at <= %s", (now,))
            removed = cur.rowcount
        if removed:
            self.logger.info("expired_sessions_pruned", removed=removed)
        return removed


__all__ = ["PostgresStore"]
