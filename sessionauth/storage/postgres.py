from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionauth.logging import get_logger
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import RefreshSession, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_credential (
        user_id UUID PRIMARY KEY REFERENCES auth_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT NOT NULL DEFAULT 'unknown',
        ip_address TEXT NOT NULL DEFAULT 'unknown',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_session_user_idx ON refresh_session (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_session_expiry_idx ON refresh_session (expires_at)",
)


class PostgresStore:
    """Postgres-backed credential and refresh-session store."""

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
        """Create the auth tables and indexes if they are missing."""

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
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name", ""),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: dict[str, Any]) -> RefreshSession:
        return RefreshSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent") or "unknown",
            ip_address=row.get("ip_address") or "unknown",
            created_at=row.get("created_at") or utcnow(),
            last_used_at=row.get("last_used_at"),
        )

    # users
    def create_user(
        self, email: str, name: str, password_hash: str, password_algo: str
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_user (id, email, name)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, name),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh sessions
    def insert(self, session: RefreshSession) -> RefreshSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_session
                        (id, user_id, token, expires_at, user_agent, ip_address, created_at, last_used_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token,
                        session.expires_at,
                        session.user_agent,
                        session.ip_address,
                        session.created_at,
                        session.last_used_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def find_by_token(self, token: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def take_by_token(self, token: str) -> Optional[RefreshSession]:
        # One statement: of two concurrent callers only one gets the row back
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_session WHERE token = %s RETURNING *", (token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_by_token(self, token: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_session WHERE token = %s", (token,)
            )
            return result.rowcount

    def delete_all_for_user(self, user_id: str, excluding: Optional[str] = None) -> int:
        with self._connect() as conn:
            if excluding:
                result = conn.execute(
                    "DELETE FROM refresh_session WHERE user_id = %s AND token <> %s",
                    (user_id, excluding),
                )
            else:
                result = conn.execute(
                    "DELETE FROM refresh_session WHERE user_id = %s", (user_id,)
                )
            return result.rowcount

    def purge_expired(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_session WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    def count_expired(self, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS expired FROM refresh_session WHERE expires_at <= %s",
                (now,),
            ).fetchone()
        return int(row["expired"]) if row else 0
