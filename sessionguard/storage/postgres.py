from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    PROVIDER_CREDENTIALS,
    PROVIDER_GOOGLE,
    AuditLogEntry,
    Session,
    User,
    check_identity,
)

SCHEMA_STATEMENTS = (
    'CREATE EXTENSION IF NOT EXISTS "pgcrypto"',
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        email VARCHAR(255) NOT NULL UNIQUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        name VARCHAR(255) NOT NULL,
        picture TEXT,
        password_hash TEXT,
        provider VARCHAR(50) NOT NULL CHECK (provider IN ('google', 'credentials')),
        google_id VARCHAR(255) UNIQUE,
        email_verification_token_hash TEXT,
        email_verification_expires_at TIMESTAMPTZ,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_users_email_verification_token_hash
        ON users (email_verification_token_hash)
        WHERE email_verification_token_hash IS NOT NULL
    """,
    """
    CREATE OR REPLACE FUNCTION update_updated_at_column()
    RETURNS TRIGGER AS $$
    BEGIN
        NEW.updated_at = NOW();
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS update_users_updated_at ON users",
    """
    CREATE TRIGGER update_users_updated_at
        BEFORE UPDATE ON users
        FOR EACH ROW
        EXECUTE FUNCTION update_updated_at_column()
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token_hash VARCHAR(64) NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        last_active_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        ip_address INET,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID REFERENCES users(id) ON DELETE SET NULL,
        event_type TEXT NOT NULL,
        ip_address INET,
        user_agent TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_user_id ON audit_logs (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_event_type ON audit_logs (event_type)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at ON audit_logs (created_at DESC)",
)

_USER_COLUMNS = (
    "id, email, email_verified, name, picture, password_hash, provider, google_id, "
    "email_verification_token_hash, email_verification_expires_at, "
    "failed_login_attempts, locked_until, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed store for users, sessions and the audit trail."""

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
        """Create the users, sessions and audit_logs tables if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Optional[dict]) -> Optional[User]:
        if not row:
            return None
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            provider=row["provider"],
            email_verified=row["email_verified"],
            picture=row.get("picture"),
            password_hash=row.get("password_hash"),
            google_id=row.get("google_id"),
            email_verification_token_hash=row.get("email_verification_token_hash"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            failed_login_attempts=row.get("failed_login_attempts", 0),
            locked_until=row.get("locked_until"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _session_from_row(row: Optional[dict]) -> Optional[Session]:
        if not row:
            return None
        ip = row.get("ip_address")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            last_active_at=row.get("last_active_at"),
            ip_address=str(ip) if ip is not None else None,
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE {where}", params
            ).fetchone()
        return self._user_from_row(row)

    # users
    def create_user(
        self,
        email: str,
        name: str,
        provider: str,
        *,
        password_hash: Optional[str] = None,
        google_id: Optional[str] = None,
        email_verified: bool = False,
        picture: Optional[str] = None,
    ) -> User:
        check_identity(provider, password_hash, google_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (email, email_verified, name, picture, password_hash, provider, google_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (email, email_verified, name, picture, password_hash, provider, google_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "google_id" if "google_id" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email = %s", (email,))

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self._fetch_user("google_id = %s", (google_id,))

    def upsert_user_by_google_id(
        self,
        google_id: str,
        *,
        email: str,
        email_verified: bool,
        name: str,
        picture: Optional[str] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (email, email_verified, name, picture, password_hash, provider, google_id)
                    VALUES (%s, %s, %s, %s, NULL, %s, %s)
                    ON CONFLICT (google_id) DO UPDATE
                    SET email = EXCLUDED.email,
                        email_verified = EXCLUDED.email_verified,
                        name = EXCLUDED.name,
                        picture = EXCLUDED.picture,
                        provider = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    (email, email_verified, name, picture, PROVIDER_GOOGLE, google_id, PROVIDER_GOOGLE),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def update_user_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET password_hash = %s WHERE id = %s AND provider = %s",
                (password_hash, user_id, PROVIDER_CREDENTIALS),
            )

    def set_email_verification_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users
                SET email_verification_token_hash = %s,
                    email_verification_expires_at = %s
                WHERE id = %s
                """,
                (token_hash, expires_at, user_id),
            )

    def get_user_by_email_verification_token_hash(self, token_hash: str) -> Optional[User]:
        return self._fetch_user("email_verification_token_hash = %s", (token_hash,))

    def verify_user_email(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users
                SET email_verified = TRUE,
                    email_verification_token_hash = NULL,
                    email_verification_expires_at = NULL
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row)

    def increment_failed_login_attempts(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users
                SET failed_login_attempts = failed_login_attempts + 1
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row)

    def reset_failed_login_attempts(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET failed_login_attempts = 0 WHERE id = %s", (user_id,)
            )

    def lock_user(self, user_id: str, locked_until: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET locked_until = %s WHERE id = %s", (locked_until, user_id)
            )

    def unlock_user(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET locked_until = NULL, failed_login_attempts = 0 WHERE id = %s",
                (user_id,),
            )

    # sessions
    @contextmanager
    def user_session_guard(self, user_id: str) -> Iterator[None]:
        """Serialize session creation for one user across processes.

        Holds a session-level advisory lock on a dedicated pooled connection
        while the caller runs its count/evict/insert steps on others.
        """
        with self._connect() as conn:
            conn.autocommit = True
            try:
                conn.execute("SELECT pg_advisory_lock(hashtextextended(%s, 0))", (user_id,))
                try:
                    yield
                finally:
                    conn.execute(
                        "SELECT pg_advisory_unlock(hashtextextended(%s, 0))", (user_id,)
                    )
            finally:
                conn.autocommit = False

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, token_hash, expires_at, last_active_at, ip_address, user_agent, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.expires_at,
                        session.last_active_at or session.created_at,
                        session.ip_address,
                        session.user_agent,
                        session.created_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        return self._session_from_row(row)

    def get_session_with_user(self, token_hash: str) -> Optional[tuple[Session, User]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.id AS session_id, s.user_id, s.token_hash, s.expires_at,
                       s.last_active_at, s.ip_address, s.user_agent,
                       s.created_at AS session_created_at,
                       u.id, u.email, u.email_verified, u.name, u.picture, u.password_hash,
                       u.provider, u.google_id, u.email_verification_token_hash,
                       u.email_verification_expires_at, u.failed_login_attempts,
                       u.locked_until, u.created_at, u.updated_at
                FROM sessions s
                JOIN users u ON s.user_id = u.id
                WHERE s.token_hash = %s
                """,
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        session = self._session_from_row(
            {**row, "id": row["session_id"], "created_at": row["session_created_at"]}
        )
        return session, self._user_from_row(row)

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sessions SET last_active_at = %s WHERE id = %s", (now, session_id)
            )

    def delete_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE id = %s", (session_id,))

    def delete_session_by_token_hash(self, token_hash: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE token_hash = %s", (token_hash,))

    def delete_user_sessions(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE user_id = %s", (user_id,))

    def count_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM sessions WHERE user_id = %s", (user_id,)
            ).fetchone()
        return int(row["total"]) if row else 0

    def get_oldest_user_session(self, user_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM sessions
                WHERE user_id = %s
                ORDER BY created_at ASC
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return self._session_from_row(row)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE user_id = %s ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE expires_at < %s", (now,))
            return result.rowcount

    # audit logs
    def create_audit_log(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (id, user_id, event_type, ip_address, user_agent, metadata)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    event_type,
                    ip_address,
                    user_agent,
                    Jsonb(metadata) if metadata else None,
                ),
            )

    @staticmethod
    def _audit_from_row(row: dict) -> AuditLogEntry:
        ip = row.get("ip_address")
        user_id = row.get("user_id")
        return AuditLogEntry(
            id=str(row["id"]),
            event_type=row["event_type"],
            user_id=str(user_id) if user_id is not None else None,
            ip_address=str(ip) if ip is not None else None,
            user_agent=row.get("user_agent"),
            metadata=row.get("metadata"),
            created_at=row["created_at"],
        )

    def list_audit_logs(self, event_type: Optional[str] = None) -> List[AuditLogEntry]:
        with self._connect() as conn:
            if event_type is None:
                rows = conn.execute(
                    "SELECT * FROM audit_logs ORDER BY created_at ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_logs WHERE event_type = %s ORDER BY created_at ASC",
                    (event_type,),
                ).fetchall()
        return [self._audit_from_row(row) for row in rows]

    def purge_audit_logs_before(
        self, cutoff: datetime, *, timeout_seconds: Optional[int] = None
    ) -> int:
        with self._connect() as conn:
            if timeout_seconds:
                conn.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (f"{int(timeout_seconds) * 1000}",),
                )
            row = conn.execute(
                """
                WITH deleted AS (
                    DELETE FROM audit_logs
                    WHERE created_at < %s
                    RETURNING 1
                )
                SELECT COUNT(*) AS total FROM deleted
                """,
                (cutoff,),
            ).fetchone()
        return int(row["total"]) if row else 0
