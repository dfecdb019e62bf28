from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tasktrack.logging import get_logger
from tasktrack.storage.errors import ConstraintViolation, DuplicateTokenError
from tasktrack.storage.models import RefreshTokenRecord, Role, User, utcnow

T = TypeVar("T")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_role (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT,
        last_name TEXT,
        avatar TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        role_ids UUID[] NOT NULL DEFAULT '{}',
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
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
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ,
        client_fingerprint JSONB,
        parent_id UUID REFERENCES refresh_token(id) ON DELETE SET NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS refresh_token_parent_uniq ON refresh_token (parent_id) WHERE parent_id IS NOT NULL",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_live_idx ON refresh_token (user_id, issued_at DESC) WHERE revoked = FALSE",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)

_REQUIRED_TABLES = ("app_role", "app_user", "user_auth_credential", "refresh_token")


class _PostgresTransaction:
    """Operations bound to one open connection inside ``conn.transaction()``."""

    def __init__(self, store: "PostgresStore", conn) -> None:
        self._store = store
        self._conn = conn

    def revoke_if_live(self, record_id: str, now: Optional[datetime] = None) -> bool:
        # Compare-and-swap on the revoked flag; only one concurrent caller can match
        now = now or utcnow()
        row = self._conn.execute(
            """
            UPDATE refresh_token SET revoked = TRUE, revoked_at = %s, updated_at = %s
            WHERE id = %s AND revoked = FALSE
            RETURNING id
            """,
            (now, now, record_id),
        ).fetchone()
        return row is not None

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        return self._store._insert_refresh_token(self._conn, record)


class PostgresStore:
    """Postgres-backed store for users, roles, credentials and refresh tokens."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create auth tables and indexes when they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # Row mapping

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            avatar=row.get("avatar"),
            is_active=row.get("is_active", True),
            role_ids=[str(role_id) for role_id in row.get("role_ids") or []],
            failed_login_attempts=row.get("failed_login_attempts", 0),
            lock_until=row.get("lock_until"),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_role(row: dict) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshTokenRecord:
        fingerprint = row.get("client_fingerprint") or {}
        if isinstance(fingerprint, str):
            fingerprint = json.loads(fingerprint)
        parent_id = row.get("parent_id")
        return RefreshTokenRecord(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked=row.get("revoked", False),
            revoked_at=row.get("revoked_at"),
            updated_at=row.get("updated_at"),
            client_fingerprint=fingerprint,
            parent_id=str(parent_id) if parent_id else None,
        )

    # Roles

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        role_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO app_role (id, name, description) VALUES (%s, %s, %s) RETURNING *",
                    (role_id, name, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return self._row_to_role(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_role WHERE id = %s", (role_id,)
            ).fetchone()
        return self._row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_role WHERE name = %s", (name,)
            ).fetchone()
        return self._row_to_role(row) if row else None

    # Users

    def create_user(
        self,
        username: str,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar: Optional[str] = None,
        role_ids: Optional[List[str]] = None,
        is_active: bool = True,
        credential: Optional[tuple[str, str]] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, first_name, last_name, avatar, is_active, role_ids)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s::uuid[])
                    RETURNING *
                    """,
                    (
                        user_id,
                        username,
                        email,
                        first_name,
                        last_name,
                        avatar,
                        is_active,
                        list(role_ids or []),
                    ),
                ).fetchone()
                if credential is not None:
                    # Same transaction, so a user never exists without its credential
                    conn.execute(
                        """
                        INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                        VALUES (%s, %s, %s, now())
                        """,
                        (user_id, credential[0], credential[1]),
                    )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

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

    # Login attempt tracking

    def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        # Single statement so concurrent failures cannot lose increments.
        # Right-hand expressions all read the pre-update row.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET
                    failed_login_attempts = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN 1
                        ELSE failed_login_attempts + 1
                    END,
                    lock_until = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN
                            CASE WHEN 1 >= %(max_attempts)s THEN %(lock_until)s ELSE NULL END
                        WHEN lock_until IS NOT NULL THEN lock_until
                        WHEN failed_login_attempts + 1 >= %(max_attempts)s THEN %(lock_until)s
                        ELSE NULL
                    END,
                    updated_at = %(now)s
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {
                    "now": now,
                    "max_attempts": max_attempts,
                    "lock_until": now + lockout,
                    "user_id": user_id,
                },
            ).fetchone()
        return self._row_to_user(row) if row else None

    def reset_login_failures(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0, lock_until = NULL, last_login = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, now, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # Refresh tokens

    def _insert_refresh_token(self, conn, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            # Savepoint keeps the enclosing transaction usable after a violation
            with conn.transaction():
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, token, user_id, issued_at, expires_at, revoked, revoked_at, updated_at, client_fingerprint, parent_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.token,
                        record.user_id,
                        record.issued_at,
                        record.expires_at,
                        record.revoked,
                        record.revoked_at,
                        record.updated_at,
                        json.dumps(record.client_fingerprint or {}),
                        record.parent_id,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "parent" in constraint:
                raise ConstraintViolation(
                    "refresh token already has a successor",
                    {"parent_id": record.parent_id},
                )
            raise DuplicateTokenError()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token owner missing", {"user_id": record.user_id}
            )
        return record

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._connect() as conn:
            return self._insert_refresh_token(conn, record)

    def find_refresh_token(
        self,
        token: str,
        *,
        user_id: Optional[str] = None,
        revoked: Optional[bool] = None,
    ) -> Optional[RefreshTokenRecord]:
        clauses = ["token = %s"]
        params: list[Any] = [token]
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if revoked is not None:
            clauses.append("revoked = %s")
            params.append(revoked)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM refresh_token WHERE {' AND '.join(clauses)}",
                tuple(params),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def find_successor(self, record_id: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE parent_id = %s", (record_id,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def find_latest_live_refresh_token(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND revoked = FALSE AND expires_at > %s
                ORDER BY issued_at DESC
                LIMIT 1
                """,
                (user_id, now or utcnow()),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY issued_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    def revoke_refresh_token(
        self, record_id: str, *, now: Optional[datetime] = None
    ) -> bool:
        return self.with_transaction(lambda txn: txn.revoke_if_live(record_id, now))

    def purge_expired_refresh_tokens(self, before: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s",
                (before or utcnow(),),
            )
            return result.rowcount

    @contextlib.contextmanager
    def transaction(self) -> Iterator[_PostgresTransaction]:
        with self._connect() as conn, conn.transaction():
            yield _PostgresTransaction(self, conn)

    def with_transaction(self, fn: Callable[[_PostgresTransaction], T]) -> T:
        """Run ``fn`` inside one database transaction; an exception rolls it back."""
        with self.transaction() as txn:
            return fn(txn)
