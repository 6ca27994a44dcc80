from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from khscrm.logging import get_logger
from khscrm.storage.errors import ConstraintViolation
from khscrm.storage.models import RefreshToken, RevokeReason, Role, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'WORKER' CHECK (role IN ('OWNER', 'WORKER')),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        replaced_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)


class PostgresStore:
    """Postgres-backed user and refresh-token store shared by every instance."""

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
        """Create the user, credential and refresh-token tables when missing."""

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
            name=row.get("name") or "",
            role=Role(row.get("role", Role.WORKER.value)),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _row_to_token(row: dict[str, Any]) -> RefreshToken:
        reason = row.get("revoked_reason")
        return RefreshToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            remember_me=bool(row.get("remember_me", False)),
            revoked_at=row.get("revoked_at"),
            revoked_reason=RevokeReason(reason) if reason else None,
            replaced_by=row.get("replaced_by"),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        name: str = "",
        role: Role = Role.WORKER,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email.strip().lower(), name, Role(role).value, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
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
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s",
                (when or utcnow(), user_id),
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
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # refresh tokens
    def _insert_token(self, conn, token: RefreshToken) -> RefreshToken:
        row = conn.execute(
            """
            INSERT INTO refresh_token (id, token_hash, user_id, issued_at, expires_at, remember_me)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                token.id,
                token.token_hash,
                token.user_id,
                token.issued_at,
                token.expires_at,
                token.remember_me,
            ),
        ).fetchone()
        return self._row_to_token(row)

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                return self._insert_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", field="token_hash")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})

    def find_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def list_user_refresh_tokens(
        self,
        user_id: str,
        *,
        active_only: bool = False,
        now: Optional[datetime] = None,
    ) -> List[RefreshToken]:
        with self._connect() as conn:
            if active_only:
                rows = conn.execute(
                    """
                    SELECT * FROM refresh_token
                    WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                    ORDER BY issued_at
                    """,
                    (user_id, now or utcnow()),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY issued_at",
                    (user_id,),
                ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def mark_refresh_revoked(
        self, token_id: str, reason: RevokeReason = RevokeReason.LOGOUT
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = now(), revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                """,
                (RevokeReason(reason).value, token_id),
            )
            return result.rowcount > 0

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: RevokeReason = RevokeReason.LOGOUT
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = now(), revoked_reason = %s
                WHERE user_id = %s AND revoked_at IS NULL
                """,
                (RevokeReason(reason).value, user_id),
            )
            return result.rowcount

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    def rotate_refresh_token(
        self, old_hash: str, new_token: RefreshToken, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Revoke the old token and insert its replacement in one transaction.

        The conditional UPDATE takes the row lock, so a concurrent rotation of
        the same token re-checks ``revoked_at`` after the first commits and
        matches nothing.
        """
        now = now or utcnow()
        try:
            with self._connect() as conn:
                with conn.transaction():
                    revoked = conn.execute(
                        """
                        UPDATE refresh_token
                        SET revoked_at = %s, revoked_reason = %s, replaced_by = %s
                        WHERE token_hash = %s AND revoked_at IS NULL AND expires_at > %s
                        RETURNING user_id
                        """,
                        (
                            now,
                            RevokeReason.ROTATED.value,
                            new_token.id,
                            old_hash,
                            now,
                        ),
                    ).fetchone()
                    if not revoked:
                        return None
                    if str(revoked["user_id"]) != new_token.user_id:
                        raise ConstraintViolation(
                            "rotated token must belong to the same user",
                            {"user_id": new_token.user_id},
                        )
                    return self._insert_token(conn, new_token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", field="token_hash")
