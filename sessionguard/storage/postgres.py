from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, DuplicateRefreshTokenId
from sessionguard.storage.models import (
    RefreshTokenRecord,
    RevokeReason,
    TokenMetadata,
    User,
    UserRole,
    UserStatus,
    parse_roles,
    utcnow,
)

_REVOKE_REASONS_SQL = ", ".join(f"'{reason.value}'" for reason in RevokeReason)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        full_name TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'active',
        roles TEXT[] NOT NULL DEFAULT '{}',
        password_hash TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS refresh_token (
        token_jti TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT CHECK (revoked_reason IN ({_REVOKE_REASONS_SQL})),
        ip_address TEXT,
        user_agent TEXT,
        CHECK ((revoked_at IS NULL) = (revoked_reason IS NULL))
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS refresh_token_active_user_idx
        ON refresh_token (user_id) WHERE revoked_at IS NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS refresh_token_expires_idx
        ON refresh_token (expires_at)
    """,
)


class PostgresStore:
    """Postgres-backed user directory and refresh token store."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
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
        """Create the user and refresh token tables if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
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
            full_name=row.get("full_name") or "",
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            roles=parse_roles(row.get("roles") or []),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict[str, Any]) -> RefreshTokenRecord:
        reason = row.get("revoked_reason")
        return RefreshTokenRecord(
            id=row["token_jti"],
            user_id=str(row["user_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            revoked_reason=RevokeReason(reason) if reason else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        full_name: str = "",
        roles: Optional[Iterable[UserRole]] = None,
        status: UserStatus = UserStatus.ACTIVE,
        password_hash: Optional[str] = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            full_name=full_name,
            status=status,
            roles=list(roles or []),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, full_name, status, roles, password_hash, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.full_name,
                        user.status.value,
                        [role.value for role in user.roles],
                        password_hash,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
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

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return row["password_hash"] if row else None

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )
            return cur.rowcount > 0

    def record_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s",
                (at or utcnow(), user_id),
            )

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
                (UserStatus(status).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_roles(self, user_id: str, roles: Iterable[UserRole]) -> Optional[User]:
        values = [UserRole(role).value for role in dict.fromkeys(roles)]
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET roles = %s WHERE id = %s RETURNING *",
                (values, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # refresh tokens
    def record_refresh_token(
        self,
        refresh_id: str,
        user_id: str,
        *,
        issued_at: datetime,
        expires_at: datetime,
        metadata: Optional[TokenMetadata] = None,
    ) -> RefreshTokenRecord:
        meta = metadata or TokenMetadata()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token_jti, user_id, issued_at, expires_at, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        refresh_id,
                        user_id,
                        issued_at,
                        expires_at,
                        meta.ip_address,
                        meta.user_agent,
                    ),
                )
        except errors.UniqueViolation:
            raise DuplicateRefreshTokenId(refresh_id)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return RefreshTokenRecord(
            id=refresh_id,
            user_id=user_id,
            issued_at=issued_at,
            expires_at=expires_at,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )

    def get_refresh_token(self, refresh_id: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_jti = %s", (refresh_id,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def is_refresh_token_revoked(
        self, refresh_id: str, *, unknown_is_revoked: bool = False
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT revoked_at FROM refresh_token WHERE token_jti = %s",
                (refresh_id,),
            ).fetchone()
        if row is None:
            return unknown_is_revoked
        return row["revoked_at"] is not None

    def revoke_refresh_token(self, refresh_id: str, reason: RevokeReason) -> bool:
        # Conditional update: only the first revoker sees a row change
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_reason = %s
                WHERE token_jti = %s AND revoked_at IS NULL
                """,
                (utcnow(), RevokeReason(reason).value, refresh_id),
            )
            return cur.rowcount > 0

    def bulk_revoke_refresh_tokens(self, user_id: str, reason: RevokeReason) -> int:
        now = utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (now, RevokeReason(reason).value, user_id, now),
            )
            return max(cur.rowcount, 0)

    def list_active_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                ORDER BY issued_at
                """,
                (user_id, utcnow()),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    def sweep_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s",
                (now or utcnow(),),
            )
            return max(cur.rowcount, 0)
