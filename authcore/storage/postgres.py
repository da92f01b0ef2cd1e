from __future__ import annotations

import json
import uuid
from datetime import datetime, time, timedelta, timezone
from typing import Any, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import DEFAULT_ROLES
from authcore.storage.models import (
    AuditEvent,
    AuditEventKind,
    AuditQuery,
    EmailToken,
    EmailTokenKind,
    RefreshToken,
    Role,
    User,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        display_name TEXT NOT NULL DEFAULT '',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id SERIAL PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_role (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role_id INTEGER NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        assigned_by UUID,
        assigned_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS email_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        kind TEXT NOT NULL CHECK (kind IN ('verify', 'reset')),
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id UUID PRIMARY KEY,
        user_id UUID,
        kind TEXT NOT NULL,
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        ip_addr TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_created_idx ON audit_event (created_at DESC)",
)


def _is_uuid(value: Optional[str]) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        display_name=row.get("display_name") or "",
        is_active=row.get("is_active", True),
        is_verified=row.get("is_verified", False),
        failed_login_count=row.get("failed_login_count") or 0,
        locked_until=row.get("locked_until"),
        last_login_at=row.get("last_login_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _role_from_row(row: dict) -> Role:
    return Role(id=int(row["id"]), name=row["name"], description=row.get("description") or "")


def _refresh_token_from_row(row: dict) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        revoked=bool(row["revoked"]),
        user_agent=row.get("user_agent"),
        ip_addr=row.get("ip_addr"),
    )


def _email_token_from_row(row: dict) -> EmailToken:
    return EmailToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        kind=EmailTokenKind(row["kind"]),
        expires_at=row["expires_at"],
        used=bool(row["used"]),
    )


def _audit_event_from_row(row: dict) -> AuditEvent:
    payload = row.get("payload") or {}
    if isinstance(payload, str):
        payload = json.loads(payload)
    return AuditEvent(
        id=str(row["id"]),
        kind=AuditEventKind(row["kind"]),
        created_at=row["created_at"],
        user_id=str(row["user_id"]) if row.get("user_id") else None,
        payload=payload,
        ip_addr=row.get("ip_addr"),
        user_agent=row.get("user_agent"),
    )


class PostgresStore:
    """Postgres-backed store for users, roles, tokens and the audit trail.

    Refresh-token rotation and email-token consumption are single conditional
    statements, so they stay exactly-once across server instances.
    """

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
        """Create tables if missing and seed the default roles."""

        with self._connect() as conn, conn.transaction():
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            for name, description in DEFAULT_ROLES:
                conn.execute(
                    "INSERT INTO role (name, description) VALUES (%s, %s) ON CONFLICT (name) DO NOTHING",
                    (name, description),
                )

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, display_name, is_active, is_verified,
                                          failed_login_count, locked_until, last_login_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.password_hash,
                        user.display_name,
                        user.is_active,
                        user.is_verified,
                        user.failed_login_count,
                        user.locked_until,
                        user.last_login_at,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user(self, user: User) -> User:
        if not _is_uuid(user.id):
            raise ConstraintViolation("user missing", {"user_id": user.id})
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET email = %s, display_name = %s, is_active = %s, is_verified = %s, updated_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        user.email,
                        user.display_name,
                        user.is_active,
                        user.is_verified,
                        user.updated_at,
                        user.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            raise ConstraintViolation("user missing", {"user_id": user.id})
        return _user_from_row(row)

    def update_auth_state(
        self,
        user_id: str,
        *,
        failed_login_count: int,
        locked_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_count = %s, locked_until = %s,
                    last_login_at = COALESCE(%s, last_login_at)
                WHERE id = %s
                """,
                (failed_login_count, locked_until, last_login_at, user_id),
            )

    def set_user_verified(self, user_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET is_verified = TRUE, updated_at = %s WHERE id = %s",
                (now, user_id),
            )

    def update_password_hash(self, user_id: str, password_hash: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = %s WHERE id = %s",
                (password_hash, now, user_id),
            )

    def list_users(
        self, page: int, per_page: int, search: Optional[str] = None
    ) -> Tuple[List[User], int]:
        where = ""
        params: list[Any] = []
        if search:
            where = " WHERE email ILIKE %s ESCAPE '\\' OR display_name ILIKE %s ESCAPE '\\'"
            pattern = f"%{_escape_like(search)}%"
            params.extend([pattern, pattern])
        with self._connect() as conn:
            total = conn.execute(
                "SELECT COUNT(*) AS c FROM app_user" + where, tuple(params)
            ).fetchone()["c"]
            rows = conn.execute(
                "SELECT * FROM app_user"
                + where
                + " ORDER BY created_at DESC LIMIT %s OFFSET %s",
                tuple(params + [per_page, (page - 1) * per_page]),
            ).fetchall()
        return [_user_from_row(row) for row in rows], int(total)

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # roles
    def get_role(self, role_id: int) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return _role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return _role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY id").fetchall()
        return [_role_from_row(row) for row in rows]

    def create_role(self, name: str, description: str = "") -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO role (name, description) VALUES (%s, %s) RETURNING *",
                    (name, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return _role_from_row(row)

    def update_role(self, role: Role) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE role SET name = %s, description = %s WHERE id = %s RETURNING *",
                    (role.name, role.description, role.id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        if not row:
            raise ConstraintViolation("role missing", {"role_id": role.id})
        return _role_from_row(row)

    def delete_role(self, role_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
            return result.rowcount > 0

    def assign_role(
        self,
        user_id: str,
        role_id: int,
        assigned_by: Optional[str],
        assigned_at: datetime,
    ) -> None:
        if not _is_uuid(user_id) or (assigned_by is not None and not _is_uuid(assigned_by)):
            raise ConstraintViolation(
                "role assignment references missing row",
                {"user_id": user_id, "role_id": role_id},
            )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_id, assigned_by, assigned_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id, role_id) DO NOTHING
                    """,
                    (user_id, role_id, assigned_by, assigned_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role assignment references missing row",
                {"user_id": user_id, "role_id": role_id},
            )

    def unassign_role(self, user_id: str, role_id: int) -> None:
        if not _is_uuid(user_id):
            return
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )

    def roles_for_user(self, user_id: str) -> List[Role]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT r.* FROM user_role ur JOIN role r ON r.id = ur.role_id WHERE ur.user_id = %s ORDER BY r.id",
                (user_id,),
            ).fetchall()
        return [_role_from_row(row) for row in rows]

    # refresh tokens
    def _insert_refresh_token(self, conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token_hash, issued_at, expires_at, revoked, user_agent, ip_addr)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.token_hash,
                token.issued_at,
                token.expires_at,
                token.revoked,
                token.user_agent,
                token.ip_addr,
            ),
        )

    def create_refresh_token(self, token: RefreshToken) -> None:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, token)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token user missing", {"user_id": token.user_id})

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _refresh_token_from_row(row) if row else None

    def rotate_refresh_token(self, token_id: str, successor: RefreshToken) -> bool:
        with self._connect() as conn, conn.transaction():
            result = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE id = %s AND revoked = FALSE",
                (token_id,),
            )
            if result.rowcount != 1:
                return False
            self._insert_refresh_token(conn, successor)
        return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE",
                (user_id,),
            )
            return result.rowcount

    def list_user_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY issued_at DESC",
                (user_id,),
            ).fetchall()
        return [_refresh_token_from_row(row) for row in rows]

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    # email tokens
    def create_email_token(self, token: EmailToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO email_token (id, user_id, token_hash, kind, expires_at, used)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.token_hash,
                        token.kind.value,
                        token.expires_at,
                        token.used,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token user missing", {"user_id": token.user_id})

    def consume_email_token(
        self, token_hash: str, kind: EmailTokenKind, now: datetime
    ) -> Optional[EmailToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_token SET used = TRUE
                WHERE token_hash = %s AND kind = %s AND used = FALSE AND expires_at >= %s
                RETURNING *
                """,
                (token_hash, EmailTokenKind(kind).value, now),
            ).fetchone()
        return _email_token_from_row(row) if row else None

    def delete_expired_email_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM email_token WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    # audit
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, user_id, kind, payload, ip_addr, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.user_id,
                    event.kind.value,
                    json.dumps(event.payload),
                    event.ip_addr,
                    event.user_agent,
                    event.created_at,
                ),
            )

    def list_audit_events(self, query: AuditQuery) -> Tuple[List[AuditEvent], int]:
        if query.user_id and not _is_uuid(query.user_id):
            return [], 0
        clauses = []
        params: list[Any] = []
        if query.user_id:
            clauses.append("user_id = %s")
            params.append(query.user_id)
        if query.kind:
            clauses.append("kind = %s")
            params.append(AuditEventKind(query.kind).value)
        if query.start_date:
            clauses.append("created_at >= %s")
            params.append(datetime.combine(query.start_date, time.min, tzinfo=timezone.utc))
        if query.end_date:
            # End date is inclusive of the whole day
            clauses.append("created_at < %s")
            params.append(
                datetime.combine(query.end_date, time.min, tzinfo=timezone.utc)
                + timedelta(days=1)
            )
        where = ""
        if clauses:
            where = " WHERE " + " AND ".join(clauses)
        with self._connect() as conn:
            total = conn.execute(
                "SELECT COUNT(*) AS c FROM audit_event" + where, tuple(params)
            ).fetchone()["c"]
            rows = conn.execute(
                "SELECT * FROM audit_event"
                + where
                + " ORDER BY created_at DESC LIMIT %s OFFSET %s",
                tuple(params + [query.per_page, (query.page - 1) * query.per_page]),
            ).fetchall()
        return [_audit_event_from_row(row) for row in rows], int(total)
