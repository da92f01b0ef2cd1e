from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    AuditEvent,
    AuditQuery,
    EmailToken,
    EmailTokenKind,
    RefreshToken,
    Role,
    User,
    UserRole,
)

DEFAULT_ROLES = (
    ("admin", "Full administrative access"),
    ("user", "Standard account"),
)


def _day_start(day) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every read hands out a copy so callers can never mutate stored state
    without going through a store method.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[int, Role] = {}
        self.user_roles: Dict[Tuple[str, int], UserRole] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.email_tokens: Dict[str, EmailToken] = {}
        self.audit_events: List[AuditEvent] = []
        self._role_id_seq = 1
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        for name, description in DEFAULT_ROLES:
            self.create_role(name, description)

    # users
    def create_user(self, user: User) -> User:
        with self._data_lock:
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = replace(user)
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def update_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user missing", {"user_id": user.id})
            if any(
                other.email == user.email and other.id != user.id
                for other in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = self.users[user.id]
            # Auth state and password hash have their own writers
            stored.email = user.email
            stored.display_name = user.display_name
            stored.is_active = user.is_active
            stored.is_verified = user.is_verified
            stored.updated_at = user.updated_at
            return replace(stored)

    def update_auth_state(
        self,
        user_id: str,
        *,
        failed_login_count: int,
        locked_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_count = failed_login_count
            user.locked_until = locked_until
            if last_login_at is not None:
                user.last_login_at = last_login_at

    def set_user_verified(self, user_id: str, now: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.is_verified = True
            user.updated_at = now

    def update_password_hash(self, user_id: str, password_hash: str, now: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.password_hash = password_hash
            user.updated_at = now

    def list_users(
        self, page: int, per_page: int, search: Optional[str] = None
    ) -> Tuple[List[User], int]:
        with self._data_lock:
            results = list(reversed(self.users.values()))
            if search:
                needle = search.lower()
                results = [
                    u
                    for u in results
                    if needle in u.email.lower() or needle in u.display_name.lower()
                ]
            results.sort(key=lambda u: u.created_at, reverse=True)
            offset = (page - 1) * per_page
            return [replace(u) for u in results[offset : offset + per_page]], len(results)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for key in [k for k in self.user_roles if k[0] == user_id]:
                self.user_roles.pop(key, None)
            for token_id, token in list(self.refresh_tokens.items()):
                if token.user_id == user_id:
                    self.refresh_tokens.pop(token_id, None)
            for token_hash, token in list(self.email_tokens.items()):
                if token.user_id == user_id:
                    self.email_tokens.pop(token_hash, None)
            return True

    # roles
    def get_role(self, role_id: int) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return replace(role) if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [replace(r) for r in sorted(self.roles.values(), key=lambda r: r.id)]

    def create_role(self, name: str, description: str = "") -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role = Role(id=self._role_id_seq, name=name, description=description)
            self._role_id_seq += 1
            self.roles[role.id] = role
            return replace(role)

    def update_role(self, role: Role) -> Role:
        with self._data_lock:
            if role.id not in self.roles:
                raise ConstraintViolation("role missing", {"role_id": role.id})
            if any(r.name == role.name and r.id != role.id for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            self.roles[role.id] = replace(role)
            return replace(role)

    def delete_role(self, role_id: int) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            for key in [k for k in self.user_roles if k[1] == role_id]:
                self.user_roles.pop(key, None)
            return True

    def assign_role(
        self,
        user_id: str,
        role_id: int,
        assigned_by: Optional[str],
        assigned_at: datetime,
    ) -> None:
        with self._data_lock:
            if user_id not in self.users or role_id not in self.roles:
                raise ConstraintViolation(
                    "role assignment references missing row",
                    {"user_id": user_id, "role_id": role_id},
                )
            # Same as ON CONFLICT DO NOTHING
            self.user_roles.setdefault(
                (user_id, role_id),
                UserRole(
                    user_id=user_id,
                    role_id=role_id,
                    assigned_by=assigned_by,
                    assigned_at=assigned_at,
                ),
            )

    def unassign_role(self, user_id: str, role_id: int) -> None:
        with self._data_lock:
            self.user_roles.pop((user_id, role_id), None)

    def roles_for_user(self, user_id: str) -> List[Role]:
        with self._data_lock:
            role_ids = sorted(rid for uid, rid in self.user_roles if uid == user_id)
            return [replace(self.roles[rid]) for rid in role_ids if rid in self.roles]

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> None:
        with self._data_lock:
            if any(t.token_hash == token.token_hash for t in self.refresh_tokens.values()):
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            self.refresh_tokens[token.id] = replace(token)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = next(
                (t for t in self.refresh_tokens.values() if t.token_hash == token_hash),
                None,
            )
            return replace(token) if token else None

    def rotate_refresh_token(self, token_id: str, successor: RefreshToken) -> bool:
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None or current.revoked:
                return False
            current.revoked = True
            self.refresh_tokens[successor.id] = replace(successor)
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and not token.revoked:
                    token.revoked = True
                    count += 1
            return count

    def list_user_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [replace(t) for t in self.refresh_tokens.values() if t.user_id == user_id]
            return sorted(tokens, key=lambda t: t.issued_at, reverse=True)

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [tid for tid, t in self.refresh_tokens.items() if t.expires_at < now]
            for token_id in expired:
                del self.refresh_tokens[token_id]
            return len(expired)

    # email tokens
    def create_email_token(self, token: EmailToken) -> None:
        with self._data_lock:
            if token.token_hash in self.email_tokens:
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            self.email_tokens[token.token_hash] = replace(token)

    def consume_email_token(
        self, token_hash: str, kind: EmailTokenKind, now: datetime
    ) -> Optional[EmailToken]:
        with self._data_lock:
            token = self.email_tokens.get(token_hash)
            if token is None or token.used or token.kind != kind or token.expires_at < now:
                return None
            token.used = True
            return replace(token)

    def delete_expired_email_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [h for h, t in self.email_tokens.items() if t.expires_at < now]
            for token_hash in expired:
                del self.email_tokens[token_hash]
            return len(expired)

    # audit
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(replace(event, payload=dict(event.payload)))

    def list_audit_events(self, query: AuditQuery) -> Tuple[List[AuditEvent], int]:
        with self._data_lock:
            results = list(self.audit_events)
        if query.user_id:
            results = [e for e in results if e.user_id == query.user_id]
        if query.kind:
            results = [e for e in results if e.kind == query.kind]
        if query.start_date:
            start = _day_start(query.start_date)
            results = [e for e in results if e.created_at >= start]
        if query.end_date:
            # End date is inclusive of the whole day
            end = _day_start(query.end_date) + timedelta(days=1)
            results = [e for e in results if e.created_at < end]
        # Newest first; later appends win ties on identical timestamps
        results.reverse()
        results.sort(key=lambda e: e.created_at, reverse=True)
        offset = (query.page - 1) * query.per_page
        page = results[offset : offset + query.per_page]
        return [replace(e, payload=dict(e.payload)) for e in page], len(results)
