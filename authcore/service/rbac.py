from __future__ import annotations

from datetime import datetime
from typing import AbstractSet, Iterable, List, Optional, Protocol

from authcore.logging import get_logger
from authcore.service.errors import DuplicateRoleError, RoleNotFoundError, ValidationError
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Role

logger = get_logger(__name__)


class RoleStore(Protocol):
    def get_role(self, role_id: int) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def create_role(self, name: str, description: str = "") -> Role: ...

    def update_role(self, role: Role) -> Role: ...

    def delete_role(self, role_id: int) -> bool: ...

    def assign_role(
        self,
        user_id: str,
        role_id: int,
        assigned_by: Optional[str],
        assigned_at: datetime,
    ) -> None:
        """Idempotent: assigning a role twice is not an error."""
        ...

    def unassign_role(self, user_id: str, role_id: int) -> None: ...

    def roles_for_user(self, user_id: str) -> List[Role]: ...


def authorize(granted: Iterable[str], required: Iterable[str]) -> bool:
    """Any-of check: true iff at least one required role was granted."""
    granted_set = granted if isinstance(granted, (set, frozenset)) else set(granted)
    return any(role in granted_set for role in required)


class RBACEnforcer:
    """Guards an operation behind a fixed set of acceptable roles."""

    def __init__(self, required: Iterable[str]) -> None:
        self.required: AbstractSet[str] = frozenset(required)
        if not self.required:
            raise ValueError("at least one required role must be given")

    def allows(self, granted: Iterable[str]) -> bool:
        return authorize(granted, self.required)


class RoleService:
    """Role administration: CRUD over the role catalogue."""

    def __init__(self, store: RoleStore) -> None:
        self.store = store

    def get_role(self, role_id: int) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise RoleNotFoundError()
        return role

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def create_role(self, name: str, description: str = "") -> Role:
        name = self._clean_name(name)
        if self.store.get_role_by_name(name) is not None:
            raise DuplicateRoleError()
        try:
            role = self.store.create_role(name, description)
        except ConstraintViolation:
            raise DuplicateRoleError()
        logger.info("role_created", role_id=role.id, role=role.name)
        return role

    def update_role(self, role_id: int, name: str, description: str = "") -> Role:
        role = self.get_role(role_id)
        name = self._clean_name(name)
        if name != role.name and self.store.get_role_by_name(name) is not None:
            raise DuplicateRoleError()
        try:
            updated = self.store.update_role(
                Role(id=role.id, name=name, description=description)
            )
        except ConstraintViolation:
            raise DuplicateRoleError()
        logger.info("role_updated", role_id=role_id, role=name)
        return updated

    def delete_role(self, role_id: int) -> None:
        self.get_role(role_id)
        self.store.delete_role(role_id)
        logger.info("role_deleted", role_id=role_id)

    @staticmethod
    def _clean_name(name: str) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("role name is required", detail={"field": "name"})
        return cleaned
