"""Tests for role checks and role administration."""

import pytest

from authcore.service.errors import (
    DuplicateRoleError,
    ErrorKind,
    RoleNotFoundError,
    ValidationError,
)
from authcore.service.rbac import RBACEnforcer, RoleService, authorize


class TestAuthorize:
    """Any-of role semantics."""

    def test_any_overlap_allows(self):
        assert authorize({"user"}, {"admin", "user"})
        assert authorize(["auditor", "user"], ["auditor"])

    def test_disjoint_denies(self):
        assert not authorize({"user"}, {"admin"})
        assert not authorize(set(), {"admin"})
        assert not authorize({"admin"}, set())

    def test_enforcer(self):
        guard = RBACEnforcer(["admin", "auditor"])

        assert guard.allows(["auditor"])
        assert not guard.allows(["user"])

    def test_enforcer_requires_roles(self):
        with pytest.raises(ValueError):
            RBACEnforcer([])


class TestRoleService:
    """CRUD over the role catalogue."""

    def test_default_roles_are_seeded(self, memory_store):
        names = [role.name for role in RoleService(memory_store).list_roles()]

        assert names == ["admin", "user"]

    def test_create_and_get(self, memory_store):
        service = RoleService(memory_store)

        role = service.create_role("  auditor ", "Reads the audit log")

        assert role.name == "auditor"
        assert service.get_role(role.id).description == "Reads the audit log"

    def test_duplicate_name(self, memory_store):
        with pytest.raises(DuplicateRoleError) as exc_info:
            RoleService(memory_store).create_role("admin")
        assert exc_info.value.kind is ErrorKind.DUPLICATE_ROLE
        assert exc_info.value.status_code == 409

    def test_blank_name(self, memory_store):
        with pytest.raises(ValidationError):
            RoleService(memory_store).create_role("   ")

    def test_update(self, memory_store):
        service = RoleService(memory_store)
        role = service.create_role("support")

        updated = service.update_role(role.id, "helpdesk", "First line")

        assert updated.name == "helpdesk"
        assert memory_store.get_role_by_name("support") is None
        assert memory_store.get_role_by_name("helpdesk").description == "First line"

    def test_update_to_taken_name(self, memory_store):
        service = RoleService(memory_store)
        role = service.create_role("support")

        with pytest.raises(DuplicateRoleError):
            service.update_role(role.id, "admin")

    def test_delete(self, memory_store):
        service = RoleService(memory_store)
        role = service.create_role("temporary")

        service.delete_role(role.id)

        with pytest.raises(RoleNotFoundError):
            service.get_role(role.id)
        with pytest.raises(RoleNotFoundError):
            service.delete_role(role.id)
