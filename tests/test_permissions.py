"""
Tests for the Permission Evaluator.

Validates:
- can() is exactly membership in the effective permission set
- Explicit overrides compose with the role's permissions
- Fail-closed behaviour for unknown, inactive and unreadable roles
- Hierarchy gating
"""

from __future__ import annotations

import pytest

from factories import memory_core, principal
from kycguard.access.catalog import RoleCatalog, seed_builtin_roles
from kycguard.access.permissions import PermissionDecision, PermissionEvaluator
from kycguard.domain.schema import (
    ALL_PERMISSIONS,
    BUILTIN_ROLES,
    PERM_KYC_MANAGE,
    PERM_KYC_VIEW,
    PERM_ROLES_CREATE,
    PERM_SYSTEM_FULL_ACCESS,
    Role,
)
from kycguard.errors import PermissionDenied
from kycguard.storage.memory import InMemoryStore
from kycguard.storage.stores import memory_role_store


class BrokenRoleStore(InMemoryStore):
    def find(self, key):
        raise RuntimeError("role table unavailable")


class TestEffectivePermissions:
    """can(P, X) == X in effective_permissions(P)."""

    def setup_method(self):
        self.core, _ = memory_core()
        self.evaluator = self.core.evaluator

    @pytest.mark.parametrize("role_name", sorted(BUILTIN_ROLES))
    def test_can_matches_effective_set(self, role_name):
        actor = principal(role_name)
        effective = self.evaluator.effective_permissions(actor)
        for permission in ALL_PERMISSIONS:
            assert self.evaluator.can(actor, permission) == (permission in effective)

    def test_effective_set_is_role_set_for_builtin_roles(self):
        actor = principal("finance_admin")
        assert self.evaluator.effective_permissions(actor) == BUILTIN_ROLES["finance_admin"].permissions

    def test_superadmin_holds_every_permission(self):
        actor = principal("superadmin")
        assert self.evaluator.can_all(actor, ALL_PERMISSIONS)

    def test_override_is_merged_with_role_set(self):
        actor = principal("support", permissions=(PERM_KYC_MANAGE,))
        effective = self.evaluator.effective_permissions(actor)
        assert PERM_KYC_MANAGE in effective
        assert BUILTIN_ROLES["support"].permissions <= effective

    def test_support_without_override_cannot_manage_kyc(self):
        assert not self.evaluator.can(principal("support"), PERM_KYC_MANAGE)

    def test_can_any_and_can_all(self):
        actor = principal("admin")
        assert self.evaluator.can_any(actor, [PERM_ROLES_CREATE, PERM_KYC_MANAGE])
        assert not self.evaluator.can_all(actor, [PERM_ROLES_CREATE, PERM_KYC_MANAGE])
        assert not self.evaluator.can_any(actor, [])

    def test_check_explains_grant_source(self):
        by_role = self.evaluator.check(principal("support"), PERM_KYC_VIEW)
        assert by_role.decision == PermissionDecision.ALLOWED
        assert "role" in by_role.reason

        by_override = self.evaluator.check(
            principal("support", permissions=(PERM_KYC_MANAGE,)), PERM_KYC_MANAGE
        )
        assert by_override.is_allowed
        assert "override" in by_override.reason

        denied = self.evaluator.check(principal("user"), PERM_KYC_VIEW)
        assert denied.decision == PermissionDecision.DENIED

    def test_require_raises_permission_denied(self):
        with pytest.raises(PermissionDenied) as exc_info:
            self.evaluator.require(principal("user"), PERM_KYC_MANAGE, action="Verifying")
        assert exc_info.value.code.value == "PERMISSION_DENIED"

    def test_require_passes_on_any_listed_permission(self):
        self.evaluator.require(
            principal("superadmin"), PERM_SYSTEM_FULL_ACCESS, PERM_ROLES_CREATE, action="Creating",
        )


class TestFailClosed:
    """Unknown, inactive or unreadable roles grant nothing, overrides included."""

    def setup_method(self):
        self.core, _ = memory_core()
        self.evaluator = self.core.evaluator

    def test_unknown_role_denies_everything(self):
        ghost = principal("ghost_role", permissions=tuple(ALL_PERMISSIONS), hierarchy=7)
        assert self.evaluator.effective_permissions(ghost) == frozenset()
        for permission in ALL_PERMISSIONS:
            assert self.evaluator.can(ghost, permission) is False
        assert not self.evaluator.can_all(ghost, [])
        assert self.evaluator.rank_of(ghost) == 0
        assert not self.evaluator.can_access_kyc(ghost)

    def test_deleted_role_denies_everything(self):
        superadmin = principal("superadmin")
        self.core.role_admin.create(
            {"name": "kyc_reviewer", "displayName": "KYC Reviewer", "hierarchy": 4,
             "permissions": [PERM_KYC_MANAGE]},
            superadmin,
        )
        reviewer = principal("kyc_reviewer", hierarchy=4)
        assert self.evaluator.can(reviewer, PERM_KYC_MANAGE)

        self.core.role_admin.delete("kyc_reviewer", superadmin)
        assert not self.evaluator.can(reviewer, PERM_KYC_MANAGE)

    def test_inactive_role_denies_everything(self):
        superadmin = principal("superadmin")
        self.core.role_admin.create(
            {"name": "auditor", "displayName": "Auditor", "hierarchy": 3,
             "permissions": [PERM_KYC_VIEW]},
            superadmin,
        )
        self.core.role_admin.update("auditor", {"isActive": False}, superadmin)
        auditor = principal("auditor", permissions=(PERM_KYC_MANAGE,), hierarchy=3)
        assert not self.evaluator.can(auditor, PERM_KYC_VIEW)
        assert not self.evaluator.can(auditor, PERM_KYC_MANAGE)

    def test_lookup_failure_denies_instead_of_raising(self):
        broken = BrokenRoleStore(Role, lambda r: r.name)
        evaluator = PermissionEvaluator(RoleCatalog(broken))
        admin = principal("admin", permissions=(PERM_KYC_MANAGE,))
        assert evaluator.can(admin, PERM_KYC_MANAGE) is False
        assert evaluator.check(admin, PERM_KYC_MANAGE).decision == PermissionDecision.DENIED
        assert evaluator.rank_of(admin) == 0


class TestHierarchy:
    def setup_method(self):
        store = memory_role_store()
        seed_builtin_roles(store)
        self.evaluator = PermissionEvaluator(RoleCatalog(store), kyc_admin_min_hierarchy=6)

    def test_hierarchy_at_least(self):
        admin = principal("admin")
        assert self.evaluator.hierarchy_at_least(admin, 6)
        assert not self.evaluator.hierarchy_at_least(admin, 7)

    def test_token_rank_is_capped_by_role_rank(self):
        inflated = principal("support", hierarchy=7)
        assert self.evaluator.rank_of(inflated) == 3

    def test_stale_token_rank_is_not_raised(self):
        stale = principal("admin", hierarchy=2)
        assert self.evaluator.rank_of(stale) == 2

    def test_outranks_is_strict(self):
        admin = principal("admin")
        assert self.evaluator.outranks(admin, 5)
        assert not self.evaluator.outranks(admin, 6)

    @pytest.mark.parametrize(
        "role_name, allowed",
        [
            ("user", False),
            ("read_only", False),
            ("support", True),
            ("growth_marketing", False),
            ("finance_admin", False),
            ("admin", True),
            ("superadmin", True),
        ],
    )
    def test_kyc_page_access(self, role_name, allowed):
        assert self.evaluator.can_access_kyc(principal(role_name)) is allowed

    def test_high_rank_grants_kyc_access_without_named_permission(self):
        store = memory_role_store()
        seed_builtin_roles(store)
        evaluator = PermissionEvaluator(RoleCatalog(store), kyc_admin_min_hierarchy=5)
        assert evaluator.can_access_kyc(principal("finance_admin"))
