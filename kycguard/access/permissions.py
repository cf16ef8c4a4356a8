"""
Permission Evaluator — capability checks for every administrative action.

Two independent axes are answered here:

- Permissions: "can this actor do X" — the union of the role's permission
  set and the principal's explicit overrides.
- Hierarchy: "does this actor outrank Y" — the 1–7 rank of the role, used
  for coarse gating where no named permission exists (e.g. the KYC pages).

The evaluator FAILS CLOSED. A principal whose role is unknown, inactive,
or cannot be looked up has no permissions and no rank, overrides
included. Lookup problems are logged, never raised to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from kycguard.access.catalog import RoleCatalog
from kycguard.domain.schema import (
    PERM_KYC_MANAGE,
    PERM_KYC_VIEW,
    Principal,
    Role,
)
from kycguard.errors import PermissionDenied, RoleNotFound

logger = logging.getLogger(__name__)


class PermissionDecision(str, Enum):
    """Result of a permission check."""

    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass
class PermissionCheckResult:
    """Result of checking one permission for one principal."""

    decision: PermissionDecision
    permission: str
    subject: str
    role: str
    reason: str

    @property
    def is_allowed(self) -> bool:
        return self.decision == PermissionDecision.ALLOWED


class PermissionEvaluator:
    """
    Central authorization engine.

    Every mutating operation in the core consults this evaluator before
    touching state; on denial the operation never reaches storage.
    """

    def __init__(self, catalog: RoleCatalog, kyc_admin_min_hierarchy: int = 6) -> None:
        self.catalog = catalog
        self.kyc_admin_min_hierarchy = kyc_admin_min_hierarchy

    def resolve_role(self, principal: Principal) -> Role | None:
        """The principal's active role, or None (which means deny everything)."""
        try:
            role = self.catalog.get(principal.role)
        except RoleNotFound:
            logger.warning(
                "Unknown role for principal: subject=%s role=%s",
                principal.subject, principal.role,
            )
            return None
        except Exception:
            logger.exception(
                "Role lookup failed, denying: subject=%s role=%s",
                principal.subject, principal.role,
            )
            return None

        if not role.is_active:
            logger.warning(
                "Inactive role for principal: subject=%s role=%s",
                principal.subject, principal.role,
            )
            return None
        return role

    def effective_permissions(self, principal: Principal) -> frozenset[str]:
        role = self.resolve_role(principal)
        if role is None:
            return frozenset()
        return role.permissions | principal.explicit_permissions

    def check(self, principal: Principal, permission: str) -> PermissionCheckResult:
        """Check one permission and explain the decision."""
        role = self.resolve_role(principal)
        if role is None:
            return PermissionCheckResult(
                decision=PermissionDecision.DENIED,
                permission=permission,
                subject=principal.subject,
                role=principal.role,
                reason=f"Role '{principal.role}' is unknown or inactive",
            )

        if permission in role.permissions:
            decision, reason = PermissionDecision.ALLOWED, f"Granted by role '{role.name}'"
        elif permission in principal.explicit_permissions:
            decision, reason = PermissionDecision.ALLOWED, "Granted by explicit override"
        else:
            decision, reason = (
                PermissionDecision.DENIED,
                f"Not granted to role '{role.name}' or by override",
            )
        return PermissionCheckResult(
            decision=decision,
            permission=permission,
            subject=principal.subject,
            role=role.name,
            reason=reason,
        )

    def can(self, principal: Principal, permission: str) -> bool:
        return permission in self.effective_permissions(principal)

    def can_any(self, principal: Principal, permissions: Iterable[str]) -> bool:
        effective = self.effective_permissions(principal)
        return any(p in effective for p in permissions)

    def can_all(self, principal: Principal, permissions: Iterable[str]) -> bool:
        if self.resolve_role(principal) is None:
            return False
        effective = self.effective_permissions(principal)
        return all(p in effective for p in permissions)

    def rank_of(self, principal: Principal) -> int:
        """
        The principal's effective rank: the token's cached hierarchy, capped
        by the role's current hierarchy. 0 when the role does not resolve.
        """
        role = self.resolve_role(principal)
        if role is None:
            return 0
        return min(principal.hierarchy, role.hierarchy)

    def hierarchy_at_least(self, principal: Principal, level: int) -> bool:
        return self.rank_of(principal) >= level

    def outranks(self, principal: Principal, level: int) -> bool:
        """Strictly above ``level``; the rule for managing roles."""
        return self.rank_of(principal) > level

    def can_access_kyc(self, principal: Principal) -> bool:
        """Coarse gate for subscriber KYC data (admin-class roles)."""
        return (
            self.can_any(principal, (PERM_KYC_VIEW, PERM_KYC_MANAGE))
            or self.hierarchy_at_least(principal, self.kyc_admin_min_hierarchy)
        )

    def require(self, principal: Principal, *permissions: str, action: str) -> None:
        """Raise PermissionDenied unless the principal holds any of ``permissions``."""
        if self.can_any(principal, permissions):
            return
        logger.info(
            "Permission denied: subject=%s role=%s action=%s needs=%s",
            principal.subject, principal.role, action, ",".join(permissions),
        )
        raise PermissionDenied(
            f"{action} requires one of: {', '.join(permissions)}"
        )
