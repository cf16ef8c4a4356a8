"""
Role Administration — create, update and delete custom roles.

The role model protects itself with the same evaluator it feeds:

- create needs ``system:full_access`` or ``roles:create``
- update needs ``system:full_access`` or ``roles:edit``; ``name`` and
  ``hierarchy`` never change after creation
- delete needs ``system:full_access`` or ``roles:delete``; the protected
  roles (superadmin, admin, user) and roles still assigned to users can
  never be deleted

Outside ``system:full_access`` an actor may only manage roles ranked
strictly below its own, and may only grant permissions it holds itself.
All checks run before anything is written.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Mapping

from kycguard.access.catalog import RoleCatalog
from kycguard.access.permissions import PermissionEvaluator
from kycguard.audit.events import DomainEvent, DomainEventType, EventPublisher
from kycguard.domain.schema import (
    ALL_PERMISSIONS,
    MAX_HIERARCHY,
    MIN_HIERARCHY,
    PERM_ROLES_CREATE,
    PERM_ROLES_DELETE,
    PERM_ROLES_EDIT,
    PERM_SYSTEM_FULL_ACCESS,
    PERM_USERS_MANAGE,
    PROTECTED_ROLES,
    Principal,
    Role,
    RoleCreate,
    RolePatch,
    revalidate,
    utc_now,
)
from kycguard.domain.normalize import coerce, role_create_from_payload
from kycguard.errors import PermissionDenied, ProtectedRole, RoleInUse, ValidationError

logger = logging.getLogger(__name__)

ROLE_NAME_PATTERN = re.compile(r"^[a-z0-9_]+$")
MIN_ROLE_NAME_LENGTH = 3
IMMUTABLE_ROLE_FIELDS = ("name", "hierarchy", "level")


def normalize_role_name(name: str) -> str:
    """Lower-case and replace whitespace runs with underscores."""
    return re.sub(r"\s+", "_", name.strip().lower())


class RoleAdministration:
    """Write side of the role table."""

    def __init__(
        self,
        catalog: RoleCatalog,
        evaluator: PermissionEvaluator,
        publisher: EventPublisher | None = None,
        clock: Callable[[], Any] = utc_now,
    ) -> None:
        self.catalog = catalog
        self.store = catalog.store
        self.evaluator = evaluator
        self.publisher = publisher or EventPublisher()
        self.clock = clock

    # ── Create ──────────────────────────────────────────────────

    def create(self, payload: RoleCreate | Mapping[str, Any], actor: Principal) -> Role:
        self.evaluator.require(
            actor, PERM_SYSTEM_FULL_ACCESS, PERM_ROLES_CREATE, action="Creating roles",
        )
        if not isinstance(payload, RoleCreate):
            payload = role_create_from_payload(payload)

        name = normalize_role_name(payload.name)
        if len(name) < MIN_ROLE_NAME_LENGTH:
            raise ValidationError(
                f"Role name must be at least {MIN_ROLE_NAME_LENGTH} characters", field="name",
            )
        if not ROLE_NAME_PATTERN.match(name):
            raise ValidationError(
                "Role name may only contain lowercase letters, digits and underscores",
                field="name",
            )
        if not MIN_HIERARCHY <= payload.hierarchy <= MAX_HIERARCHY:
            raise ValidationError(
                f"Role level must be between {MIN_HIERARCHY} and {MAX_HIERARCHY}",
                field="hierarchy",
            )
        self._check_known_permissions(payload.permissions)
        self._check_outranks(actor, payload.hierarchy, "create")
        self._check_grantable(actor, payload.permissions)

        with self.store.locks.hold(name):
            if self.store.find(name) is not None:
                raise ValidationError(f"Role '{name}' already exists", field="name")

            role = Role(
                name=name,
                display_name=payload.display_name,
                description=payload.description,
                hierarchy=payload.hierarchy,
                permissions=payload.permissions,
                color=payload.color,
                icon=payload.icon,
                is_active=payload.is_active,
                created_at=self.clock(),
            )
            saved = self.store.save(role, expected_version=0)

        self.catalog.invalidate()
        logger.info(
            "Role created: name=%s hierarchy=%d permissions=%d by=%s",
            name, saved.hierarchy, len(saved.permissions), actor.subject,
        )
        self.publisher.publish(
            DomainEvent.by(
                actor, DomainEventType.ROLE_CREATED, name,
                hierarchy=saved.hierarchy, permissions=sorted(saved.permissions),
            )
        )
        return saved

    def duplicate(self, name: str, actor: Principal) -> Role:
        """Copy an existing role as ``<name>_copy``."""
        source = self.catalog.get(name)
        return self.create(
            RoleCreate(
                name=f"{source.name}_copy",
                display_name=f"{source.display_name} (Copy)",
                description=source.description,
                hierarchy=source.hierarchy,
                permissions=source.permissions,
                color=source.color,
                icon=source.icon,
                is_active=source.is_active,
            ),
            actor,
        )

    # ── Update ──────────────────────────────────────────────────

    def update(
        self, name: str, patch: RolePatch | Mapping[str, Any], actor: Principal
    ) -> Role:
        self.evaluator.require(
            actor, PERM_SYSTEM_FULL_ACCESS, PERM_ROLES_EDIT, action="Editing roles",
        )
        if isinstance(patch, Mapping):
            for immutable in IMMUTABLE_ROLE_FIELDS:
                if immutable in patch:
                    raise ValidationError(
                        f"'{immutable}' cannot be changed after creation", field=immutable,
                    )
        patch = coerce(RolePatch, patch)
        changes = patch.model_dump(exclude_none=True)
        if "permissions" in changes:
            self._check_known_permissions(changes["permissions"])

        with self.store.locks.hold(name):
            role = self.catalog.get(name)
            self._check_outranks(actor, role.hierarchy, "edit")
            if "permissions" in changes:
                self._check_grantable(actor, frozenset(changes["permissions"]) - role.permissions)
            if role.is_protected and changes.get("is_active") is False:
                raise ProtectedRole(f"Role '{name}' is protected and cannot be deactivated")

            updated = revalidate(role, **changes, updated_at=self.clock())
            saved = self.store.save(updated, expected_version=role.version)

        self.catalog.invalidate()
        logger.info("Role updated: name=%s fields=%s by=%s", name, sorted(changes), actor.subject)
        self.publisher.publish(
            DomainEvent.by(
                actor, DomainEventType.ROLE_UPDATED, name,
                changes=sorted(changes),
            )
        )
        return saved

    def adjust_user_count(self, name: str, delta: int, actor: Principal) -> Role:
        """Record role assignments (+n) or unassignments (-n)."""
        self.evaluator.require(
            actor, PERM_SYSTEM_FULL_ACCESS, PERM_USERS_MANAGE, action="Assigning roles",
        )
        with self.store.locks.hold(name):
            role = self.catalog.get(name)
            count = role.user_count + delta
            if count < 0:
                raise ValidationError(
                    f"Role '{name}' has only {role.user_count} assigned users", field="user_count",
                )
            saved = self.store.save(
                revalidate(role, user_count=count, updated_at=self.clock()),
                expected_version=role.version,
            )

        self.catalog.invalidate()
        self.publisher.publish(
            DomainEvent.by(actor, DomainEventType.ROLE_UPDATED, name, user_count=count)
        )
        return saved

    # ── Delete ──────────────────────────────────────────────────

    def delete(self, name: str, actor: Principal) -> Role:
        """Delete a custom role. Returns the last stored snapshot."""
        if name in PROTECTED_ROLES:
            raise ProtectedRole(f"Role '{name}' is a system role and cannot be deleted")
        self.evaluator.require(
            actor, PERM_SYSTEM_FULL_ACCESS, PERM_ROLES_DELETE, action="Deleting roles",
        )

        with self.store.locks.hold(name):
            role = self.catalog.get(name)
            self._check_outranks(actor, role.hierarchy, "delete")
            if role.user_count > 0:
                raise RoleInUse(
                    f"Role '{name}' is assigned to {role.user_count} user(s)"
                )
            self.store.delete(name, expected_version=role.version)

        self.catalog.invalidate()
        logger.info("Role deleted: name=%s by=%s", name, actor.subject)
        self.publisher.publish(
            DomainEvent.by(actor, DomainEventType.ROLE_DELETED, name, hierarchy=role.hierarchy)
        )
        return role

    # ── Internal ────────────────────────────────────────────────

    def _check_outranks(self, actor: Principal, level: int, verb: str) -> None:
        if self.evaluator.can(actor, PERM_SYSTEM_FULL_ACCESS):
            return
        if not self.evaluator.outranks(actor, level):
            raise PermissionDenied(
                f"Cannot {verb} a role at level {level} without outranking it"
            )

    def _check_grantable(self, actor: Principal, granted: frozenset[str]) -> None:
        # Nobody hands out what they do not hold; full access holds everything.
        if self.evaluator.can(actor, PERM_SYSTEM_FULL_ACCESS):
            return
        withheld = sorted(set(granted) - self.evaluator.effective_permissions(actor))
        if withheld:
            logger.info(
                "Role grant denied: subject=%s role=%s withheld=%s",
                actor.subject, actor.role, withheld,
            )
            raise PermissionDenied(
                f"Cannot grant permissions you do not hold: {', '.join(withheld)}"
            )

    @staticmethod
    def _check_known_permissions(permissions: frozenset[str]) -> None:
        unknown = sorted(set(permissions) - set(ALL_PERMISSIONS))
        if unknown:
            raise ValidationError(
                f"Unknown permissions: {', '.join(unknown)}", field="permissions",
            )

