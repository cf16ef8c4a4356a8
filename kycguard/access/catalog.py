"""
Role Catalog — read side of the role table.

Lookups by name go straight to storage so an authorization decision never
sees a deleted role. Listing goes through a read-through cache whose
staleness is bounded by ``cache_ttl_seconds``; RoleAdministration
invalidates it on every write.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from kycguard.cache import ReadThroughCache
from kycguard.domain.schema import BUILTIN_ROLES, Role
from kycguard.errors import VersionConflict
from kycguard.storage.base import AggregateStore

logger = logging.getLogger(__name__)


class RoleCatalog:
    """Role definitions by name, plus hierarchy lookups."""

    def __init__(
        self,
        store: AggregateStore[Role],
        cache_ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self._list_cache: ReadThroughCache[list[Role]] = ReadThroughCache(
            lambda _key: self.store.list_all(),
            ttl_seconds=cache_ttl_seconds,
            clock=clock,
        )

    def get(self, name: str) -> Role:
        """Return the role or raise RoleNotFound."""
        return self.store.load(name)

    def find(self, name: str) -> Role | None:
        return self.store.find(name)

    def list(self, include_inactive: bool = False) -> list[Role]:
        """Roles ordered from most to least privileged."""
        roles = self._list_cache.get("all")
        if not include_inactive:
            roles = [r for r in roles if r.is_active]
        return sorted(roles, key=lambda r: (-r.hierarchy, r.name))

    def hierarchy_of(self, name: str) -> int:
        return self.get(name).hierarchy

    def invalidate(self) -> None:
        self._list_cache.invalidate()


def seed_builtin_roles(
    store: AggregateStore[Role],
    roles: Iterable[Role] = BUILTIN_ROLES.values(),
) -> int:
    """Insert any missing built-in roles. Returns how many were created."""
    created = 0
    for role in roles:
        if store.find(role.name) is not None:
            continue
        try:
            store.save(role, expected_version=0)
        except VersionConflict:
            # Seeded concurrently by another process.
            continue
        created += 1
    if created:
        logger.info("Seeded %d built-in roles", created)
    return created
