"""Factories for the role and profile stores, one per backend."""

from __future__ import annotations

from typing import Any

from sqlalchemy.engine import Engine

from kycguard.domain.schema import KycProfile, Role
from kycguard.errors import ProfileNotFound, RoleNotFound
from kycguard.storage.memory import InMemoryStore
from kycguard.storage.models import KycProfileDB, RoleDB
from kycguard.storage.sql import SqlAlchemyStore


def role_index(role: Role) -> dict[str, Any]:
    return {"hierarchy": role.hierarchy, "is_active": role.is_active}


def profile_index(profile: KycProfile) -> dict[str, Any]:
    return {"user_id": profile.user_id, "kyc_status": profile.kyc_status.status.value}


def memory_role_store() -> InMemoryStore[Role]:
    return InMemoryStore(Role, lambda r: r.name, role_index, RoleNotFound)


def memory_profile_store() -> InMemoryStore[KycProfile]:
    return InMemoryStore(KycProfile, lambda p: p.id, profile_index, ProfileNotFound)


def sql_role_store(engine: Engine) -> SqlAlchemyStore[Role]:
    return SqlAlchemyStore(engine, RoleDB, Role, lambda r: r.name, role_index, RoleNotFound)


def sql_profile_store(engine: Engine) -> SqlAlchemyStore[KycProfile]:
    return SqlAlchemyStore(
        engine, KycProfileDB, KycProfile, lambda p: p.id, profile_index, ProfileNotFound,
    )
