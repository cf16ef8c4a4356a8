"""Shared preconditions for operations on a KYC profile."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from kycguard.access.permissions import PermissionEvaluator
from kycguard.domain.schema import KycProfile, Principal
from kycguard.errors import PermissionDenied, ValidationError
from kycguard.storage.base import AggregateStore

logger = logging.getLogger(__name__)


def require_active(profile: KycProfile) -> None:
    if not profile.is_active:
        raise ValidationError(
            f"Profile {profile.id} is deactivated and cannot be modified",
            field="deactivation",
        )


def load_for_actor(
    store: AggregateStore[KycProfile],
    key: UUID,
    actor: Principal,
    privileged: bool,
    action: str,
) -> KycProfile:
    """
    Load a profile on behalf of ``actor``.

    A privileged actor sees storage as it is, including ``NOT_FOUND``.
    Anyone else can only reach their own profile, so a missing profile
    and somebody else's profile are both denied the same way. Run this
    before ``require_active`` so deactivation is not disclosed either.
    """
    if privileged:
        return store.load(key)
    profile = store.find(key)
    if profile is None or not profile.is_owned_by(actor):
        logger.info(
            "KYC access denied: subject=%s role=%s profile=%s action=%s",
            actor.subject, actor.role, key, action,
        )
        raise PermissionDenied(f"{action} on another subscriber's profile is not permitted")
    return profile


def require_kyc_reader(
    evaluator: PermissionEvaluator, profile: KycProfile, actor: Principal
) -> None:
    if profile.is_owned_by(actor) or evaluator.can_access_kyc(actor):
        return
    logger.info(
        "KYC read denied: subject=%s role=%s profile=%s",
        actor.subject, actor.role, profile.id,
    )
    raise PermissionDenied("Viewing another subscriber's KYC profile requires KYC access")


def as_uuid(value: Any, field: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"'{value}' is not a valid identifier", field=field) from exc
