"""
Boundary normalization of loosely shaped payloads.

Role and token payloads arrive with either camelCase or snake_case keys,
with ``level`` standing in for ``hierarchy``, and with optional fields
missing. Every default is applied here, once, before the payload is
validated into a typed model. Nothing past this module sees the raw
shapes.
"""

from __future__ import annotations

from typing import Any, Mapping, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError
from pydantic.alias_generators import to_snake

from kycguard.domain.schema import Principal, Role, RoleCreate
from kycguard.errors import ValidationError, from_pydantic

M = TypeVar("M", bound=BaseModel)

ROLE_DEFAULTS: dict[str, Any] = {
    "description": "",
    "permissions": (),
    "color": "#6B7280",
    "icon": "Shield",
    "is_active": True,
    "user_count": 0,
}


def coerce(model: type[M], value: Any) -> M:
    """Validate ``value`` into ``model``; instances pass through unchanged."""
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except PydanticValidationError as exc:
        raise from_pydantic(exc) from exc


def _snake_keys(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {to_snake(str(key)): value for key, value in payload.items()}


def _canonical_role_fields(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = _snake_keys(payload)

    # `level` is the legacy spelling of `hierarchy`.
    level = data.pop("level", None)
    if level is not None:
        if data.get("hierarchy") is not None and data["hierarchy"] != level:
            raise ValidationError(
                f"Conflicting hierarchy ({data['hierarchy']}) and level ({level})",
                field="hierarchy",
            )
        data["hierarchy"] = level

    name = data.get("name")
    if not data.get("display_name") and isinstance(name, str):
        data["display_name"] = name.replace("_", " ").strip().title()

    for key, default in ROLE_DEFAULTS.items():
        if data.get(key) is None:
            data[key] = default
    return data


def role_from_payload(payload: Mapping[str, Any]) -> Role:
    """Build a stored Role from an API or seed payload."""
    return coerce(Role, _canonical_role_fields(payload))


def role_create_from_payload(payload: Mapping[str, Any]) -> RoleCreate:
    data = _canonical_role_fields(payload)
    data.pop("user_count", None)
    allowed = RoleCreate.model_fields
    return coerce(RoleCreate, {k: v for k, v in data.items() if k in allowed})


def role_to_payload(role: Role) -> dict[str, Any]:
    """camelCase wire form of a role, with ``level`` mirrored for older clients."""
    payload = role.model_dump(mode="json", by_alias=True)
    payload["permissions"] = sorted(role.permissions)
    payload["level"] = role.hierarchy
    return payload


def principal_from_claims(claims: Mapping[str, Any]) -> Principal:
    """
    Rebuild the request principal from already-verified token claims.

    Accepts ``sub``/``id``/``userId`` for the subject, ``permissions`` or
    ``explicitPermissions`` for the overrides and ``hierarchy``/``level``
    for the cached rank. A token without a role is rejected outright.
    """
    data = _snake_keys(claims)

    subject = data.get("sub") or data.get("id") or data.get("user_id")
    if not subject:
        raise ValidationError("Token claims carry no subject", field="sub")
    role = data.get("role")
    if not role:
        raise ValidationError("Token claims carry no role", field="role")

    permissions = data.get("explicit_permissions")
    if permissions is None:
        permissions = data.get("permissions") or ()

    hierarchy = data.get("hierarchy")
    if hierarchy is None:
        hierarchy = data.get("level", 0)

    return coerce(
        Principal,
        {
            "subject": str(subject),
            "role": str(role),
            "explicit_permissions": frozenset(permissions),
            "hierarchy": hierarchy,
        },
    )
