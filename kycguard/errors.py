"""
Error taxonomy for the authorization and KYC core.

Every failure crossing the core's boundary is one of the exceptions below.
Each carries a stable, language-neutral ``code`` so the API layer can map
it to a response without parsing messages:

- Authorization errors fail closed (``PERMISSION_DENIED``)
- Validation errors name the offending field (``VALIDATION_ERROR``)
- State errors are raised before any mutation (``INVALID_TRANSITION``,
  ``PROTECTED_ROLE``, ``ROLE_IN_USE``)
- Concurrency errors are retryable (``VERSION_CONFLICT``)
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorCode(str, enum.Enum):
    """Stable error codes returned across the core's boundary."""

    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PROTECTED_ROLE = "PROTECTED_ROLE"
    ROLE_IN_USE = "ROLE_IN_USE"
    VERSION_CONFLICT = "VERSION_CONFLICT"


class KycGuardError(Exception):
    """Base class for all typed core errors."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    retryable: bool = False

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.field is not None:
            payload["field"] = self.field
        return payload


class PermissionDenied(KycGuardError):
    code = ErrorCode.PERMISSION_DENIED


class NotFound(KycGuardError):
    code = ErrorCode.NOT_FOUND


class RoleNotFound(NotFound):
    pass


class ProfileNotFound(NotFound):
    pass


class DocumentNotFound(NotFound):
    pass


class InvalidTransition(KycGuardError):
    code = ErrorCode.INVALID_TRANSITION


class ValidationError(KycGuardError):
    code = ErrorCode.VALIDATION_ERROR


class ProtectedRole(KycGuardError):
    code = ErrorCode.PROTECTED_ROLE


class RoleInUse(KycGuardError):
    code = ErrorCode.ROLE_IN_USE


class VersionConflict(KycGuardError):
    """Raised when a save's expected version no longer matches storage.

    The caller decides whether to re-read and reapply; the core never
    retries on its own.
    """

    code = ErrorCode.VERSION_CONFLICT
    retryable = True


def from_pydantic(exc: Any) -> ValidationError:
    """Convert a pydantic ``ValidationError`` into the core's ValidationError."""
    errors = exc.errors()
    if not errors:
        return ValidationError(str(exc))
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    return ValidationError(first.get("msg", str(exc)), field=field)
