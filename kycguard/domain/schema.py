"""
Domain Schema — Pydantic models for roles, principals and KYC profiles.

These models are the canonical data structures of the core. Every service
reads and returns them; storage persists their JSON form. All models are
frozen: a mutation always produces a new snapshot via ``model_copy``.

Field names are snake_case in Python and camelCase on the wire (the alias
generator handles the boundary), so a payload shaped like the dashboard's
``{"kycStatus": {"riskScore": 40}}`` validates directly.
"""

from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _Model(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class KycStatusValue(str, enum.Enum):
    """States of the KYC workflow."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class KycLevel(str, enum.Enum):
    NONE = "none"
    BASIC = "basic"
    ENHANCED = "enhanced"
    FULL = "full"


class DocumentType(str, enum.Enum):
    PASSPORT = "passport"
    DRIVERS_LICENSE = "drivers_license"
    NATIONAL_ID = "national_id"
    SSN_LAST4 = "ssn_last4"
    TAX_ID = "tax_id"
    OTHER = "other"


class DocumentStatus(str, enum.Enum):
    """Review outcome of one identity document, derived from its stamps."""

    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class Importance(str, enum.Enum):
    """Completion importance tiers, most important first."""

    REQUIRED = "required"
    RECOMMENDED = "recommended"
    OPTIONAL = "optional"

    @property
    def rank(self) -> int:
        return _IMPORTANCE_RANK[self]


_IMPORTANCE_RANK = {
    Importance.REQUIRED: 0,
    Importance.RECOMMENDED: 1,
    Importance.OPTIONAL: 2,
}


class AmlRiskRating(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class ScreeningStatus(str, enum.Enum):
    NOT_CHECKED = "not_checked"
    CLEAR = "clear"
    FLAGGED = "flagged"
    BLOCKED = "blocked"


# ════════════════════════════════════════════════════════════════
# Permission Vocabulary
# ════════════════════════════════════════════════════════════════

PERM_SYSTEM_FULL_ACCESS = "system:full_access"
PERM_DASHBOARD_ACCESS = "dashboard:access"
PERM_USERS_MANAGE = "users:manage"
PERM_ROLES_VIEW = "roles:view"
PERM_ROLES_CREATE = "roles:create"
PERM_ROLES_EDIT = "roles:edit"
PERM_ROLES_DELETE = "roles:delete"
PERM_KYC_VIEW = "kyc:view"
PERM_KYC_MANAGE = "kyc:manage"

ALL_PERMISSIONS: tuple[str, ...] = (
    # System
    PERM_SYSTEM_FULL_ACCESS, "security:manage", "users:delete", "system:destroy", "system:read",
    # User management
    "users:read", "users:write", PERM_USERS_MANAGE, "users:impersonate",
    # Dashboard and reports
    PERM_DASHBOARD_ACCESS, "reports:read", "reports:write", "analytics:read", "analytics:write",
    # Financial
    "billing:manage", "invoices:manage", "refunds:process", "payouts:manage", "taxes:manage",
    "financial_reports:view", "financial_reports:export",
    # Marketing
    "discounts:manage", "campaigns:manage", "announcements:manage",
    # Support
    "subscribers:lookup", "plans:change_non_financial", "receipts:resend", "cancellations:initiate",
    # Role management
    PERM_ROLES_VIEW, PERM_ROLES_CREATE, PERM_ROLES_EDIT, PERM_ROLES_DELETE,
    # KYC
    PERM_KYC_VIEW, PERM_KYC_MANAGE,
)

PROTECTED_ROLES: frozenset[str] = frozenset({"superadmin", "admin", "user"})

MIN_HIERARCHY = 1
MAX_HIERARCHY = 7


# ════════════════════════════════════════════════════════════════
# Access Models
# ════════════════════════════════════════════════════════════════


class Role(_Model):
    """
    A role definition: a named rank in the 1–7 hierarchy plus a permission set.

    ``user_count`` is denormalized and advisory; it is only trusted for the
    in-use check on deletion.
    """

    name: str = Field(description="Immutable unique slug, e.g. 'finance_admin'")
    display_name: str
    description: str = ""
    hierarchy: int = Field(ge=MIN_HIERARCHY, le=MAX_HIERARCHY)
    permissions: frozenset[str] = frozenset()
    color: str = "#6B7280"
    icon: str = "Shield"
    is_active: bool = True
    user_count: int = Field(default=0, ge=0)
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None

    @property
    def is_protected(self) -> bool:
        return self.name in PROTECTED_ROLES


class Principal(_Model):
    """
    The authenticated actor of a request.

    Reconstructed per request from a trusted, already-verified token. The
    ``hierarchy`` is the value cached at token-issue time.
    """

    subject: str = Field(description="User identity of the actor")
    role: str
    explicit_permissions: frozenset[str] = frozenset()
    hierarchy: int = 0


# ════════════════════════════════════════════════════════════════
# KYC Profile Sections
# ════════════════════════════════════════════════════════════════


class Address(_Model):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    is_primary: bool = False
    type: Literal["home", "work", "billing", "shipping", "other"] | None = None


class PersonalInfo(_Model):
    first_name: str | None = None
    last_name: str | None = None
    middle_name: str | None = None
    date_of_birth: date | None = None
    gender: Literal["male", "female", "other", "prefer_not_to_say"] | None = None
    nationality: str | None = None
    citizenship: tuple[str, ...] = ()
    marital_status: (
        Literal["single", "married", "divorced", "widowed", "separated", "other"] | None
    ) = None
    dependents: int | None = Field(default=None, ge=0)


class EmergencyContact(_Model):
    name: str | None = None
    relationship: str | None = None
    phone: str | None = None
    email: str | None = None


class ContactInfo(_Model):
    primary_phone: str | None = None
    alternate_phone: str | None = None
    addresses: tuple[Address, ...] = ()
    emergency_contact: EmergencyContact | None = None

    @property
    def primary_address(self) -> Address | None:
        for address in self.addresses:
            if address.is_primary:
                return address
        return self.addresses[0] if self.addresses else None


class MoneyAmount(_Model):
    amount: Decimal | None = None
    currency: str | None = None


class Employment(_Model):
    employment_status: (
        Literal["employed", "self_employed", "unemployed", "student", "retired", "other"] | None
    ) = None
    employer: str | None = None
    job_title: str | None = None
    industry: str | None = None
    annual_income: MoneyAmount | None = None
    work_address: Address | None = None


class FinancialProfile(_Model):
    net_worth: MoneyAmount | None = None
    liquid_assets: MoneyAmount | None = None
    investment_experience: (
        Literal["none", "limited", "moderate", "extensive", "professional"] | None
    ) = None
    risk_tolerance: (
        Literal["conservative", "moderate", "aggressive", "very_aggressive"] | None
    ) = None
    investment_objectives: tuple[str, ...] = ()
    time_horizon: Literal["short_term", "medium_term", "long_term"] | None = None


class IdentityDocument(_Model):
    """
    An identity document attached to a profile.

    ``verified_at`` and ``verified_by`` are present exactly when
    ``is_verified`` is true. A rejection carries its reason, time and
    reviewer together and never coexists with verification. The only way
    to change these fields is ``with_verification`` or ``with_rejection``.
    """

    id: UUID = Field(default_factory=uuid4)
    type: DocumentType
    number: str | None = None
    issuing_country: str | None = None
    issuing_state: str | None = None
    issue_date: date | None = None
    expiry_date: date | None = None
    is_verified: bool = False
    verified_at: datetime | None = None
    verified_by: str | None = None
    rejection_reason: str | None = None
    rejected_at: datetime | None = None
    rejected_by: str | None = None

    @model_validator(mode="after")
    def _check_verification_pairing(self) -> "IdentityDocument":
        stamped = self.verified_at is not None and self.verified_by is not None
        unstamped = self.verified_at is None and self.verified_by is None
        if self.is_verified and not stamped:
            raise ValueError("verified document requires verified_at and verified_by")
        if not self.is_verified and not unstamped:
            raise ValueError("unverified document must not carry verified_at/verified_by")

        rejection = (self.rejection_reason, self.rejected_at, self.rejected_by)
        if any(value is not None for value in rejection):
            if not all(value is not None for value in rejection):
                raise ValueError("rejection requires rejection_reason, rejected_at and rejected_by")
            if not self.rejection_reason.strip():
                raise ValueError("rejection_reason must not be blank")
            if self.is_verified:
                raise ValueError("a document cannot be both verified and rejected")
        return self

    @property
    def status(self) -> DocumentStatus:
        if self.is_verified:
            return DocumentStatus.VERIFIED
        if self.rejection_reason is not None:
            return DocumentStatus.REJECTED
        return DocumentStatus.PENDING

    def with_verification(
        self, verified: bool, actor: str, at: datetime
    ) -> "IdentityDocument":
        """Verify, or reset to pending. Either way any rejection is cleared."""
        update = {"rejection_reason": None, "rejected_at": None, "rejected_by": None}
        if verified:
            update.update(is_verified=True, verified_at=at, verified_by=actor)
        else:
            update.update(is_verified=False, verified_at=None, verified_by=None)
        return self.model_copy(update=update)

    def with_rejection(self, reason: str, actor: str, at: datetime) -> "IdentityDocument":
        return self.model_copy(
            update={
                "is_verified": False,
                "verified_at": None,
                "verified_by": None,
                "rejection_reason": reason,
                "rejected_at": at,
                "rejected_by": actor,
            }
        )


class KycCompletedStep(_Model):
    step: str
    completed_at: datetime = Field(default_factory=utc_now)
    verified_by: str | None = None


class KycStatus(_Model):
    """Embedded KYC state of a profile."""

    level: KycLevel = KycLevel.NONE
    status: KycStatusValue = KycStatusValue.NOT_STARTED
    completed_steps: tuple[KycCompletedStep, ...] = ()
    submitted_at: datetime | None = None
    reviewed_at: datetime | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    expires_at: datetime | None = None
    rejection_reason: str | None = None
    reviewed_by: str | None = None
    risk_score: int = Field(default=0, ge=0, le=100)
    next_review_date: date | None = None

    @model_validator(mode="after")
    def _check_rejection_reason(self) -> "KycStatus":
        if self.status == KycStatusValue.REJECTED and not (self.rejection_reason or "").strip():
            raise ValueError("rejected status requires a rejection_reason")
        return self


class ScreeningCheck(_Model):
    status: ScreeningStatus = ScreeningStatus.NOT_CHECKED
    last_checked: datetime | None = None
    provider: str | None = None


class Compliance(_Model):
    sanctions_check: ScreeningCheck = Field(default_factory=ScreeningCheck)
    pep_check: ScreeningCheck = Field(default_factory=ScreeningCheck)
    aml_risk_rating: AmlRiskRating | None = None


class MissingField(_Model):
    field: str
    category: str
    importance: Importance


class ProfileCompletion(_Model):
    percentage: int = Field(default=0, ge=0, le=100)
    missing_fields: tuple[MissingField, ...] = ()
    last_updated: datetime | None = None


class Deactivation(_Model):
    reason: str
    deactivated_by: str
    deactivated_at: datetime = Field(default_factory=utc_now)


class KycProfile(_Model):
    """
    The subscriber KYC aggregate, one per user identity.

    Profiles are never physically deleted; ``deactivation`` records the
    soft delete and keeps the history intact.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    personal_info: PersonalInfo = Field(default_factory=PersonalInfo)
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    employment: Employment = Field(default_factory=Employment)
    financial_profile: FinancialProfile = Field(default_factory=FinancialProfile)
    identity_documents: tuple[IdentityDocument, ...] = ()
    kyc_status: KycStatus = Field(default_factory=KycStatus)
    compliance: Compliance = Field(default_factory=Compliance)
    profile_completion: ProfileCompletion = Field(default_factory=ProfileCompletion)
    deactivation: Deactivation | None = None
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.deactivation is None

    def is_owned_by(self, principal: Principal) -> bool:
        return principal.subject == self.user_id

    def find_document(self, document_id: UUID) -> IdentityDocument | None:
        for document in self.identity_documents:
            if document.id == document_id:
                return document
        return None


# ════════════════════════════════════════════════════════════════
# Built-in Roles
# ════════════════════════════════════════════════════════════════

_BASE = ("dashboard:access", "system:read")

BUILTIN_ROLES: dict[str, Role] = {
    "user": Role(
        name="user",
        display_name="User",
        description="Subscriber account",
        hierarchy=1,
        permissions=frozenset(_BASE),
        icon="Users",
    ),
    "read_only": Role(
        name="read_only",
        display_name="Read Only",
        hierarchy=2,
        permissions=frozenset(
            _BASE + ("users:read", "reports:read", "analytics:read", PERM_ROLES_VIEW)
        ),
        icon="Eye",
    ),
    "support": Role(
        name="support",
        display_name="Support",
        hierarchy=3,
        permissions=frozenset(
            _BASE
            + (
                "subscribers:lookup", "plans:change_non_financial", "receipts:resend",
                "cancellations:initiate", "users:impersonate", "users:read", "users:write",
                "reports:read", PERM_ROLES_VIEW, PERM_KYC_VIEW,
            )
        ),
    ),
    "growth_marketing": Role(
        name="growth_marketing",
        display_name="Growth Marketing",
        hierarchy=4,
        permissions=frozenset(
            _BASE
            + (
                "discounts:manage", "campaigns:manage", "announcements:manage",
                "analytics:read", "users:read", "reports:read", PERM_ROLES_VIEW,
            )
        ),
        icon="Users",
    ),
    "finance_admin": Role(
        name="finance_admin",
        display_name="Finance Admin",
        hierarchy=5,
        permissions=frozenset(
            _BASE
            + (
                "billing:manage", "invoices:manage", "refunds:process", "payouts:manage",
                "taxes:manage", "financial_reports:view", "financial_reports:export",
                "users:read", "reports:read", PERM_ROLES_VIEW,
            )
        ),
    ),
    "admin": Role(
        name="admin",
        display_name="Admin",
        hierarchy=6,
        permissions=frozenset(
            _BASE
            + (
                "users:read", "users:write", PERM_USERS_MANAGE, "reports:read", "reports:write",
                "analytics:read", "analytics:write", PERM_ROLES_VIEW, PERM_ROLES_EDIT,
                PERM_KYC_VIEW, PERM_KYC_MANAGE,
            )
        ),
        icon="Crown",
    ),
    "superadmin": Role(
        name="superadmin",
        display_name="Super Admin",
        hierarchy=7,
        permissions=frozenset(ALL_PERMISSIONS),
        icon="Crown",
    ),
}


# ════════════════════════════════════════════════════════════════
# Request DTOs
# ════════════════════════════════════════════════════════════════


class RoleCreate(_Model):
    """Payload for creating a custom role. Bounds are checked by RoleAdministration."""

    name: str
    display_name: str
    description: str = ""
    hierarchy: int
    permissions: frozenset[str] = frozenset()
    color: str = "#6B7280"
    icon: str = "Shield"
    is_active: bool = True


class RolePatch(_Model):
    """Mutable role fields. ``name`` and ``hierarchy`` are deliberately absent."""

    model_config = ConfigDict(extra="forbid")

    display_name: str | None = None
    description: str | None = None
    permissions: frozenset[str] | None = None
    color: str | None = None
    icon: str | None = None
    is_active: bool | None = None


class ProfilePatch(_Model):
    """Subscriber-editable sections of a profile."""

    model_config = ConfigDict(extra="forbid")

    personal_info: PersonalInfo | None = None
    contact_info: ContactInfo | None = None
    employment: Employment | None = None
    financial_profile: FinancialProfile | None = None


class DocumentSubmission(_Model):
    """A new identity document; verification fields cannot be supplied."""

    model_config = ConfigDict(extra="forbid")

    type: DocumentType
    number: str
    issuing_country: str | None = None
    issuing_state: str | None = None
    issue_date: date | None = None
    expiry_date: date | None = None


class TransitionOptions(_Model):
    rejection_reason: str | None = None
    level: KycLevel | None = None
    risk_score: int | None = None


ProfileSortKey = Literal["created_at", "updated_at", "submitted_at", "completion", "risk_score", "name"]


class ProfileListQuery(_Model):
    """
    Filters for the administrator profile listing.

    ``completion_range`` takes the dashboard's ``"lo-hi"`` form (e.g.
    ``"50-75"``) and, when given, overrides ``completion_min`` and
    ``completion_max``.
    """

    model_config = ConfigDict(extra="forbid")

    kyc_status: KycStatusValue | None = None
    kyc_level: KycLevel | None = None
    completion_min: int = Field(default=0, ge=0, le=100)
    completion_max: int = Field(default=100, ge=0, le=100)
    completion_range: str | None = None
    search: str | None = None
    include_inactive: bool = False
    sort_by: ProfileSortKey = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)

    @model_validator(mode="after")
    def _check_completion_bounds(self) -> "ProfileListQuery":
        low, high = self.completion_bounds
        if not 0 <= low <= high <= 100:
            raise ValueError("completion range must satisfy 0 <= lo <= hi <= 100")
        return self

    @property
    def completion_bounds(self) -> tuple[int, int]:
        if self.completion_range is None:
            return self.completion_min, self.completion_max
        low, sep, high = self.completion_range.partition("-")
        if not sep or not low.strip().isdigit() or not high.strip().isdigit():
            raise ValueError(f"completion range '{self.completion_range}' is not of the form lo-hi")
        return int(low), int(high)


def revalidate(model: _Model, **update) -> _Model:
    """Return a copy of ``model`` with ``update`` applied and all validators re-run."""
    data = model.model_dump()
    data.update(update)
    return type(model).model_validate(data)
