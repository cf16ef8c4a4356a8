"""
Profile Completion Calculator — how much of a KYC profile is filled in.

A pure function of the profile. Each tracked field carries an importance
tier; the tier sets both its weight in the percentage and its place in
the list of missing fields. The percentage is floored, so any gap at all
keeps it below 100.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from kycguard.domain.schema import (
    Importance,
    KycProfile,
    MissingField,
    MoneyAmount,
    ProfileCompletion,
)

IMPORTANCE_WEIGHTS: dict[Importance, int] = {
    Importance.REQUIRED: 3,
    Importance.RECOMMENDED: 2,
    Importance.OPTIONAL: 1,
}


@dataclass(frozen=True)
class TrackedField:
    field: str
    category: str
    importance: Importance
    read: Callable[[KycProfile], Any]


def _is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (tuple, list)):
        return len(value) > 0
    if isinstance(value, MoneyAmount):
        return value.amount is not None
    return True


def _emergency_contact(profile: KycProfile) -> Any:
    contact = profile.contact_info.emergency_contact
    if contact is None:
        return None
    return contact.name if _is_filled(contact.name) and _is_filled(contact.phone) else None


REQ, REC, OPT = Importance.REQUIRED, Importance.RECOMMENDED, Importance.OPTIONAL

TRACKED_FIELDS: tuple[TrackedField, ...] = (
    TrackedField("first_name", "personal_info", REQ, lambda p: p.personal_info.first_name),
    TrackedField("last_name", "personal_info", REQ, lambda p: p.personal_info.last_name),
    TrackedField("date_of_birth", "personal_info", REQ, lambda p: p.personal_info.date_of_birth),
    TrackedField("nationality", "personal_info", REQ, lambda p: p.personal_info.nationality),
    TrackedField("primary_phone", "contact_info", REQ, lambda p: p.contact_info.primary_phone),
    TrackedField("addresses", "contact_info", REQ, lambda p: p.contact_info.addresses),
    TrackedField("identity_documents", "identity_documents", REQ, lambda p: p.identity_documents),
    TrackedField(
        "employment_status", "employment", REC, lambda p: p.employment.employment_status
    ),
    TrackedField("annual_income", "employment", REC, lambda p: p.employment.annual_income),
    TrackedField(
        "investment_experience", "financial_profile", REC,
        lambda p: p.financial_profile.investment_experience,
    ),
    TrackedField(
        "risk_tolerance", "financial_profile", REC, lambda p: p.financial_profile.risk_tolerance
    ),
    TrackedField("emergency_contact", "contact_info", REC, _emergency_contact),
    TrackedField("middle_name", "personal_info", OPT, lambda p: p.personal_info.middle_name),
    TrackedField(
        "marital_status", "personal_info", OPT, lambda p: p.personal_info.marital_status
    ),
    TrackedField("alternate_phone", "contact_info", OPT, lambda p: p.contact_info.alternate_phone),
    TrackedField("employer", "employment", OPT, lambda p: p.employment.employer),
    TrackedField("job_title", "employment", OPT, lambda p: p.employment.job_title),
    TrackedField("net_worth", "financial_profile", OPT, lambda p: p.financial_profile.net_worth),
    TrackedField(
        "time_horizon", "financial_profile", OPT, lambda p: p.financial_profile.time_horizon
    ),
)


class ProfileCompletionCalculator:
    """Computes ProfileCompletion for a profile. Holds no state of its own."""

    def __init__(
        self,
        fields: tuple[TrackedField, ...] = TRACKED_FIELDS,
        weights: dict[Importance, int] | None = None,
    ) -> None:
        self.fields = fields
        self.weights = weights or IMPORTANCE_WEIGHTS

    def compute(self, profile: KycProfile) -> ProfileCompletion:
        total = 0
        filled = 0
        missing: list[TrackedField] = []
        for tracked in self.fields:
            weight = self.weights[tracked.importance]
            total += weight
            if _is_filled(tracked.read(profile)):
                filled += weight
            else:
                missing.append(tracked)

        percentage = (filled * 100) // total if total else 100
        # Stable sort: declaration order holds within a tier.
        missing.sort(key=lambda f: f.importance.rank)
        return ProfileCompletion(
            percentage=percentage,
            missing_fields=tuple(
                MissingField(field=f.field, category=f.category, importance=f.importance)
                for f in missing
            ),
            last_updated=profile.updated_at or profile.created_at,
        )

    def refresh(self, profile: KycProfile) -> KycProfile:
        """Return ``profile`` with its stored completion recomputed."""
        return profile.model_copy(update={"profile_completion": self.compute(profile)})
