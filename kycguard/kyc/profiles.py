"""
KYC Profile Service — lifecycle of the subscriber KYC aggregate.

A profile is created lazily on the subscriber's first write, edited by
its owner (personal sections, documents, steps) or by a KYC administrator,
and never physically deleted: deactivation records who removed it, when
and why, and freezes it against further changes.

Status changes go through KycStatusMachine; document verification goes
through DocumentVerificationLedger. This service never touches either
directly, apart from the owner's first-entry self-transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping
from uuid import UUID

from kycguard.access.permissions import PermissionEvaluator
from kycguard.audit.events import DomainEvent, DomainEventType, EventPublisher
from kycguard.domain.normalize import coerce
from kycguard.domain.schema import (
    PERM_KYC_MANAGE,
    Deactivation,
    DocumentSubmission,
    IdentityDocument,
    KycCompletedStep,
    KycProfile,
    KycStatusValue,
    Principal,
    ProfileListQuery,
    ProfilePatch,
    TransitionOptions,
    utc_now,
)
from kycguard.errors import (
    ErrorCode,
    KycGuardError,
    PermissionDenied,
    ProfileNotFound,
    ValidationError,
)
from kycguard.kyc.completion import ProfileCompletionCalculator
from kycguard.kyc.guards import as_uuid, load_for_actor, require_active, require_kyc_reader
from kycguard.kyc.status_machine import KycStatusMachine, status_changed_event
from kycguard.storage.base import AggregateStore

logger = logging.getLogger(__name__)

PROFILE_SECTIONS = ("personal_info", "contact_info", "employment", "financial_profile")


@dataclass(frozen=True)
class ReviewQueueItem:
    """A profile awaiting review, with its risk flag."""

    profile: KycProfile
    high_risk: bool

    @property
    def submitted_at(self) -> datetime | None:
        return self.profile.kyc_status.submitted_at


@dataclass(frozen=True)
class ProfilePage:
    items: tuple[KycProfile, ...]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return -(-self.total // self.limit)


@dataclass(frozen=True)
class BulkTransitionFailure:
    profile_id: str
    code: ErrorCode
    message: str


@dataclass(frozen=True)
class BulkTransitionResult:
    """Outcome of a bulk status change; each profile succeeds or fails alone."""

    updated: tuple[KycProfile, ...]
    errors: tuple[BulkTransitionFailure, ...]

    @property
    def updated_count(self) -> int:
        return len(self.updated)


def _full_name(profile: KycProfile) -> str | None:
    info = profile.personal_info
    parts = [part for part in (info.first_name, info.last_name) if part]
    return " ".join(parts) if parts else None


def _search_text(profile: KycProfile) -> str:
    info = profile.personal_info
    fields = (profile.user_id, info.first_name, info.last_name, _full_name(profile))
    return "\n".join(f.lower() for f in fields if f)


def _name_key(profile: KycProfile) -> tuple[str, str] | None:
    info = profile.personal_info
    if not info.first_name and not info.last_name:
        return None
    return (info.last_name or "").lower(), (info.first_name or "").lower()


_SORT_KEYS: dict[str, Callable[[KycProfile], Any]] = {
    "created_at": lambda p: p.created_at,
    "updated_at": lambda p: p.updated_at,
    "submitted_at": lambda p: p.kyc_status.submitted_at,
    "completion": lambda p: p.profile_completion.percentage,
    "risk_score": lambda p: p.kyc_status.risk_score,
    "name": _name_key,
}


class KycProfileService:
    """Storage-backed operations on KYC profiles."""

    def __init__(
        self,
        store: AggregateStore[KycProfile],
        evaluator: PermissionEvaluator,
        status_machine: KycStatusMachine,
        completion: ProfileCompletionCalculator | None = None,
        publisher: EventPublisher | None = None,
        high_risk_threshold: int = 70,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.status_machine = status_machine
        self.completion = completion or ProfileCompletionCalculator()
        self.publisher = publisher or EventPublisher()
        self.high_risk_threshold = high_risk_threshold
        self.clock = clock

    def _manages(self, actor: Principal) -> bool:
        return self.evaluator.can(actor, PERM_KYC_MANAGE)

    # ── Reads ───────────────────────────────────────────────────

    def get(self, profile_id: UUID | str, actor: Principal) -> KycProfile:
        return load_for_actor(
            self.store, as_uuid(profile_id, "profile_id"), actor,
            self.evaluator.can_access_kyc(actor), "Viewing KYC profiles",
        )

    def find_by_user(self, user_id: str) -> KycProfile | None:
        matches = self.store.query(user_id=user_id)
        return matches[0] if matches else None

    def get_by_user(self, user_id: str, actor: Principal) -> KycProfile:
        if actor.subject != user_id and not self.evaluator.can_access_kyc(actor):
            raise PermissionDenied("Viewing another subscriber's KYC profile requires KYC access")
        profile = self.find_by_user(user_id)
        if profile is None:
            raise ProfileNotFound(f"No KYC profile for user {user_id}")
        require_kyc_reader(self.evaluator, profile, actor)
        return profile

    def review_queue(self, actor: Principal) -> list[ReviewQueueItem]:
        """Profiles awaiting review, oldest submission first."""
        if not self.evaluator.can_access_kyc(actor):
            raise PermissionDenied("The KYC review queue requires KYC access")
        pending = [
            p for p in self.store.query(kyc_status=KycStatusValue.PENDING_REVIEW.value)
            if p.is_active
        ]
        pending.sort(
            key=lambda p: (p.kyc_status.submitted_at is None, p.kyc_status.submitted_at or p.created_at)
        )
        return [
            ReviewQueueItem(
                profile=p, high_risk=p.kyc_status.risk_score > self.high_risk_threshold,
            )
            for p in pending
        ]

    def list_profiles(
        self,
        actor: Principal,
        query: ProfileListQuery | Mapping[str, Any] | None = None,
    ) -> ProfilePage:
        """
        Administrator listing with filters, sorting and pagination.

        ``search`` matches case-insensitively against the user id, first
        and last name, and the full name. Profiles missing the sort value
        always come last.
        """
        if not self.evaluator.can_access_kyc(actor):
            raise PermissionDenied("Listing KYC profiles requires KYC access")
        query = ProfileListQuery() if query is None else coerce(ProfileListQuery, query)

        if query.kyc_status is not None:
            candidates = self.store.query(kyc_status=query.kyc_status.value)
        else:
            candidates = self.store.list_all()

        low, high = query.completion_bounds
        needle = (query.search or "").strip().lower()
        matches = [
            p for p in candidates
            if (query.include_inactive or p.is_active)
            and (query.kyc_level is None or p.kyc_status.level == query.kyc_level)
            and low <= p.profile_completion.percentage <= high
            and (not needle or needle in _search_text(p))
        ]

        sort_value = _SORT_KEYS[query.sort_by]
        present = [p for p in matches if sort_value(p) is not None]
        absent = [p for p in matches if sort_value(p) is None]
        present.sort(key=lambda p: (sort_value(p), str(p.id)), reverse=query.sort_order == "desc")
        ordered = present + absent

        start = (query.page - 1) * query.limit
        return ProfilePage(
            items=tuple(ordered[start:start + query.limit]),
            total=len(ordered),
            page=query.page,
            limit=query.limit,
        )

    # ── Creation ────────────────────────────────────────────────

    def get_or_create(self, user_id: str, actor: Principal) -> KycProfile:
        """
        Return the user's profile, creating an empty one on first access.

        Creation needs the owner or ``kyc:manage``; reading an existing
        profile needs the owner or KYC access.
        """
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required", field="user_id")

        with self.store.locks.hold(f"user:{user_id}"):
            existing = self.find_by_user(user_id)
            if existing is not None:
                require_kyc_reader(self.evaluator, existing, actor)
                return existing

            if actor.subject != user_id:
                self.evaluator.require(actor, PERM_KYC_MANAGE, action="Creating KYC profiles")
            now = self.clock()
            profile = self.completion.refresh(
                KycProfile(user_id=user_id, created_at=now, updated_at=now)
            )
            saved = self.store.save(profile, expected_version=0)

        logger.info("KYC profile created: profile=%s user=%s by=%s", saved.id, user_id, actor.subject)
        self.publisher.publish(
            DomainEvent.by(
                actor, DomainEventType.PROFILE_CREATED, saved.id,
                occurred_at=now, user_id=user_id,
            )
        )
        return saved

    # ── Subscriber edits ────────────────────────────────────────

    def update_personal(
        self,
        profile_id: UUID | str,
        patch: ProfilePatch | Mapping[str, Any],
        actor: Principal,
    ) -> KycProfile:
        """
        Replace any of the four personal sections.

        When the owner first enters data on a ``not_started`` profile, the
        status moves to ``in_progress`` in the same write.
        """
        patch = coerce(ProfilePatch, patch)
        changes = {
            section: getattr(patch, section)
            for section in PROFILE_SECTIONS
            if getattr(patch, section) is not None
        }
        if not changes:
            raise ValidationError("Profile update contains no sections", field="patch")

        key = as_uuid(profile_id, "profile_id")
        with self.store.locks.hold(key):
            profile = load_for_actor(
                self.store, key, actor, self._manages(actor), "Editing personal details",
            )
            require_active(profile)
            now = self.clock()
            updated = profile.model_copy(update={**changes, "updated_at": now})

            self_start = (
                profile.is_owned_by(actor)
                and profile.kyc_status.status == KycStatusValue.NOT_STARTED
            )
            if self_start:
                updated = self.status_machine.apply(
                    updated, KycStatusValue.IN_PROGRESS, actor, now=now,
                )
            updated = self.completion.refresh(updated)
            saved = self.store.save(updated, expected_version=profile.version)

        logger.info(
            "KYC profile updated: profile=%s sections=%s completion=%d%% by=%s",
            saved.id, sorted(changes), saved.profile_completion.percentage, actor.subject,
        )
        self.publisher.publish(
            DomainEvent.by(
                actor, DomainEventType.PROFILE_UPDATED, saved.id,
                occurred_at=now,
                sections=sorted(changes),
                completion=saved.profile_completion.percentage,
            )
        )
        if self_start:
            self.publisher.publish(status_changed_event(profile, saved, actor))
        return saved

    def add_document(
        self,
        profile_id: UUID | str,
        document: DocumentSubmission | Mapping[str, Any],
        actor: Principal,
    ) -> KycProfile:
        """Attach a new identity document. It always starts unverified."""
        submission = coerce(DocumentSubmission, document)

        key = as_uuid(profile_id, "profile_id")
        with self.store.locks.hold(key):
            profile = load_for_actor(
                self.store, key, actor, self._manages(actor), "Adding documents",
            )
            require_active(profile)
            new_document = IdentityDocument(**submission.model_dump())
            now = self.clock()
            updated = self.completion.refresh(
                profile.model_copy(
                    update={
                        "identity_documents": profile.identity_documents + (new_document,),
                        "updated_at": now,
                    }
                )
            )
            saved = self.store.save(updated, expected_version=profile.version)

        self.publisher.publish(
            DomainEvent.by(
                actor, DomainEventType.DOCUMENT_ADDED, saved.id,
                occurred_at=now,
                document_id=str(new_document.id),
                document_type=new_document.type.value,
            )
        )
        return saved

    def complete_step(self, profile_id: UUID | str, step: str, actor: Principal) -> KycProfile:
        step = (step or "").strip()
        if not step:
            raise ValidationError("Step name is required", field="step")

        key = as_uuid(profile_id, "profile_id")
        with self.store.locks.hold(key):
            profile = load_for_actor(
                self.store, key, actor, self._manages(actor), "Completing steps",
            )
            require_active(profile)
            now = self.clock()
            entry = KycCompletedStep(
                step=step,
                completed_at=now,
                verified_by=None if profile.is_owned_by(actor) else actor.subject,
            )
            kyc_status = profile.kyc_status.model_copy(
                update={"completed_steps": profile.kyc_status.completed_steps + (entry,)}
            )
            saved = self.store.save(
                profile.model_copy(update={"kyc_status": kyc_status, "updated_at": now}),
                expected_version=profile.version,
            )

        self.publisher.publish(
            DomainEvent.by(actor, DomainEventType.KYC_STEP_COMPLETED, saved.id, occurred_at=now, step=step)
        )
        return saved

    def submit_for_review(self, profile_id: UUID | str, actor: Principal) -> KycProfile:
        return self.status_machine.transition(profile_id, KycStatusValue.PENDING_REVIEW, actor)

    # ── Administration ──────────────────────────────────────────

    def bulk_transition(
        self,
        profile_ids: Iterable[UUID | str],
        new_status: KycStatusValue | str,
        actor: Principal,
        *,
        options: TransitionOptions | Mapping[str, Any] | None = None,
    ) -> BulkTransitionResult:
        """
        Move many profiles to ``new_status``, one transition per profile.

        Each profile is loaded, checked and saved on its own; a failure is
        recorded against its id and the rest carry on. Requires
        ``kyc:manage`` up front.
        """
        self.evaluator.require(actor, PERM_KYC_MANAGE, action="Bulk KYC status changes")
        updated: list[KycProfile] = []
        errors: list[BulkTransitionFailure] = []
        for profile_id in profile_ids:
            try:
                updated.append(
                    self.status_machine.transition(profile_id, new_status, actor, options=options)
                )
            except KycGuardError as exc:
                errors.append(BulkTransitionFailure(str(profile_id), exc.code, exc.message))

        logger.info(
            "Bulk KYC transition to %s: updated=%d failed=%d by=%s",
            new_status, len(updated), len(errors), actor.subject,
        )
        return BulkTransitionResult(updated=tuple(updated), errors=tuple(errors))

    # ── Deactivation ────────────────────────────────────────────

    def deactivate(self, profile_id: UUID | str, reason: str, actor: Principal) -> KycProfile:
        """Soft-delete a profile. The record and its history stay in storage."""
        self.evaluator.require(actor, PERM_KYC_MANAGE, action="Deactivating KYC profiles")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A deactivation reason is required", field="reason")

        key = as_uuid(profile_id, "profile_id")
        with self.store.locks.hold(key):
            profile = self.store.load(key)
            require_active(profile)
            now = self.clock()
            deactivation = Deactivation(reason=reason, deactivated_by=actor.subject, deactivated_at=now)
            saved = self.store.save(
                profile.model_copy(update={"deactivation": deactivation, "updated_at": now}),
                expected_version=profile.version,
            )

        logger.info("KYC profile deactivated: profile=%s by=%s", saved.id, actor.subject)
        self.publisher.publish(
            DomainEvent.by(
                actor, DomainEventType.PROFILE_DEACTIVATED, saved.id,
                occurred_at=now, user_id=saved.user_id, reason=reason,
            )
        )
        return saved
