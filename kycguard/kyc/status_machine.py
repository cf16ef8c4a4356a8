"""
KYC Status Machine — legal transitions of a profile's KYC status.

    not_started → in_progress → pending_review → approved → expired
                                      │                        │
                                      └────→ rejected          │
                                                │              │
                     in_progress ←──────────────┘              │
                     not_started ←─────────────────────────────┘

Every transition requires ``kyc:manage`` except one: the profile owner may
move their own profile from ``not_started`` to ``in_progress`` when they
first enter data. That edge carries no assessment; level and risk score
are administrator fields. ``approved → expired`` is time driven and
performed by the system.

Risk score is recorded alongside status but never drives a transition.
Approval and rejection are always explicit administrator decisions,
whatever the state of the identity documents.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping
from uuid import UUID

from kycguard.access.permissions import PermissionEvaluator
from kycguard.audit.events import DomainEvent, DomainEventType, EventPublisher
from kycguard.domain.normalize import coerce
from kycguard.domain.schema import (
    PERM_KYC_MANAGE,
    AmlRiskRating,
    KycCompletedStep,
    KycProfile,
    KycStatusValue,
    Principal,
    TransitionOptions,
    revalidate,
    utc_now,
)
from kycguard.errors import InvalidTransition, PermissionDenied, ValidationError
from kycguard.kyc.guards import as_uuid, load_for_actor, require_active
from kycguard.storage.base import AggregateStore

logger = logging.getLogger(__name__)

S = KycStatusValue

ALLOWED_TRANSITIONS: dict[KycStatusValue, frozenset[KycStatusValue]] = {
    S.NOT_STARTED: frozenset({S.IN_PROGRESS}),
    S.IN_PROGRESS: frozenset({S.PENDING_REVIEW}),
    S.PENDING_REVIEW: frozenset({S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.EXPIRED}),
    S.REJECTED: frozenset({S.IN_PROGRESS}),
    S.EXPIRED: frozenset({S.NOT_STARTED}),
}

# The single edge a subscriber may take on their own profile.
OWNER_TRANSITION = (S.NOT_STARTED, S.IN_PROGRESS)

# Stamps belonging to one review cycle; cleared on re-initiation.
_CYCLE_STAMPS = (
    "submitted_at", "reviewed_at", "approved_at", "rejected_at",
    "expires_at", "reviewed_by", "next_review_date",
)


def is_allowed(current: KycStatusValue, new: KycStatusValue) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_risk_score(score: Any) -> int:
    if isinstance(score, bool) or not isinstance(score, int):
        raise ValidationError("Risk score must be an integer", field="risk_score")
    if not 0 <= score <= 100:
        raise ValidationError("Risk score must be between 0 and 100", field="risk_score")
    return score


def status_changed_event(
    before: KycProfile, after: KycProfile, actor: Principal | None
) -> DomainEvent:
    status = after.kyc_status
    return DomainEvent.by(
        actor,
        DomainEventType.KYC_STATUS_CHANGED,
        after.id,
        occurred_at=after.updated_at,
        user_id=after.user_id,
        previous_status=before.kyc_status.status.value,
        new_status=status.status.value,
        level=status.level.value,
        risk_score=status.risk_score,
        rejection_reason=status.rejection_reason,
    )


class KycStatusMachine:
    """
    Enforces the KYC workflow on profiles.

    ``apply`` works on a snapshot and never touches storage. ``transition``
    loads the profile under its lock, applies against that fresh state,
    saves with the loaded version and publishes ``kyc.status.changed``.
    """

    def __init__(
        self,
        store: AggregateStore[KycProfile],
        evaluator: PermissionEvaluator,
        publisher: EventPublisher | None = None,
        validity_days: int = 365,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.publisher = publisher or EventPublisher()
        self.validity_days = validity_days
        self.clock = clock

    # ── Snapshot operations ─────────────────────────────────────

    def apply(
        self,
        profile: KycProfile,
        new_status: KycStatusValue | str,
        actor: Principal | None,
        options: TransitionOptions | Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> KycProfile:
        """
        Return ``profile`` moved to ``new_status``.

        Args:
            profile: Current snapshot.
            new_status: Target state.
            actor: The requesting principal; None only for system-driven
                expiry.
            options: Rejection reason, level and risk score.
            now: Transition time (defaults to the machine's clock).

        Raises:
            PermissionDenied, ValidationError, InvalidTransition. Nothing
            is built before every check has passed.
        """
        target = self._status(new_status)
        options = TransitionOptions() if options is None else coerce(TransitionOptions, options)
        current = profile.kyc_status.status

        managed = self._authorize(profile, current, target, actor)
        if not managed and (options.level is not None or options.risk_score is not None):
            logger.info(
                "KYC assessment denied: subject=%s profile=%s level=%s risk_score=%s",
                actor.subject, profile.id, options.level, options.risk_score,
            )
            raise PermissionDenied(f"Setting KYC level or risk score requires {PERM_KYC_MANAGE}")

        if target == S.REJECTED and not (options.rejection_reason or "").strip():
            raise ValidationError(
                "A rejection reason is required to reject a KYC profile",
                field="rejection_reason",
            )
        if options.risk_score is not None:
            validate_risk_score(options.risk_score)

        if not is_allowed(current, target):
            raise InvalidTransition(
                f"Cannot move KYC status from {current.value} to {target.value}"
            )

        now = now or self.clock()
        actor_subject = actor.subject if actor is not None else "system"
        update: dict[str, Any] = {"status": target}

        if target == S.NOT_STARTED:
            update.update({stamp: None for stamp in _CYCLE_STAMPS})
        elif target == S.PENDING_REVIEW:
            update["submitted_at"] = now
        elif target == S.APPROVED:
            expires_at = now + timedelta(days=self.validity_days)
            update.update(
                reviewed_at=now,
                approved_at=now,
                reviewed_by=actor_subject,
                expires_at=expires_at,
                next_review_date=expires_at.date(),
            )
        elif target == S.REJECTED:
            update.update(
                reviewed_at=now,
                rejected_at=now,
                reviewed_by=actor_subject,
            )

        update["rejection_reason"] = options.rejection_reason if target == S.REJECTED else None
        if options.level is not None:
            update["level"] = options.level
        if options.risk_score is not None:
            update["risk_score"] = options.risk_score

        step = KycCompletedStep(step=target.value, completed_at=now, verified_by=actor_subject)
        update["completed_steps"] = profile.kyc_status.completed_steps + (step,)

        kyc_status = revalidate(profile.kyc_status, **update)
        return profile.model_copy(update={"kyc_status": kyc_status, "updated_at": now})

    def _authorize(
        self,
        profile: KycProfile,
        current: KycStatusValue,
        target: KycStatusValue,
        actor: Principal | None,
    ) -> bool:
        """Return True for an administrative actor, False for the owner edge."""
        if actor is None:
            # Only time-driven expiry runs without a principal.
            if (current, target) == (S.APPROVED, S.EXPIRED):
                return True
            raise PermissionDenied("KYC transitions require an authenticated actor")

        if self.evaluator.can(actor, PERM_KYC_MANAGE):
            return True
        if profile.is_owned_by(actor) and (current, target) == OWNER_TRANSITION:
            return False
        logger.info(
            "KYC transition denied: subject=%s role=%s profile=%s %s->%s",
            actor.subject, actor.role, profile.id, current.value, target.value,
        )
        raise PermissionDenied(
            f"Moving KYC status to {target.value} requires {PERM_KYC_MANAGE}"
        )

    @staticmethod
    def _status(value: KycStatusValue | str) -> KycStatusValue:
        try:
            return KycStatusValue(value)
        except ValueError as exc:
            raise ValidationError(f"Unknown KYC status '{value}'", field="status") from exc

    # ── Storage-backed operations ───────────────────────────────

    def transition(
        self,
        profile_id: UUID | str,
        new_status: KycStatusValue | str,
        actor: Principal,
        *,
        options: TransitionOptions | Mapping[str, Any] | None = None,
    ) -> KycProfile:
        """
        Apply a transition to the stored profile and publish the change.

        Authorization is settled before existence or deactivation is
        revealed: an actor without ``kyc:manage`` gets PERMISSION_DENIED
        for any profile that is not its own to start.
        """
        key = as_uuid(profile_id, "profile_id")
        target = self._status(new_status)
        managed = self.evaluator.can(actor, PERM_KYC_MANAGE)
        with self.store.locks.hold(key):
            profile = load_for_actor(self.store, key, actor, managed, "Changing KYC status")
            if not managed:
                self._authorize(profile, profile.kyc_status.status, target, actor)
            require_active(profile)
            updated = self.apply(profile, target, actor, options)
            saved = self.store.save(updated, expected_version=profile.version)

        logger.info(
            "KYC status changed: profile=%s %s->%s by=%s",
            saved.id, profile.kyc_status.status.value, saved.kyc_status.status.value,
            actor.subject,
        )
        self.publisher.publish(status_changed_event(profile, saved, actor))
        return saved

    def update_risk(
        self,
        profile_id: UUID | str,
        risk_score: int,
        actor: Principal,
        aml_risk_rating: AmlRiskRating | str | None = None,
    ) -> KycProfile:
        """Record a new risk assessment. The status is left untouched."""
        self.evaluator.require(actor, PERM_KYC_MANAGE, action="Updating risk score")
        validate_risk_score(risk_score)
        rating = None
        if aml_risk_rating is not None:
            try:
                rating = AmlRiskRating(aml_risk_rating)
            except ValueError as exc:
                raise ValidationError(
                    f"Unknown AML risk rating '{aml_risk_rating}'", field="aml_risk_rating",
                ) from exc

        key = as_uuid(profile_id, "profile_id")
        with self.store.locks.hold(key):
            profile = self.store.load(key)
            require_active(profile)
            now = self.clock()
            update: dict[str, Any] = {
                "kyc_status": profile.kyc_status.model_copy(update={"risk_score": risk_score}),
                "updated_at": now,
            }
            if rating is not None:
                update["compliance"] = profile.compliance.model_copy(
                    update={"aml_risk_rating": rating}
                )
            saved = self.store.save(
                profile.model_copy(update=update), expected_version=profile.version
            )

        self.publisher.publish(
            DomainEvent.by(
                actor, DomainEventType.KYC_RISK_UPDATED, saved.id,
                occurred_at=now,
                previous_risk_score=profile.kyc_status.risk_score,
                risk_score=risk_score,
                aml_risk_rating=rating.value if rating is not None else None,
            )
        )
        return saved

    def expire_if_due(
        self, profile_id: UUID | str, now: datetime | None = None
    ) -> KycProfile:
        """Expire an approved profile whose validity has lapsed; otherwise a no-op."""
        key = as_uuid(profile_id, "profile_id")
        now = now or self.clock()
        with self.store.locks.hold(key):
            profile = self.store.load(key)
            status = profile.kyc_status
            due = (
                profile.is_active
                and status.status == S.APPROVED
                and status.expires_at is not None
                and status.expires_at <= now
            )
            if not due:
                return profile
            updated = self.apply(profile, S.EXPIRED, None, now=now)
            saved = self.store.save(updated, expected_version=profile.version)

        logger.info("KYC approval expired: profile=%s user=%s", saved.id, saved.user_id)
        self.publisher.publish(status_changed_event(profile, saved, None))
        return saved

    def expire_all_due(self, now: datetime | None = None) -> list[KycProfile]:
        """Sweep every approved profile and expire the lapsed ones."""
        now = now or self.clock()
        expired = []
        for profile in self.store.query(kyc_status=S.APPROVED.value):
            result = self.expire_if_due(profile.id, now)
            if result.kyc_status.status == S.EXPIRED:
                expired.append(result)
        return expired
