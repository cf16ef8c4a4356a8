"""
Document Verification Ledger — per-document verification outcomes.

Verification records what an operator (or an external provider acting
through one) concluded about a single identity document. It is evidence
for the KYC decision, not the decision itself: verifying or rejecting
every document leaves the profile's status exactly where it was.

A document is pending, verified or rejected. Rejection carries a reason
so the subscriber can resubmit; verifying a rejected document clears the
rejection.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable
from uuid import UUID

from kycguard.access.permissions import PermissionEvaluator
from kycguard.audit.events import DomainEvent, DomainEventType, EventPublisher
from kycguard.domain.schema import (
    PERM_KYC_MANAGE,
    IdentityDocument,
    KycProfile,
    Principal,
    utc_now,
)
from kycguard.errors import DocumentNotFound, ValidationError
from kycguard.kyc.guards import as_uuid, require_active
from kycguard.storage.base import AggregateStore

logger = logging.getLogger(__name__)


class DocumentVerificationLedger:
    """Verify, reset or reject identity documents with actor attribution."""

    def __init__(
        self,
        store: AggregateStore[KycProfile],
        evaluator: PermissionEvaluator,
        publisher: EventPublisher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.publisher = publisher or EventPublisher()
        self.clock = clock

    # ── Snapshot operations ─────────────────────────────────────

    def apply_verification(
        self,
        profile: KycProfile,
        document_id: UUID | str,
        verified: bool,
        actor: Principal,
        now: datetime | None = None,
    ) -> KycProfile:
        """
        Return ``profile`` with one document's verification set.

        Only the addressed document changes; every other document and the
        KYC status are carried over untouched. Re-verifying an already
        verified document refreshes its timestamp and verifier.
        """
        self.evaluator.require(actor, PERM_KYC_MANAGE, action="Verifying identity documents")
        now = now or self.clock()
        return self._replace_document(
            profile, document_id, lambda doc: doc.with_verification(verified, actor.subject, now), now,
        )

    def apply_rejection(
        self,
        profile: KycProfile,
        document_id: UUID | str,
        reason: str,
        actor: Principal,
        now: datetime | None = None,
    ) -> KycProfile:
        """Return ``profile`` with one document rejected for ``reason``."""
        self.evaluator.require(actor, PERM_KYC_MANAGE, action="Rejecting identity documents")
        if not (reason or "").strip():
            raise ValidationError("A rejection reason is required", field="reason")
        now = now or self.clock()
        return self._replace_document(
            profile, document_id, lambda doc: doc.with_rejection(reason, actor.subject, now), now,
        )

    def _replace_document(
        self,
        profile: KycProfile,
        document_id: UUID | str,
        change: Callable[[IdentityDocument], IdentityDocument],
        now: datetime,
    ) -> KycProfile:
        doc_id = as_uuid(document_id, "document_id")
        if profile.find_document(doc_id) is None:
            raise DocumentNotFound(f"Document {doc_id} not found on profile {profile.id}")
        documents = tuple(
            change(doc) if doc.id == doc_id else doc for doc in profile.identity_documents
        )
        return profile.model_copy(update={"identity_documents": documents, "updated_at": now})

    # ── Storage-backed operations ───────────────────────────────

    def verify(
        self,
        profile_id: UUID | str,
        document_id: UUID | str,
        verified: bool,
        actor: Principal,
    ) -> KycProfile:
        """Verify a document on the stored profile and publish ``document.verified``."""
        self.evaluator.require(actor, PERM_KYC_MANAGE, action="Verifying identity documents")
        key = as_uuid(profile_id, "profile_id")
        with self.store.locks.hold(key):
            profile = self.store.load(key)
            require_active(profile)
            updated = self.apply_verification(profile, document_id, verified, actor)
            saved = self.store.save(updated, expected_version=profile.version)

        document = saved.find_document(as_uuid(document_id, "document_id"))
        logger.info(
            "Document %s: profile=%s document=%s by=%s",
            "verified" if verified else "unverified", saved.id, document.id, actor.subject,
        )
        self.publisher.publish(
            DomainEvent.by(
                actor, DomainEventType.DOCUMENT_VERIFIED, saved.id,
                occurred_at=saved.updated_at,
                document_id=str(document.id),
                document_type=document.type.value,
                verified=document.is_verified,
            )
        )
        return saved

    def reject(
        self,
        profile_id: UUID | str,
        document_id: UUID | str,
        reason: str,
        actor: Principal,
    ) -> KycProfile:
        """Reject a document on the stored profile and publish ``document.rejected``."""
        self.evaluator.require(actor, PERM_KYC_MANAGE, action="Rejecting identity documents")
        key = as_uuid(profile_id, "profile_id")
        with self.store.locks.hold(key):
            profile = self.store.load(key)
            require_active(profile)
            updated = self.apply_rejection(profile, document_id, reason, actor)
            saved = self.store.save(updated, expected_version=profile.version)

        document = saved.find_document(as_uuid(document_id, "document_id"))
        logger.info(
            "Document rejected: profile=%s document=%s by=%s",
            saved.id, document.id, actor.subject,
        )
        self.publisher.publish(
            DomainEvent.by(
                actor, DomainEventType.DOCUMENT_REJECTED, saved.id,
                occurred_at=saved.updated_at,
                document_id=str(document.id),
                document_type=document.type.value,
                reason=document.rejection_reason,
            )
        )
        return saved
