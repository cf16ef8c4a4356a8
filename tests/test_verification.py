"""
Tests for the Document Verification Ledger.

Validates:
- Verification requires kyc:manage, granted by role or override
- The verified_at/verified_by pairing invariant
- Idempotence of re-verification
- Independence from KYC status
- Per-document updates under concurrent verifiers
- Rejection with a reason, and its interplay with verification
- Permission checked before the profile is looked up
"""

from __future__ import annotations

import threading
from uuid import uuid4

import pydantic
import pytest

from factories import PASSPORT, REQUIRED_PATCH, FakeClock, memory_core, principal
from kycguard.audit.events import DomainEventType
from kycguard.domain.schema import (
    PERM_KYC_MANAGE,
    DocumentStatus,
    DocumentType,
    IdentityDocument,
    KycStatusValue,
)
from kycguard.errors import DocumentNotFound, PermissionDenied, ProfileNotFound, ValidationError
from kycguard.kyc.verification import DocumentVerificationLedger


class TestIdentityDocumentInvariant:
    def test_verified_requires_both_stamps(self):
        with pytest.raises(pydantic.ValidationError):
            IdentityDocument(type=DocumentType.PASSPORT, number="P1", is_verified=True)

    def test_unverified_rejects_stamps(self):
        with pytest.raises(pydantic.ValidationError):
            IdentityDocument(type=DocumentType.PASSPORT, number="P1", verified_by="admin-1")

    def test_with_verification_sets_and_clears_together(self):
        clock = FakeClock()
        document = IdentityDocument(type=DocumentType.PASSPORT, number="P1")
        verified = document.with_verification(True, "admin-1", clock())
        assert verified.is_verified and verified.verified_by == "admin-1"
        assert verified.verified_at is not None

        cleared = verified.with_verification(False, "admin-2", clock())
        assert not cleared.is_verified
        assert cleared.verified_at is None and cleared.verified_by is None

    def test_rejection_requires_all_stamps(self):
        with pytest.raises(pydantic.ValidationError):
            IdentityDocument(type=DocumentType.PASSPORT, number="P1", rejection_reason="blurry")

    def test_rejection_reason_must_not_be_blank(self):
        with pytest.raises(pydantic.ValidationError):
            IdentityDocument(
                type=DocumentType.PASSPORT, number="P1",
                rejection_reason="  ", rejected_at=FakeClock()(), rejected_by="admin-1",
            )

    def test_cannot_be_verified_and_rejected(self):
        now = FakeClock()()
        with pytest.raises(pydantic.ValidationError):
            IdentityDocument(
                type=DocumentType.PASSPORT, number="P1",
                is_verified=True, verified_at=now, verified_by="admin-1",
                rejection_reason="blurry", rejected_at=now, rejected_by="admin-1",
            )

    def test_status_follows_stamps(self):
        clock = FakeClock()
        document = IdentityDocument(type=DocumentType.PASSPORT, number="P1")
        assert document.status == DocumentStatus.PENDING
        rejected = document.with_verification(True, "admin-1", clock()).with_rejection(
            "blurry", "admin-2", clock(),
        )
        assert rejected.status == DocumentStatus.REJECTED
        assert not rejected.is_verified and rejected.verified_by is None
        assert rejected.with_verification(True, "admin-1", clock()).status == DocumentStatus.VERIFIED
        reset = rejected.with_verification(False, "admin-1", clock())
        assert reset.status == DocumentStatus.PENDING
        assert reset.rejection_reason is None and reset.rejected_by is None


class TestVerify:
    def setup_method(self):
        self.core, self.sink = memory_core()
        self.admin = principal("admin")
        self.owner = principal("user", subject="user-ada")
        profile = self.core.profiles.get_or_create("user-ada", self.owner)
        profile = self.core.profiles.update_personal(profile.id, REQUIRED_PATCH, self.owner)
        profile = self.core.profiles.add_document(profile.id, PASSPORT, self.owner)
        profile = self.core.profiles.add_document(
            profile.id, {"type": "drivers_license", "number": "D-998877"}, self.owner,
        )
        self.profile = profile
        self.passport, self.license = profile.identity_documents

    def test_verify_stamps_actor(self):
        verified = self.core.verification.verify(self.profile.id, self.passport.id, True, self.admin)
        document = verified.find_document(self.passport.id)
        assert document.is_verified
        assert document.verified_by == self.admin.subject
        assert document.verified_at is not None
        assert not verified.find_document(self.license.id).is_verified

    def test_support_override_can_verify_foreign_profile(self):
        support = principal("support", permissions=(PERM_KYC_MANAGE,))
        verified = self.core.verification.verify(self.profile.id, self.passport.id, True, support)
        assert verified.find_document(self.passport.id).verified_by == support.subject

    def test_support_without_override_denied(self):
        with pytest.raises(PermissionDenied):
            self.core.verification.verify(self.profile.id, self.passport.id, True, principal("support"))

    def test_owner_cannot_verify_own_documents(self):
        with pytest.raises(PermissionDenied):
            self.core.verification.verify(self.profile.id, self.passport.id, True, self.owner)

    def test_verify_twice_is_idempotent(self):
        first = self.core.verification.verify(self.profile.id, self.passport.id, True, self.admin)
        second = self.core.verification.verify(self.profile.id, self.passport.id, True, self.admin)
        assert first.find_document(self.passport.id).is_verified
        assert second.find_document(self.passport.id).is_verified
        assert second.version == first.version + 1

    def test_reverification_refreshes_stamp(self):
        clock = FakeClock()
        ledger = DocumentVerificationLedger(self.core.profile_store, self.core.evaluator, clock=clock)
        first = ledger.verify(self.profile.id, self.passport.id, True, self.admin)
        superadmin = principal("superadmin")
        second = ledger.verify(self.profile.id, self.passport.id, True, superadmin)
        doc_first = first.find_document(self.passport.id)
        doc_second = second.find_document(self.passport.id)
        assert doc_second.verified_at > doc_first.verified_at
        assert doc_second.verified_by == superadmin.subject

    def test_unverify_clears_pair(self):
        self.core.verification.verify(self.profile.id, self.passport.id, True, self.admin)
        cleared = self.core.verification.verify(self.profile.id, self.passport.id, False, self.admin)
        document = cleared.find_document(self.passport.id)
        assert not document.is_verified
        assert document.verified_at is None
        assert document.verified_by is None

    def test_unknown_document(self):
        with pytest.raises(DocumentNotFound) as exc_info:
            self.core.verification.verify(self.profile.id, uuid4(), True, self.admin)
        assert exc_info.value.code.value == "NOT_FOUND"

    def test_malformed_document_id(self):
        with pytest.raises(ValidationError):
            self.core.verification.verify(self.profile.id, "not-a-uuid", True, self.admin)

    def test_verification_never_moves_status(self):
        for document in self.profile.identity_documents:
            self.core.verification.verify(self.profile.id, document.id, True, self.admin)
        stored = self.core.profile_store.load(self.profile.id)
        assert all(d.is_verified for d in stored.identity_documents)
        assert stored.kyc_status.status == KycStatusValue.IN_PROGRESS

    def test_verify_publishes_event(self):
        self.core.verification.verify(self.profile.id, self.license.id, True, self.admin)
        (event,) = self.sink.of_type(DomainEventType.DOCUMENT_VERIFIED)
        assert event.payload == {
            "document_id": str(self.license.id),
            "document_type": "drivers_license",
            "verified": True,
        }

    def test_concurrent_verifiers_keep_both_updates(self):
        barrier = threading.Barrier(2)
        errors = []

        def verify(document_id, actor):
            barrier.wait()
            try:
                self.core.verification.verify(self.profile.id, document_id, True, actor)
            except Exception as exc:
                errors.append(exc)

        threads = [
            threading.Thread(target=verify, args=(self.passport.id, self.admin)),
            threading.Thread(target=verify, args=(self.license.id, principal("superadmin"))),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        stored = self.core.profile_store.load(self.profile.id)
        assert stored.find_document(self.passport.id).verified_by == self.admin.subject
        assert stored.find_document(self.license.id).verified_by == "superadmin-1"

    def test_stranger_denied_before_profile_lookup(self):
        stranger = principal("user", subject="user-bob")
        with pytest.raises(PermissionDenied):
            self.core.verification.verify(uuid4(), uuid4(), True, stranger)
        with pytest.raises(PermissionDenied):
            self.core.verification.verify("not-a-uuid", uuid4(), True, stranger)

    def test_stranger_denied_before_deactivation_is_checked(self):
        self.core.profiles.deactivate(self.profile.id, "closing", self.admin)
        with pytest.raises(PermissionDenied):
            self.core.verification.verify(self.profile.id, self.passport.id, True, principal("support"))

    def test_manager_sees_missing_profile(self):
        with pytest.raises(ProfileNotFound):
            self.core.verification.verify(uuid4(), self.passport.id, True, self.admin)


class TestReject:
    def setup_method(self):
        self.core, self.sink = memory_core()
        self.admin = principal("admin")
        self.owner = principal("user", subject="user-ada")
        profile = self.core.profiles.get_or_create("user-ada", self.owner)
        profile = self.core.profiles.add_document(profile.id, PASSPORT, self.owner)
        profile = self.core.profiles.add_document(
            profile.id, {"type": "national_id", "number": "ID-42"}, self.owner,
        )
        self.profile = profile
        self.passport, self.national_id = profile.identity_documents

    def test_reject_stamps_reason_and_actor(self):
        rejected = self.core.verification.reject(
            self.profile.id, self.passport.id, "photo page unreadable", self.admin,
        )
        document = rejected.find_document(self.passport.id)
        assert document.status == DocumentStatus.REJECTED
        assert document.rejection_reason == "photo page unreadable"
        assert document.rejected_by == self.admin.subject
        assert document.rejected_at is not None
        assert rejected.find_document(self.national_id.id).status == DocumentStatus.PENDING
        assert rejected.kyc_status.status == self.profile.kyc_status.status

    def test_reject_publishes_event(self):
        self.core.verification.reject(self.profile.id, self.national_id.id, "expired", self.admin)
        (event,) = self.sink.of_type(DomainEventType.DOCUMENT_REJECTED)
        assert event.aggregate_id == str(self.profile.id)
        assert event.payload == {
            "document_id": str(self.national_id.id),
            "document_type": "national_id",
            "reason": "expired",
        }

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_reason_required(self, reason):
        with pytest.raises(ValidationError) as exc_info:
            self.core.verification.reject(self.profile.id, self.passport.id, reason, self.admin)
        assert exc_info.value.field == "reason"
        assert self.core.profile_store.load(self.profile.id).version == self.profile.version

    def test_rejecting_verified_document_clears_verification(self):
        self.core.verification.verify(self.profile.id, self.passport.id, True, self.admin)
        rejected = self.core.verification.reject(
            self.profile.id, self.passport.id, "forged", principal("superadmin"),
        )
        document = rejected.find_document(self.passport.id)
        assert not document.is_verified
        assert document.verified_at is None and document.verified_by is None
        assert document.rejected_by == "superadmin-1"

    def test_later_verification_clears_rejection(self):
        self.core.verification.reject(self.profile.id, self.passport.id, "blurry", self.admin)
        verified = self.core.verification.verify(self.profile.id, self.passport.id, True, self.admin)
        document = verified.find_document(self.passport.id)
        assert document.status == DocumentStatus.VERIFIED
        assert document.rejection_reason is None
        assert document.rejected_at is None and document.rejected_by is None

    def test_requires_kyc_manage(self):
        for actor in (self.owner, principal("support"), principal("user", subject="user-bob")):
            with pytest.raises(PermissionDenied):
                self.core.verification.reject(self.profile.id, self.passport.id, "blurry", actor)
        with pytest.raises(PermissionDenied):
            self.core.verification.reject(uuid4(), uuid4(), "blurry", principal("support"))

    def test_unknown_document(self):
        with pytest.raises(DocumentNotFound):
            self.core.verification.reject(self.profile.id, uuid4(), "blurry", self.admin)

    def test_deactivated_profile_is_frozen(self):
        self.core.profiles.deactivate(self.profile.id, "closing", self.admin)
        with pytest.raises(ValidationError) as exc_info:
            self.core.verification.reject(self.profile.id, self.passport.id, "blurry", self.admin)
        assert exc_info.value.field == "deactivation"
