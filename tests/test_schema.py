"""
Tests for the Domain Schema — verifies the Pydantic models.

Validates:
- Built-in roles and the permission vocabulary
- Model invariants (hierarchy bounds, risk score range, rejection reason)
- camelCase wire aliases
- Frozen snapshots and revalidation
"""

from __future__ import annotations

import pydantic
import pytest

from kycguard.domain.schema import (
    ALL_PERMISSIONS,
    BUILTIN_ROLES,
    PERM_KYC_MANAGE,
    PERM_KYC_VIEW,
    PROTECTED_ROLES,
    Importance,
    KycProfile,
    KycStatus,
    KycStatusValue,
    Role,
    revalidate,
)


class TestBuiltinRoles:
    def test_hierarchy_covers_one_to_seven(self):
        assert sorted(r.hierarchy for r in BUILTIN_ROLES.values()) == [1, 2, 3, 4, 5, 6, 7]

    def test_protected_roles_are_builtin(self):
        assert PROTECTED_ROLES <= set(BUILTIN_ROLES)
        assert BUILTIN_ROLES["admin"].is_protected
        assert not BUILTIN_ROLES["support"].is_protected

    def test_builtin_permissions_are_known(self):
        for role in BUILTIN_ROLES.values():
            assert role.permissions <= set(ALL_PERMISSIONS), role.name

    def test_kyc_vocabulary(self):
        assert PERM_KYC_VIEW in BUILTIN_ROLES["support"].permissions
        assert PERM_KYC_MANAGE not in BUILTIN_ROLES["support"].permissions
        assert PERM_KYC_MANAGE in BUILTIN_ROLES["admin"].permissions

    def test_vocabulary_has_no_duplicates(self):
        assert len(ALL_PERMISSIONS) == len(set(ALL_PERMISSIONS))


class TestInvariants:
    @pytest.mark.parametrize("level", [0, 8])
    def test_role_hierarchy_bounds(self, level):
        with pytest.raises(pydantic.ValidationError):
            Role(name="ops_team", display_name="Ops", hierarchy=level)

    def test_user_count_non_negative(self):
        with pytest.raises(pydantic.ValidationError):
            Role(name="ops_team", display_name="Ops", hierarchy=2, user_count=-1)

    @pytest.mark.parametrize("score", [-1, 101])
    def test_risk_score_range(self, score):
        with pytest.raises(pydantic.ValidationError):
            KycStatus(risk_score=score)

    @pytest.mark.parametrize("reason", [None, "", "  "])
    def test_rejected_requires_reason(self, reason):
        with pytest.raises(pydantic.ValidationError):
            KycStatus(status=KycStatusValue.REJECTED, rejection_reason=reason)

    def test_revalidate_reruns_validators(self):
        status = KycStatus(status=KycStatusValue.PENDING_REVIEW)
        with pytest.raises(pydantic.ValidationError):
            revalidate(status, status=KycStatusValue.REJECTED)
        rejected = revalidate(status, status=KycStatusValue.REJECTED, rejection_reason="blurry")
        assert rejected.rejection_reason == "blurry"

    def test_snapshots_are_frozen(self):
        profile = KycProfile(user_id="user-a")
        with pytest.raises(pydantic.ValidationError):
            profile.user_id = "user-b"

    def test_importance_rank(self):
        ranks = [i.rank for i in (Importance.REQUIRED, Importance.RECOMMENDED, Importance.OPTIONAL)]
        assert ranks == [0, 1, 2]


class TestWireAliases:
    def test_profile_accepts_camel_case(self):
        profile = KycProfile.model_validate(
            {
                "userId": "user-a",
                "personalInfo": {"firstName": "Ada", "dateOfBirth": "1990-12-10"},
                "kycStatus": {"status": "in_progress", "riskScore": 40},
            }
        )
        assert profile.personal_info.first_name == "Ada"
        assert profile.kyc_status.risk_score == 40

    def test_profile_serializes_camel_case(self):
        payload = KycProfile(user_id="user-a").model_dump(mode="json", by_alias=True)
        assert payload["userId"] == "user-a"
        assert payload["kycStatus"]["status"] == "not_started"
        assert payload["profileCompletion"]["percentage"] == 0
