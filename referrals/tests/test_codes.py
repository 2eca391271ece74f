"""
Tests for referral code issuance.

Tests cover:
1. Code format
2. Collision retry and exhaustion
3. Directory write-back and its failure
"""

import re

import pytest

from conftest import codes_from
from referrals.codes import MAX_CODE_ATTEMPTS, ReferralCodeIssuer, generate_referral_code
from referrals.errors import ExhaustedRetriesError, NotFoundError
from referrals.models import ReferrerType


class TestGenerateReferralCode:
    def test_six_uppercase_alphanumerics(self):
        for _ in range(50):
            assert re.fullmatch(r"[A-Z0-9]{6}", generate_referral_code())


class TestCreateReferralCode:
    """Tests for issuing a code."""

    def test_creates_code_document(self, store, directory):
        issuer = ReferralCodeIssuer(store, directory, code_generator=codes_from("ABC123"))

        code = issuer.create_referral_code("owner-1", "company-1", ReferrerType.BUSINESS)

        assert code.code == "ABC123"
        assert code.total_referred == 0
        assert code.total_converted == 0
        assert code.referred_users == []
        data = store.get_document("referralCodes", "ABC123").data
        assert data["ownerId"] == "owner-1"
        assert data["ownerCompanyId"] == "company-1"
        assert data["ownerType"] == "business"

    def test_writes_code_to_directory(self, store, directory):
        issuer = ReferralCodeIssuer(store, directory, code_generator=codes_from("ABC123"))

        issuer.create_referral_code("owner-1", None, ReferrerType.MEMBER)

        assert directory.updates == [("owner-1", {"referralOwnCode": "ABC123"})]

    def test_retries_on_collision(self, store, directory):
        store.create_document("referralCodes", {"ownerId": "someone-else", "ownerType": "member"}, "TAKEN1")
        writes = store.writes
        issuer = ReferralCodeIssuer(store, directory, code_generator=codes_from("TAKEN1", "FRESH1"))

        code = issuer.create_referral_code("owner-1", None, ReferrerType.MEMBER)

        assert code.code == "FRESH1"
        assert store.writes - writes == 1
        assert store.get_document("referralCodes", "TAKEN1").data["ownerId"] == "someone-else"

    def test_gives_up_after_max_attempts(self, store, directory):
        store.create_document("referralCodes", {"ownerId": "someone-else", "ownerType": "member"}, "TAKEN1")
        calls = []

        def always_taken():
            calls.append(1)
            return "TAKEN1"

        issuer = ReferralCodeIssuer(store, directory, code_generator=always_taken)

        with pytest.raises(ExhaustedRetriesError):
            issuer.create_referral_code("owner-1", None, ReferrerType.MEMBER)

        assert len(calls) == MAX_CODE_ATTEMPTS
        assert directory.updates == []

    def test_directory_failure_keeps_code(self, store, directory):
        directory.failing_members.add("owner-1")
        issuer = ReferralCodeIssuer(store, directory, code_generator=codes_from("ABC123"))

        code = issuer.create_referral_code("owner-1", None, ReferrerType.MEMBER)

        assert code.code == "ABC123"
        assert store.get_document("referralCodes", "ABC123").exists


class TestLookup:
    def test_get_referral_code(self, issuer, member_code):
        assert issuer.get_referral_code(member_code.code).owner_id == "member-owner"

    def test_get_unknown_code(self, issuer):
        with pytest.raises(NotFoundError):
            issuer.get_referral_code("NOPE00")

    def test_find_code_for_owner(self, issuer, member_code, business_code):
        assert issuer.find_code_for_owner("business-owner").code == business_code.code
        assert issuer.find_code_for_owner("nobody") is None
