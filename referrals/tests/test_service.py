"""
Unit Tests for the Referral Ledger

Tests cover:
1. Trial and membership referral creation
2. Duplicate, cross-code and self-referral guards
3. Trial/membership argument validation
4. Conversion, its reward schedule and double conversion
5. Races between concurrent referrals
"""

from decimal import Decimal

import pytest

from conftest import NOW, membership_params, trial_params
from referrals.errors import (
    ConflictError,
    ConflictReason,
    DataInvalidError,
    InvalidArgumentError,
    NotFoundError,
    RewardCalculationError,
)
from referrals.models import CreateReferralParams, ReferralStatus


class TestCreateReferral:
    """Tests for recording a referral."""

    def test_trial_referral(self, store, ledger, directory, member_code):
        referral = ledger.create_referral(trial_params(member_code.code, "user-1"))

        assert referral.status == ReferralStatus.TRIAL
        assert referral.referrer_id == "member-owner"
        assert referral.referral_code == member_code.code
        assert referral.trial_day_id == "trial-day-1"
        assert referral.subscription_value is None

        code = store.get_document("referralCodes", member_code.code).data
        assert code["totalReferred"] == 1
        assert code["referredUsers"] == ["user-1"]
        assert code["updatedAt"] == NOW

        stored = store.get_document("referrals", referral.id).data
        assert stored["status"] == "trial"
        assert stored["createdAt"] == NOW
        assert ("user-1", {"referralCodeUsed": member_code.code}) in directory.updates

    def test_membership_referral(self, ledger, business_code):
        referral = ledger.create_referral(membership_params(business_code.code, "user-1", "250"))

        assert referral.status == ReferralStatus.AWAITING_PAYMENT
        assert referral.referrer_company_id == "company-1"
        assert referral.subscription_value == Decimal("250.00")
        assert referral.trial_start_date is None

    def test_unknown_code(self, store, ledger):
        with pytest.raises(NotFoundError):
            ledger.create_referral(trial_params("NOPE00", "user-1"))
        assert store.query_collection("referrals") == []

    def test_directory_failure_keeps_referral(self, store, ledger, directory, member_code):
        directory.failing_members.add("user-1")

        referral = ledger.create_referral(trial_params(member_code.code, "user-1"))

        assert store.get_document("referrals", referral.id).exists

    def test_list_referrals_for_code(self, ledger, member_code, business_code):
        ledger.create_referral(trial_params(member_code.code, "user-1"))
        ledger.create_referral(trial_params(member_code.code, "user-2"))
        ledger.create_referral(trial_params(business_code.code, "user-3"))

        referred = {r.referred_user_id for r in ledger.list_referrals_for_code(member_code.code)}

        assert referred == {"user-1", "user-2"}


class TestReferralGuards:
    """A user is referred at most once, and never by themself."""

    def test_same_code_twice(self, store, ledger, member_code):
        ledger.create_referral(trial_params(member_code.code, "user-1"))
        writes = store.writes

        with pytest.raises(ConflictError) as exc_info:
            ledger.create_referral(membership_params(member_code.code, "user-1"))

        assert exc_info.value.reason == ConflictReason.ALREADY_REFERRED
        assert store.writes == writes
        assert store.get_document("referralCodes", member_code.code).data["totalReferred"] == 1

    def test_other_code(self, store, ledger, member_code, business_code):
        ledger.create_referral(trial_params(member_code.code, "user-1"))

        with pytest.raises(ConflictError) as exc_info:
            ledger.create_referral(trial_params(business_code.code, "user-1"))

        assert exc_info.value.reason == ConflictReason.ALREADY_REFERRED_OTHER_CODE
        assert exc_info.value.details == {"referralCode": member_code.code}
        assert store.get_document("referralCodes", business_code.code).data["totalReferred"] == 0

    def test_self_referral(self, store, ledger, member_code):
        with pytest.raises(ConflictError) as exc_info:
            ledger.create_referral(trial_params(member_code.code, "member-owner"))

        assert exc_info.value.reason == ConflictReason.SELF_REFERRAL
        assert store.query_collection("referrals") == []

    def test_concurrent_duplicate_loses_on_retry(self, store, ledger, member_code):
        run_transaction = store.run_transaction
        raced = []

        def racing(fn):
            def body(tx):
                result = fn(tx)
                if not raced:
                    raced.append(True)
                    # Another request refers the same user before this one commits.
                    ledger.create_referral(trial_params(member_code.code, "user-1"))
                return result
            return run_transaction(body)

        store.run_transaction = racing

        with pytest.raises(ConflictError) as exc_info:
            ledger.create_referral(trial_params(member_code.code, "user-1"))

        assert exc_info.value.reason == ConflictReason.ALREADY_REFERRED
        assert len(store.query_collection("referrals")) == 1
        assert store.get_document("referralCodes", member_code.code).data["totalReferred"] == 1


class TestReferralValidation:
    """A referral carries trial fields or membership fields, not both."""

    def test_both_kinds_rejected(self, store, ledger, member_code):
        writes = store.writes
        params = trial_params(
            member_code.code, "user-1",
            membership_start_date=NOW,
            subscription_value=Decimal("100"),
            referral_value=Decimal("100"),
        )

        with pytest.raises(InvalidArgumentError) as exc_info:
            ledger.create_referral(params)

        assert exc_info.value.details["field"] == "membership_start_date"
        assert store.writes == writes

    def test_neither_kind_rejected(self, store, ledger, member_code):
        writes = store.writes
        params = CreateReferralParams(referral_code=member_code.code, referred_user_id="user-1")

        with pytest.raises(InvalidArgumentError):
            ledger.create_referral(params)

        assert store.writes == writes

    def test_missing_subscription_value(self, ledger, member_code):
        with pytest.raises(InvalidArgumentError) as exc_info:
            ledger.create_referral(membership_params(member_code.code, "user-1", subscription_value=None))
        assert exc_info.value.details["field"] == "subscription_value"

    def test_non_positive_value(self, ledger, member_code):
        with pytest.raises(InvalidArgumentError):
            ledger.create_referral(membership_params(member_code.code, "user-1", "0"))

    def test_sub_cent_value_rejected(self, store, ledger, member_code):
        writes = store.writes

        with pytest.raises(InvalidArgumentError) as exc_info:
            ledger.create_referral(membership_params(member_code.code, "user-1", "0.004"))

        assert exc_info.value.details["field"] == "subscription_value"
        assert store.writes == writes

    def test_value_too_small_for_business_tiers(self, store, ledger, business_code):
        writes = store.writes

        with pytest.raises(InvalidArgumentError) as exc_info:
            ledger.create_referral(membership_params(business_code.code, "user-1", "0.05"))

        assert exc_info.value.details["field"] == "subscription_value"
        assert store.writes == writes
        assert store.get_document("referralCodes", business_code.code).data["totalReferred"] == 0

    def test_smallest_accepted_value_converts_with_rewards(self, ledger, member_code):
        referral = ledger.create_referral(membership_params(member_code.code, "user-1", "0.01"))

        converted = ledger.confirm_conversion(referral.id)

        assert converted.status == ReferralStatus.CONVERTED
        assert len(converted.reward_ids) == 1

    def test_code_is_matched_case_insensitively(self, ledger, member_code):
        referral = ledger.create_referral(trial_params(f" {member_code.code.lower()} ", "user-1"))

        assert referral.referral_code == member_code.code


class TestConfirmConversion:
    """Tests for converting a referral and scheduling its rewards."""

    def test_converts_and_schedules_rewards(self, store, ledger, member_code):
        referral = ledger.create_referral(membership_params(member_code.code, "user-1", "100"))

        converted = ledger.confirm_conversion(referral.id)

        assert converted.status == ReferralStatus.CONVERTED
        assert len(converted.reward_ids) == 1
        stored = store.get_document("referrals", referral.id).data
        assert stored["status"] == "converted"
        assert stored["rewardIds"] == converted.reward_ids
        assert store.get_document("referralCodes", member_code.code).data["totalConverted"] == 1
        reward = store.get_document("rewards", converted.reward_ids[0]).data
        assert reward["amountEur"] == 50.0
        assert reward["status"] == "scheduled"

    def test_business_referral_gets_three_rewards(self, ledger, business_code):
        referral = ledger.create_referral(membership_params(business_code.code, "user-1", "200"))

        converted = ledger.confirm_conversion(referral.id)

        assert len(converted.reward_ids) == 3

    def test_second_confirmation_rejected(self, store, ledger, member_code):
        referral = ledger.create_referral(membership_params(member_code.code, "user-1"))
        ledger.confirm_conversion(referral.id)
        rewards = len(store.query_collection("rewards"))

        with pytest.raises(ConflictError) as exc_info:
            ledger.confirm_conversion(referral.id)

        assert exc_info.value.reason == ConflictReason.NOT_ELIGIBLE_FOR_CONVERSION
        assert exc_info.value.details == {"currentStatus": "converted"}
        assert len(store.query_collection("rewards")) == rewards
        assert store.get_document("referralCodes", member_code.code).data["totalConverted"] == 1

    def test_trial_referral_not_eligible(self, ledger, member_code):
        referral = ledger.create_referral(trial_params(member_code.code, "user-1"))

        with pytest.raises(ConflictError) as exc_info:
            ledger.confirm_conversion(referral.id)

        assert exc_info.value.details == {"currentStatus": "trial"}

    def test_unknown_referral(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.confirm_conversion("missing")

    def test_empty_referral_document(self, store, ledger):
        store.create_document("referrals", {}, "empty")

        with pytest.raises(DataInvalidError):
            ledger.confirm_conversion("empty")

    def test_reward_failure_keeps_conversion(self, store, ledger, member_code):
        store.create_document("referrals", {
            "referrerId": "member-owner",
            "referrerType": "member",
            "referredUserId": "user-1",
            "referralCode": member_code.code,
            "status": "awaiting_payment",
        }, "no-value")

        with pytest.raises(RewardCalculationError):
            ledger.confirm_conversion("no-value")

        assert store.get_document("referrals", "no-value").data["status"] == "converted"
        assert store.query_collection("rewards") == []

    def test_get_referral(self, ledger, member_code):
        referral = ledger.create_referral(trial_params(member_code.code, "user-1"))

        assert ledger.get_referral(referral.id).referred_user_id == "user-1"
        with pytest.raises(NotFoundError):
            ledger.get_referral("missing")
