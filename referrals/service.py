import logging
from typing import Optional

from .codes import REFERRAL_CODES_COLLECTION
from .directory import MemberDirectory
from .errors import ConflictError, DataInvalidError, InvalidArgumentError, NotFoundError
from .models import (
    CreateReferralParams,
    Referral,
    ReferralCode,
    ReferralStatus,
    to_money,
)
from .rewards import RewardEngine, tier_amounts
from .store import SERVER_TIMESTAMP, ArrayUnion, DocumentStore, Filter, Increment, Transaction

logger = logging.getLogger(__name__)

REFERRALS_COLLECTION = "referrals"


def validate_referral_params(params: CreateReferralParams) -> None:
    """A referral is either a trial referral or a membership referral, never both."""
    if params.is_trial:
        for field in ("membership_start_date", "subscription_value", "referral_value"):
            if getattr(params, field) is not None:
                raise InvalidArgumentError(
                    f"{field} must be absent when creating a trial referral", {"field": field}
                )
        return

    if params.membership_start_date is None:
        raise InvalidArgumentError(
            "membership_start_date is required when creating a membership referral",
            {"field": "membership_start_date"},
        )
    for field in ("subscription_value", "referral_value"):
        value = getattr(params, field)
        if value is None:
            raise InvalidArgumentError(
                f"{field} is required when creating a membership referral", {"field": field}
            )
        if to_money(value) <= 0:
            raise InvalidArgumentError(f"{field} must be at least one cent", {"field": field, "value": str(value)})


class ReferralLedger:
    def __init__(self, store: DocumentStore, directory: MemberDirectory, rewards: RewardEngine):
        self.store = store
        self.directory = directory
        self.rewards = rewards

    def create_referral(self, params: CreateReferralParams) -> Referral:
        logger.info("Creating referral of %s with code %s", params.referred_user_id, params.referral_code)
        validate_referral_params(params)

        def _create(tx: Transaction) -> Referral:
            code_snapshot = tx.get(REFERRAL_CODES_COLLECTION, params.referral_code)
            if not code_snapshot.exists:
                raise NotFoundError(
                    f"Referral code not found: {params.referral_code}",
                    {"referralCode": params.referral_code},
                )
            code = ReferralCode.from_document(code_snapshot.id, code_snapshot.data)

            if params.referred_user_id in code.referred_users:
                raise ConflictError.already_referred(code.code)
            if params.referred_user_id == code.owner_id:
                raise ConflictError.self_referral()
            # Every accepted membership referral must be rewardable once it converts.
            if not params.is_trial and not all(tier_amounts(code.owner_type, to_money(params.subscription_value))):
                raise InvalidArgumentError(
                    f"subscription_value is too small to reward a {code.owner_type.value} referrer",
                    {"field": "subscription_value", "value": str(params.subscription_value)},
                )

            existing = tx.query(REFERRALS_COLLECTION, [Filter("referredUserId", "==", params.referred_user_id)])
            if existing:
                raise ConflictError.already_referred_other_code(existing[0].data.get("referralCode"))

            referral = Referral(
                id=self.store.new_document_id(REFERRALS_COLLECTION),
                referrer_id=code.owner_id,
                referrer_company_id=code.owner_company_id,
                referrer_type=code.owner_type,
                referred_user_id=params.referred_user_id,
                referral_code=code.code,
                trial_start_date=params.trial_start_date,
                trial_day_id=params.trial_day_id,
                opportunity_id=params.opportunity_id,
                membership_start_date=params.membership_start_date,
                subscription_value=params.subscription_value,
                referral_value=params.referral_value,
                status=ReferralStatus.TRIAL if params.is_trial else ReferralStatus.AWAITING_PAYMENT,
            )
            tx.set(REFERRALS_COLLECTION, referral.id, {
                **referral.to_document(),
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            })
            tx.update(REFERRAL_CODES_COLLECTION, code.code, {
                "totalReferred": Increment(1),
                "referredUsers": ArrayUnion(params.referred_user_id),
                "updatedAt": SERVER_TIMESTAMP,
            })
            return referral

        referral = self.store.run_transaction(_create)

        # The directory is outside the store's transaction; the referral stands either way.
        try:
            self.directory.update_member(referral.referred_user_id, {"referralCodeUsed": referral.referral_code})
        except Exception:
            logger.exception("Could not mark member %s as referred by %s",
                             referral.referred_user_id, referral.referral_code)

        logger.info("Referral %s created with status %s", referral.id, referral.status.value)
        return referral

    def confirm_conversion(self, referral_id: str) -> Referral:
        """
        Mark a referral as converted once the referred user's first payment clears.

        The status change and the code's converted counter commit together.
        Rewards are created after that commit, so a failure while creating
        them leaves the conversion in place and is reported to the caller.
        """
        logger.info("Confirming conversion of referral %s", referral_id)

        def _convert(tx: Transaction) -> Referral:
            referral = self._read_referral(tx, referral_id)
            if referral.status != ReferralStatus.AWAITING_PAYMENT:
                raise ConflictError.not_eligible_for_conversion(referral.status.value)

            referral.status = ReferralStatus.CONVERTED
            tx.update(REFERRALS_COLLECTION, referral.id, {
                "status": referral.status.value,
                "updatedAt": SERVER_TIMESTAMP,
            })
            tx.update(REFERRAL_CODES_COLLECTION, referral.referral_code, {
                "totalConverted": Increment(1),
                "updatedAt": SERVER_TIMESTAMP,
            })
            return referral

        referral = self.store.run_transaction(_convert)

        rewards = self.rewards.create_rewards_for_conversion(referral)
        if rewards:
            reward_ids = [reward.id for reward in rewards]
            self.store.update_document(REFERRALS_COLLECTION, referral.id, {
                "rewardIds": ArrayUnion(*reward_ids),
                "updatedAt": SERVER_TIMESTAMP,
            })
            referral.reward_ids.extend(r for r in reward_ids if r not in referral.reward_ids)

        logger.info("Referral %s converted, %d reward(s) scheduled for %s",
                    referral.id, len(rewards), referral.referrer_id)
        return referral

    def get_referral(self, referral_id: str) -> Referral:
        snapshot = self.store.get_document(REFERRALS_COLLECTION, referral_id)
        return self._referral_from_snapshot(referral_id, snapshot.exists, snapshot.data)

    def list_referrals_for_code(self, referral_code: str) -> list[Referral]:
        snapshots = self.store.query_collection(
            REFERRALS_COLLECTION, [Filter("referralCode", "==", referral_code)]
        )
        return [Referral.from_document(s.id, s.data) for s in snapshots]

    def _read_referral(self, tx: Transaction, referral_id: str) -> Referral:
        snapshot = tx.get(REFERRALS_COLLECTION, referral_id)
        return self._referral_from_snapshot(referral_id, snapshot.exists, snapshot.data)

    @staticmethod
    def _referral_from_snapshot(referral_id: str, exists: bool, data: Optional[dict]) -> Referral:
        if not exists:
            raise NotFoundError(f"Referral not found: {referral_id}", {"referralId": referral_id})
        if not data:
            raise DataInvalidError(f"Referral {referral_id} has no data", {"referralId": referral_id})
        return Referral.from_document(referral_id, data)
