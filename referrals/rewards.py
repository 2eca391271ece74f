"""
Reward engine for converted referrals.

Rewards are a percentage of the referred member's subscription value:

- member referrer: one reward of 50 %, due immediately
- business referrer: 20 % now, 10 % after 30 days, 5 % after 60 days

Every reward is credited as an OfficeRnD fee on the referrer's account
(payout channel ``member-credit``). Rewards are settled by a scheduled job
that picks up scheduled rewards whose due date has passed; a reward that
fails to pay out is marked ``failed`` with the error and is left for manual
follow-up.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable

from pydantic import ValidationError

from .directory import MemberDirectory
from .errors import RewardCalculationError
from .models import (
    PayoutChannel,
    Referral,
    ReferralStatus,
    ReferrerType,
    Reward,
    RewardStatus,
    SettlementSummary,
    to_money,
    utc_now,
)
from .payouts import BankTransferService
from .store import MAX_BATCH_OPERATIONS, SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, Filter

logger = logging.getLogger(__name__)

REWARDS_COLLECTION = "rewards"


class SettlementFailure(Exception):
    """A reward that cannot be paid out through its payout channel."""


# (share of the subscription value, days until due, payout channel)
REWARD_TIERS: dict[ReferrerType, list[tuple[Decimal, int, PayoutChannel]]] = {
    ReferrerType.MEMBER: [
        (Decimal("0.50"), 0, PayoutChannel.MEMBER_CREDIT),
    ],
    ReferrerType.BUSINESS: [
        (Decimal("0.20"), 0, PayoutChannel.MEMBER_CREDIT),
        (Decimal("0.10"), 30, PayoutChannel.MEMBER_CREDIT),
        (Decimal("0.05"), 60, PayoutChannel.MEMBER_CREDIT),
    ],
}


def tier_amounts(referrer_type: ReferrerType, subscription_value: Decimal) -> list[Decimal]:
    """Reward amounts in cents for each tier, in due-date order."""
    return [to_money(subscription_value * share) for share, _, _ in REWARD_TIERS[referrer_type]]


class RewardEngine:
    def __init__(self, store: DocumentStore, directory: MemberDirectory, bank: BankTransferService,
                 referral_plan_id: str, fee_name: str = "Referral Reward",
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.directory = directory
        self.bank = bank
        self.referral_plan_id = referral_plan_id
        self.fee_name = fee_name
        self.clock = clock

    def create_rewards_for_conversion(self, referral: Referral) -> list[Reward]:
        if referral.status != ReferralStatus.CONVERTED:
            logger.warning("Skipping reward creation, referral %s is %s", referral.id, referral.status.value)
            return []

        base_amount = referral.subscription_value
        if base_amount is None or base_amount <= 0:
            raise RewardCalculationError(
                f"Referral {referral.id} has no positive subscription value, cannot create rewards",
                {"referralId": referral.id},
            )

        now = self.clock()
        rewards = []
        amounts = tier_amounts(referral.referrer_type, base_amount)
        for (_, due_in_days, channel), amount in zip(REWARD_TIERS[referral.referrer_type], amounts):
            if amount <= 0:
                raise RewardCalculationError(
                    f"Reward for referral {referral.id} rounds to zero",
                    {"referralId": referral.id, "subscriptionValue": str(base_amount)},
                )
            rewards.append(Reward(
                id=self.store.new_document_id(REWARDS_COLLECTION),
                referral_id=referral.id,
                referrer_id=referral.referrer_id,
                referrer_type=referral.referrer_type,
                amount_eur=amount,
                due_date=now + timedelta(days=due_in_days),
                status=RewardStatus.SCHEDULED,
                payout_channel=channel,
                referrer_company_id=referral.referrer_company_id,
            ))

        def _write(batch):
            for reward in rewards:
                batch.set(REWARDS_COLLECTION, reward.id, reward.to_document())

        self.store.run_batch(_write)
        logger.info("Created %d reward(s) for referral %s", len(rewards), referral.id)
        return rewards

    def process_due_rewards(self) -> SettlementSummary:
        now = self.clock()
        snapshots = self.store.query_collection(REWARDS_COLLECTION, [
            Filter("status", "==", RewardStatus.SCHEDULED.value),
            Filter("dueDate", "<=", now),
        ])
        summary = SettlementSummary(selected=len(snapshots))
        logger.info("Processing %d due reward(s)", len(snapshots))

        for snapshot in snapshots:
            try:
                self._settle(snapshot, now)
            except Exception as e:
                logger.exception("Reward payout failed for %s", snapshot.id)
                if self._mark_failed(snapshot.id, str(e) or type(e).__name__):
                    summary.failed += 1
                else:
                    summary.unrecorded += 1
                continue

            try:
                self.store.update_document(REWARDS_COLLECTION, snapshot.id, {
                    "status": RewardStatus.PAID.value,
                    "paidAt": SERVER_TIMESTAMP,
                })
            except Exception as e:
                logger.exception("Reward %s was paid out but could not be marked paid", snapshot.id)
                # Leaving it scheduled would pay it again on the next pass.
                message = f"Payout succeeded but paid status was not recorded: {str(e) or type(e).__name__}"
                if self._mark_failed(snapshot.id, message):
                    summary.failed += 1
                else:
                    summary.unrecorded += 1
                continue

            summary.paid += 1
            logger.info("Reward %s paid successfully", snapshot.id)

        logger.info("Settlement finished: %s", summary.model_dump())
        return summary

    def void_future_rewards(self, referral_id: str) -> int:
        snapshots = self.store.query_collection(REWARDS_COLLECTION, [
            Filter("referralId", "==", referral_id),
            Filter("status", "==", RewardStatus.SCHEDULED.value),
        ])

        for start in range(0, len(snapshots), MAX_BATCH_OPERATIONS):
            chunk = snapshots[start:start + MAX_BATCH_OPERATIONS]

            def _void(batch, chunk=chunk):
                for snapshot in chunk:
                    batch.update(REWARDS_COLLECTION, snapshot.id, {"status": RewardStatus.VOID.value})

            self.store.run_batch(_void)

        logger.info("Voided %d future reward(s) for referral %s", len(snapshots), referral_id)
        return len(snapshots)

    def list_rewards_for_referral(self, referral_id: str) -> list[Reward]:
        snapshots = self.store.query_collection(REWARDS_COLLECTION, [Filter("referralId", "==", referral_id)])
        rewards = [Reward.from_document(s.id, s.data) for s in snapshots]
        rewards.sort(key=lambda r: r.due_date)
        return rewards

    def _settle(self, snapshot: DocumentSnapshot, now: datetime) -> None:
        channel = (snapshot.data or {}).get("payoutChannel")
        if channel not in {c.value for c in PayoutChannel}:
            raise SettlementFailure(f"Unsupported payout channel: {channel!r}")
        try:
            reward = Reward.from_document(snapshot.id, snapshot.data)
        except ValidationError as e:
            raise SettlementFailure(f"Reward document is invalid: {e}") from e

        if reward.payout_channel == PayoutChannel.MEMBER_CREDIT:
            self.directory.add_new_fee(
                member_id=reward.referrer_id,
                fee_name=self.fee_name,
                plan_id=self.referral_plan_id,
                price=reward.amount_eur,
                issue_date=now,
                company_id=reward.referrer_company_id,
            )
        elif reward.payout_channel == PayoutChannel.BANK_TRANSFER:
            self.bank.issue_transfer(reward.referrer_id, reward.amount_eur)
        else:
            raise SettlementFailure(f"Payout channel '{reward.payout_channel.value}' is not implemented")

    def _mark_failed(self, reward_id: str, message: str) -> bool:
        try:
            self.store.update_document(REWARDS_COLLECTION, reward_id, {
                "status": RewardStatus.FAILED.value,
                "lastError": message,
            })
        except Exception:
            logger.exception("Could not record failure of reward %s", reward_id)
            return False
        return True
