"""Shared fixtures: an in-memory store on a frozen clock and recording fakes."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest

from referrals.codes import ReferralCodeIssuer
from referrals.container import wire_services
from referrals.directory import MemberDirectory
from referrals.errors import DirectoryError, PayoutError
from referrals.models import CreateReferralParams, ReferrerType
from referrals.payouts import BankTransferService
from referrals.rewards import RewardEngine
from referrals.service import ReferralLedger
from referrals.settings import Settings
from referrals.store import InMemoryDocumentStore

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
ADMIN_SECRET = "test-admin-secret"
REFERRAL_PLAN_ID = "plan-referral"


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeDirectory(MemberDirectory):
    """Records every call; members listed in `failing_members` make writes fail."""

    def __init__(self):
        self.members: dict[str, dict] = {}
        self.updates: list[tuple[str, dict]] = []
        self.fees: list[dict] = []
        self.failing_members: set[str] = set()

    def get_member(self, member_id: str) -> dict:
        if member_id not in self.members:
            raise DirectoryError(f"Member not found: {member_id}")
        return self.members[member_id]

    def update_member(self, member_id: str, properties: dict) -> None:
        if member_id in self.failing_members:
            raise DirectoryError(f"Directory unavailable for {member_id}")
        self.updates.append((member_id, properties))

    def add_new_fee(self, *, member_id: str, fee_name: str, plan_id: str, price: Decimal,
                    issue_date: datetime, company_id: Optional[str]) -> str:
        if member_id in self.failing_members:
            raise DirectoryError(f"Directory unavailable for {member_id}")
        self.fees.append({
            "member_id": member_id,
            "fee_name": fee_name,
            "plan_id": plan_id,
            "price": price,
            "issue_date": issue_date,
            "company_id": company_id,
        })
        return f"fee-{len(self.fees)}"


class FakeBank(BankTransferService):
    def __init__(self):
        self.transfers: list[tuple[str, Decimal]] = []
        self.fail = False

    def issue_transfer(self, payee_id: str, amount_eur: Decimal) -> str:
        if self.fail:
            raise PayoutError("Bank rejected the transfer")
        self.transfers.append((payee_id, amount_eur))
        return f"tr-{len(self.transfers)}"


def codes_from(*codes: str):
    """Code generator yielding the given candidates in order."""
    candidates = iter(codes)
    return lambda: next(candidates)


def trial_params(code: str, referred_user_id: str, **overrides) -> CreateReferralParams:
    values = {
        "referral_code": code,
        "referred_user_id": referred_user_id,
        "trial_start_date": NOW,
        "trial_day_id": "trial-day-1",
        "opportunity_id": "opp-1",
    }
    values.update(overrides)
    return CreateReferralParams(**values)


def membership_params(code: str, referred_user_id: str, subscription_value="100.00",
                      **overrides) -> CreateReferralParams:
    values = {
        "referral_code": code,
        "referred_user_id": referred_user_id,
        "membership_start_date": NOW,
        "subscription_value": None if subscription_value is None else Decimal(subscription_value),
        "referral_value": None if subscription_value is None else Decimal(subscription_value),
    }
    values.update(overrides)
    return CreateReferralParams(**values)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store(clock):
    return InMemoryDocumentStore(clock=clock)


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def bank():
    return FakeBank()


@pytest.fixture
def rewards(store, directory, bank, clock):
    return RewardEngine(store, directory, bank, referral_plan_id=REFERRAL_PLAN_ID, clock=clock)


@pytest.fixture
def ledger(store, directory, rewards):
    return ReferralLedger(store, directory, rewards)


@pytest.fixture
def issuer(store, directory):
    return ReferralCodeIssuer(store, directory, code_generator=codes_from("MEMBR1", "BUSNS1", "MEMBR2"))


@pytest.fixture
def member_code(issuer):
    return issuer.create_referral_code("member-owner", None, ReferrerType.MEMBER)


@pytest.fixture
def business_code(issuer, member_code):
    return issuer.create_referral_code("business-owner", "company-1", ReferrerType.BUSINESS)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        env="test",
        store_backend="memory",
        admin_secret=ADMIN_SECRET,
        officernd_referral_plan_id=REFERRAL_PLAN_ID,
    )


@pytest.fixture
def services(settings, store, directory, bank, clock):
    return wire_services(settings, store, directory, bank, clock=clock)
