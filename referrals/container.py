"""Builds the ledger's services once per process and hands them to callers."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .codes import ReferralCodeIssuer
from .directory import MemberDirectory, OfficeRndDirectory
from .models import utc_now
from .payouts import BankTransferService, StripeBankTransfer
from .rewards import RewardEngine
from .service import ReferralLedger
from .settings import Settings
from .store import DocumentStore, InMemoryDocumentStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: DocumentStore
    directory: MemberDirectory
    bank: BankTransferService
    codes: ReferralCodeIssuer
    ledger: ReferralLedger
    rewards: RewardEngine


def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "memory":
        logger.warning("Using the in-memory document store; data is lost on exit")
        return InMemoryDocumentStore(max_attempts=settings.transaction_max_attempts)

    from .firestore_store import FirestoreDocumentStore

    return FirestoreDocumentStore.from_settings(settings)


def wire_services(settings: Settings, store: DocumentStore, directory: MemberDirectory,
                  bank: BankTransferService, clock: Callable[[], datetime] = utc_now) -> Services:
    rewards = RewardEngine(
        store,
        directory,
        bank,
        referral_plan_id=settings.officernd_referral_plan_id,
        fee_name=settings.referral_fee_name,
        clock=clock,
    )
    return Services(
        settings=settings,
        store=store,
        directory=directory,
        bank=bank,
        codes=ReferralCodeIssuer(store, directory),
        ledger=ReferralLedger(store, directory, rewards),
        rewards=rewards,
    )


def build_services(settings: Settings) -> Services:
    store = build_store(settings)
    directory = OfficeRndDirectory(settings)
    bank = StripeBankTransfer(settings, directory)
    return wire_services(settings, store, directory, bank)
