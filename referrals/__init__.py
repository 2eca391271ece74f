"""
Referral and Reward Ledger for the Coworking Space

This package provides:
- Unique referral code issuance
- Referral lifecycle: trial → awaiting payment → converted
- Uniqueness and self-referral guards enforced in store transactions
- Tiered EUR rewards on conversion
- Scheduled settlement through member credit or bank transfer, and voiding
"""

from .codes import ReferralCodeIssuer
from .errors import (
    ConflictError,
    DependencyFailureError,
    ExhaustedRetriesError,
    InvalidArgumentError,
    LedgerError,
    NotFoundError,
)
from .models import (
    PayoutChannel,
    Referral,
    ReferralCode,
    ReferralStatus,
    ReferrerType,
    Reward,
    RewardStatus,
)
from .rewards import RewardEngine
from .service import ReferralLedger

__all__ = [
    "ReferralCodeIssuer",
    "ReferralLedger",
    "RewardEngine",
    "ReferralCode",
    "Referral",
    "Reward",
    "ReferrerType",
    "ReferralStatus",
    "RewardStatus",
    "PayoutChannel",
    "LedgerError",
    "InvalidArgumentError",
    "NotFoundError",
    "ConflictError",
    "ExhaustedRetriesError",
    "DependencyFailureError",
]
