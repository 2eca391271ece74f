from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CENT = Decimal("0.01")


class ReferrerType(str, Enum):
    MEMBER = "member"
    BUSINESS = "business"


class ReferralStatus(str, Enum):
    TRIAL = "trial"
    AWAITING_PAYMENT = "awaiting_payment"
    CONVERTED = "converted"
    CANCELLED_EARLY = "cancelled_early"


class RewardStatus(str, Enum):
    SCHEDULED = "scheduled"
    PAID = "paid"
    FAILED = "failed"
    VOID = "void"


class PayoutChannel(str, Enum):
    MEMBER_CREDIT = "member-credit"
    BANK_TRANSFER = "bank-transfer"
    MANUAL = "manual"


def to_money(value: Any) -> Decimal:
    """Quantize a number to cents, going through str so floats keep their printed value."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _document_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_document_value(v) for v in value]
    return value


class Document(BaseModel):
    """Base for entities persisted in the document store under camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    # Attribute stored as the document id, not in the payload.
    id_field: ClassVar[str] = "id"

    def to_document(self) -> dict:
        data = self.model_dump(by_alias=True, exclude={self.id_field})
        return {key: _document_value(value) for key, value in data.items()}

    @classmethod
    def from_document(cls, document_id: str, data: dict):
        return cls.model_validate({**data, to_camel(cls.id_field): document_id})


class ReferralCode(Document):
    id_field: ClassVar[str] = "code"

    code: str = Field(..., min_length=6, max_length=6, pattern=r"^[A-Z0-9]{6}$")
    owner_id: str
    owner_company_id: Optional[str] = None
    owner_type: ReferrerType
    total_referred: int = Field(default=0, ge=0)
    total_converted: int = Field(default=0, ge=0)
    total_rewarded_eur: Decimal = Decimal("0.00")
    referred_users: list[str] = Field(default_factory=list)

    @field_validator("total_rewarded_eur", mode="before")
    @classmethod
    def _money(cls, value: Any) -> Decimal:
        return to_money(value)


class Referral(Document):
    id: str
    referrer_id: str
    referrer_company_id: Optional[str] = None
    referrer_type: ReferrerType
    referred_user_id: str
    referral_code: str
    trial_start_date: Optional[datetime] = None
    trial_day_id: Optional[str] = None
    opportunity_id: Optional[str] = None
    membership_start_date: Optional[datetime] = None
    subscription_value: Optional[Decimal] = None
    referral_value: Optional[Decimal] = None
    status: ReferralStatus
    reward_ids: list[str] = Field(default_factory=list)

    @field_validator("trial_start_date", "membership_start_date")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @field_validator("subscription_value", "referral_value", mode="before")
    @classmethod
    def _money(cls, value: Any) -> Optional[Decimal]:
        return None if value is None else to_money(value)

    @property
    def is_trial(self) -> bool:
        return self.trial_start_date is not None


class Reward(Document):
    id: str
    referral_id: str
    referrer_id: str
    referrer_type: ReferrerType
    amount_eur: Decimal
    due_date: datetime
    status: RewardStatus
    payout_channel: PayoutChannel
    referrer_company_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @field_validator("amount_eur", mode="before")
    @classmethod
    def _money(cls, value: Any) -> Decimal:
        return to_money(value)

    @field_validator("due_date", "paid_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    def to_document(self) -> dict:
        data = super().to_document()
        # Settlement bookkeeping only appears once a settlement pass wrote it.
        for key in ("paidAt", "lastError"):
            if data[key] is None:
                del data[key]
        return data


class CreateReferralParams(BaseModel):
    referral_code: str
    referred_user_id: str
    trial_start_date: Optional[datetime] = None
    trial_day_id: Optional[str] = None
    opportunity_id: Optional[str] = None
    membership_start_date: Optional[datetime] = None
    subscription_value: Optional[Decimal] = None
    referral_value: Optional[Decimal] = None

    @field_validator("referral_code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def is_trial(self) -> bool:
        return self.trial_start_date is not None


class CreateReferralCodeRequest(BaseModel):
    referrer_id: str
    referrer_company_id: Optional[str] = None
    referrer_type: ReferrerType = ReferrerType.MEMBER

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "referrer_id": "5d1bcda0dbd6e40010479eed",
            "referrer_company_id": None,
            "referrer_type": "member",
        }
    })


class SettlementSummary(BaseModel):
    selected: int = 0
    paid: int = 0
    failed: int = 0
    unrecorded: int = 0


class VoidRewardsResponse(BaseModel):
    referral_id: str
    voided: int


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
