from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class EntryKind(str, Enum):
    EARN = "earn"
    REDEEM = "redeem"


class EarnReason(str, Enum):
    RIDE_COMPLETED = "ride_completed"
    RIDE_SHARED = "ride_shared"
    CROWD_REPORT = "crowd_report"
    FIRST_RIDE = "first_ride"
    REFERRAL_BONUS = "referral_bonus"
    PROFILE_COMPLETED = "profile_completed"


REDEEM_REASON = "redeem"


class RewardCategory(str, Enum):
    RIDE_VOUCHER = "ride_voucher"
    GIFT_CARD = "gift_card"
    FOOD_VOUCHER = "food_voucher"


class VoucherStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class Account(BaseModel):
    account_id: str
    balance: int = Field(..., ge=0)
    version: int = 0
    active: bool = True
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    id: UUID
    account_id: str
    kind: EntryKind
    delta: int
    reason: str
    balance_after: int = Field(..., ge=0)
    sequence: int
    reward_id: Optional[str] = None
    voucher_id: Optional[UUID] = None
    idempotency_key: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class RewardDefinition(BaseModel):
    reward_id: str = Field(..., min_length=1, description="Reward title, unique in the catalog")
    cost: int = Field(..., gt=0)
    category: RewardCategory = RewardCategory.RIDE_VOUCHER
    description: str = ""

    model_config = ConfigDict(frozen=True, json_schema_extra={
        "example": {
            "reward_id": "₹50 Ride Voucher",
            "cost": 200,
            "category": "ride_voucher",
            "description": "One free bus ride up to ₹50",
        }
    })


class Voucher(BaseModel):
    id: UUID
    account_id: str
    reward_id: str
    cost_paid: int = Field(..., gt=0)
    issued_at: datetime
    status: VoucherStatus = VoucherStatus.ACTIVE
    status_changed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_transition(self) -> bool:
        return self.status == VoucherStatus.ACTIVE


class EarnRequest(BaseModel):
    amount: int = Field(..., strict=True)
    reason: str
    idempotency_key: Optional[str] = Field(default=None, max_length=128)

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 50, "reason": "ride_completed", "idempotency_key": "ride-8812-complete"}
    })


class RedeemRequest(BaseModel):
    reward_title: str
    points_cost: int = Field(..., strict=True)
    idempotency_key: Optional[str] = Field(default=None, max_length=128)

    model_config = ConfigDict(json_schema_extra={
        "example": {"reward_title": "₹50 Ride Voucher", "points_cost": 200}
    })


class EarnResponse(BaseModel):
    new_balance: int
    entry: LedgerEntry
    replayed: bool = False


class RedeemResponse(BaseModel):
    new_balance: int
    voucher: Voucher
    entry: LedgerEntry
    replayed: bool = False


class EarnResult(BaseModel):
    success: bool
    new_points: Optional[int] = Field(default=None, serialization_alias="newPoints")
    error: Optional[str] = None


class RedeemResult(BaseModel):
    success: bool
    new_points: Optional[int] = Field(default=None, serialization_alias="newPoints")
    voucher_id: Optional[str] = Field(default=None, serialization_alias="voucherId")
    error: Optional[str] = None


class AccountBalance(BaseModel):
    account_id: str
    balance: int
    active: bool
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    account_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int


class AccountAudit(BaseModel):
    account_id: str
    stored_balance: int
    ledger_balance: int
    entry_count: int
    consistent: bool
