from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


ZERO = Decimal("0.00")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    THANK_YOU = "thank_you"
    TOA_SEND = "toa_send"
    TOKEN_PURCHASE = "token_purchase"
    POINTS_CONVERSION = "points_conversion"


class ConversionState(str, Enum):
    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    APPLYING = "APPLYING"
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"


class CounterKind(str, Enum):
    CONVERSION = "conversion"
    THANK_YOU = "thank_you"


class AccountBalance(BaseModel):
    user_id: str
    points: int = Field(default=0, ge=0)
    toa_tokens: int = Field(default=0, ge=0)
    total_purchased: int = Field(default=0, ge=0)
    total_spent: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    """An immutable ledger record. Required fields depend on ``type``."""

    id: UUID = Field(default_factory=uuid4)
    type: TransactionType
    from_user_id: Optional[str] = None
    to_user_id: Optional[str] = None
    tokens: int = Field(default=0, ge=0)
    dollar_value: Decimal = ZERO
    technician_payout: Decimal = ZERO
    platform_fee: Decimal = ZERO
    points_awarded: int = 0
    sender_points_awarded: int = 0
    message: Optional[str] = None
    idempotency_key: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @model_validator(mode="after")
    def _check_shape(self) -> "Transaction":
        t = self.type
        if t in (TransactionType.THANK_YOU, TransactionType.TOA_SEND):
            if not self.from_user_id or not self.to_user_id:
                raise ValueError(f"{t.value} requires both from_user_id and to_user_id")
        if t == TransactionType.TOKEN_PURCHASE:
            if self.from_user_id is not None or not self.to_user_id:
                raise ValueError("token_purchase requires to_user_id only")
        if t == TransactionType.POINTS_CONVERSION:
            if not self.from_user_id or self.to_user_id is not None:
                raise ValueError("points_conversion requires from_user_id only")
            if self.points_awarded >= 0:
                raise ValueError("points_conversion must spend points")

        if t == TransactionType.THANK_YOU:
            if self.tokens != 0:
                raise ValueError("thank_you carries no tokens")
        elif self.tokens <= 0:
            raise ValueError(f"{t.value} requires a positive token count")

        if t in (TransactionType.THANK_YOU, TransactionType.POINTS_CONVERSION):
            if self.dollar_value or self.technician_payout or self.platform_fee:
                raise ValueError(f"{t.value} carries no dollar value")
        elif self.technician_payout + self.platform_fee != self.dollar_value:
            raise ValueError("technician_payout + platform_fee must equal dollar_value")
        return self

    def involves(self, user_id: str) -> bool:
        return user_id in (self.from_user_id, self.to_user_id)


class DailyConversionCounter(BaseModel):
    user_id: str
    date: date
    conversions_today: int = Field(default=0, ge=0)


class BalanceDelta(BaseModel):
    """Signed change applied to one account. Fails whole if any field would go negative."""

    user_id: str
    points: int = 0
    toa_tokens: int = 0
    total_purchased: int = 0
    total_spent: int = 0


class CounterIncrement(BaseModel):
    """Increment a per-day counter, refusing to pass ``limit``."""

    kind: CounterKind
    user_id: str
    day: date
    limit: int
    technician_id: Optional[str] = None


class LedgerBatch(BaseModel):
    """Writes that must land together or not at all."""

    deltas: list[BalanceDelta] = Field(default_factory=list)
    transactions: list[Transaction] = Field(default_factory=list)
    counters: list[CounterIncrement] = Field(default_factory=list)

    def user_ids(self) -> list[str]:
        ids = {d.user_id for d in self.deltas} | {c.user_id for c in self.counters}
        return sorted(ids)


class TransactionFilter(BaseModel):
    user_id: Optional[str] = None
    type: Optional[TransactionType] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class FeeSplit(BaseModel):
    dollar_value: Decimal
    technician_payout: Decimal
    platform_fee: Decimal


class PaymentBreakdown(BaseModel):
    gross: Decimal
    processing_fee: Decimal
    net: Decimal
    technician_payout: Decimal
    platform_fee: Decimal


class OpenAccountRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class ThankYouRequest(BaseModel):
    from_user_id: str = Field(..., min_length=1)
    to_user_id: str = Field(..., min_length=1)
    message: Optional[str] = None
    idempotency_key: Optional[str] = None


class SendTokensRequest(BaseModel):
    from_user_id: str = Field(..., min_length=1)
    to_user_id: str = Field(..., min_length=1)
    tokens: int
    message: Optional[str] = None
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "from_user_id": "customer-123",
            "to_user_id": "technician-456",
            "tokens": 100,
            "idempotency_key": "send-customer-123-0001",
        }
    })


class TokenPurchaseRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    tokens: int
    dollar_value: Decimal
    payment_reference: Optional[str] = None
    idempotency_key: Optional[str] = None


class ConvertPointsRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    points: int
    idempotency_key: Optional[str] = Field(default=None, description="Replays the original conversion if reused")


class AppreciationResponse(BaseModel):
    transaction: Transaction
    sender_balance: AccountBalance
    receiver_balance: AccountBalance
    replayed: bool = False
    message: str


class PurchaseResponse(BaseModel):
    transaction: Transaction
    balance: AccountBalance
    replayed: bool = False
    message: str


class ConversionResult(BaseModel):
    tokens_generated: int
    balance: AccountBalance
    transaction: Transaction
    conversions_remaining_today: int
    replayed: bool = False
    message: str


class ConversionStatus(BaseModel):
    user_id: str
    available_points: int
    can_convert: int
    conversion_rate: int
    minimum_conversion: int
    conversions_today: int
    conversions_remaining_today: int


class LedgerHistoryResponse(BaseModel):
    user_id: str
    transactions: list[Transaction]
    total_count: int
    balance: AccountBalance


class EarningsSummary(BaseModel):
    technician_id: str
    thank_yous_received: int
    toa_transactions_received: int
    toa_tokens_received: int
    total_dollar_value: Decimal
    total_payout: Decimal
    total_platform_fee: Decimal
    current_points: int
