"""
Fee Splitter

Splits a TOA transaction's dollar value between the technician and the
platform. The platform fee is rounded to cents and the technician payout is
whatever remains, so the two always add back to the original amount.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from .config import get_settings
from .errors import InvalidAmount
from .models import FeeSplit, PaymentBreakdown

CENT = Decimal("0.01")

Amount = Union[Decimal, int, str]


def to_dollars(value: Amount) -> Decimal:
    """Parse ``value`` as a non-negative amount in whole cents."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise InvalidAmount(f"Invalid dollar amount: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise InvalidAmount(f"Dollar amount must be non-negative, got {value}")
    if amount != amount.quantize(CENT):
        raise InvalidAmount(f"Dollar amount must be in whole cents, got {value}")
    return amount.quantize(CENT)


def cents_to_dollars(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)


def split_fee(dollar_value: Amount, platform_fee_percent: Optional[Decimal] = None) -> FeeSplit:
    if platform_fee_percent is None:
        platform_fee_percent = get_settings().platform_fee_percent
    amount = to_dollars(dollar_value)
    platform_fee = (amount * platform_fee_percent).quantize(CENT, rounding=ROUND_HALF_UP)
    return FeeSplit(
        dollar_value=amount,
        technician_payout=amount - platform_fee,
        platform_fee=platform_fee,
    )


def split_payment(
    gross: Amount,
    flat_fee: Optional[Amount] = None,
    platform_fee_percent: Optional[Decimal] = None,
) -> PaymentBreakdown:
    """Apply the flat processing fee first, then split the remainder 85/15."""
    settings = get_settings()
    gross_amount = to_dollars(gross)
    processing_fee = to_dollars(flat_fee) if flat_fee is not None else cents_to_dollars(settings.platform_flat_fee_cents)
    if gross_amount < processing_fee:
        raise InvalidAmount(
            f"Payment of ${gross_amount} does not cover the ${processing_fee} processing fee",
            details={"gross": str(gross_amount), "processing_fee": str(processing_fee)},
        )
    net = gross_amount - processing_fee
    split = split_fee(net, platform_fee_percent)
    return PaymentBreakdown(
        gross=gross_amount,
        processing_fee=processing_fee,
        net=net,
        technician_payout=split.technician_payout,
        platform_fee=split.platform_fee,
    )


def toa_dollar_value(tokens: int) -> Decimal:
    return (tokens * get_settings().customer_pays_per_toa).quantize(CENT, rounding=ROUND_HALF_UP)
