"""
Transaction Recorder

Builds the immutable record for each economic event. Records are appended
through ``LedgerStore.commit`` together with the balance changes they
describe, or on their own via ``append``.
"""

import logging
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError

from .errors import InvalidTransaction, LedgerError, RecordingFailed
from .fees import split_fee, toa_dollar_value
from .models import Transaction, TransactionType
from .store import LedgerStore

logger = logging.getLogger(__name__)


class TransactionRecorder:
    def __init__(self, store: LedgerStore):
        self.store = store

    def build(self, **fields) -> Transaction:
        try:
            return Transaction(**fields)
        except ValidationError as e:
            raise InvalidTransaction(f"Invalid {fields.get('type')} transaction: {e}", {"errors": e.errors()}) from e

    def thank_you(self, from_user_id: str, to_user_id: str, points_awarded: int,
                  message: Optional[str] = None, idempotency_key: Optional[str] = None) -> Transaction:
        return self.build(
            type=TransactionType.THANK_YOU,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            points_awarded=points_awarded,
            message=message,
            idempotency_key=idempotency_key,
        )

    def toa_send(self, from_user_id: str, to_user_id: str, tokens: int, points_awarded: int,
                 sender_points_awarded: int, message: Optional[str] = None,
                 idempotency_key: Optional[str] = None) -> Transaction:
        split = split_fee(toa_dollar_value(tokens))
        return self.build(
            type=TransactionType.TOA_SEND,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            tokens=tokens,
            dollar_value=split.dollar_value,
            technician_payout=split.technician_payout,
            platform_fee=split.platform_fee,
            points_awarded=points_awarded,
            sender_points_awarded=sender_points_awarded,
            message=message,
            idempotency_key=idempotency_key,
        )

    def token_purchase(self, user_id: str, tokens: int, dollar_value: Decimal,
                       payment_reference: Optional[str] = None,
                       idempotency_key: Optional[str] = None) -> Transaction:
        # No technician is involved yet; the platform holds the full amount.
        return self.build(
            type=TransactionType.TOKEN_PURCHASE,
            to_user_id=user_id,
            tokens=tokens,
            dollar_value=dollar_value,
            technician_payout=Decimal("0.00"),
            platform_fee=dollar_value,
            idempotency_key=idempotency_key,
            metadata={"payment_reference": payment_reference} if payment_reference else {},
        )

    def points_conversion(self, user_id: str, points: int, tokens: int, conversion_rate: int,
                          idempotency_key: Optional[str] = None) -> Transaction:
        return self.build(
            type=TransactionType.POINTS_CONVERSION,
            from_user_id=user_id,
            tokens=tokens,
            points_awarded=-points,
            idempotency_key=idempotency_key,
            metadata={"points_converted": points, "conversion_rate": conversion_rate},
        )

    async def append(self, record: Transaction) -> Transaction:
        """Single durable write with no balance change attached."""
        try:
            await self.store.append_transaction(record)
        except LedgerError:
            raise
        except Exception as e:
            logger.error("Failed to append %s transaction %s: %s", record.type.value, record.id, e)
            raise RecordingFailed(str(e), e) from e
        logger.info("Recorded %s transaction %s", record.type.value, record.id)
        return record
