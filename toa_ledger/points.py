import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .config import Settings, get_settings
from .errors import InvalidTransaction
from .models import AccountBalance, BalanceDelta, CounterIncrement, LedgerBatch, Transaction, TransactionType
from .store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PointAward:
    sender: int
    receiver: int


class PointsAccounting:
    """Fixed point awards for appreciation events.

    Awards never depend on how many tokens were sent: one token and a
    thousand tokens earn the same points.
    """

    def __init__(self, store: LedgerStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    def award_for(self, event_type: TransactionType) -> PointAward:
        if event_type == TransactionType.THANK_YOU:
            return PointAward(sender=0, receiver=self.settings.points_per_thank_you)
        if event_type == TransactionType.TOA_SEND:
            return PointAward(
                sender=self.settings.points_per_toa_sent,
                receiver=self.settings.points_per_toa_received,
            )
        raise InvalidTransaction(f"{event_type.value} does not award points")

    def deltas(self, event_type: TransactionType, sender_id: str, receiver_id: str) -> list[BalanceDelta]:
        # The sender delta is kept even when zero so a missing account fails the batch
        award = self.award_for(event_type)
        return [
            BalanceDelta(user_id=sender_id, points=award.sender),
            BalanceDelta(user_id=receiver_id, points=award.receiver),
        ]

    async def award_points(
        self,
        event_type: TransactionType,
        sender_id: str,
        receiver_id: str,
        record: Optional[Transaction] = None,
        extra_deltas: Sequence[BalanceDelta] = (),
        counters: Sequence[CounterIncrement] = (),
    ) -> dict[str, AccountBalance]:
        """Apply the award, plus any deltas and counters of the same event, in one commit."""
        batch = LedgerBatch(
            deltas=self.deltas(event_type, sender_id, receiver_id) + list(extra_deltas),
            transactions=[record] if record else [],
            counters=list(counters),
        )
        balances = await self.store.commit(batch)
        award = self.award_for(event_type)
        logger.info(
            "Awarded %s: sender %s +%d, receiver %s +%d",
            event_type.value, sender_id, award.sender, receiver_id, award.receiver,
        )
        return balances
