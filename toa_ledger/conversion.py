"""
Conversion Engine

Exchanges ThankATech Points for TOA tokens at a fixed rate.

Each call moves through ``IDLE -> VALIDATING -> APPLYING -> COMMITTED``,
or ends in ``REJECTED``. All checks run before anything is written, and the
balance change, daily counter and ledger record land in a single commit.
A conversion is not idempotent on its own; callers that may retry should
pass an idempotency key, which makes a repeated call return the original
result.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Optional

from .config import Settings, get_settings
from .errors import (
    BelowMinimum,
    DailyLimitExceeded,
    IdempotencyConflict,
    InsufficientPoints,
    LedgerError,
    NotDivisible,
)
from .models import (
    BalanceDelta,
    ConversionResult,
    ConversionState,
    ConversionStatus,
    CounterIncrement,
    CounterKind,
    DailyConversionCounter,
    LedgerBatch,
    Transaction,
    TransactionType,
    utcnow,
)
from .recorder import TransactionRecorder
from .store import LedgerStore

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    ConversionState.IDLE: {ConversionState.VALIDATING},
    ConversionState.VALIDATING: {ConversionState.APPLYING, ConversionState.REJECTED},
    ConversionState.APPLYING: {ConversionState.COMMITTED, ConversionState.REJECTED},
    ConversionState.COMMITTED: set(),
    ConversionState.REJECTED: set(),
}


@dataclass
class ConversionAttempt:
    user_id: str
    points: int
    state: ConversionState = ConversionState.IDLE
    history: list[ConversionState] = field(default_factory=list)

    def advance(self, new_state: ConversionState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(f"Cannot move conversion from {self.state.value} to {new_state.value}")
        self.history.append(self.state)
        self.state = new_state

    def path(self) -> str:
        return " -> ".join(state.value for state in [*self.history, self.state])


class ConversionEngine:
    def __init__(
        self,
        store: LedgerStore,
        recorder: Optional[TransactionRecorder] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.recorder = recorder or TransactionRecorder(store)
        self.settings = settings or get_settings()
        self.clock = clock

    def today(self) -> date:
        return self.clock().astimezone(timezone.utc).date()

    def validate_amount(self, points: int) -> int:
        """Checks that need no balance: minimum size, then divisibility. Returns tokens."""
        rate = self.settings.conversion_rate
        if points < self.settings.minimum_conversion:
            raise BelowMinimum(points, self.settings.minimum_conversion)
        if points % rate != 0:
            raise NotDivisible(points, rate)
        return points // rate

    async def convert_points(
        self,
        user_id: str,
        points_to_convert: int,
        idempotency_key: Optional[str] = None,
    ) -> ConversionResult:
        if idempotency_key:
            existing = await self.store.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                return await self._replay(existing, user_id, points_to_convert, idempotency_key)

        attempt = ConversionAttempt(user_id=user_id, points=points_to_convert)
        attempt.advance(ConversionState.VALIDATING)
        day = self.today()
        limit = self.settings.daily_conversion_limit
        try:
            tokens = self.validate_amount(points_to_convert)
            balance = await self.store.get_balance(user_id)
            if points_to_convert > balance.points:
                raise InsufficientPoints(user_id, points_to_convert, balance.points)
            if await self.store.get_conversions_today(user_id, day) >= limit:
                raise DailyLimitExceeded(user_id, limit)

            attempt.advance(ConversionState.APPLYING)
            record = self.recorder.points_conversion(
                user_id, points_to_convert, tokens, self.settings.conversion_rate, idempotency_key,
            )
            balances = await self.store.commit(LedgerBatch(
                deltas=[BalanceDelta(user_id=user_id, points=-points_to_convert, toa_tokens=tokens)],
                counters=[CounterIncrement(kind=CounterKind.CONVERSION, user_id=user_id, day=day, limit=limit)],
                transactions=[record],
            ))
        except LedgerError as e:
            attempt.advance(ConversionState.REJECTED)
            logger.warning(
                "Conversion rejected for %s (%d points) [%s]: %s",
                user_id, points_to_convert, attempt.path(), e.message,
            )
            raise

        attempt.advance(ConversionState.COMMITTED)
        used = await self.store.get_conversions_today(user_id, day)
        logger.info("Converted %d points to %d TOA for %s [%s]", points_to_convert, tokens, user_id, attempt.path())
        return ConversionResult(
            tokens_generated=tokens,
            balance=balances[user_id],
            transaction=record,
            conversions_remaining_today=max(0, limit - used),
            message=f"Successfully converted {points_to_convert} points to {tokens} TOA!",
        )

    async def _replay(self, existing: Transaction, user_id: str, points: int, key: str) -> ConversionResult:
        if (
            existing.type != TransactionType.POINTS_CONVERSION
            or existing.from_user_id != user_id
            or -existing.points_awarded != points
        ):
            raise IdempotencyConflict(key, "key belongs to a different request")
        balance = await self.store.get_balance(user_id)
        used = (await self.daily_counter(user_id)).conversions_today
        logger.info("Replayed conversion %s for %s", existing.id, user_id)
        return ConversionResult(
            tokens_generated=existing.tokens,
            balance=balance,
            transaction=existing,
            conversions_remaining_today=max(0, self.settings.daily_conversion_limit - used),
            replayed=True,
            message="Conversion already processed",
        )

    async def daily_counter(self, user_id: str) -> DailyConversionCounter:
        day = self.today()
        used = await self.store.get_conversions_today(user_id, day)
        return DailyConversionCounter(user_id=user_id, date=day, conversions_today=used)

    async def conversion_status(self, user_id: str) -> ConversionStatus:
        balance = await self.store.get_balance(user_id)
        counter = await self.daily_counter(user_id)
        used = counter.conversions_today
        remaining = max(0, self.settings.daily_conversion_limit - used)
        can_convert = 0
        if remaining and balance.points >= self.settings.minimum_conversion:
            can_convert = balance.points // self.settings.conversion_rate
        return ConversionStatus(
            user_id=user_id,
            available_points=balance.points,
            can_convert=can_convert,
            conversion_rate=self.settings.conversion_rate,
            minimum_conversion=self.settings.minimum_conversion,
            conversions_today=used,
            conversions_remaining_today=remaining,
        )
