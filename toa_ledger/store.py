import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import AsyncExitStack
from datetime import date
from typing import Optional
from uuid import UUID

from .errors import (
    AccountNotFound,
    DailyLimitExceeded,
    IdempotencyConflict,
    InsufficientPoints,
    InsufficientTokens,
    RecordingFailed,
    ThankYouLimitExceeded,
)
from .models import (
    AccountBalance,
    BalanceDelta,
    CounterIncrement,
    CounterKind,
    LedgerBatch,
    Transaction,
    TransactionFilter,
    utcnow,
)

logger = logging.getLogger(__name__)


class LedgerStore(ABC):
    """Balances, the append-only transaction log and daily counters.

    ``commit`` is the only mutation path for balances: every delta, counter
    and transaction in a batch lands together or not at all.
    """

    @abstractmethod
    async def create_account(self, user_id: str) -> AccountBalance:
        """Create a zero balance, or return the existing one."""

    @abstractmethod
    async def get_balance(self, user_id: str) -> AccountBalance:
        """Raises AccountNotFound."""

    @abstractmethod
    async def commit(self, batch: LedgerBatch) -> dict[str, AccountBalance]:
        """Apply a batch atomically and return the new balance of every touched account."""

    @abstractmethod
    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def query_transactions(self, filter: TransactionFilter) -> tuple[list[Transaction], int]:
        """Matching transactions, newest first, plus the total match count."""

    @abstractmethod
    async def get_conversions_today(self, user_id: str, day: date) -> int:
        ...

    @abstractmethod
    async def get_thank_yous_today(self, user_id: str, technician_id: str, day: date) -> int:
        ...

    async def atomic_update(self, delta: BalanceDelta) -> AccountBalance:
        balances = await self.commit(LedgerBatch(deltas=[delta]))
        return balances[delta.user_id]

    async def append_transaction(self, record: Transaction) -> UUID:
        await self.commit(LedgerBatch(transactions=[record]))
        return record.id

    async def close(self) -> None:
        pass


def apply_delta(current: AccountBalance, delta: BalanceDelta) -> AccountBalance:
    """Return the balance after ``delta``; rejects instead of clamping."""
    points = current.points + delta.points
    tokens = current.toa_tokens + delta.toa_tokens
    if points < 0:
        raise InsufficientPoints(current.user_id, required=-delta.points, available=current.points)
    if tokens < 0:
        raise InsufficientTokens(current.user_id, required=-delta.toa_tokens, available=current.toa_tokens)
    return current.model_copy(update={
        "points": points,
        "toa_tokens": tokens,
        "total_purchased": current.total_purchased + delta.total_purchased,
        "total_spent": current.total_spent + delta.total_spent,
        "updated_at": utcnow(),
    })


def shortfall_error(current: AccountBalance, delta: BalanceDelta) -> Exception:
    if delta.points < 0:
        return InsufficientPoints(current.user_id, required=-delta.points, available=current.points)
    return InsufficientTokens(current.user_id, required=-delta.toa_tokens, available=current.toa_tokens)


def counter_limit_error(counter: CounterIncrement) -> Exception:
    if counter.kind == CounterKind.CONVERSION:
        return DailyLimitExceeded(counter.user_id, counter.limit)
    return ThankYouLimitExceeded(counter.user_id, counter.technician_id or "", counter.limit)


class InMemoryLedgerStore(LedgerStore):
    """Process-local store used for tests and single-instance deployments.

    ``latency`` inserts an await between validating and applying a batch,
    which is where a networked store would suspend.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.accounts: dict[str, AccountBalance] = {}
        self.transactions: dict[UUID, Transaction] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self.counters: dict[tuple, int] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._reserved_keys: set[str] = set()

    async def create_account(self, user_id: str) -> AccountBalance:
        async with self._locks[user_id]:
            if user_id not in self.accounts:
                self.accounts[user_id] = AccountBalance(user_id=user_id)
                logger.info("Opened account %s", user_id)
            return self.accounts[user_id].model_copy()

    async def get_balance(self, user_id: str) -> AccountBalance:
        balance = self.accounts.get(user_id)
        if balance is None:
            raise AccountNotFound(user_id)
        return balance.model_copy()

    async def commit(self, batch: LedgerBatch) -> dict[str, AccountBalance]:
        # A cancel while waiting on a later lock releases only the ones already held
        async with AsyncExitStack() as stack:
            for user_id in batch.user_ids():
                await stack.enter_async_context(self._locks[user_id])
            return await self._commit_locked(batch)

    async def _commit_locked(self, batch: LedgerBatch) -> dict[str, AccountBalance]:
        keys = [tx.idempotency_key for tx in batch.transactions if tx.idempotency_key]
        for key in keys:
            if key in self.idempotency_index or key in self._reserved_keys:
                raise IdempotencyConflict(key, "key already recorded")
        self._reserved_keys.update(keys)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)

            staged: dict[str, AccountBalance] = {}
            for delta in batch.deltas:
                current = staged.get(delta.user_id) or self.accounts.get(delta.user_id)
                if current is None:
                    raise AccountNotFound(delta.user_id)
                staged[delta.user_id] = apply_delta(current, delta)

            staged_counters: dict[tuple, int] = {}
            for counter in batch.counters:
                key = self._counter_key(counter.kind, counter.user_id, counter.day, counter.technician_id)
                value = staged_counters.get(key, self.counters.get(key, 0))
                if value >= counter.limit:
                    raise counter_limit_error(counter)
                staged_counters[key] = value + 1

            written: list[Transaction] = []
            try:
                for tx in batch.transactions:
                    self._persist_transaction(tx)
                    written.append(tx)
            except Exception as e:
                for tx in written:
                    self.transactions.pop(tx.id, None)
                    if tx.idempotency_key:
                        self.idempotency_index.pop(tx.idempotency_key, None)
                logger.error("Transaction write failed, batch discarded: %s", e)
                raise RecordingFailed(str(e), e) from e

            self.accounts.update(staged)
            self.counters.update(staged_counters)
        finally:
            self._reserved_keys.difference_update(keys)

        return {
            user_id: self.accounts[user_id].model_copy()
            for user_id in batch.user_ids() if user_id in self.accounts
        }

    def _persist_transaction(self, tx: Transaction) -> None:
        self.transactions[tx.id] = tx
        if tx.idempotency_key:
            self.idempotency_index[tx.idempotency_key] = tx.id

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        return self.transactions.get(transaction_id)

    async def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        tx_id = self.idempotency_index.get(idempotency_key)
        if tx_id:
            return self.transactions.get(tx_id)
        return None

    async def query_transactions(self, filter: TransactionFilter) -> tuple[list[Transaction], int]:
        matches = [
            tx for tx in self.transactions.values()
            if (filter.user_id is None or tx.involves(filter.user_id))
            and (filter.type is None or tx.type == filter.type)
        ]
        matches.sort(key=lambda tx: tx.timestamp, reverse=True)
        return matches[filter.offset:filter.offset + filter.limit], len(matches)

    async def get_conversions_today(self, user_id: str, day: date) -> int:
        return self.counters.get(self._counter_key(CounterKind.CONVERSION, user_id, day), 0)

    async def get_thank_yous_today(self, user_id: str, technician_id: str, day: date) -> int:
        return self.counters.get(self._counter_key(CounterKind.THANK_YOU, user_id, day, technician_id), 0)

    @staticmethod
    def _counter_key(kind: CounterKind, user_id: str, day: date, technician_id: Optional[str] = None) -> tuple:
        return (kind, user_id, day.isoformat(), technician_id)
