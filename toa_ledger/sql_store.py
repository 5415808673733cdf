"""
SQL-backed ledger store using SQLAlchemy with async support.

Balance mutations are guarded ``UPDATE`` statements
(``WHERE points + :delta >= 0``) so concurrent requests against the same
account never lose an update or drive a balance negative. Money columns
hold integer cents.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import JSON, DateTime, Integer, String, Text, func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .errors import (
    AccountNotFound,
    IdempotencyConflict,
    RecordingFailed,
    StoreUnavailable,
)
from .models import (
    AccountBalance,
    BalanceDelta,
    CounterIncrement,
    CounterKind,
    LedgerBatch,
    Transaction,
    TransactionFilter,
    TransactionType,
    utcnow,
)
from .store import LedgerStore, apply_delta, counter_limit_error, shortfall_error

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    return int((amount / CENT).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)


def as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    """Base class for ledger tables."""
    pass


class AccountRow(Base):
    __tablename__ = "ledger_accounts"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    toa_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_purchased: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_spent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    def to_model(self) -> AccountBalance:
        return AccountBalance(
            user_id=self.user_id,
            points=self.points,
            toa_tokens=self.toa_tokens,
            total_purchased=self.total_purchased,
            total_spent=self.total_spent,
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )


class TransactionRow(Base):
    __tablename__ = "ledger_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    from_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    to_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    dollar_value_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    technician_payout_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    points_awarded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sender_points_awarded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    @classmethod
    def from_model(cls, tx: Transaction) -> "TransactionRow":
        return cls(
            id=str(tx.id),
            type=tx.type.value,
            from_user_id=tx.from_user_id,
            to_user_id=tx.to_user_id,
            tokens=tx.tokens,
            dollar_value_cents=to_cents(tx.dollar_value),
            technician_payout_cents=to_cents(tx.technician_payout),
            platform_fee_cents=to_cents(tx.platform_fee),
            points_awarded=tx.points_awarded,
            sender_points_awarded=tx.sender_points_awarded,
            message=tx.message,
            idempotency_key=tx.idempotency_key,
            timestamp=tx.timestamp,
            details=tx.metadata,
        )

    def to_model(self) -> Transaction:
        return Transaction(
            id=UUID(self.id),
            type=TransactionType(self.type),
            from_user_id=self.from_user_id,
            to_user_id=self.to_user_id,
            tokens=self.tokens,
            dollar_value=from_cents(self.dollar_value_cents),
            technician_payout=from_cents(self.technician_payout_cents),
            platform_fee=from_cents(self.platform_fee_cents),
            points_awarded=self.points_awarded,
            sender_points_awarded=self.sender_points_awarded,
            message=self.message,
            idempotency_key=self.idempotency_key,
            timestamp=as_utc(self.timestamp),
            metadata=self.details or {},
        )


class DailyCounterRow(Base):
    __tablename__ = "ledger_daily_counters"

    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    day: Mapped[str] = mapped_column(String(10), primary_key=True)
    technician_id: Mapped[str] = mapped_column(String(128), primary_key=True, default="")
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class SqlLedgerStore(LedgerStore):
    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=echo, future=True)
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def init(self) -> None:
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Ledger tables ready at %s", self.database_url)

    async def close(self) -> None:
        await self.engine.dispose()

    async def create_account(self, user_id: str) -> AccountBalance:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    row = await session.get(AccountRow, user_id)
                    if row is None:
                        row = AccountRow(
                            user_id=user_id, points=0, toa_tokens=0,
                            total_purchased=0, total_spent=0,
                            created_at=utcnow(), updated_at=utcnow(),
                        )
                        session.add(row)
                        logger.info("Opened account %s", user_id)
                return row.to_model()
        except OperationalError as e:
            raise StoreUnavailable("create_account", e) from e

    async def get_balance(self, user_id: str) -> AccountBalance:
        try:
            async with self.session_maker() as session:
                row = await session.get(AccountRow, user_id)
        except OperationalError as e:
            raise StoreUnavailable("get_balance", e) from e
        if row is None:
            raise AccountNotFound(user_id)
        return row.to_model()

    async def commit(self, batch: LedgerBatch) -> dict[str, AccountBalance]:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    for delta in batch.deltas:
                        await self._apply_delta(session, delta)
                    for counter in batch.counters:
                        await self._increment_counter(session, counter)
                    await self._write_transactions(session, batch.transactions)

                user_ids = batch.user_ids()
                if not user_ids:
                    return {}
                result = await session.execute(select(AccountRow).where(AccountRow.user_id.in_(user_ids)))
                return {row.user_id: row.to_model() for row in result.scalars()}
        except OperationalError as e:
            logger.error("Ledger commit failed, outcome unknown: %s", e)
            raise StoreUnavailable("commit", e) from e

    async def _apply_delta(self, session: AsyncSession, delta: BalanceDelta) -> None:
        if await self._guarded_update(session, delta):
            return
        row = await session.get(AccountRow, delta.user_id)
        if row is None:
            raise AccountNotFound(delta.user_id)
        # The guard refused the update; the re-read only picks which shortfall to report
        current = row.to_model()
        apply_delta(current, delta)
        raise shortfall_error(current, delta)

    async def _guarded_update(self, session: AsyncSession, delta: BalanceDelta) -> bool:
        stmt = (
            update(AccountRow)
            .where(
                AccountRow.user_id == delta.user_id,
                AccountRow.points + delta.points >= 0,
                AccountRow.toa_tokens + delta.toa_tokens >= 0,
            )
            .values(
                points=AccountRow.points + delta.points,
                toa_tokens=AccountRow.toa_tokens + delta.toa_tokens,
                total_purchased=AccountRow.total_purchased + delta.total_purchased,
                total_spent=AccountRow.total_spent + delta.total_spent,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def _increment_counter(self, session: AsyncSession, counter: CounterIncrement) -> None:
        pk = dict(
            kind=counter.kind.value,
            user_id=counter.user_id,
            day=counter.day.isoformat(),
            technician_id=counter.technician_id or "",
        )
        if await self._guarded_increment(session, counter, pk):
            return
        if counter.limit < 1:
            raise counter_limit_error(counter)
        try:
            async with session.begin_nested():
                session.add(DailyCounterRow(count=1, **pk))
            return
        except IntegrityError:
            # Today's row already exists: either at the limit or created by a concurrent writer
            logger.debug("Daily %s counter for %s already exists, retrying increment", counter.kind.value, counter.user_id)
        if not await self._guarded_increment(session, counter, pk):
            raise counter_limit_error(counter)

    async def _guarded_increment(self, session: AsyncSession, counter: CounterIncrement, pk: dict) -> bool:
        stmt = (
            update(DailyCounterRow)
            .where(*[getattr(DailyCounterRow, k) == v for k, v in pk.items()])
            .where(DailyCounterRow.count < counter.limit)
            .values(count=DailyCounterRow.count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def _write_transactions(self, session: AsyncSession, transactions: list[Transaction]) -> None:
        for tx in transactions:
            session.add(TransactionRow.from_model(tx))
            try:
                await session.flush()
            except IntegrityError as e:
                if tx.idempotency_key:
                    raise IdempotencyConflict(tx.idempotency_key, "key already recorded") from e
                raise RecordingFailed(str(e), e) from e
            except SQLAlchemyError as e:
                logger.error("Transaction write failed, batch rolled back: %s", e)
                raise RecordingFailed(str(e), e) from e

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        try:
            async with self.session_maker() as session:
                row = await session.get(TransactionRow, str(transaction_id))
        except OperationalError as e:
            raise StoreUnavailable("get_transaction", e) from e
        return row.to_model() if row else None

    async def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(TransactionRow).where(TransactionRow.idempotency_key == idempotency_key)
                )
                row = result.scalar_one_or_none()
        except OperationalError as e:
            raise StoreUnavailable("find_by_idempotency_key", e) from e
        return row.to_model() if row else None

    async def query_transactions(self, filter: TransactionFilter) -> tuple[list[Transaction], int]:
        conditions = []
        if filter.user_id is not None:
            conditions.append(or_(
                TransactionRow.from_user_id == filter.user_id,
                TransactionRow.to_user_id == filter.user_id,
            ))
        if filter.type is not None:
            conditions.append(TransactionRow.type == filter.type.value)

        try:
            async with self.session_maker() as session:
                total = await session.scalar(select(func.count()).select_from(TransactionRow).where(*conditions))
                result = await session.execute(
                    select(TransactionRow)
                    .where(*conditions)
                    .order_by(TransactionRow.timestamp.desc())
                    .offset(filter.offset)
                    .limit(filter.limit)
                )
                rows = result.scalars().all()
        except OperationalError as e:
            raise StoreUnavailable("query_transactions", e) from e
        return [row.to_model() for row in rows], total or 0

    async def get_conversions_today(self, user_id: str, day: date) -> int:
        return await self._counter_value(CounterKind.CONVERSION, user_id, day, "")

    async def get_thank_yous_today(self, user_id: str, technician_id: str, day: date) -> int:
        return await self._counter_value(CounterKind.THANK_YOU, user_id, day, technician_id)

    async def _counter_value(self, kind: CounterKind, user_id: str, day: date, technician_id: str) -> int:
        try:
            async with self.session_maker() as session:
                row = await session.get(DailyCounterRow, (kind.value, user_id, day.isoformat(), technician_id))
        except OperationalError as e:
            raise StoreUnavailable("get_daily_counter", e) from e
        return row.count if row else 0
