import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional, TypeVar

from .config import Settings, get_settings
from .conversion import ConversionEngine
from .errors import (
    IdempotencyConflict,
    InsufficientTokens,
    InvalidAmount,
    SelfAppreciation,
    StoreUnavailable,
    ThankYouLimitExceeded,
)
from .fees import to_dollars
from .models import (
    AccountBalance,
    AppreciationResponse,
    BalanceDelta,
    ConversionResult,
    ConversionStatus,
    ConvertPointsRequest,
    CounterIncrement,
    CounterKind,
    EarningsSummary,
    LedgerBatch,
    LedgerHistoryResponse,
    PurchaseResponse,
    SendTokensRequest,
    ThankYouRequest,
    TokenPurchaseRequest,
    Transaction,
    TransactionFilter,
    TransactionType,
    utcnow,
)
from .points import PointsAccounting
from .recorder import TransactionRecorder
from .store import InMemoryLedgerStore, LedgerStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

THANK_YOU_MESSAGE = (
    "Thank you for your exceptional service! "
    "Your expertise and dedication truly make a difference."
)


class LedgerService:
    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store or InMemoryLedgerStore()
        self.settings = settings or get_settings()
        self.recorder = TransactionRecorder(self.store)
        self.points = PointsAccounting(self.store, self.settings)
        self.conversions = ConversionEngine(self.store, self.recorder, self.settings, clock)

    async def _guard(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Bound a store-touching call by the configured timeout.

        A timed-out write may or may not have been applied, so callers must
        re-read state before retrying.
        """
        try:
            return await asyncio.wait_for(call(), timeout=self.settings.store_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error("Ledger store timed out during %s", operation)
            raise StoreUnavailable(operation, e) from e

    async def open_account(self, user_id: str) -> AccountBalance:
        return await self._guard("open_account", lambda: self.store.create_account(user_id))

    async def get_balance(self, user_id: str) -> AccountBalance:
        return await self._guard("get_balance", lambda: self.store.get_balance(user_id))

    async def send_thank_you(self, request: ThankYouRequest) -> AppreciationResponse:
        return await self._guard("send_thank_you", lambda: self._send_thank_you(request))

    async def _send_thank_you(self, request: ThankYouRequest) -> AppreciationResponse:
        sender, receiver = request.from_user_id, request.to_user_id
        if request.idempotency_key:
            existing = await self._check_idempotency(request.idempotency_key, TransactionType.THANK_YOU, sender, receiver)
            if existing:
                return await self._appreciation_replay(existing)
        if sender == receiver:
            raise SelfAppreciation(sender)

        await self.store.get_balance(sender)
        await self.store.get_balance(receiver)
        limit = self.settings.free_thank_you_daily_limit
        day = self.conversions.today()
        if await self.store.get_thank_yous_today(sender, receiver, day) >= limit:
            logger.warning("Free thank-you limit reached: %s -> %s", sender, receiver)
            raise ThankYouLimitExceeded(sender, receiver, limit)

        award = self.points.award_for(TransactionType.THANK_YOU)
        record = self.recorder.thank_you(
            sender, receiver, award.receiver,
            message=request.message or THANK_YOU_MESSAGE,
            idempotency_key=request.idempotency_key,
        )
        balances = await self.points.award_points(
            TransactionType.THANK_YOU, sender, receiver, record,
            counters=[CounterIncrement(
                kind=CounterKind.THANK_YOU, user_id=sender, technician_id=receiver, day=day, limit=limit,
            )],
        )
        return AppreciationResponse(
            transaction=record,
            sender_balance=balances[sender],
            receiver_balance=balances[receiver],
            message="Thank you sent successfully",
        )

    async def send_tokens(self, request: SendTokensRequest) -> AppreciationResponse:
        return await self._guard("send_tokens", lambda: self._send_tokens(request))

    async def _send_tokens(self, request: SendTokensRequest) -> AppreciationResponse:
        sender, receiver, tokens = request.from_user_id, request.to_user_id, request.tokens
        if request.idempotency_key:
            existing = await self._check_idempotency(request.idempotency_key, TransactionType.TOA_SEND, sender, receiver)
            if existing:
                if existing.tokens != tokens:
                    raise IdempotencyConflict(request.idempotency_key, "token count differs")
                return await self._appreciation_replay(existing)
        if sender == receiver:
            raise SelfAppreciation(sender)
        low, high = self.settings.min_tokens_per_send, self.settings.max_tokens_per_send
        if not low <= tokens <= high:
            raise InvalidAmount(
                f"You can send between {low} and {high} tokens at a time",
                details={"tokens": tokens, "min": low, "max": high},
            )

        balance = await self.store.get_balance(sender)
        await self.store.get_balance(receiver)
        if balance.toa_tokens < tokens:
            logger.warning("Insufficient tokens for %s: has %d, sending %d", sender, balance.toa_tokens, tokens)
            raise InsufficientTokens(sender, tokens, balance.toa_tokens)

        award = self.points.award_for(TransactionType.TOA_SEND)
        record = self.recorder.toa_send(
            sender, receiver, tokens,
            points_awarded=award.receiver,
            sender_points_awarded=award.sender,
            message=request.message or f"{THANK_YOU_MESSAGE} Here's {tokens} TOA as a token of my appreciation.",
            idempotency_key=request.idempotency_key,
        )
        balances = await self.points.award_points(
            TransactionType.TOA_SEND, sender, receiver, record,
            extra_deltas=[BalanceDelta(user_id=sender, toa_tokens=-tokens, total_spent=tokens)],
        )
        logger.info(
            "Sent %d TOA from %s to %s ($%s, payout $%s)",
            tokens, sender, receiver, record.dollar_value, record.technician_payout,
        )
        return AppreciationResponse(
            transaction=record,
            sender_balance=balances[sender],
            receiver_balance=balances[receiver],
            message=f"Sent {tokens} TOA successfully",
        )

    async def record_token_purchase(self, request: TokenPurchaseRequest) -> PurchaseResponse:
        return await self._guard("record_token_purchase", lambda: self._record_token_purchase(request))

    async def _record_token_purchase(self, request: TokenPurchaseRequest) -> PurchaseResponse:
        key = request.idempotency_key or request.payment_reference
        if key:
            existing = await self._check_idempotency(key, TransactionType.TOKEN_PURCHASE, None, request.user_id)
            if existing:
                if existing.tokens != request.tokens or existing.dollar_value != to_dollars(request.dollar_value):
                    raise IdempotencyConflict(key, "purchase amount differs")
                return PurchaseResponse(
                    transaction=existing,
                    balance=await self.store.get_balance(request.user_id),
                    replayed=True,
                    message="Purchase already recorded",
                )
        if request.tokens <= 0:
            raise InvalidAmount("Token purchase must include at least one token", details={"tokens": request.tokens})
        dollar_value = to_dollars(request.dollar_value)

        record = self.recorder.token_purchase(
            request.user_id, request.tokens, dollar_value,
            payment_reference=request.payment_reference,
            idempotency_key=key,
        )
        balances = await self.store.commit(LedgerBatch(
            deltas=[BalanceDelta(
                user_id=request.user_id, toa_tokens=request.tokens, total_purchased=request.tokens,
            )],
            transactions=[record],
        ))
        logger.info("Added %d purchased tokens to %s ($%s)", request.tokens, request.user_id, dollar_value)
        return PurchaseResponse(
            transaction=record,
            balance=balances[request.user_id],
            message=f"Added {request.tokens} tokens",
        )

    async def convert_points(self, request: ConvertPointsRequest) -> ConversionResult:
        return await self._guard(
            "convert_points",
            lambda: self.conversions.convert_points(request.user_id, request.points, request.idempotency_key),
        )

    async def conversion_status(self, user_id: str) -> ConversionStatus:
        return await self._guard("conversion_status", lambda: self.conversions.conversion_status(user_id))

    async def get_history(
        self,
        user_id: str,
        type: Optional[TransactionType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> LedgerHistoryResponse:
        balance = await self.get_balance(user_id)
        transactions, total = await self._guard(
            "get_history",
            lambda: self.store.query_transactions(
                TransactionFilter(user_id=user_id, type=type, limit=limit, offset=offset)
            ),
        )
        return LedgerHistoryResponse(
            user_id=user_id,
            transactions=transactions,
            total_count=total,
            balance=balance,
        )

    async def get_earnings(self, technician_id: str) -> EarningsSummary:
        balance = await self.get_balance(technician_id)
        received = await self._all_transactions(technician_id)
        received = [tx for tx in received if tx.to_user_id == technician_id]
        toa = [tx for tx in received if tx.type == TransactionType.TOA_SEND]
        return EarningsSummary(
            technician_id=technician_id,
            thank_yous_received=sum(1 for tx in received if tx.type == TransactionType.THANK_YOU),
            toa_transactions_received=len(toa),
            toa_tokens_received=sum(tx.tokens for tx in toa),
            total_dollar_value=sum((tx.dollar_value for tx in toa), Decimal("0.00")),
            total_payout=sum((tx.technician_payout for tx in toa), Decimal("0.00")),
            total_platform_fee=sum((tx.platform_fee for tx in toa), Decimal("0.00")),
            current_points=balance.points,
        )

    async def _all_transactions(self, user_id: str, page_size: int = 500) -> list[Transaction]:
        collected: list[Transaction] = []
        offset = 0
        while True:
            page, total = await self._guard(
                "get_earnings",
                lambda: self.store.query_transactions(
                    TransactionFilter(user_id=user_id, limit=page_size, offset=offset)
                ),
            )
            collected.extend(page)
            offset += len(page)
            if not page or offset >= total:
                return collected

    async def _check_idempotency(
        self,
        key: str,
        expected_type: TransactionType,
        from_user_id: Optional[str],
        to_user_id: str,
    ) -> Optional[Transaction]:
        existing = await self.store.find_by_idempotency_key(key)
        if existing is None:
            return None
        if (
            existing.type != expected_type
            or existing.from_user_id != from_user_id
            or existing.to_user_id != to_user_id
        ):
            raise IdempotencyConflict(key, "key belongs to a different request")
        logger.info("Idempotent replay of %s transaction %s", existing.type.value, existing.id)
        return existing

    async def _appreciation_replay(self, existing: Transaction) -> AppreciationResponse:
        return AppreciationResponse(
            transaction=existing,
            sender_balance=await self.store.get_balance(existing.from_user_id),
            receiver_balance=await self.store.get_balance(existing.to_user_id),
            replayed=True,
            message="Transaction already exists (idempotent return)",
        )
