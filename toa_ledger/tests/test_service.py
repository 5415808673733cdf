"""
Unit Tests for the Ledger Service

Tests cover:
1. Thank-you flow and its daily free limit
2. TOA send flow, fee split and fixed point awards
3. Token purchases and payment replays
4. History and technician earnings
5. Store failures and timeouts
6. Random interleavings never driving a balance negative
"""

import random
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from toa_ledger.config import Settings
from toa_ledger.errors import (
    AccountNotFound,
    IdempotencyConflict,
    InsufficientTokens,
    InvalidAmount,
    LedgerError,
    RecordingFailed,
    SelfAppreciation,
    StoreUnavailable,
    ThankYouLimitExceeded,
)
from toa_ledger.models import (
    BalanceDelta,
    ConvertPointsRequest,
    SendTokensRequest,
    ThankYouRequest,
    TokenPurchaseRequest,
    TransactionType,
)
from toa_ledger.points import PointsAccounting
from toa_ledger.service import LedgerService
from toa_ledger.store import InMemoryLedgerStore


CUSTOMER = "customer-1"
TECHNICIAN = "technician-1"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


async def make_service(settings=None, store=None, tokens: int = 0) -> LedgerService:
    service = LedgerService(store=store, settings=settings or Settings(), clock=lambda: NOW)
    await service.open_account(CUSTOMER)
    await service.open_account(TECHNICIAN)
    if tokens:
        await service.record_token_purchase(TokenPurchaseRequest(
            user_id=CUSTOMER, tokens=tokens, dollar_value=Decimal(tokens) / 100,
        ))
    return service


class TestThankYou:
    """Tests for the free thank-you flow."""

    @pytest.mark.asyncio
    async def test_thank_you_awards_receiver_only(self):
        service = await make_service()

        response = await service.send_thank_you(ThankYouRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN))

        assert response.sender_balance.points == 0
        assert response.receiver_balance.points == 1
        assert response.transaction.type == TransactionType.THANK_YOU
        assert response.transaction.dollar_value == Decimal("0.00")
        assert response.transaction.points_awarded == 1

    @pytest.mark.asyncio
    async def test_daily_free_limit_per_technician(self):
        service = await make_service()
        await service.open_account("technician-2")
        request = ThankYouRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN)

        for _ in range(3):
            await service.send_thank_you(request)
        with pytest.raises(ThankYouLimitExceeded):
            await service.send_thank_you(request)

        # Another technician has a separate allowance
        await service.send_thank_you(ThankYouRequest(from_user_id=CUSTOMER, to_user_id="technician-2"))
        assert (await service.get_balance(TECHNICIAN)).points == 3

    @pytest.mark.asyncio
    async def test_cannot_thank_yourself(self):
        service = await make_service()

        with pytest.raises(SelfAppreciation):
            await service.send_thank_you(ThankYouRequest(from_user_id=TECHNICIAN, to_user_id=TECHNICIAN))

    @pytest.mark.asyncio
    async def test_unknown_receiver(self):
        service = await make_service()

        with pytest.raises(AccountNotFound):
            await service.send_thank_you(ThankYouRequest(from_user_id=CUSTOMER, to_user_id="ghost"))

    @pytest.mark.asyncio
    async def test_idempotent_thank_you(self):
        service = await make_service()
        request = ThankYouRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN, idempotency_key="ty-1")

        first = await service.send_thank_you(request)
        second = await service.send_thank_you(request)

        assert second.replayed is True
        assert second.transaction.id == first.transaction.id
        assert (await service.get_balance(TECHNICIAN)).points == 1


class TestSendTokens:
    """Tests for sending Tokens of Appreciation."""

    @pytest.mark.asyncio
    async def test_one_dollar_of_toa(self):
        """Customer sends $1.00 of TOA: $0.85 payout, $0.15 fee, +1/+2 points."""
        service = await make_service(tokens=500)

        response = await service.send_tokens(SendTokensRequest(
            from_user_id=CUSTOMER, to_user_id=TECHNICIAN, tokens=100,
        ))

        record = response.transaction
        assert record.type == TransactionType.TOA_SEND
        assert record.dollar_value == Decimal("1.00")
        assert record.technician_payout == Decimal("0.85")
        assert record.platform_fee == Decimal("0.15")
        assert record.points_awarded == 2
        assert record.sender_points_awarded == 1

        assert response.sender_balance.points == 1
        assert response.sender_balance.toa_tokens == 400
        assert response.sender_balance.total_spent == 100
        assert response.receiver_balance.points == 2

    @pytest.mark.asyncio
    async def test_award_independent_of_token_count(self):
        service = await make_service(tokens=2000)

        small = await service.send_tokens(SendTokensRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN, tokens=1))
        large = await service.send_tokens(SendTokensRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN, tokens=1000))

        assert small.transaction.sender_points_awarded == large.transaction.sender_points_awarded == 1
        assert small.transaction.points_awarded == large.transaction.points_awarded == 2
        assert large.sender_balance.points == 2
        assert large.receiver_balance.points == 4

    @pytest.mark.asyncio
    async def test_insufficient_tokens(self):
        service = await make_service(tokens=50)

        with pytest.raises(InsufficientTokens) as exc:
            await service.send_tokens(SendTokensRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN, tokens=100))
        assert exc.value.user_message == "Insufficient tokens. You have 50, need 100"

        # No points awarded for a rejected send
        assert (await service.get_balance(TECHNICIAN)).points == 0
        assert (await service.get_balance(CUSTOMER)).toa_tokens == 50

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tokens", [0, -5, 10_001])
    async def test_token_count_out_of_range(self, tokens):
        service = await make_service(tokens=100)

        with pytest.raises(InvalidAmount):
            await service.send_tokens(SendTokensRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN, tokens=tokens))

    @pytest.mark.asyncio
    async def test_replay_with_different_amount(self):
        service = await make_service(tokens=500)
        await service.send_tokens(SendTokensRequest(
            from_user_id=CUSTOMER, to_user_id=TECHNICIAN, tokens=100, idempotency_key="send-1",
        ))

        with pytest.raises(IdempotencyConflict):
            await service.send_tokens(SendTokensRequest(
                from_user_id=CUSTOMER, to_user_id=TECHNICIAN, tokens=200, idempotency_key="send-1",
            ))


class TestPointsAccounting:
    """Tests for the award table."""

    @pytest.mark.asyncio
    async def test_award_requires_both_accounts(self):
        store = InMemoryLedgerStore()
        await store.create_account(CUSTOMER)
        accounting = PointsAccounting(store, Settings())

        with pytest.raises(AccountNotFound):
            await accounting.award_points(TransactionType.TOA_SEND, CUSTOMER, "ghost")

        # No partial award for the sender
        assert (await store.get_balance(CUSTOMER)).points == 0

    def test_purchases_award_no_points(self):
        accounting = PointsAccounting(InMemoryLedgerStore(), Settings())

        with pytest.raises(LedgerError):
            accounting.award_for(TransactionType.TOKEN_PURCHASE)


class TestTokenPurchase:
    """Tests for recording confirmed purchases."""

    @pytest.mark.asyncio
    async def test_purchase_credits_tokens(self):
        service = await make_service()

        response = await service.record_token_purchase(TokenPurchaseRequest(
            user_id=CUSTOMER, tokens=1000, dollar_value=Decimal("9.99"), payment_reference="cs_test_1",
        ))

        assert response.balance.toa_tokens == 1000
        assert response.balance.total_purchased == 1000
        assert response.transaction.type == TransactionType.TOKEN_PURCHASE
        assert response.transaction.technician_payout + response.transaction.platform_fee == Decimal("9.99")
        assert response.transaction.metadata["payment_reference"] == "cs_test_1"

    @pytest.mark.asyncio
    async def test_redelivered_payment_is_not_credited_twice(self):
        service = await make_service()
        request = TokenPurchaseRequest(
            user_id=CUSTOMER, tokens=500, dollar_value=Decimal("4.99"), payment_reference="cs_test_2",
        )

        await service.record_token_purchase(request)
        replay = await service.record_token_purchase(request)

        assert replay.replayed is True
        assert replay.balance.toa_tokens == 500

    @pytest.mark.asyncio
    async def test_reused_reference_for_different_purchase(self):
        service = await make_service()
        await service.record_token_purchase(TokenPurchaseRequest(
            user_id=CUSTOMER, tokens=100, dollar_value=Decimal("1.99"), payment_reference="pi_1",
        ))

        with pytest.raises(IdempotencyConflict):
            await service.record_token_purchase(TokenPurchaseRequest(
                user_id=CUSTOMER, tokens=7500, dollar_value=Decimal("49.99"), payment_reference="pi_1",
            ))
        with pytest.raises(IdempotencyConflict):
            await service.record_token_purchase(TokenPurchaseRequest(
                user_id=CUSTOMER, tokens=100, dollar_value=Decimal("0.99"), payment_reference="pi_1",
            ))

        # Only the first purchase was credited
        assert (await service.get_balance(CUSTOMER)).toa_tokens == 100

    @pytest.mark.asyncio
    async def test_purchase_for_unknown_account(self):
        service = await make_service()

        with pytest.raises(AccountNotFound):
            await service.record_token_purchase(TokenPurchaseRequest(
                user_id="ghost", tokens=100, dollar_value=Decimal("1.99"),
            ))

    @pytest.mark.asyncio
    async def test_purchase_rejects_fractional_cents(self):
        service = await make_service()

        with pytest.raises(InvalidAmount):
            await service.record_token_purchase(TokenPurchaseRequest(
                user_id=CUSTOMER, tokens=100, dollar_value=Decimal("1.999"),
            ))


class TestHistoryAndEarnings:
    @pytest.mark.asyncio
    async def test_history_includes_both_directions(self):
        service = await make_service(tokens=300)
        await service.send_thank_you(ThankYouRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN))
        await service.send_tokens(SendTokensRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN, tokens=100))

        history = await service.get_history(CUSTOMER)
        technician_history = await service.get_history(TECHNICIAN, type=TransactionType.TOA_SEND)

        assert history.total_count == 3
        assert technician_history.total_count == 1
        assert technician_history.balance.points == 3

    @pytest.mark.asyncio
    async def test_earnings_summary(self):
        service = await make_service(tokens=1000)
        await service.send_thank_you(ThankYouRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN))
        await service.send_tokens(SendTokensRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN, tokens=100))
        await service.send_tokens(SendTokensRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN, tokens=300))

        earnings = await service.get_earnings(TECHNICIAN)

        assert earnings.thank_yous_received == 1
        assert earnings.toa_transactions_received == 2
        assert earnings.toa_tokens_received == 400
        assert earnings.total_dollar_value == Decimal("4.00")
        assert earnings.total_payout == Decimal("3.40")
        assert earnings.total_platform_fee == Decimal("0.60")
        assert earnings.current_points == 5


class BrokenLogStore(InMemoryLedgerStore):
    def _persist_transaction(self, tx):
        raise IOError("write timed out")


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_failed_recording_rolls_back_send(self):
        store = BrokenLogStore()
        service = LedgerService(store=store, settings=Settings())
        await service.open_account(CUSTOMER)
        await service.open_account(TECHNICIAN)
        await store.atomic_update(BalanceDelta(user_id=CUSTOMER, toa_tokens=100))

        with pytest.raises(RecordingFailed):
            await service.send_tokens(SendTokensRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN, tokens=100))

        assert (await service.get_balance(CUSTOMER)).toa_tokens == 100
        assert (await service.get_balance(TECHNICIAN)).points == 0

    @pytest.mark.asyncio
    async def test_slow_store_surfaces_as_unavailable(self):
        store = InMemoryLedgerStore(latency=0.2)
        service = LedgerService(store=store, settings=Settings(store_timeout_seconds=0.01))
        await service.open_account(CUSTOMER)

        with pytest.raises(StoreUnavailable):
            await service.record_token_purchase(TokenPurchaseRequest(
                user_id=CUSTOMER, tokens=100, dollar_value=Decimal("1.00"),
            ))

    @pytest.mark.asyncio
    async def test_timeout_while_waiting_for_lock_leaves_account_usable(self):
        store = InMemoryLedgerStore()
        service = LedgerService(store=store, settings=Settings(store_timeout_seconds=0.05))
        await service.open_account(CUSTOMER)
        await service.open_account(TECHNICIAN)

        # Another writer holds the technician; the customer lock is taken first
        await store._locks[TECHNICIAN].acquire()
        with pytest.raises(StoreUnavailable):
            await service.send_thank_you(ThankYouRequest(from_user_id=CUSTOMER, to_user_id=TECHNICIAN))
        store._locks[TECHNICIAN].release()

        assert not store._locks[CUSTOMER].locked()
        response = await service.record_token_purchase(TokenPurchaseRequest(
            user_id=CUSTOMER, tokens=100, dollar_value=Decimal("1.00"),
        ))
        assert response.balance.toa_tokens == 100
        assert (await service.get_balance(TECHNICIAN)).points == 0


class TestRandomInterleavings:
    """Random operations never drive a balance below zero, and the log explains every balance."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [1, 7, 42, 2024])
    async def test_balances_stay_non_negative(self, seed):
        rng = random.Random(seed)
        users = ["u1", "u2", "u3", "u4"]
        service = LedgerService(settings=Settings(), clock=lambda: NOW)
        for user in users:
            await service.open_account(user)

        for _ in range(300):
            sender, receiver = rng.sample(users, 2)
            before = {u: await service.get_balance(u) for u in users}
            op = rng.choice(["purchase", "send", "thank", "convert"])
            try:
                if op == "purchase":
                    tokens = rng.randint(1, 50)
                    await service.record_token_purchase(TokenPurchaseRequest(
                        user_id=sender, tokens=tokens, dollar_value=Decimal(tokens) / 100,
                    ))
                elif op == "send":
                    await service.send_tokens(SendTokensRequest(
                        from_user_id=sender, to_user_id=receiver, tokens=rng.randint(1, 60),
                    ))
                elif op == "thank":
                    await service.send_thank_you(ThankYouRequest(from_user_id=sender, to_user_id=receiver))
                else:
                    await service.convert_points(ConvertPointsRequest(user_id=sender, points=rng.randint(0, 6) * 5))
            except LedgerError:
                # Rejected operations leave every balance unchanged
                after = {u: await service.get_balance(u) for u in users}
                assert after == before

            for user in users:
                balance = await service.get_balance(user)
                assert balance.points >= 0
                assert balance.toa_tokens >= 0

        for user in users:
            await self._assert_log_explains_balance(service, user)

    async def _assert_log_explains_balance(self, service: LedgerService, user: str):
        transactions = await service._all_transactions(user)
        points = tokens = 0
        for tx in transactions:
            if tx.type == TransactionType.TOKEN_PURCHASE:
                tokens += tx.tokens
            elif tx.type == TransactionType.TOA_SEND:
                if tx.from_user_id == user:
                    tokens -= tx.tokens
                    points += tx.sender_points_awarded
                else:
                    points += tx.points_awarded
            elif tx.type == TransactionType.THANK_YOU:
                if tx.to_user_id == user:
                    points += tx.points_awarded
            else:
                points += tx.points_awarded
                tokens += tx.tokens

        balance = await service.get_balance(user)
        assert balance.points == points
        assert balance.toa_tokens == tokens
