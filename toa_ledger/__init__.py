"""
ThankATech Appreciation Ledger

This module provides:
- Account balances for ThankATech Points and Tokens of Appreciation (TOA)
- Fixed point awards for thank-yous and TOA sends
- Point -> TOA conversion at 5:1 with a daily cap
- 85/15 technician/platform fee split with exact cents
- An append-only transaction log behind a pluggable async store
"""

from .models import (
    TransactionType,
    AccountBalance,
    Transaction,
    DailyConversionCounter,
    FeeSplit,
)
from .conversion import ConversionEngine
from .fees import split_fee, split_payment
from .points import PointsAccounting
from .recorder import TransactionRecorder
from .service import LedgerService
from .store import InMemoryLedgerStore, LedgerStore

__all__ = [
    "TransactionType",
    "AccountBalance",
    "Transaction",
    "DailyConversionCounter",
    "FeeSplit",
    "ConversionEngine",
    "split_fee",
    "split_payment",
    "PointsAccounting",
    "TransactionRecorder",
    "LedgerService",
    "InMemoryLedgerStore",
    "LedgerStore",
]
