"""
Commute Points Economy

This package provides:
- A server-held reward catalog that client costs are checked against
- Per-account balances that never go negative, updated atomically
- An append-only ledger with one entry per balance change
- Vouchers issued exactly once per successful redemption
- Optional idempotency keys for safe client retries
"""

from .actions import PointsEconomy, earn, redeem
from .catalog import RewardCatalog
from .models import (
    Account,
    EarnReason,
    EntryKind,
    LedgerEntry,
    RewardDefinition,
    Voucher,
    VoucherStatus,
)
from .store import InMemoryAccountStore, SQLiteAccountStore

__all__ = [
    "Account",
    "EarnReason",
    "EntryKind",
    "LedgerEntry",
    "RewardDefinition",
    "Voucher",
    "VoucherStatus",
    "RewardCatalog",
    "InMemoryAccountStore",
    "SQLiteAccountStore",
    "PointsEconomy",
    "earn",
    "redeem",
]
