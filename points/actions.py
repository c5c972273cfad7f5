"""
Boundary operations used by the rest of the application.

``redeem`` and ``earn`` report application and store failures as a result
dictionary with ``success`` set to False instead of raising. Internal failure
details are logged server-side and replaced by a generic message.
"""

import logging
import threading
from typing import Optional

from .catalog import RewardCatalog
from .config import PointsSettings
from .earn import EarnService
from .errors import (
    AccountNotFoundError,
    ConflictRetriesExhaustedError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidRewardError,
    PointsError,
    ValidationError,
)
from .models import AccountBalance, EarnResult, RedeemResult
from .recorder import LedgerRecorder
from .redemption import RedemptionService
from .store import AccountStore, build_store
from .vouchers import VoucherIssuer

logger = logging.getLogger(__name__)

REDEEM_FAILED = "Failed to redeem reward"
EARN_FAILED = "Failed to add points"


class PointsEconomy:
    def __init__(
        self,
        store: Optional[AccountStore] = None,
        catalog: Optional[RewardCatalog] = None,
        settings: Optional[PointsSettings] = None,
    ):
        self.settings = settings or PointsSettings()
        self.store = store or build_store(self.settings)
        if catalog is None:
            catalog = (
                RewardCatalog.from_file(self.settings.catalog_path)
                if self.settings.catalog_path
                else RewardCatalog.default()
            )
        self.catalog = catalog
        self.recorder = LedgerRecorder(self.store)
        self.issuer = VoucherIssuer(self.store)
        self.earn_service = EarnService(
            self.store, self.recorder, max_earn_per_event=self.settings.max_earn_per_event
        )
        self.redemption_service = RedemptionService(self.catalog, self.store, self.recorder, self.issuer)

    @classmethod
    def from_env(cls) -> "PointsEconomy":
        return cls(settings=PointsSettings.from_env())

    def redeem(
        self,
        account_id: str,
        reward_title: str,
        points_cost: int,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        try:
            response = self.redemption_service.redeem(account_id, reward_title, points_cost, idempotency_key)
        except PointsError as e:
            return RedeemResult(success=False, error=error_message(e, REDEEM_FAILED)).model_dump(
                by_alias=True, exclude_none=True
            )
        return RedeemResult(
            success=True, new_points=response.new_balance, voucher_id=str(response.voucher.id)
        ).model_dump(by_alias=True, exclude_none=True)

    def earn(
        self,
        account_id: str,
        amount: int,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        try:
            response = self.earn_service.earn(account_id, amount, reason, idempotency_key)
        except PointsError as e:
            return EarnResult(success=False, error=error_message(e, EARN_FAILED)).model_dump(
                by_alias=True, exclude_none=True
            )
        return EarnResult(success=True, new_points=response.new_balance).model_dump(
            by_alias=True, exclude_none=True
        )

    def balance(self, account_id: str) -> AccountBalance:
        account = self.store.get_account(account_id)
        entries = self.store.list_entries(account_id)
        return AccountBalance(
            account_id=account.account_id,
            balance=account.balance,
            active=account.active,
            total_entries=len(entries),
            last_transaction_at=entries[-1].created_at if entries else None,
        )


def error_message(error: PointsError, generic: str) -> str:
    if isinstance(error, ValidationError):
        return str(error)
    if isinstance(error, InvalidRewardError):
        return "Invalid reward or points mismatch"
    if isinstance(error, InsufficientBalanceError):
        return "Insufficient points"
    if isinstance(error, AccountNotFoundError):
        return "User not found"
    if isinstance(error, IdempotencyConflictError):
        return "Idempotency key reused with different parameters"
    if isinstance(error, ConflictRetriesExhaustedError):
        logger.warning("Points operation hit retry budget: %s", error)
        return "Please retry"
    logger.error("Points operation failed: %s", error, exc_info=error)
    return generic


_default_economy: Optional[PointsEconomy] = None
_default_lock = threading.Lock()


def get_economy() -> PointsEconomy:
    global _default_economy
    with _default_lock:
        if _default_economy is None:
            _default_economy = PointsEconomy.from_env()
        return _default_economy


def redeem(account_id: str, reward_title: str, points_cost: int, idempotency_key: Optional[str] = None) -> dict:
    return get_economy().redeem(account_id, reward_title, points_cost, idempotency_key)


def earn(account_id: str, amount: int, reason: str, idempotency_key: Optional[str] = None) -> dict:
    return get_economy().earn(account_id, amount, reason, idempotency_key)
