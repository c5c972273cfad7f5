import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .errors import InvalidVoucherTransitionError, InvariantViolationError
from .models import RewardDefinition, Voucher, VoucherStatus
from .store import AccountStore, Transaction

logger = logging.getLogger(__name__)


class VoucherIssuer:
    def __init__(self, store: AccountStore):
        self.store = store

    def issue(self, txn: Transaction, *, reward: RewardDefinition, cost_paid: int) -> Voucher:
        """Stage an active voucher on a redeem transaction."""
        if not txn.is_open:
            raise InvariantViolationError("Vouchers can only be issued inside an open transaction")
        if cost_paid != reward.cost:
            raise InvariantViolationError(
                f"Voucher for {reward.reward_id!r} must cost {reward.cost}, got {cost_paid}"
            )

        voucher = Voucher(
            id=uuid4(),
            account_id=txn.account_id,
            reward_id=reward.reward_id,
            cost_paid=cost_paid,
            issued_at=datetime.now(timezone.utc),
            status=VoucherStatus.ACTIVE,
        )
        txn.stage_voucher(voucher)
        return voucher

    def get(self, voucher_id: UUID) -> Voucher:
        return self.store.get_voucher(voucher_id)

    def for_account(self, account_id: str, status: Optional[VoucherStatus] = None) -> list[Voucher]:
        vouchers = self.store.list_vouchers(account_id)
        if status is not None:
            vouchers = [v for v in vouchers if v.status == status]
        return vouchers

    def mark_used(self, voucher_id: UUID) -> Voucher:
        return self._transition(voucher_id, VoucherStatus.USED)

    def expire(self, voucher_id: UUID) -> Voucher:
        return self._transition(voucher_id, VoucherStatus.EXPIRED)

    def _transition(self, voucher_id: UUID, status: VoucherStatus) -> Voucher:
        voucher = self.store.get_voucher(voucher_id)
        if not voucher.can_transition():
            raise InvalidVoucherTransitionError(
                f"Cannot move voucher {voucher_id} from {voucher.status.value} to {status.value}"
            )

        updated = self.store.set_voucher_status(voucher_id, VoucherStatus.ACTIVE, status)
        if updated is None:
            current = self.store.get_voucher(voucher_id)
            raise InvalidVoucherTransitionError(
                f"Cannot move voucher {voucher_id} from {current.status.value} to {status.value}"
            )

        logger.info("Voucher %s for %s is now %s", voucher_id, updated.account_id, status.value)
        return updated
