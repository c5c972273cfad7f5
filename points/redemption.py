import logging
from typing import Optional

from .catalog import RewardCatalog
from .errors import IdempotencyConflictError, InsufficientBalanceError, InvalidRewardError, ValidationError
from .models import REDEEM_REASON, EntryKind, LedgerEntry, RedeemResponse, RewardDefinition
from .recorder import LedgerRecorder
from .store import AccountStore, Transaction
from .validators import validate_account_id, validate_idempotency_key, validate_positive_int
from .vouchers import VoucherIssuer

logger = logging.getLogger(__name__)


class RedemptionService:
    """
    Turns points into a voucher.

    The balance check, the debit, the ledger entry and the voucher all happen
    inside one store transaction, so two racing redemptions against a balance
    that covers only one of them yield one voucher and one
    InsufficientBalanceError.
    """

    def __init__(
        self,
        catalog: RewardCatalog,
        store: AccountStore,
        recorder: LedgerRecorder,
        issuer: VoucherIssuer,
    ):
        self.catalog = catalog
        self.store = store
        self.recorder = recorder
        self.issuer = issuer

    def redeem(
        self,
        account_id: str,
        reward_id: str,
        claimed_cost: int,
        idempotency_key: Optional[str] = None,
    ) -> RedeemResponse:
        account_id = validate_account_id(account_id)
        if not isinstance(reward_id, str) or not reward_id.strip():
            raise ValidationError("Invalid reward title")
        claimed_cost = validate_positive_int(claimed_cost, "Invalid points cost")
        idempotency_key = validate_idempotency_key(idempotency_key)

        try:
            reward = self.catalog.verify(reward_id, claimed_cost)
        except InvalidRewardError as e:
            logger.warning("Rejected redemption for %s: %s", account_id, e)
            raise

        def apply(balance: int, txn: Transaction):
            if idempotency_key:
                previous = txn.find_entry(idempotency_key)
                if previous is not None:
                    self._check_replay(previous, reward)
                    voucher = self.store.get_voucher(previous.voucher_id)
                    return balance, RedeemResponse(
                        new_balance=previous.balance_after, voucher=voucher, entry=previous, replayed=True
                    )

            if balance < reward.cost:
                raise InsufficientBalanceError(account_id, balance, reward.cost)

            new_balance = balance - reward.cost
            voucher = self.issuer.issue(txn, reward=reward, cost_paid=reward.cost)
            entry = self.recorder.append(
                txn,
                kind=EntryKind.REDEEM,
                delta=-reward.cost,
                reason=REDEEM_REASON,
                balance_after=new_balance,
                reward_id=reward.reward_id,
                voucher_id=voucher.id,
                idempotency_key=idempotency_key,
            )
            return new_balance, RedeemResponse(new_balance=new_balance, voucher=voucher, entry=entry)

        try:
            response = self.store.transactional_update(account_id, apply)
        except InsufficientBalanceError as e:
            logger.info("Redemption of %r declined: %s", reward.reward_id, e)
            raise

        if not response.replayed:
            logger.info(
                "Redeemed %r for %s, voucher %s, balance %d",
                reward.reward_id, account_id, response.voucher.id, response.new_balance,
            )
        return response

    @staticmethod
    def _check_replay(previous: LedgerEntry, reward: RewardDefinition) -> None:
        if (
            previous.kind != EntryKind.REDEEM
            or previous.reward_id != reward.reward_id
            or previous.delta != -reward.cost
            or previous.voucher_id is None
        ):
            raise IdempotencyConflictError(
                f"Idempotency key {previous.idempotency_key!r} was used for a different operation"
            )
