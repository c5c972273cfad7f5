import logging
from typing import Optional

from .errors import IdempotencyConflictError
from .models import EarnReason, EarnResponse, EntryKind, LedgerEntry
from .recorder import LedgerRecorder
from .store import AccountStore, Transaction
from .validators import (
    validate_account_id,
    validate_earn_reason,
    validate_idempotency_key,
    validate_positive_int,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_EARN_PER_EVENT = 1000


class EarnService:
    def __init__(
        self,
        store: AccountStore,
        recorder: LedgerRecorder,
        max_earn_per_event: int = DEFAULT_MAX_EARN_PER_EVENT,
    ):
        self.store = store
        self.recorder = recorder
        self.max_earn_per_event = max_earn_per_event

    def earn(
        self,
        account_id: str,
        amount: int,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> EarnResponse:
        account_id = validate_account_id(account_id)
        amount = validate_positive_int(amount, "Invalid points amount", maximum=self.max_earn_per_event)
        earn_reason = validate_earn_reason(reason)
        idempotency_key = validate_idempotency_key(idempotency_key)

        # first interaction creates the account
        self.store.open_account(account_id)

        def apply(balance: int, txn: Transaction):
            if idempotency_key:
                previous = txn.find_entry(idempotency_key)
                if previous is not None:
                    self._check_replay(previous, amount, earn_reason)
                    return balance, EarnResponse(
                        new_balance=previous.balance_after, entry=previous, replayed=True
                    )

            new_balance = balance + amount
            entry = self.recorder.append(
                txn,
                kind=EntryKind.EARN,
                delta=amount,
                reason=earn_reason.value,
                balance_after=new_balance,
                idempotency_key=idempotency_key,
            )
            return new_balance, EarnResponse(new_balance=new_balance, entry=entry)

        response = self.store.transactional_update(account_id, apply)
        if response.replayed:
            logger.info("Replayed earn %r for %s", idempotency_key, account_id)
        else:
            logger.info(
                "Credited %d points to %s for %s, balance %d",
                amount, account_id, earn_reason.value, response.new_balance,
            )
        return response

    @staticmethod
    def _check_replay(previous: LedgerEntry, amount: int, reason: EarnReason) -> None:
        if previous.kind != EntryKind.EARN or previous.delta != amount or previous.reason != reason.value:
            raise IdempotencyConflictError(
                f"Idempotency key {previous.idempotency_key!r} was used for a different operation"
            )
