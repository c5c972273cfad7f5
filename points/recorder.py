import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .errors import InvariantViolationError, LedgerCorruptionError
from .models import AccountAudit, EntryKind, LedgerEntry, LedgerHistoryResponse
from .store import AccountStore, Transaction

logger = logging.getLogger(__name__)


class LedgerRecorder:
    """
    Append-only audit trail of balance changes.

    Entries are staged on a live Transaction and become visible only when the
    store commits that transaction. There is no update or delete path.
    """

    def __init__(self, store: AccountStore):
        self.store = store

    def append(
        self,
        txn: Transaction,
        *,
        kind: EntryKind,
        delta: int,
        reason: str,
        balance_after: int,
        reward_id: Optional[str] = None,
        voucher_id: Optional[UUID] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerEntry:
        if not txn.is_open:
            raise InvariantViolationError("Ledger entries can only be appended inside an open transaction")
        if delta == 0:
            raise InvariantViolationError("Ledger entries must change the balance")
        if kind == EntryKind.EARN and delta < 0:
            raise InvariantViolationError(f"Earn entry with negative delta {delta}")
        if kind == EntryKind.REDEEM and delta > 0:
            raise InvariantViolationError(f"Redeem entry with positive delta {delta}")

        entry = LedgerEntry(
            id=uuid4(),
            account_id=txn.account_id,
            kind=kind,
            delta=delta,
            reason=reason,
            balance_after=balance_after,
            sequence=txn.next_sequence(),
            reward_id=reward_id,
            voucher_id=voucher_id,
            idempotency_key=idempotency_key,
            created_at=datetime.now(timezone.utc),
        )
        txn.stage_entry(entry)
        return entry

    def entries(self, account_id: str) -> list[LedgerEntry]:
        return self.store.list_entries(account_id)

    def history(self, account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        all_entries = self.entries(account_id)
        newest_first = list(reversed(all_entries))
        current_balance = self.store.get_account(account_id).balance

        return LedgerHistoryResponse(
            account_id=account_id,
            entries=newest_first[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=current_balance,
        )

    def replay_balance(self, account_id: str) -> int:
        balance = 0
        for expected_sequence, entry in enumerate(self.entries(account_id), start=1):
            if entry.sequence != expected_sequence:
                raise LedgerCorruptionError(
                    f"Ledger gap for {account_id}: expected sequence {expected_sequence}, found {entry.sequence}"
                )
            balance += entry.delta
            if balance != entry.balance_after:
                raise LedgerCorruptionError(
                    f"Ledger entry {entry.id} records balance {entry.balance_after}, replay gives {balance}"
                )
        return balance

    def verify(self, account_id: str) -> AccountAudit:
        account = self.store.get_account(account_id)
        entries = self.entries(account_id)
        ledger_balance = self.replay_balance(account_id)
        consistent = ledger_balance == account.balance
        if not consistent:
            logger.error(
                "Ledger for %s sums to %d but stored balance is %d",
                account_id, ledger_balance, account.balance,
            )
        return AccountAudit(
            account_id=account_id,
            stored_balance=account.balance,
            ledger_balance=ledger_balance,
            entry_count=len(entries),
            consistent=consistent,
        )
