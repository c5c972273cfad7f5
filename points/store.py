"""
Account storage.

AccountStore is the only component that writes a balance. Every write goes
through ``transactional_update``, which reads the committed balance, hands it
to a caller-supplied function together with a Transaction for staging ledger
entries and vouchers, and then commits the new balance and everything staged
as one unit, or nothing at all.

Two backends:

- InMemoryAccountStore: pessimistic, one lock per account.
- SQLiteAccountStore: durable, optimistic compare-and-swap on the account
  version with a bounded, exponentially backed-off retry budget.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Tuple, TypeVar
from uuid import UUID

from .config import PointsSettings
from .errors import (
    AccountDeactivatedError,
    AccountNotFoundError,
    ConflictRetriesExhaustedError,
    IdempotencyConflictError,
    InternalStoreError,
    InvariantViolationError,
    VoucherNotFoundError,
)
from .models import Account, LedgerEntry, Voucher, VoucherStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")
UpdateFn = Callable[[int, "Transaction"], Tuple[int, T]]


class Transaction:
    """Staging area for one attempt of a transactional update."""

    def __init__(self, store: "AccountStore", account_id: str, balance: int, last_sequence: int):
        self.account_id = account_id
        self.balance = balance
        self.entries: list[LedgerEntry] = []
        self.vouchers: list[Voucher] = []
        self._store = store
        self._last_sequence = last_sequence
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def staged_delta(self) -> int:
        return sum(e.delta for e in self.entries)

    def is_empty(self) -> bool:
        return not self.entries and not self.vouchers

    def next_sequence(self) -> int:
        return self._last_sequence + len(self.entries) + 1

    def stage_entry(self, entry: LedgerEntry) -> None:
        self._check_writable(entry.account_id)
        if entry.sequence != self.next_sequence():
            raise InvariantViolationError(
                f"Entry sequence {entry.sequence} out of order, expected {self.next_sequence()}"
            )
        self.entries.append(entry)

    def stage_voucher(self, voucher: Voucher) -> None:
        self._check_writable(voucher.account_id)
        self.vouchers.append(voucher)

    def find_entry(self, idempotency_key: str) -> Optional[LedgerEntry]:
        return self._store.find_entry(self.account_id, idempotency_key)

    def close(self) -> None:
        self._open = False

    def _check_writable(self, account_id: str) -> None:
        if not self._open:
            raise InvariantViolationError("Transaction is closed")
        if account_id != self.account_id:
            raise InvariantViolationError(
                f"Cannot stage a write for {account_id} in a transaction on {self.account_id}"
            )


class AccountStore:
    def open_account(self, account_id: str) -> Account:
        raise NotImplementedError

    def get_account(self, account_id: str) -> Account:
        raise NotImplementedError

    def deactivate_account(self, account_id: str) -> Account:
        raise NotImplementedError

    def transactional_update(self, account_id: str, fn: UpdateFn) -> Any:
        raise NotImplementedError

    def list_entries(self, account_id: str) -> list[LedgerEntry]:
        raise NotImplementedError

    def find_entry(self, account_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        raise NotImplementedError

    def get_voucher(self, voucher_id: UUID) -> Voucher:
        raise NotImplementedError

    def list_vouchers(self, account_id: str) -> list[Voucher]:
        raise NotImplementedError

    def set_voucher_status(
        self, voucher_id: UUID, expected: VoucherStatus, status: VoucherStatus
    ) -> Optional[Voucher]:
        """Compare-and-set a voucher status. Returns None if ``expected`` no longer holds."""
        raise NotImplementedError

    def _run(self, fn: UpdateFn, txn: Transaction) -> Tuple[int, Any]:
        try:
            new_balance, outcome = fn(txn.balance, txn)
        finally:
            txn.close()

        if isinstance(new_balance, bool) or not isinstance(new_balance, int):
            raise InvariantViolationError(f"New balance must be an integer, got {new_balance!r}")
        if new_balance < 0:
            raise InvariantViolationError(
                f"Refusing negative balance {new_balance} for account {txn.account_id}"
            )
        if new_balance - txn.balance != txn.staged_delta:
            raise InvariantViolationError(
                f"Balance change {new_balance - txn.balance} does not match "
                f"staged ledger deltas {txn.staged_delta} for account {txn.account_id}"
            )
        if txn.entries and txn.entries[-1].balance_after != new_balance:
            raise InvariantViolationError(
                f"Last entry balance_after {txn.entries[-1].balance_after} != new balance {new_balance}"
            )
        staged_voucher_ids = {e.voucher_id for e in txn.entries if e.voucher_id}
        for voucher in txn.vouchers:
            if voucher.id not in staged_voucher_ids:
                raise InvariantViolationError(f"Voucher {voucher.id} staged without a redeem entry")
        return new_balance, outcome


class InMemoryAccountStore(AccountStore):
    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.ledger_entries: dict[str, list[dict]] = {}
        self.vouchers: dict[UUID, dict] = {}
        self.account_vouchers: dict[str, list[UUID]] = {}
        self.idempotency_index: dict[tuple[str, str], UUID] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def open_account(self, account_id: str) -> Account:
        with self._registry_lock:
            account_data = self.accounts.get(account_id)
            if account_data is None:
                now = datetime.now(timezone.utc)
                account_data = {
                    "account_id": account_id,
                    "balance": 0,
                    "version": 0,
                    "active": True,
                    "created_at": now,
                    "updated_at": now,
                }
                self.accounts[account_id] = account_data
                self.ledger_entries[account_id] = []
                self.account_vouchers[account_id] = []
                self._locks[account_id] = threading.RLock()
                logger.info("Opened points account %s", account_id)
        with self._lock_for(account_id):
            return Account(**account_data)

    def get_account(self, account_id: str) -> Account:
        with self._lock_for(account_id):
            return Account(**self.accounts[account_id])

    def deactivate_account(self, account_id: str) -> Account:
        with self._lock_for(account_id):
            account_data = self.accounts[account_id]
            account_data["active"] = False
            account_data["version"] += 1
            account_data["updated_at"] = datetime.now(timezone.utc)
            return Account(**account_data)

    def transactional_update(self, account_id: str, fn: UpdateFn) -> Any:
        with self._lock_for(account_id):
            account_data = self.accounts[account_id]
            if not account_data["active"]:
                raise AccountDeactivatedError(f"Account {account_id} is deactivated")

            entries = self.ledger_entries[account_id]
            txn = Transaction(self, account_id, account_data["balance"], len(entries))
            new_balance, outcome = self._run(fn, txn)
            if txn.is_empty():
                return outcome

            for entry in txn.entries:
                if entry.idempotency_key and (account_id, entry.idempotency_key) in self.idempotency_index:
                    raise IdempotencyConflictError(
                        f"Idempotency key {entry.idempotency_key!r} already used on {account_id}"
                    )

            now = datetime.now(timezone.utc)
            for entry in txn.entries:
                entries.append(entry.model_dump())
                if entry.idempotency_key:
                    self.idempotency_index[(account_id, entry.idempotency_key)] = entry.id
            for voucher in txn.vouchers:
                self.vouchers[voucher.id] = voucher.model_dump()
                self.account_vouchers[account_id].append(voucher.id)
            account_data["balance"] = new_balance
            account_data["version"] += 1
            account_data["updated_at"] = now
            return outcome

    def list_entries(self, account_id: str) -> list[LedgerEntry]:
        if account_id not in self.accounts:
            return []
        with self._lock_for(account_id):
            return [LedgerEntry(**e) for e in self.ledger_entries[account_id]]

    def find_entry(self, account_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        if account_id not in self.accounts:
            return None
        with self._lock_for(account_id):
            entry_id = self.idempotency_index.get((account_id, idempotency_key))
            if entry_id is None:
                return None
            for e in self.ledger_entries[account_id]:
                if e["id"] == entry_id:
                    return LedgerEntry(**e)
            return None

    def get_voucher(self, voucher_id: UUID) -> Voucher:
        voucher_data = self.vouchers.get(voucher_id)
        if not voucher_data:
            raise VoucherNotFoundError(f"Voucher {voucher_id} not found")
        with self._lock_for(voucher_data["account_id"]):
            return Voucher(**voucher_data)

    def list_vouchers(self, account_id: str) -> list[Voucher]:
        if account_id not in self.accounts:
            return []
        with self._lock_for(account_id):
            vouchers = [Voucher(**self.vouchers[v]) for v in self.account_vouchers[account_id]]
        vouchers.sort(key=lambda v: v.issued_at)
        return vouchers

    def set_voucher_status(
        self, voucher_id: UUID, expected: VoucherStatus, status: VoucherStatus
    ) -> Optional[Voucher]:
        voucher_data = self.vouchers.get(voucher_id)
        if not voucher_data:
            raise VoucherNotFoundError(f"Voucher {voucher_id} not found")
        with self._lock_for(voucher_data["account_id"]):
            if voucher_data["status"] != expected:
                return None
            voucher_data["status"] = status
            voucher_data["status_changed_at"] = datetime.now(timezone.utc)
            return Voucher(**voucher_data)

    def _lock_for(self, account_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
        if lock is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return lock


_SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id  TEXT PRIMARY KEY,
    balance     INTEGER NOT NULL CHECK (balance >= 0),
    version     INTEGER NOT NULL DEFAULT 0,
    active      INTEGER NOT NULL DEFAULT 1,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger (
    id               TEXT PRIMARY KEY,
    account_id       TEXT NOT NULL REFERENCES accounts(account_id),
    kind             TEXT NOT NULL CHECK (kind IN ('earn', 'redeem')),
    delta            INTEGER NOT NULL CHECK (delta <> 0),
    reason           TEXT NOT NULL,
    balance_after    INTEGER NOT NULL CHECK (balance_after >= 0),
    sequence         INTEGER NOT NULL,
    reward_id        TEXT,
    voucher_id       TEXT,
    idempotency_key  TEXT,
    created_at       TEXT NOT NULL,
    UNIQUE (account_id, sequence),
    UNIQUE (account_id, idempotency_key)
);

CREATE TABLE IF NOT EXISTS vouchers (
    id                 TEXT PRIMARY KEY,
    account_id         TEXT NOT NULL REFERENCES accounts(account_id),
    reward_id          TEXT NOT NULL,
    cost_paid          INTEGER NOT NULL CHECK (cost_paid > 0),
    issued_at          TEXT NOT NULL,
    status             TEXT NOT NULL CHECK (status IN ('active', 'used', 'expired')),
    status_changed_at  TEXT
);

CREATE INDEX IF NOT EXISTS idx_vouchers_account ON vouchers(account_id);

CREATE TRIGGER IF NOT EXISTS ledger_no_update BEFORE UPDATE ON ledger
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are immutable');
END;

CREATE TRIGGER IF NOT EXISTS ledger_no_delete BEFORE DELETE ON ledger
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are immutable');
END;
"""

_ENTRY_COLUMNS = (
    "id, account_id, kind, delta, reason, balance_after, sequence, "
    "reward_id, voucher_id, idempotency_key, created_at"
)
_VOUCHER_COLUMNS = "id, account_id, reward_id, cost_paid, issued_at, status, status_changed_at"


def _is_lock_error(e: sqlite3.OperationalError) -> bool:
    message = str(e).lower()
    return "locked" in message or "busy" in message


MAX_BACKOFF_SECONDS = 0.5


class _Conflict(Exception):
    pass


class SQLiteAccountStore(AccountStore):
    def __init__(self, path: str = "points.db", max_retries: int = 5, retry_base_delay: float = 0.01):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.path = path
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        with self._errors():
            self._get_conn().executescript(_SCHEMA)

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        conn = sqlite3.connect(self.path, timeout=5.0, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        self._local.conn = conn
        with self._connections_lock:
            self._connections.append(conn)
        return conn

    def close(self) -> None:
        """Close the connections opened by every thread that used this store."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()

    def _fetch_one(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
        # fetchall releases the read snapshot before any write begins
        rows = self._get_conn().execute(sql, params).fetchall()
        return rows[0] if rows else None

    @contextmanager
    def _errors(self):
        try:
            yield
        except sqlite3.Error as e:
            raise InternalStoreError(f"Points store failure: {e}") from e

    @contextmanager
    def _write(self, conn: sqlite3.Connection):
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def open_account(self, account_id: str) -> Account:
        now = datetime.now(timezone.utc).isoformat()
        conn = self._get_conn()
        with self._errors():
            cur = conn.execute(
                "INSERT OR IGNORE INTO accounts(account_id, balance, version, active, created_at, updated_at) "
                "VALUES (?, 0, 0, 1, ?, ?)",
                (account_id, now, now),
            )
            if cur.rowcount:
                logger.info("Opened points account %s", account_id)
        return self.get_account(account_id)

    def get_account(self, account_id: str) -> Account:
        with self._errors():
            row = self._fetch_one(
                "SELECT account_id, balance, version, active, created_at, updated_at "
                "FROM accounts WHERE account_id = ?",
                (account_id,),
            )
        if row is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return Account(**dict(row))

    def deactivate_account(self, account_id: str) -> Account:
        now = datetime.now(timezone.utc).isoformat()
        with self._errors():
            cur = self._get_conn().execute(
                "UPDATE accounts SET active = 0, version = version + 1, updated_at = ? WHERE account_id = ?",
                (now, account_id),
            )
        if cur.rowcount == 0:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return self.get_account(account_id)

    def transactional_update(self, account_id: str, fn: UpdateFn) -> Any:
        with self._errors():
            conn = self._get_conn()
        for attempt in range(self.max_retries):
            txn, version = self._begin(account_id)
            new_balance, outcome = self._run(fn, txn)
            if txn.is_empty():
                return outcome
            try:
                self._commit(conn, txn, version, new_balance)
                return outcome
            except _Conflict:
                logger.debug("Write conflict on account %s (attempt %d/%d)", account_id, attempt + 1, self.max_retries)
            except sqlite3.OperationalError as e:
                if not _is_lock_error(e):
                    raise InternalStoreError(f"Points store failure: {e}") from e
                logger.debug("Store busy for account %s (attempt %d/%d)", account_id, attempt + 1, self.max_retries)
            except sqlite3.IntegrityError as e:
                raise InvariantViolationError(f"Rejected write for account {account_id}: {e}") from e
            except sqlite3.Error as e:
                raise InternalStoreError(f"Points store failure: {e}") from e

            if attempt + 1 < self.max_retries and self.retry_base_delay:
                time.sleep(min(self.retry_base_delay * (2 ** attempt), MAX_BACKOFF_SECONDS))

        logger.warning("Gave up on account %s after %d conflicting attempts", account_id, self.max_retries)
        raise ConflictRetriesExhaustedError(
            f"Account {account_id} is busy, retry budget of {self.max_retries} exhausted"
        )

    def _begin(self, account_id: str) -> Tuple[Transaction, int]:
        with self._errors():
            row = self._fetch_one(
                "SELECT a.balance, a.version, a.active, "
                "(SELECT COALESCE(MAX(sequence), 0) FROM ledger l WHERE l.account_id = a.account_id) AS last_sequence "
                "FROM accounts a WHERE a.account_id = ?",
                (account_id,),
            )
        if row is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        if not row["active"]:
            raise AccountDeactivatedError(f"Account {account_id} is deactivated")
        return Transaction(self, account_id, row["balance"], row["last_sequence"]), row["version"]

    def _commit(self, conn: sqlite3.Connection, txn: Transaction, version: int, new_balance: int) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._write(conn):
            cur = conn.execute(
                "UPDATE accounts SET balance = ?, version = version + 1, updated_at = ? "
                "WHERE account_id = ? AND version = ? AND active = 1",
                (new_balance, now, txn.account_id, version),
            )
            if cur.rowcount != 1:
                raise _Conflict()
            conn.executemany(
                f"INSERT INTO ledger({_ENTRY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        str(e.id), e.account_id, e.kind.value, e.delta, e.reason, e.balance_after,
                        e.sequence, e.reward_id, str(e.voucher_id) if e.voucher_id else None,
                        e.idempotency_key, e.created_at.isoformat(),
                    )
                    for e in txn.entries
                ],
            )
            conn.executemany(
                f"INSERT INTO vouchers({_VOUCHER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        str(v.id), v.account_id, v.reward_id, v.cost_paid, v.issued_at.isoformat(),
                        v.status.value, v.status_changed_at.isoformat() if v.status_changed_at else None,
                    )
                    for v in txn.vouchers
                ],
            )

    def list_entries(self, account_id: str) -> list[LedgerEntry]:
        with self._errors():
            rows = self._get_conn().execute(
                f"SELECT {_ENTRY_COLUMNS} FROM ledger WHERE account_id = ? ORDER BY sequence",
                (account_id,),
            ).fetchall()
        return [LedgerEntry(**dict(r)) for r in rows]

    def find_entry(self, account_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        with self._errors():
            row = self._fetch_one(
                f"SELECT {_ENTRY_COLUMNS} FROM ledger WHERE account_id = ? AND idempotency_key = ?",
                (account_id, idempotency_key),
            )
        return LedgerEntry(**dict(row)) if row else None

    def get_voucher(self, voucher_id: UUID) -> Voucher:
        with self._errors():
            row = self._fetch_one(
                f"SELECT {_VOUCHER_COLUMNS} FROM vouchers WHERE id = ?", (str(voucher_id),)
            )
        if row is None:
            raise VoucherNotFoundError(f"Voucher {voucher_id} not found")
        return Voucher(**dict(row))

    def list_vouchers(self, account_id: str) -> list[Voucher]:
        with self._errors():
            rows = self._get_conn().execute(
                f"SELECT {_VOUCHER_COLUMNS} FROM vouchers WHERE account_id = ? ORDER BY issued_at",
                (account_id,),
            ).fetchall()
        return [Voucher(**dict(r)) for r in rows]

    def set_voucher_status(
        self, voucher_id: UUID, expected: VoucherStatus, status: VoucherStatus
    ) -> Optional[Voucher]:
        now = datetime.now(timezone.utc).isoformat()
        with self._errors():
            cur = self._get_conn().execute(
                "UPDATE vouchers SET status = ?, status_changed_at = ? WHERE id = ? AND status = ?",
                (status.value, now, str(voucher_id), expected.value),
            )
        voucher = self.get_voucher(voucher_id)
        return voucher if cur.rowcount else None


def build_store(settings: PointsSettings) -> AccountStore:
    if settings.store == "sqlite":
        logger.info("Using SQLite points store at %s", settings.db_path)
        return SQLiteAccountStore(
            settings.db_path,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
        )
    return InMemoryAccountStore()
