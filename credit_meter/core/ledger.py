"""
Account ledger with atomic debit, credit and adjustment primitives.

Every mutation runs in a ``BEGIN IMMEDIATE`` transaction: SQLite grants the
write lock before the balance is read, so two charges against the same account
serialize and neither can overwrite the other's result. Any exception inside
the transaction rolls back both the balance update and the ledger entry.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional

from .credit_math import from_units
from .errors import AccountExists, AccountNotFound, CreditsExpired, InsufficientCredits, InvalidAmount
from ..storage.db import DEFAULT_DB_PATH, get_connection
from ..storage.models import Account, LedgerEntry, LedgerKind
from ..storage.repository import (
    insert_account,
    insert_ledger_entry,
    select_account,
    update_account_balance,
    utcnow,
)

logger = logging.getLogger(__name__)

CREDIT_KINDS = (LedgerKind.RECHARGE, LedgerKind.BONUS)


@dataclass(frozen=True)
class Adjustment:
    """Outcome of an administrative direct-set of a balance."""
    delta_units: int
    balance_units: int
    entry: Optional[LedgerEntry]


class LedgerStore:
    """Account balances plus their append-only ledger.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds a transaction waits for the write lock
        clock: Returns the current tz-aware time; used for expiry checks
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db_path = db_path
        self.timeout = timeout
        self.clock = clock

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open an exclusive write transaction, commit on success, roll back on error."""
        conn = get_connection(self.db_path, timeout=self.timeout)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _require_account(self, conn: sqlite3.Connection, account_id: str) -> Account:
        account = select_account(conn, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def create_account(
        self,
        account_id: str,
        initial_units: int = 0,
        credits_expire_at: Optional[datetime] = None,
    ) -> Account:
        """Create an account. The initial balance is the ledger baseline, not an entry."""
        if not account_id or not account_id.strip():
            raise ValueError("account_id is required and cannot be empty")
        if initial_units < 0:
            raise InvalidAmount("initial balance cannot be negative")
        try:
            with self.transaction() as conn:
                account = insert_account(conn, account_id, initial_units, credits_expire_at)
        except sqlite3.IntegrityError:
            raise AccountExists(account_id)
        logger.info("Created account %s with balance %s", account_id, from_units(initial_units))
        return account

    def get_account(self, account_id: str) -> Account:
        conn = get_connection(self.db_path, timeout=self.timeout)
        try:
            return self._require_account(conn, account_id)
        finally:
            conn.close()

    def debit(self, account_id: str, cost_units: int, description: str) -> LedgerEntry:
        """Atomically debit ``cost_units`` and append a ``consume`` entry.

        Expiry is checked before the balance so an expired account is reported
        as expired even when it could still afford the call.

        Raises:
            AccountNotFound: If the account does not exist
            CreditsExpired: If credits_expire_at is in the past
            InsufficientCredits: If balance < cost
        """
        if cost_units <= 0:
            raise InvalidAmount("debit amount must be > 0")
        with self.transaction() as conn:
            account = self._require_account(conn, account_id)
            if account.is_expired(self.clock()):
                raise CreditsExpired(
                    account_id,
                    required=from_units(cost_units),
                    balance=from_units(account.balance_units),
                )
            if account.balance_units < cost_units:
                raise InsufficientCredits(
                    account_id,
                    required=from_units(cost_units),
                    balance=from_units(account.balance_units),
                )
            new_balance = account.balance_units - cost_units
            update_account_balance(conn, account_id, new_balance)
            entry = insert_ledger_entry(conn, account_id, LedgerKind.CONSUME, -cost_units, new_balance, description)
        logger.info("Debited %s from account %s, balance %s", from_units(cost_units), account_id, from_units(new_balance))
        return entry

    def credit(
        self,
        account_id: str,
        amount_units: int,
        description: str,
        kind: LedgerKind = LedgerKind.RECHARGE,
    ) -> LedgerEntry:
        """Atomically add credits. No expiry check.

        Raises:
            AccountNotFound: If the account does not exist
            InvalidAmount: If the amount is not positive or kind is not a credit kind
        """
        if kind not in CREDIT_KINDS:
            raise InvalidAmount(f"credit kind must be one of {[k.value for k in CREDIT_KINDS]}")
        if amount_units <= 0:
            raise InvalidAmount("credit amount must be > 0")
        with self.transaction() as conn:
            account = self._require_account(conn, account_id)
            new_balance = account.balance_units + amount_units
            update_account_balance(conn, account_id, new_balance)
            entry = insert_ledger_entry(conn, account_id, kind, amount_units, new_balance, description)
        logger.info("Credited %s (%s) to account %s, balance %s",
                    from_units(amount_units), kind.value, account_id, from_units(new_balance))
        return entry

    def adjust_to_target(
        self,
        account_id: str,
        target_units: int,
        credits_expire_at: Optional[datetime],
        reason: str,
    ) -> Adjustment:
        """Set the balance to ``target_units`` and the expiry to ``credits_expire_at``.

        One ``adjustment`` entry is written only when the balance changes; the
        expiry is always written, so passing ``None`` clears it.
        """
        if target_units < 0:
            raise InvalidAmount("target balance cannot be negative")
        with self.transaction() as conn:
            account = self._require_account(conn, account_id)
            delta = target_units - account.balance_units
            update_account_balance(conn, account_id, target_units, credits_expire_at, set_expiry=True)
            entry = None
            if delta != 0:
                entry = insert_ledger_entry(conn, account_id, LedgerKind.ADJUSTMENT, delta, target_units, reason)
        logger.info("Adjusted account %s by %s to %s", account_id, from_units(delta), from_units(target_units))
        return Adjustment(delta_units=delta, balance_units=target_units, entry=entry)
