"""
Repository functions for data access.

Handles schema creation and the row-level reads and inserts used by the
ledger, ratio store, usage recorder and admin audit log. Functions that take a
``conn`` run inside the caller's transaction; functions that take a
``db_path`` open and close their own connection.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import Account, AdminOperation, LedgerEntry, LedgerKind, UsageRecord
from ..core.credit_math import format_units, parse_units


SCHEMA = """
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        balance TEXT NOT NULL DEFAULT '0.0000',
        credits_expire_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS ledger_entries (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts(id),
        kind TEXT NOT NULL CHECK (kind IN ('recharge', 'consume', 'bonus', 'adjustment')),
        amount TEXT NOT NULL,
        balance_after TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        seq INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_ledger_entries_account
        ON ledger_entries (account_id, seq);
    CREATE TABLE IF NOT EXISTS credit_settings (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        token_to_credit_ratio TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS usage_records (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        service_type TEXT NOT NULL,
        input_tokens INTEGER NOT NULL,
        output_tokens INTEGER NOT NULL,
        credits_consumed TEXT NOT NULL,
        model TEXT NOT NULL,
        created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_usage_records_account
        ON usage_records (account_id, created_at);
    CREATE TABLE IF NOT EXISTS admin_operations (
        id TEXT PRIMARY KEY,
        admin_id TEXT NOT NULL,
        action TEXT NOT NULL,
        account_id TEXT NOT NULL,
        details TEXT NOT NULL,
        created_at TEXT NOT NULL
    );
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_text(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.isoformat()


def _from_text(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger, settings, usage and audit tables if they don't exist.

    ``ledger_entries``, ``usage_records`` and ``admin_operations`` are
    append-only: no UPDATE or DELETE is ever issued against them.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


# Accounts

def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        balance_units=parse_units(row["balance"]),
        credits_expire_at=_from_text(row["credits_expire_at"]),
        created_at=_from_text(row["created_at"]),
        updated_at=_from_text(row["updated_at"]),
    )


def insert_account(
    conn: sqlite3.Connection,
    account_id: str,
    balance_units: int = 0,
    credits_expire_at: Optional[datetime] = None,
) -> Account:
    """Insert a new account. Raises sqlite3.IntegrityError on a duplicate id."""
    now = utcnow()
    conn.execute(
        """
        INSERT INTO accounts (id, balance, credits_expire_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (account_id, format_units(balance_units), _to_text(credits_expire_at), _to_text(now), _to_text(now)),
    )
    return Account(
        id=account_id,
        balance_units=balance_units,
        credits_expire_at=credits_expire_at,
        created_at=now,
        updated_at=now,
    )


def select_account(conn: sqlite3.Connection, account_id: str) -> Optional[Account]:
    row = conn.execute(
        "SELECT id, balance, credits_expire_at, created_at, updated_at FROM accounts WHERE id = ?",
        (account_id,),
    ).fetchone()
    return _row_to_account(row) if row else None


def update_account_balance(
    conn: sqlite3.Connection,
    account_id: str,
    balance_units: int,
    credits_expire_at: Optional[datetime] = None,
    set_expiry: bool = False,
) -> None:
    """Write a new balance, and the expiry too when ``set_expiry`` is true."""
    now = _to_text(utcnow())
    if set_expiry:
        conn.execute(
            "UPDATE accounts SET balance = ?, credits_expire_at = ?, updated_at = ? WHERE id = ?",
            (format_units(balance_units), _to_text(credits_expire_at), now, account_id),
        )
    else:
        conn.execute(
            "UPDATE accounts SET balance = ?, updated_at = ? WHERE id = ?",
            (format_units(balance_units), now, account_id),
        )


def fetch_account(account_id: str, db_path: str = DEFAULT_DB_PATH) -> Optional[Account]:
    conn = get_connection(db_path)
    try:
        return select_account(conn, account_id)
    finally:
        conn.close()


# Ledger entries

def insert_ledger_entry(
    conn: sqlite3.Connection,
    account_id: str,
    kind: LedgerKind,
    amount_units: int,
    balance_after_units: int,
    description: str,
) -> LedgerEntry:
    """Append one ledger entry inside the caller's transaction."""
    entry = LedgerEntry(
        id=str(uuid.uuid4()),
        account_id=account_id,
        kind=kind,
        amount_units=amount_units,
        balance_after_units=balance_after_units,
        description=description or "",
        created_at=utcnow(),
    )
    # seq gives a strict per-database order even when timestamps collide
    conn.execute(
        """
        INSERT INTO ledger_entries
        (id, account_id, kind, amount, balance_after, description, created_at, seq)
        VALUES (?, ?, ?, ?, ?, ?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM ledger_entries))
        """,
        (
            entry.id,
            entry.account_id,
            entry.kind.value,
            format_units(entry.amount_units),
            format_units(entry.balance_after_units),
            entry.description,
            _to_text(entry.created_at),
        ),
    )
    return entry


def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        account_id=row["account_id"],
        kind=LedgerKind(row["kind"]),
        amount_units=parse_units(row["amount"]),
        balance_after_units=parse_units(row["balance_after"]),
        description=row["description"],
        created_at=_from_text(row["created_at"]),
    )


def fetch_ledger_entries(
    account_id: str,
    limit: int = 20,
    offset: int = 0,
    kind: Optional[LedgerKind] = None,
    db_path: str = DEFAULT_DB_PATH,
) -> Tuple[List[LedgerEntry], int]:
    """Fetch one page of an account's ledger, newest first.

    Returns:
        Tuple of (entries on this page, total matching entries)
    """
    conn = get_connection(db_path)
    try:
        where = "WHERE account_id = ?"
        params: list = [account_id]
        if kind is not None:
            where += " AND kind = ?"
            params.append(kind.value)

        cursor = conn.execute(
            f"""
            SELECT id, account_id, kind, amount, balance_after, description, created_at
            FROM ledger_entries
            {where}
            ORDER BY seq DESC
            LIMIT ? OFFSET ?
            """,
            params + [limit, offset],
        )
        entries = [_row_to_entry(row) for row in cursor.fetchall()]
        total = conn.execute(f"SELECT COUNT(*) FROM ledger_entries {where}", params).fetchone()[0]
        return entries, total
    finally:
        conn.close()


def sum_ledger_amounts(account_id: str, db_path: str = DEFAULT_DB_PATH) -> int:
    """Sum of all entry amounts for an account, in units."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("SELECT amount FROM ledger_entries WHERE account_id = ?", (account_id,))
        return sum(parse_units(row["amount"]) for row in cursor.fetchall())
    finally:
        conn.close()


# Credit settings

def select_ratio(conn: sqlite3.Connection, settings_id: int = 1) -> Optional[str]:
    row = conn.execute(
        "SELECT token_to_credit_ratio FROM credit_settings WHERE id = ?", (settings_id,)
    ).fetchone()
    return row["token_to_credit_ratio"] if row else None


def insert_ratio_if_absent(conn: sqlite3.Connection, ratio: float, settings_id: int = 1) -> None:
    conn.execute(
        "INSERT INTO credit_settings (id, token_to_credit_ratio, updated_at) VALUES (?, ?, ?) "
        "ON CONFLICT (id) DO NOTHING",
        (settings_id, repr(ratio), _to_text(utcnow())),
    )


def upsert_ratio(conn: sqlite3.Connection, ratio: float, settings_id: int = 1) -> None:
    conn.execute(
        "INSERT INTO credit_settings (id, token_to_credit_ratio, updated_at) VALUES (?, ?, ?) "
        "ON CONFLICT (id) DO UPDATE SET token_to_credit_ratio = excluded.token_to_credit_ratio, "
        "updated_at = excluded.updated_at",
        (settings_id, repr(ratio), _to_text(utcnow())),
    )


# Usage records

def insert_usage_record(record: UsageRecord, db_path: str = DEFAULT_DB_PATH) -> str:
    """Append one usage record. Returns the record id."""
    record_id = record.id or str(uuid.uuid4())
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO usage_records
            (id, account_id, service_type, input_tokens, output_tokens,
             credits_consumed, model, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record_id,
                record.account_id,
                record.service_type,
                record.input_tokens,
                record.output_tokens,
                format_units(record.credits_consumed_units),
                record.model,
                _to_text(record.created_at),
            ),
        )
        return record_id
    finally:
        conn.close()


def fetch_recent_usage_records(
    account_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageRecord]:
    """Fetch recent usage records, newest first, optionally for one account."""
    conn = get_connection(db_path)
    try:
        query = (
            "SELECT id, account_id, service_type, input_tokens, output_tokens, "
            "credits_consumed, model, created_at FROM usage_records"
        )
        params: list = []
        if account_id:
            query += " WHERE account_id = ?"
            params.append(account_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        records = []
        for row in conn.execute(query, params).fetchall():
            records.append(UsageRecord(
                id=row["id"],
                account_id=row["account_id"],
                service_type=row["service_type"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                credits_consumed_units=parse_units(row["credits_consumed"]),
                model=row["model"],
                created_at=_from_text(row["created_at"]),
            ))
        return records
    finally:
        conn.close()


# Admin operations

def insert_admin_operation(operation: AdminOperation, db_path: str = DEFAULT_DB_PATH) -> str:
    operation_id = operation.id or str(uuid.uuid4())
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO admin_operations (id, admin_id, action, account_id, details, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                operation_id,
                operation.admin_id,
                operation.action,
                operation.account_id,
                json.dumps(operation.details, default=str, sort_keys=True),
                _to_text(operation.created_at),
            ),
        )
        return operation_id
    finally:
        conn.close()


def fetch_admin_operations(
    account_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[AdminOperation]:
    conn = get_connection(db_path)
    try:
        query = "SELECT id, admin_id, action, account_id, details, created_at FROM admin_operations"
        params: list = []
        if account_id:
            query += " WHERE account_id = ?"
            params.append(account_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [
            AdminOperation(
                id=row["id"],
                admin_id=row["admin_id"],
                action=row["action"],
                account_id=row["account_id"],
                details=json.loads(row["details"]),
                created_at=_from_text(row["created_at"]),
            )
            for row in conn.execute(query, params).fetchall()
        ]
    finally:
        conn.close()
