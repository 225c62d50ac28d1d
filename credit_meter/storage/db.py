"""
Database connection management.

Provides SQLite connections for the ledger, ratio and usage tables.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "credit_meter.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 30.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode (``isolation_level=None``) so that
    callers open transactions explicitly, e.g. ``BEGIN IMMEDIATE`` for ledger
    mutations that must hold the write lock before reading a balance.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a competing writer to release its lock

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
