"""
Unit tests for the account ledger.

Tests atomic debit/credit/adjust primitives, rollback on failure and the
balance invariants under concurrent writers.
"""

import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from credit_meter.core.errors import (
    AccountExists,
    AccountNotFound,
    CreditsExpired,
    InsufficientCredits,
    InvalidAmount,
)
from credit_meter.core.ledger import LedgerStore
from credit_meter.storage.models import LedgerKind
from credit_meter.storage.repository import fetch_ledger_entries, initialize_schema, sum_ledger_amounts

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "ledger.db")
        initialize_schema(path)
        yield path


@pytest.fixture
def ledger(db_path):
    return LedgerStore(db_path, timeout=30.0, clock=lambda: NOW)


def _units(credits: int) -> int:
    return credits * 10000


class TestAccounts:
    """Test account creation and lookup."""

    def test_create_and_get(self, ledger):
        ledger.create_account("acct-1", _units(100))
        account = ledger.get_account("acct-1")
        assert account.balance_units == _units(100)
        assert account.credits_expire_at is None

    def test_initial_balance_is_not_an_entry(self, ledger, db_path):
        ledger.create_account("acct-1", _units(100))
        _, total = fetch_ledger_entries("acct-1", db_path=db_path)
        assert total == 0

    def test_duplicate_account(self, ledger):
        ledger.create_account("acct-1")
        with pytest.raises(AccountExists):
            ledger.create_account("acct-1")

    def test_invalid_account_arguments(self, ledger):
        with pytest.raises(ValueError):
            ledger.create_account("  ")
        with pytest.raises(InvalidAmount):
            ledger.create_account("acct-1", -1)

    def test_missing_account(self, ledger):
        with pytest.raises(AccountNotFound):
            ledger.get_account("nobody")


class TestDebit:
    """Test atomic debits."""

    def test_debit_writes_consume_entry(self, ledger):
        ledger.create_account("acct-1", _units(100))
        entry = ledger.debit("acct-1", _units(25), "chat")

        assert entry.kind == LedgerKind.CONSUME
        assert entry.amount_units == -_units(25)
        assert entry.balance_after_units == _units(75)
        assert ledger.get_account("acct-1").balance_units == _units(75)

    def test_insufficient_leaves_state_untouched(self, ledger, db_path):
        ledger.create_account("acct-1", _units(10))
        with pytest.raises(InsufficientCredits) as exc_info:
            ledger.debit("acct-1", _units(25), "chat")

        assert str(exc_info.value.required) == "25.0000"
        assert ledger.get_account("acct-1").balance_units == _units(10)
        assert fetch_ledger_entries("acct-1", db_path=db_path)[1] == 0

    def test_expired_reported_before_insufficient(self, ledger):
        ledger.create_account("acct-1", _units(1), credits_expire_at=NOW - timedelta(days=1))
        with pytest.raises(CreditsExpired):
            ledger.debit("acct-1", _units(25), "chat")

    def test_expiry_instant_counts_as_expired(self, ledger):
        ledger.create_account("acct-1", _units(100), credits_expire_at=NOW)
        with pytest.raises(CreditsExpired):
            ledger.debit("acct-1", _units(1), "chat")

    def test_future_expiry_allows_debit(self, ledger):
        ledger.create_account("acct-1", _units(100), credits_expire_at=NOW + timedelta(seconds=1))
        entry = ledger.debit("acct-1", _units(1), "chat")
        assert entry.balance_after_units == _units(99)

    def test_exact_balance_can_be_spent(self, ledger):
        ledger.create_account("acct-1", _units(5))
        entry = ledger.debit("acct-1", _units(5), "chat")
        assert entry.balance_after_units == 0

    def test_non_positive_debit_rejected(self, ledger):
        ledger.create_account("acct-1", _units(5))
        with pytest.raises(InvalidAmount):
            ledger.debit("acct-1", 0, "chat")

    def test_missing_account(self, ledger):
        with pytest.raises(AccountNotFound):
            ledger.debit("nobody", _units(1), "chat")

    def test_failed_entry_write_rolls_back_balance(self, ledger, db_path):
        ledger.create_account("acct-1", _units(100))
        with patch("credit_meter.core.ledger.insert_ledger_entry", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                ledger.debit("acct-1", _units(25), "chat")

        assert ledger.get_account("acct-1").balance_units == _units(100)
        assert fetch_ledger_entries("acct-1", db_path=db_path)[1] == 0


class TestCredit:
    """Test recharges and bonuses."""

    def test_credit_ignores_expiry(self, ledger):
        ledger.create_account("acct-1", 0, credits_expire_at=NOW - timedelta(days=30))
        entry = ledger.credit("acct-1", _units(10), "top up")
        assert entry.kind == LedgerKind.RECHARGE
        assert entry.balance_after_units == _units(10)

    def test_bonus_kind(self, ledger):
        ledger.create_account("acct-1", 0)
        entry = ledger.credit("acct-1", _units(3), "welcome", kind=LedgerKind.BONUS)
        assert entry.kind == LedgerKind.BONUS

    def test_rejects_non_credit_kind_and_amount(self, ledger):
        ledger.create_account("acct-1", 0)
        with pytest.raises(InvalidAmount):
            ledger.credit("acct-1", _units(3), "x", kind=LedgerKind.CONSUME)
        with pytest.raises(InvalidAmount):
            ledger.credit("acct-1", 0, "x")


class TestAdjustToTarget:
    """Test administrative direct sets."""

    def test_adjustment_entry_carries_delta(self, ledger):
        ledger.create_account("acct-1", _units(30))
        result = ledger.adjust_to_target("acct-1", _units(50), None, "correction")

        assert result.delta_units == _units(20)
        assert result.entry.kind == LedgerKind.ADJUSTMENT
        assert result.entry.amount_units == _units(20)
        assert result.entry.balance_after_units == _units(50)

    def test_no_entry_when_balance_unchanged(self, ledger, db_path):
        ledger.create_account("acct-1", _units(30))
        expiry = NOW + timedelta(days=7)
        result = ledger.adjust_to_target("acct-1", _units(30), expiry, "extend")

        assert result.entry is None
        assert ledger.get_account("acct-1").credits_expire_at == expiry
        assert fetch_ledger_entries("acct-1", db_path=db_path)[1] == 0

    def test_none_clears_expiry(self, ledger):
        ledger.create_account("acct-1", _units(30), credits_expire_at=NOW - timedelta(days=1))
        ledger.adjust_to_target("acct-1", _units(30), None, "reactivate")
        assert ledger.get_account("acct-1").credits_expire_at is None

    def test_negative_target_rejected(self, ledger):
        ledger.create_account("acct-1", _units(30))
        with pytest.raises(InvalidAmount):
            ledger.adjust_to_target("acct-1", -1, None, "x")


class TestInvariants:
    """Test balance invariants under mixed and concurrent operations."""

    def test_entry_sum_matches_balance_change(self, ledger, db_path):
        initial = _units(40)
        ledger.create_account("acct-1", initial)
        ledger.debit("acct-1", _units(15), "a")
        ledger.credit("acct-1", _units(7), "b")
        ledger.adjust_to_target("acct-1", _units(12), None, "c")
        with pytest.raises(InsufficientCredits):
            ledger.debit("acct-1", _units(100), "d")
        ledger.debit("acct-1", _units(12), "e")

        balance = ledger.get_account("acct-1").balance_units
        assert balance == 0
        assert sum_ledger_amounts("acct-1", db_path) == balance - initial

    def test_concurrent_debits_never_overdraw(self, ledger, db_path):
        ledger.create_account("acct-1", _units(25))

        def attempt(_):
            try:
                ledger.debit("acct-1", _units(1), "chat")
                return True
            except InsufficientCredits:
                return False

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(attempt, range(40)))

        assert results.count(True) == 25
        assert ledger.get_account("acct-1").balance_units == 0
        entries, total = fetch_ledger_entries("acct-1", limit=100, db_path=db_path)
        assert total == 25
        assert all(entry.balance_after_units >= 0 for entry in entries)
        assert sum_ledger_amounts("acct-1", db_path) == -_units(25)

    def test_concurrent_debits_and_credits(self, ledger, db_path):
        ledger.create_account("acct-1", _units(5))

        def work(i):
            if i % 2:
                ledger.credit("acct-1", _units(1), "top up")
            else:
                try:
                    ledger.debit("acct-1", _units(2), "chat")
                except InsufficientCredits:
                    pass

        with ThreadPoolExecutor(max_workers=6) as executor:
            list(executor.map(work, range(30)))

        balance = ledger.get_account("acct-1").balance_units
        assert balance >= 0
        assert sum_ledger_amounts("acct-1", db_path) == balance - _units(5)
