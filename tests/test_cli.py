"""
Tests for the CLI interface.
"""

import os

import pytest
import yaml
from typer.testing import CliRunner

from credit_meter.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app

runner = CliRunner()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


def _invoke(db_path, *args):
    return runner.invoke(app, ["--db", db_path, *args])


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "--help" in result.output

    def test_init(self, db_path):
        result = _invoke(db_path, "init")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(db_path)

    def test_create_account_and_balance(self, db_path):
        result = _invoke(db_path, "create-account", "acct-1", "--balance", "100")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Created account acct-1 with balance 100.0000" in result.output

        result = _invoke(db_path, "balance", "acct-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Balance: 100.0000" in result.output
        assert "Expires: never" in result.output

    def test_duplicate_account_fails(self, db_path):
        _invoke(db_path, "create-account", "acct-1")
        result = _invoke(db_path, "create-account", "acct-1")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "already exists" in result.output

    def test_unknown_account_fails(self, db_path):
        result = _invoke(db_path, "balance", "nobody")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Account not found" in result.output

    def test_ratio_commands(self, db_path):
        result = _invoke(db_path, "ratio")
        assert result.exit_code == EXIT_CODE_PASS
        assert "token_to_credit_ratio: 1.0" in result.output

        result = _invoke(db_path, "set-ratio", "0.5")
        assert result.exit_code == EXIT_CODE_PASS

        result = _invoke(db_path, "ratio")
        assert "token_to_credit_ratio: 0.5" in result.output

    def test_invalid_ratio_leaves_ratio_unchanged(self, db_path):
        _invoke(db_path, "set-ratio", "0.5")
        result = _invoke(db_path, "set-ratio", "0")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error:" in result.output
        assert "token_to_credit_ratio: 0.5" in _invoke(db_path, "ratio").output

    def test_recharge(self, db_path):
        _invoke(db_path, "create-account", "acct-1", "--balance", "100")
        result = _invoke(db_path, "recharge", "acct-1", "20", "--admin", "ops")
        assert result.exit_code == EXIT_CODE_PASS
        assert "balance 120.0000" in result.output

    def test_recharge_requires_admin(self, db_path):
        _invoke(db_path, "create-account", "acct-1")
        result = _invoke(db_path, "recharge", "acct-1", "20")
        assert result.exit_code != EXIT_CODE_PASS

    def test_recharge_rejects_zero(self, db_path):
        _invoke(db_path, "create-account", "acct-1")
        result = _invoke(db_path, "recharge", "acct-1", "0", "--admin", "ops")
        assert result.exit_code == EXIT_CODE_FAIL

    def test_set_credits_and_expiry(self, db_path):
        _invoke(db_path, "create-account", "acct-1", "--balance", "30")

        result = _invoke(
            db_path, "set-credits", "acct-1", "50", "--admin", "ops", "--expires", "2030-01-01T00:00:00Z"
        )
        assert result.exit_code == EXIT_CODE_PASS
        assert "delta +20.0000" in result.output
        assert "Expires: 2030-01-01T00:00:00+00:00" in _invoke(db_path, "balance", "acct-1").output

        # expiry is kept when not mentioned
        _invoke(db_path, "set-credits", "acct-1", "40", "--admin", "ops")
        output = _invoke(db_path, "balance", "acct-1").output
        assert "Balance: 40.0000" in output
        assert "Expires: 2030-01-01T00:00:00+00:00" in output

        _invoke(db_path, "set-credits", "acct-1", "40", "--admin", "ops", "--clear-expiry")
        assert "Expires: never" in _invoke(db_path, "balance", "acct-1").output

    def test_transactions(self, db_path):
        _invoke(db_path, "create-account", "acct-1", "--balance", "30")
        _invoke(db_path, "recharge", "acct-1", "5", "--admin", "ops")
        _invoke(db_path, "set-credits", "acct-1", "50", "--admin", "ops")

        result = _invoke(db_path, "transactions", "acct-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Page 1 of 1 (2 entries)" in result.output

        result = _invoke(db_path, "transactions", "acct-1", "--type", "adjustment")
        assert "Page 1 of 1 (1 entries)" in result.output

    def test_transactions_unknown_type(self, db_path):
        _invoke(db_path, "create-account", "acct-1")
        result = _invoke(db_path, "transactions", "acct-1", "--type", "refund")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown transaction type" in result.output

    def test_usage_empty(self, db_path):
        result = _invoke(db_path, "usage")
        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage records found" in result.output

    def test_config_file(self, tmp_path):
        config_path = tmp_path / "meter.yaml"
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"db_path": str(tmp_path / "from-config.db"), "default_ratio": 0.25}, f)

        result = runner.invoke(app, ["--config", str(config_path), "ratio"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "token_to_credit_ratio: 0.25" in result.output
        assert (tmp_path / "from-config.db").exists()

    @pytest.mark.parametrize("args", [["ratio"], ["usage"], ["balance", "acct-1"]])
    def test_bad_env_config_fails_cleanly(self, db_path, args):
        result = runner.invoke(app, ["--db", db_path, *args], env={"CREDIT_METER_DEFAULT_RATIO": "abc"})

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error:" in result.output
        assert "default_ratio" in result.output
