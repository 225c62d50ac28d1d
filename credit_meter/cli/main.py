"""
CLI interface for credit_meter.

Provides command-line access to accounts, balances, the ledger, usage
records and the token-to-credit ratio.
"""

import logging
import sys
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from credit_meter.config.loader import MeterConfig, config_from_env, load_meter_config
from credit_meter.core.admin import AdminService, SqliteAdminAuditLog
from credit_meter.core.credit_math import format_units
from credit_meter.core.deduction import DeductionCoordinator, entry_to_dict
from credit_meter.core.errors import CreditMeterError
from credit_meter.core.ledger import LedgerStore
from credit_meter.core.ratio import RatioStore
from credit_meter.core.usage import UsageRecorder
from credit_meter.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _resolve_config(ctx: typer.Context) -> MeterConfig:
    options = ctx.obj or {}
    if options.get("config"):
        config = load_meter_config(options["config"])
    else:
        config = config_from_env()
    if options.get("db"):
        config = replace(config, db_path=options["db"])
    return config


class Services:
    """The stores and services a command needs, built from one MeterConfig."""

    def __init__(self, config: MeterConfig):
        self.config = config
        self.ledger = LedgerStore(config.db_path, timeout=config.busy_timeout)
        self.ratios = RatioStore(config.db_path, default_ratio=config.default_ratio, timeout=config.busy_timeout)
        self.usage = UsageRecorder(config.db_path, max_workers=config.usage_workers)
        self.coordinator = DeductionCoordinator(
            self.ledger,
            self.ratios,
            self.usage,
            default_page_size=config.default_page_size,
            max_page_size=config.max_page_size,
        )
        self.admin = AdminService(self.coordinator, SqliteAdminAuditLog(config.db_path))


@contextmanager
def _services(ctx: typer.Context) -> Iterator[Services]:
    config = _resolve_config(ctx)
    initialize_schema(config.db_path)
    services = Services(config)
    try:
        yield services
    finally:
        services.usage.flush()
        services.usage.close()


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _parse_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"not a number: {value}")
    if not amount.is_finite():
        raise typer.BadParameter(f"not a finite number: {value}")
    return amount


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise typer.BadParameter(f"not an ISO-8601 timestamp: {value}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """credit_meter CLI."""
    ctx.obj = {"db": db, "config": config}
    if verbose:
        _configure_logging()
    if ctx.invoked_subcommand is None:
        console.print("credit_meter - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the credit_meter database."""
    try:
        config = _resolve_config(ctx)
        initialize_schema(config.db_path)
        console.print(f"[green]✓[/] Database initialized at {config.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail(f"initializing database: {e}")


@app.command("create-account")
def create_account(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="New account id"),
    balance: str = typer.Option("0", "--balance", "-b", help="Initial balance in credits"),
    expires: Optional[str] = typer.Option(None, "--expires", help="Credit expiry, ISO-8601"),
):
    """Create an account with an initial balance."""
    amount = _parse_amount(balance)
    expires_at = _parse_time(expires)
    try:
        with _services(ctx) as services:
            account = services.coordinator.create_account(account_id, amount, expires_at)
    except (CreditMeterError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Created account {account.id} with balance {format_units(account.balance_units)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def balance(ctx: typer.Context, account_id: str = typer.Argument(..., help="Account id")):
    """Show an account's balance, expiry and the current ratio."""
    try:
        with _services(ctx) as services:
            view = services.coordinator.get_balance(account_id)
    except (CreditMeterError, ValueError) as e:
        _fail(str(e))

    console.print(f"\n[bold]Account:[/bold] {account_id}")
    console.print(f"Balance: {view.balance:.4f}")
    console.print(f"Expires: {view.expire_at.isoformat() if view.expire_at else 'never'}")
    if view.is_expired:
        console.print("[yellow]Credits have expired[/]")
    console.print(f"Ratio: {view.ratio} credits/token")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def transactions(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id"),
    page: int = typer.Option(1, "--page", "-p", help="Page number, starting at 1"),
    page_size: Optional[int] = typer.Option(None, "--page-size", "-n", help="Entries per page"),
    kind: Optional[str] = typer.Option(
        None,
        "--type",
        "-t",
        help="Filter by type: recharge, consume, bonus or adjustment",
    ),
):
    """List an account's ledger entries, newest first."""
    try:
        with _services(ctx) as services:
            result = services.coordinator.list_transactions(account_id, page=page, page_size=page_size, kind=kind)
    except (CreditMeterError, ValueError) as e:
        _fail(str(e))

    table = Table(title=f"Transactions for {account_id}")
    table.add_column("Time")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Balance after", justify="right")
    table.add_column("Description")
    for entry in result.items:
        row = entry_to_dict(entry)
        table.add_row(row["createdAt"], row["type"], row["amount"], row["balanceAfter"], row["description"])
    console.print(table)
    console.print(f"Page {result.page} of {result.total_pages} ({result.total} entries)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    ctx: typer.Context,
    account_id: Optional[str] = typer.Option(None, "--account", "-a", help="Only show this account"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum number of records"),
):
    """Show recent metered model calls."""
    try:
        with _services(ctx) as services:
            records = services.usage.list_usage(account_id, limit)
    except (CreditMeterError, ValueError) as e:
        _fail(str(e))

    if not records:
        console.print("\n[bold yellow]No usage records found[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Usage")
    table.add_column("Time")
    table.add_column("Account")
    table.add_column("Service")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Credits", justify="right")
    for record in records:
        table.add_row(
            record.created_at.isoformat(),
            record.account_id,
            record.service_type,
            record.model,
            str(record.input_tokens),
            str(record.output_tokens),
            format_units(record.credits_consumed_units),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ratio(ctx: typer.Context):
    """Show the current token-to-credit ratio."""
    try:
        with _services(ctx) as services:
            value = services.ratios.get()
    except (CreditMeterError, ValueError) as e:
        _fail(str(e))
    console.print(f"token_to_credit_ratio: {value}")
    sys.exit(EXIT_CODE_PASS)


@app.command("set-ratio")
def set_ratio(ctx: typer.Context, value: float = typer.Argument(..., help="Credits charged per token")):
    """Change the global token-to-credit ratio."""
    try:
        with _services(ctx) as services:
            stored = services.ratios.set(value)
    except (CreditMeterError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] token_to_credit_ratio set to {stored}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def recharge(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id"),
    amount: str = typer.Argument(..., help="Credits to add"),
    admin: str = typer.Option(..., "--admin", help="Id of the admin performing the recharge"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Ledger description"),
):
    """Add credits to an account."""
    value = _parse_amount(amount)
    try:
        with _services(ctx) as services:
            new_balance = services.admin.recharge(admin, account_id, value, description)
    except (CreditMeterError, PermissionError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Recharged {account_id}, balance {new_balance:.4f}")
    sys.exit(EXIT_CODE_PASS)


@app.command("set-credits")
def set_credits(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id"),
    target: str = typer.Argument(..., help="New balance in credits"),
    admin: str = typer.Option(..., "--admin", help="Id of the admin performing the change"),
    expires: Optional[str] = typer.Option(None, "--expires", help="New credit expiry, ISO-8601"),
    clear_expiry: bool = typer.Option(False, "--clear-expiry", help="Remove the credit expiry"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Ledger description"),
):
    """Set an account's balance directly.

    The current expiry is kept unless --expires or --clear-expiry is given.
    """
    if expires and clear_expiry:
        raise typer.BadParameter("--expires and --clear-expiry are mutually exclusive")
    value = _parse_amount(target)
    expire_at = _parse_time(expires)
    try:
        with _services(ctx) as services:
            if expire_at is None and not clear_expiry:
                expire_at = services.coordinator.get_balance(account_id).expire_at
            result = services.admin.set_credits(admin, account_id, value, expire_at, reason)
    except (CreditMeterError, PermissionError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Set {account_id} to {result.new_balance:.4f} (delta {result.delta:+.4f})")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
