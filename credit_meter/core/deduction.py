"""
Deduction coordinator.

The only entry point other code may use to charge an account:
ratio lookup -> cost computation -> atomic debit -> usage record.
Also exposes the balance and transaction read surface.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .credit_math import ZERO_CREDIT, from_units, to_units
from .errors import AccountNotFound, CreditsExpired, InsufficientCredits
from .ledger import LedgerStore
from .pricing import calculate_cost_units
from .ratio import RatioStore
from .usage import UsageRecorder
from ..storage.models import LedgerEntry, LedgerKind, UsageRecord
from ..storage.repository import fetch_ledger_entries

logger = logging.getLogger(__name__)


class ChargeFailure(Enum):
    """Why a charge was not applied."""
    NOT_FOUND = "ACCOUNT_NOT_FOUND"
    EXPIRED = "CREDITS_EXPIRED"
    INSUFFICIENT = "INSUFFICIENT_CREDITS"


@dataclass(frozen=True)
class ChargeResult:
    """Tagged outcome of charge_tokens.

    On failure ``cost`` and ``ratio`` still hold the would-be charge so the
    caller can say how many credits are missing.
    """
    ok: bool
    cost: Decimal
    ratio: float
    remaining: Optional[Decimal] = None
    reason: Optional[ChargeFailure] = None
    entry: Optional[LedgerEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {
                "cost": f"{self.cost:.4f}",
                "remaining": f"{self.remaining:.4f}",
                "ratio": self.ratio,
            }
        return {
            "code": self.reason.value,
            "required": f"{self.cost:.4f}",
            "ratio": self.ratio,
        }


@dataclass(frozen=True)
class AdjustmentResult:
    delta: Decimal
    new_balance: Decimal


@dataclass(frozen=True)
class BalanceView:
    balance: Decimal
    expire_at: Optional[datetime]
    ratio: float
    is_expired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": f"{self.balance:.4f}",
            "expireAt": self.expire_at.isoformat() if self.expire_at else None,
            "ratio": self.ratio,
            "isExpired": self.is_expired,
        }


@dataclass(frozen=True)
class TransactionPage:
    items: List[LedgerEntry]
    total: int
    page: int
    page_size: int
    total_pages: int = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "total_pages", math.ceil(self.total / self.page_size) if self.total else 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [entry_to_dict(entry) for entry in self.items],
            "pagination": {
                "total": self.total,
                "page": self.page,
                "pageSize": self.page_size,
                "totalPages": self.total_pages,
            },
        }


def entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.kind.value,
        "amount": f"{from_units(entry.amount_units):.4f}",
        "balanceAfter": f"{from_units(entry.balance_after_units):.4f}",
        "description": entry.description,
        "createdAt": entry.created_at.isoformat(),
    }


class DeductionCoordinator:
    """Charges accounts for metered model calls.

    Args:
        ledger: Atomic balance store
        ratios: Token->credit ratio store
        usage_recorder: Fire-and-forget usage audit log
        default_page_size: Page size when none is given
        max_page_size: Upper bound for requested page sizes
    """

    def __init__(
        self,
        ledger: LedgerStore,
        ratios: RatioStore,
        usage_recorder: UsageRecorder,
        default_page_size: int = 20,
        max_page_size: int = 100,
    ):
        self.ledger = ledger
        self.ratios = ratios
        self.usage_recorder = usage_recorder
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def charge_tokens(
        self,
        account_id: str,
        total_tokens: int,
        service_type: str,
        model: str,
        description: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> ChargeResult:
        """Convert tokens to credits and debit them in one transaction.

        Returns:
            ChargeResult with ok=True and the remaining balance, or ok=False
            with the failure reason and the would-be cost
        """
        ratio = self.ratios.get()
        cost_units = calculate_cost_units(total_tokens, ratio)
        cost = from_units(cost_units)

        if cost_units == 0:
            try:
                account = self.ledger.get_account(account_id)
            except AccountNotFound:
                return ChargeResult(ok=False, cost=cost, ratio=ratio, reason=ChargeFailure.NOT_FOUND)
            return ChargeResult(ok=True, cost=ZERO_CREDIT, ratio=ratio, remaining=from_units(account.balance_units))

        try:
            entry = self.ledger.debit(account_id, cost_units, description)
        except AccountNotFound:
            return ChargeResult(ok=False, cost=cost, ratio=ratio, reason=ChargeFailure.NOT_FOUND)
        except CreditsExpired:
            logger.info("Charge of %s rejected for account %s: credits expired", cost, account_id)
            return ChargeResult(ok=False, cost=cost, ratio=ratio, reason=ChargeFailure.EXPIRED)
        except InsufficientCredits:
            logger.info("Charge of %s rejected for account %s: insufficient credits", cost, account_id)
            return ChargeResult(ok=False, cost=cost, ratio=ratio, reason=ChargeFailure.INSUFFICIENT)

        self.usage_recorder.record(UsageRecord(
            account_id=account_id,
            service_type=service_type,
            input_tokens=max(0, int(input_tokens or 0)),
            output_tokens=max(0, int(output_tokens or 0)),
            credits_consumed_units=cost_units,
            model=model,
            created_at=entry.created_at,
        ))

        return ChargeResult(
            ok=True,
            cost=cost,
            ratio=ratio,
            remaining=from_units(entry.balance_after_units),
            entry=entry,
        )

    def credit_account(
        self,
        account_id: str,
        amount,
        description: str,
        kind: LedgerKind = LedgerKind.RECHARGE,
    ) -> Decimal:
        """Add credits (recharge or bonus). Returns the new balance."""
        entry = self.ledger.credit(account_id, to_units(amount), description, kind)
        return from_units(entry.balance_after_units)

    def adjust_to_target(
        self,
        account_id: str,
        target_balance,
        new_expiry: Optional[datetime] = None,
        reason: str = "",
    ) -> AdjustmentResult:
        """Directly set an account's balance and expiry."""
        adjustment = self.ledger.adjust_to_target(account_id, to_units(target_balance), new_expiry, reason)
        return AdjustmentResult(
            delta=from_units(adjustment.delta_units),
            new_balance=from_units(adjustment.balance_units),
        )

    def create_account(self, account_id: str, initial_balance=0, expires_at: Optional[datetime] = None):
        return self.ledger.create_account(account_id, to_units(initial_balance), expires_at)

    def get_balance(self, account_id: str) -> BalanceView:
        account = self.ledger.get_account(account_id)
        return BalanceView(
            balance=from_units(account.balance_units),
            expire_at=account.credits_expire_at,
            ratio=self.ratios.get(),
            is_expired=account.is_expired(self.ledger.clock()),
        )

    def ensure_credits_active(self, account_id: str) -> BalanceView:
        """Pre-flight gate before a model call.

        Raises:
            AccountNotFound: If the account does not exist
            CreditsExpired: If the account's credits have expired
            InsufficientCredits: If the balance is not positive
        """
        view = self.get_balance(account_id)
        if view.is_expired:
            raise CreditsExpired(account_id, ratio=view.ratio, balance=view.balance)
        if view.balance <= 0:
            raise InsufficientCredits(account_id, ratio=view.ratio, balance=view.balance)
        return view

    def list_transactions(
        self,
        account_id: str,
        page: int = 1,
        page_size: Optional[int] = None,
        kind: Optional[LedgerKind] = None,
    ) -> TransactionPage:
        """One page of the account's ledger, newest first."""
        self.ledger.get_account(account_id)
        if page_size is None:
            page_size = self.default_page_size
        page = max(1, int(page))
        page_size = min(max(1, int(page_size)), self.max_page_size)
        if kind is not None and not isinstance(kind, LedgerKind):
            try:
                kind = LedgerKind(kind)
            except ValueError:
                raise ValueError(f"Unknown transaction type: {kind}")
        entries, total = fetch_ledger_entries(
            account_id,
            limit=page_size,
            offset=(page - 1) * page_size,
            kind=kind,
            db_path=self.ledger.db_path,
        )
        return TransactionPage(items=entries, total=total, page=page, page_size=page_size)
