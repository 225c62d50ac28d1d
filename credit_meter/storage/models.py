"""
Data models for storage layer.

Defines the persisted ledger, ratio, usage and audit records.
Amounts are held as integer units of 0.0001 credit; see core.credit_math.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LedgerKind(Enum):
    """Kinds of balance change recorded in the ledger."""
    RECHARGE = "recharge"
    CONSUME = "consume"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"


@dataclass(frozen=True)
class Account:
    """Credit account with its current balance snapshot."""
    id: str
    balance_units: int
    credits_expire_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.credits_expire_at is not None and self.credits_expire_at <= now


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one balance change.

    Append-only: ``amount_units`` is signed and ``balance_after_units`` is the
    account balance immediately after the change was committed.
    """
    id: str
    account_id: str
    kind: LedgerKind
    amount_units: int
    balance_after_units: int
    description: str
    created_at: datetime


@dataclass(frozen=True)
class UsageRecord:
    """Audit record of one metered model call."""
    account_id: str
    service_type: str
    input_tokens: int
    output_tokens: int
    credits_consumed_units: int
    model: str
    created_at: datetime
    id: Optional[str] = None


@dataclass(frozen=True)
class AdminOperation:
    """Who performed an administrative balance change, and what it was."""
    admin_id: str
    action: str
    account_id: str
    created_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
