"""
Administrative balance operations.

Recharges and direct balance sets, each recorded with the id of the admin who
performed it. The audit record is written after the ledger commit; if it
fails the failure is logged and the ledger change stands.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

from .credit_math import format_credit
from .deduction import AdjustmentResult, DeductionCoordinator
from .errors import InvalidAmount
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import AdminOperation, LedgerKind
from ..storage.repository import insert_admin_operation, utcnow

logger = logging.getLogger(__name__)


class AdminAuditLog(Protocol):
    def record(self, admin_id: str, action: str, account_id: str, details: Dict[str, Any]) -> None:
        ...


class SqliteAdminAuditLog:
    """Writes admin operations to the admin_operations table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def record(self, admin_id: str, action: str, account_id: str, details: Dict[str, Any]) -> None:
        insert_admin_operation(
            AdminOperation(
                admin_id=admin_id,
                action=action,
                account_id=account_id,
                details=details,
                created_at=utcnow(),
            ),
            self.db_path,
        )


class AdminService:
    """Recharge and set-credits, gated on an admin id and audit-logged."""

    def __init__(self, coordinator: DeductionCoordinator, audit_log: AdminAuditLog):
        self.coordinator = coordinator
        self.audit_log = audit_log

    @staticmethod
    def _require_admin(admin_id: Optional[str]) -> str:
        if not admin_id or not str(admin_id).strip():
            raise PermissionError("admin_id is required for administrative operations")
        return str(admin_id)

    def _audit(self, admin_id: str, action: str, account_id: str, details: Dict[str, Any]) -> None:
        try:
            self.audit_log.record(admin_id, action, account_id, details)
        except Exception:
            logger.exception("Failed to record admin operation %s on account %s by %s", action, account_id, admin_id)

    def recharge(
        self,
        admin_id: str,
        account_id: str,
        amount,
        description: Optional[str] = None,
    ) -> Decimal:
        """Add ``amount`` credits to the account. Returns the new balance."""
        admin_id = self._require_admin(admin_id)
        before = self.coordinator.get_balance(account_id).balance
        try:
            if Decimal(str(amount)) <= 0:
                raise InvalidAmount("recharge amount must be > 0")
        except ArithmeticError:
            raise InvalidAmount(f"Invalid recharge amount: {amount!r}")
        new_balance = self.coordinator.credit_account(
            account_id,
            amount,
            description or "Admin recharge",
            LedgerKind.RECHARGE,
        )
        self._audit(admin_id, "recharge_credits", account_id, {
            "amount": format_credit(amount),
            "description": description,
            "balanceBefore": f"{before:.4f}",
            "balanceAfter": f"{new_balance:.4f}",
        })
        return new_balance

    def set_credits(
        self,
        admin_id: str,
        account_id: str,
        target,
        expire_at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> AdjustmentResult:
        """Set the balance to ``target`` and the expiry to ``expire_at`` (None clears it)."""
        admin_id = self._require_admin(admin_id)
        before = self.coordinator.get_balance(account_id)
        result = self.coordinator.adjust_to_target(
            account_id,
            target,
            expire_at,
            reason or "Admin balance adjustment",
        )
        self._audit(admin_id, "set_credits", account_id, {
            "target": format_credit(target),
            "delta": f"{result.delta:.4f}",
            "balanceBefore": f"{before.balance:.4f}",
            "balanceAfter": f"{result.new_balance:.4f}",
            "expireAtBefore": before.expire_at.isoformat() if before.expire_at else None,
            "expireAt": expire_at.isoformat() if expire_at else None,
            "reason": reason,
        })
        return result
