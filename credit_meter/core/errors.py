"""
Error taxonomy for metering, ledger and streaming failures.

Business outcomes (expired or insufficient credits) carry the computed cost
and ratio so callers can tell the user exactly how much is missing.
"""

from decimal import Decimal
from typing import Optional


class CreditMeterError(Exception):
    """Base class for all credit_meter errors."""
    code = "CREDIT_METER_ERROR"


class AccountNotFound(CreditMeterError):
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class AccountExists(CreditMeterError):
    code = "ACCOUNT_EXISTS"

    def __init__(self, account_id: str):
        super().__init__(f"Account already exists: {account_id}")
        self.account_id = account_id


class CreditsExpired(CreditMeterError):
    """Account credits passed their expiry instant."""
    code = "CREDITS_EXPIRED"

    def __init__(
        self,
        account_id: str,
        required: Optional[Decimal] = None,
        ratio: Optional[float] = None,
        balance: Optional[Decimal] = None,
    ):
        super().__init__(f"Credits expired for account {account_id}")
        self.account_id = account_id
        self.required = required
        self.ratio = ratio
        self.balance = balance


class InsufficientCredits(CreditMeterError):
    """Balance is lower than the cost of the call."""
    code = "INSUFFICIENT_CREDITS"

    def __init__(
        self,
        account_id: str,
        required: Optional[Decimal] = None,
        ratio: Optional[float] = None,
        balance: Optional[Decimal] = None,
    ):
        if required is not None:
            message = f"Insufficient credits for account {account_id}: {required} required, {balance} available"
        else:
            message = f"Insufficient credits for account {account_id}"
        super().__init__(message)
        self.account_id = account_id
        self.required = required
        self.ratio = ratio
        self.balance = balance


class InvalidRatio(CreditMeterError, ValueError):
    code = "INVALID_RATIO"

    def __init__(self, ratio):
        super().__init__(f"token_to_credit_ratio must be a finite number greater than 0, got {ratio!r}")
        self.ratio = ratio


class InvalidAmount(CreditMeterError, ValueError):
    code = "INVALID_AMOUNT"


class UpstreamUnavailable(CreditMeterError):
    """The model provider failed; nothing was billed and the call may be retried."""
    code = "AI_SERVICE_ERROR"

    def __init__(self, message: str = "AI service temporarily unavailable", original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error


class StreamCanceled(CreditMeterError):
    """The caller went away before the stream finished. Not a user-facing error."""
    code = "CANCELED"


class StateParseFailure(CreditMeterError, ValueError):
    """The structured state block could not be parsed; the state is dropped."""
    code = "STATE_PARSE_FAILURE"
