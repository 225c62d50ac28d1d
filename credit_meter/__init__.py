"""
credit_meter: prepaid credit metering for streamed LLM calls.
"""

__version__ = "0.1.0"

from .config.loader import MeterConfig
from .core.admin import AdminService
from .core.deduction import ChargeResult, DeductionCoordinator
from .core.ledger import LedgerStore
from .core.ratio import RatioStore
from .core.usage import UsageRecorder
from .stream import StreamRelay, StreamStateExtractor

__all__ = [
    "AdminService",
    "ChargeResult",
    "DeductionCoordinator",
    "LedgerStore",
    "MeterConfig",
    "RatioStore",
    "StreamRelay",
    "StreamStateExtractor",
    "UsageRecorder",
    "__version__",
]
