"""Infrastructure modules for the escrow orchestrator"""

from .content_store import ContentStore  # noqa: F401
from .ledger_rpc import LedgerClient  # noqa: F401
from .liquidity_api import LiquidityApi  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .record_store import RecordStore  # noqa: F401

__all__ = [
    "ContentStore",
    "LedgerClient",
    "LiquidityApi",
    "MetricsRecorder",
    "RecordStore",
]
