"""
Batch lifecycle: ledger, loader orchestration and cancellation.
"""

from .cancellation import CancellationToken
from .loader import LayerLoader
from .tracker import BatchLedger, BatchTracker, InMemoryBatchLedger

__all__ = [
    "BatchLedger",
    "BatchTracker",
    "InMemoryBatchLedger",
    "CancellationToken",
    "LayerLoader",
]
