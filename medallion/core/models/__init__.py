"""
Core data models for the medallion pipeline.

All models use Pydantic for runtime validation and type safety.
"""

from .batch import Batch, LayerTransition
from .canonical_record import CanonicalRecord, values_checksum
from .dimension_row import DimensionRow
from .fact_row import FactRow
from .layers import BATCH_TRANSITIONS, BatchStatus, Layer
from .load_report import LoadReport, RecordError
from .quarantine_record import QuarantineRecord
from .raw_record import RawRecord

__all__ = [
    "Layer",
    "BatchStatus",
    "BATCH_TRANSITIONS",
    "RawRecord",
    "CanonicalRecord",
    "values_checksum",
    "DimensionRow",
    "FactRow",
    "Batch",
    "LayerTransition",
    "LoadReport",
    "RecordError",
    "QuarantineRecord",
]
