"""
Surrogate key resolution and dimension storage.
"""

from .dimension_store import DimensionStore, InMemoryDimensionStore
from .locks import KeyLockTable
from .resolver import KeyResolver, Resolution

__all__ = [
    "DimensionStore",
    "InMemoryDimensionStore",
    "KeyLockTable",
    "KeyResolver",
    "Resolution",
]
