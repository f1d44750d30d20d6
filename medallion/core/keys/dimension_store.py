"""
Dimension storage interface and the in-memory implementation.

Stores expose check-and-set writes so the resolver can detect a current
row that moved between its read and its write.
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from medallion.core.errors import KeyResolutionConflict, Timeout
from medallion.core.models import DimensionRow


class DimensionStore(ABC):
    """Gold-layer dimension tables addressed by surrogate and business key."""

    @abstractmethod
    def current(self, dimension: str, business_key: str) -> DimensionRow | None:
        """Return the open (current) row for a business key, if any."""

    @abstractmethod
    def get(self, dimension: str, surrogate_key: int) -> DimensionRow | None:
        """Return the row carrying ``surrogate_key``, if any."""

    @abstractmethod
    def next_surrogate_key(self, dimension: str) -> int:
        """Allocate a new surrogate key; keys are never handed out twice."""

    @abstractmethod
    def insert(self, row: DimensionRow) -> None:
        """
        Insert the first current row for a business key.

        Raises:
            KeyResolutionConflict: If a current row already exists
        """

    @abstractmethod
    def replace_current(self, expected_key: int, closed_at: datetime, row: DimensionRow) -> None:
        """
        Close the current row ``expected_key`` at ``closed_at`` and open ``row``.

        Raises:
            KeyResolutionConflict: If ``expected_key`` is no longer current
        """

    @abstractmethod
    def update_attributes(self, dimension: str, surrogate_key: int, attributes: dict[str, Any]) -> None:
        """
        Overwrite attributes on a current row in place.

        Raises:
            KeyResolutionConflict: If the row is no longer current
        """

    @abstractmethod
    def history(self, dimension: str, business_key: str) -> list[DimensionRow]:
        """All versions of a business key ordered by effective_start."""

    @abstractmethod
    def rows(self, dimension: str) -> list[DimensionRow]:
        """All rows of a dimension ordered by surrogate key."""

    @abstractmethod
    def created_by(self, dimension: str, batch_id: str) -> list[DimensionRow]:
        """Rows (first versions and SCD versions) created by ``batch_id``, ordered by surrogate key."""

    def exists(self, dimension: str, surrogate_key: int) -> bool:
        return self.get(dimension, surrogate_key) is not None


class InMemoryDimensionStore(DimensionStore):
    """
    Thread-safe dimension store kept in process memory.

    Args:
        timeout: Seconds to wait for the store's internal lock
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._lock = threading.Lock()
        self._rows: dict[str, dict[int, DimensionRow]] = {}
        self._current: dict[tuple[str, str], int] = {}
        self._sequences: dict[str, int] = {}

    @contextmanager
    def _locked(self, operation: str) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            raise Timeout(f"dimension store {operation}", self.timeout)
        try:
            yield
        finally:
            self._lock.release()

    def current(self, dimension: str, business_key: str) -> DimensionRow | None:
        with self._locked("current"):
            key = self._current.get((dimension, business_key))
            return None if key is None else self._rows[dimension][key]

    def get(self, dimension: str, surrogate_key: int) -> DimensionRow | None:
        with self._locked("get"):
            return self._rows.get(dimension, {}).get(surrogate_key)

    def next_surrogate_key(self, dimension: str) -> int:
        with self._locked("next_surrogate_key"):
            self._sequences[dimension] = self._sequences.get(dimension, 0) + 1
            return self._sequences[dimension]

    def insert(self, row: DimensionRow) -> None:
        with self._locked("insert"):
            if (row.dimension, row.business_key) in self._current:
                raise KeyResolutionConflict(row.dimension, row.business_key, None)
            self._rows.setdefault(row.dimension, {})[row.surrogate_key] = row
            self._current[(row.dimension, row.business_key)] = row.surrogate_key

    def replace_current(self, expected_key: int, closed_at: datetime, row: DimensionRow) -> None:
        with self._locked("replace_current"):
            index = (row.dimension, row.business_key)
            if self._current.get(index) != expected_key:
                raise KeyResolutionConflict(row.dimension, row.business_key, expected_key)

            table = self._rows[row.dimension]
            table[expected_key] = table[expected_key].model_copy(
                update={"effective_end": closed_at, "is_current": False}
            )
            table[row.surrogate_key] = row
            self._current[index] = row.surrogate_key

    def update_attributes(self, dimension: str, surrogate_key: int, attributes: dict[str, Any]) -> None:
        with self._locked("update_attributes"):
            row = self._rows.get(dimension, {}).get(surrogate_key)
            if row is None or not row.is_current:
                business_key = row.business_key if row else "?"
                raise KeyResolutionConflict(dimension, business_key, surrogate_key)
            self._rows[dimension][surrogate_key] = row.model_copy(update={"attributes": dict(attributes)})

    def history(self, dimension: str, business_key: str) -> list[DimensionRow]:
        with self._locked("history"):
            versions = [r for r in self._rows.get(dimension, {}).values() if r.business_key == business_key]
        return sorted(versions, key=lambda r: (r.effective_start, r.surrogate_key))

    def rows(self, dimension: str) -> list[DimensionRow]:
        with self._locked("rows"):
            return [self._rows.get(dimension, {})[k] for k in sorted(self._rows.get(dimension, {}))]

    def created_by(self, dimension: str, batch_id: str) -> list[DimensionRow]:
        return [row for row in self.rows(dimension) if row.batch_id == batch_id]
