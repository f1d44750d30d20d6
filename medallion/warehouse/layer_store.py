"""
Layered table storage interface and the in-memory implementation.

Every write replaces all rows of one batch in one layer as a single unit
of work: readers see either the previous rows for that batch or the new
ones, never a mix. Bronze is append-only.
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import contextmanager

from pydantic import BaseModel

from medallion.core.errors import StorageError, Timeout
from medallion.core.models import CanonicalRecord, FactRow, QuarantineRecord, RawRecord

LAYER_MODELS: dict[str, type[BaseModel]] = {
    "bronze": RawRecord,
    "silver": CanonicalRecord,
    "gold": FactRow,
}


def check_records(layer: str, records: Sequence[BaseModel], batch_id: str) -> None:
    """
    Reject records of the wrong model or belonging to another batch.

    Raises:
        StorageError: If any record does not belong in (layer, batch_id)
    """
    model = LAYER_MODELS.get(layer)
    if model is None:
        raise StorageError(f"Unknown layer: {layer}")
    for record in records:
        if not isinstance(record, model):
            raise StorageError(f"{layer} expects {model.__name__}, got {type(record).__name__}")
        if record.batch_id != batch_id:
            raise StorageError(f"Record of batch {record.batch_id} written under batch {batch_id}")


class LayerStore(ABC):
    """Abstract layered-table storage used by the loader."""

    @abstractmethod
    def read(self, layer: str, batch_id: str, timeout: float | None = None) -> list[BaseModel]:
        """Return all rows of ``batch_id`` in ``layer`` (empty if none)."""

    @abstractmethod
    def write(self, layer: str, records: Sequence[BaseModel], batch_id: str, timeout: float | None = None) -> int:
        """
        Replace the rows of ``batch_id`` in ``layer`` with ``records``.

        Returns:
            Number of rows written

        Raises:
            StorageError: On rejected or failed writes (including a second
                bronze write for the same batch)
            Timeout: If the write could not complete in ``timeout`` seconds
        """

    @abstractmethod
    def purge(self, layer: str, batch_id: str, timeout: float | None = None) -> int:
        """Delete the rows of ``batch_id`` in ``layer``; returns rows removed."""

    @abstractmethod
    def quarantine(self, batch_id: str, records: Sequence[QuarantineRecord], timeout: float | None = None) -> int:
        """Replace the quarantined rows of ``batch_id``."""

    @abstractmethod
    def quarantined(self, batch_id: str) -> list[QuarantineRecord]:
        """Quarantined rows of ``batch_id``."""


class InMemoryLayerStore(LayerStore):
    """
    Copy-on-write layered store kept in process memory.

    Each write builds the new row tuple outside the lock and swaps it in
    under the lock, so the swap is the only visible step.

    Args:
        timeout: Default seconds to wait for the store lock
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._lock = threading.Lock()
        self._tables: dict[str, dict[str, tuple[BaseModel, ...]]] = {layer: {} for layer in LAYER_MODELS}
        self._quarantine: dict[str, tuple[QuarantineRecord, ...]] = {}

    @contextmanager
    def _locked(self, operation: str, timeout: float | None) -> Iterator[None]:
        wait = self.timeout if timeout is None else timeout
        if not self._lock.acquire(timeout=wait):
            raise Timeout(f"layer store {operation}", wait)
        try:
            yield
        finally:
            self._lock.release()

    def _table(self, layer: str) -> dict[str, tuple[BaseModel, ...]]:
        if layer not in self._tables:
            raise StorageError(f"Unknown layer: {layer}")
        return self._tables[layer]

    def read(self, layer: str, batch_id: str, timeout: float | None = None) -> list[BaseModel]:
        with self._locked("read", timeout):
            return list(self._table(layer).get(batch_id, ()))

    def write(self, layer: str, records: Sequence[BaseModel], batch_id: str, timeout: float | None = None) -> int:
        check_records(layer, records, batch_id)
        staged = tuple(records)
        with self._locked("write", timeout):
            table = self._table(layer)
            if layer == "bronze" and batch_id in table:
                raise StorageError(f"Bronze rows for batch {batch_id} already exist (append-only)")
            if staged:
                table[batch_id] = staged
            else:
                table.pop(batch_id, None)
        return len(staged)

    def purge(self, layer: str, batch_id: str, timeout: float | None = None) -> int:
        with self._locked("purge", timeout):
            return len(self._table(layer).pop(batch_id, ()))

    def quarantine(self, batch_id: str, records: Sequence[QuarantineRecord], timeout: float | None = None) -> int:
        staged = tuple(records)
        with self._locked("quarantine", timeout):
            if staged:
                self._quarantine[batch_id] = staged
            else:
                self._quarantine.pop(batch_id, None)
        return len(staged)

    def quarantined(self, batch_id: str) -> list[QuarantineRecord]:
        with self._locked("quarantined", None):
            return list(self._quarantine.get(batch_id, ()))
