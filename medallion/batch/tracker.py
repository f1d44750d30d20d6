"""
Batch ledger and lifecycle state machine.

    pending -> in_progress -> completed
                           -> failed -> (retry) -> in_progress

The tracker is the only writer of batch status. Ledger persistence is
pluggable; every save is a check-and-set on the previous status and owner
so two processes sharing a ledger cannot both move the same batch.

A run claims a batch with an owner token and a lease. While the lease is
live no other runner can claim it; checkpoints renew the lease, and a
lapsed lease (a crashed runner) lets the next claim take the batch over.
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Any

from medallion.core.errors import BatchNotFound, BatchStateError, Timeout
from medallion.core.models import BATCH_TRANSITIONS, Batch, LayerTransition, LoadReport
from medallion.core.models.batch import utcnow
from medallion.observability import metrics
from medallion.observability.logger import get_logger
from medallion.utils.validation import validate_batch_id, validate_source_id

logger = get_logger(__name__)


class BatchLedger(ABC):
    """Persistence for Batch ledger entries."""

    @abstractmethod
    def load(self, batch_id: str) -> Batch | None:
        """Return the stored batch, or None."""

    @abstractmethod
    def save(self, batch: Batch, expected_status: str | None, expected_owner: str | None = None) -> None:
        """
        Store ``batch``.

        Args:
            batch: Ledger entry to store
            expected_status: Status the stored entry must currently have;
                None means the entry must not exist yet
            expected_owner: Owner the stored entry must currently have

        Raises:
            BatchStateError: If the stored entry does not match
        """

    @abstractmethod
    def entries(self, status: str | None = None) -> list[Batch]:
        """All entries, optionally filtered by status, ordered by created_at."""


class InMemoryBatchLedger(BatchLedger):
    """Process-local ledger."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, Batch] = {}

    def load(self, batch_id: str) -> Batch | None:
        with self._lock:
            batch = self._entries.get(batch_id)
            return batch.model_copy(deep=True) if batch else None

    def save(self, batch: Batch, expected_status: str | None, expected_owner: str | None = None) -> None:
        with self._lock:
            stored = self._entries.get(batch.batch_id)
            if expected_status is None and stored is not None:
                raise BatchStateError(f"Batch {batch.batch_id} is already registered")
            if expected_status is not None and (
                stored is None or stored.status != expected_status or stored.owner != expected_owner
            ):
                found = f"{stored.status} owned by {stored.owner}" if stored else "missing"
                raise BatchStateError(
                    f"Batch {batch.batch_id} changed concurrently (expected {expected_status}, found {found})"
                )
            self._entries[batch.batch_id] = batch.model_copy(deep=True)

    def entries(self, status: str | None = None) -> list[Batch]:
        with self._lock:
            batches = [b.model_copy(deep=True) for b in self._entries.values()]
        if status is not None:
            batches = [b for b in batches if b.status == status]
        return sorted(batches, key=lambda b: (b.created_at, b.batch_id))


class BatchTracker:
    """
    Owns batch lifecycle state.

    Args:
        ledger: Ledger persistence (in-memory by default)
        timeout: Seconds to wait for the tracker lock
        lease_timeout: Seconds a claim stays live without a checkpoint
    """

    def __init__(self, ledger: BatchLedger | None = None, timeout: float = 30.0, lease_timeout: float = 300.0):
        self.ledger = ledger or InMemoryBatchLedger()
        self.timeout = timeout
        self.lease_timeout = lease_timeout
        self._lock = threading.Lock()

    @contextmanager
    def _locked(self, operation: str) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            raise Timeout(f"batch tracker {operation}", self.timeout)
        try:
            yield
        finally:
            self._lock.release()

    def register(self, batch: Batch) -> str:
        """
        Add a new batch to the ledger.

        Returns:
            The batch id

        Raises:
            BatchStateError: If the id is already registered or the batch is not pending
        """
        validate_batch_id(batch.batch_id)
        validate_source_id(batch.source_id)
        if batch.status != "pending":
            raise BatchStateError(f"New batches must be pending, got {batch.status}")

        with self._locked("register"):
            self.ledger.save(batch, expected_status=None)

        logger.info(
            f"Registered batch {batch.batch_id}",
            extra={"batch_id": batch.batch_id, "source_id": batch.source_id},
        )
        return batch.batch_id

    def get(self, batch_id: str) -> Batch:
        batch = self.ledger.load(batch_id)
        if batch is None:
            raise BatchNotFound(batch_id)
        return batch

    def status(self, batch_id: str) -> str:
        return self.get(batch_id).status

    def list_batches(self, status: str | None = None) -> list[Batch]:
        return self.ledger.entries(status)

    def mark_in_progress(self, batch_id: str) -> Batch:
        """pending -> in_progress, without claiming the batch for a runner."""
        return self._transition(batch_id, "in_progress", allowed_from=("pending",), bump_attempts=True)

    def claim(self, batch_id: str, owner: str) -> Batch:
        """
        Take the batch for one run.

        A pending batch moves to in_progress; an in_progress batch (resumed
        after a Timeout, or left by a crashed runner) is taken over once
        nobody holds a live lease on it.

        Raises:
            BatchStateError: The batch is completed or failed, or another
                runner holds a live lease
        """
        with self._locked("claim"):
            batch = self.get(batch_id)
            now = utcnow()
            lease = {"owner": owner, "lease_expires_at": now + timedelta(seconds=self.lease_timeout)}

            if batch.status == "pending":
                updated = self._apply(batch, "in_progress", bump_attempts=True, **lease)
            elif batch.status == "in_progress":
                if batch.lease_held(now) and batch.owner != owner:
                    raise BatchStateError(f"Batch {batch_id} is being loaded by {batch.owner}")
                if batch.owner is not None and batch.owner != owner:
                    logger.warning(
                        f"Taking over batch {batch_id} from {batch.owner} after its lease lapsed",
                        extra={"batch_id": batch_id, "previous_owner": batch.owner},
                    )
                updated = batch.model_copy(update={**lease, "updated_at": now})
                self.ledger.save(updated, expected_status="in_progress", expected_owner=batch.owner)
            else:
                raise BatchStateError(f"Cannot claim {batch_id} while {batch.status}")

        logger.debug(f"Claimed batch {batch_id}", extra={"batch_id": batch_id, "owner": owner})
        return updated

    def release(self, batch_id: str, owner: str) -> Batch:
        """Give up ``owner``'s claim and leave the batch in_progress for a later run."""
        with self._locked("release"):
            batch = self.get(batch_id)
            if batch.status != "in_progress" or batch.owner != owner:
                return batch
            updated = batch.model_copy(update={"owner": None, "lease_expires_at": None, "updated_at": utcnow()})
            self.ledger.save(updated, expected_status="in_progress", expected_owner=owner)
        return updated

    def mark_completed(
        self, batch_id: str, report: LoadReport | dict[str, Any] | None = None, owner: str | None = None
    ) -> Batch:
        """in_progress -> completed, storing the run report."""
        if isinstance(report, LoadReport):
            report = report.model_dump(mode="json")
        return self._transition(batch_id, "completed", owner=owner, report=report, failure_reason=None)

    def mark_failed(self, batch_id: str, reason: str, owner: str | None = None) -> Batch:
        """in_progress -> failed, recording why."""
        return self._transition(batch_id, "failed", owner=owner, failure_reason=reason)

    def retry(self, batch_id: str, release_output: Callable[[str], Any] | None = None) -> Batch:
        """
        failed -> in_progress.

        ``release_output`` is called first to drop partial output owned by
        the failed attempt; the transition only happens if it succeeds.
        """
        with self._locked("retry"):
            batch = self.get(batch_id)
            if batch.status != "failed":
                raise BatchStateError(f"Only failed batches can be retried; {batch_id} is {batch.status}")
            if release_output is not None:
                release_output(batch_id)
            updated = self._apply(
                batch, "in_progress", bump_attempts=True, checkpoint=None, failure_reason=None, report=None
            )

        metrics.increment_counter(metrics.batches_total, status="retried")
        logger.info(
            f"Retrying batch {batch_id} (attempt {updated.attempts})",
            extra={"batch_id": batch_id, "attempt": updated.attempts},
        )
        return updated

    def checkpoint(
        self, batch_id: str, layer: str, progress: LoadReport | None = None, owner: str | None = None
    ) -> Batch:
        """
        Record that ``layer`` was durably written by the current attempt.

        ``progress`` is kept on the batch so a resumed run can carry the
        counts of the steps it skips. The owner's lease is renewed.
        """
        with self._locked("checkpoint"):
            batch = self.get(batch_id)
            if batch.status != "in_progress":
                raise BatchStateError(f"Cannot checkpoint {batch_id} while {batch.status}")
            _check_owner(batch, owner)
            changes: dict[str, Any] = {"checkpoint": layer, **self._renewal(batch)}
            if progress is not None:
                changes["report"] = progress.model_dump(mode="json")
            updated = batch.model_copy(update=changes)
            self.ledger.save(updated, expected_status="in_progress", expected_owner=batch.owner)
        return updated

    def record_transition(self, batch_id: str, transition: LayerTransition, owner: str | None = None) -> Batch:
        """Append a lineage entry for one layer step."""
        with self._locked("record_transition"):
            batch = self.get(batch_id)
            _check_owner(batch, owner)
            updated = batch.model_copy(update={"lineage": [*batch.lineage, transition], **self._renewal(batch)})
            self.ledger.save(updated, expected_status=batch.status, expected_owner=batch.owner)
        return updated

    def _renewal(self, batch: Batch) -> dict[str, Any]:
        now = utcnow()
        if batch.owner is None:
            return {"updated_at": now}
        return {"updated_at": now, "lease_expires_at": now + timedelta(seconds=self.lease_timeout)}

    def _transition(
        self,
        batch_id: str,
        target: str,
        allowed_from: tuple[str, ...] | None = None,
        bump_attempts: bool = False,
        owner: str | None = None,
        **updates: Any,
    ) -> Batch:
        with self._locked(f"mark_{target}"):
            batch = self.get(batch_id)
            if allowed_from is not None and batch.status not in allowed_from:
                raise BatchStateError(f"Cannot move {batch_id} from {batch.status} to {target}")
            if target in ("completed", "failed"):
                _check_owner(batch, owner)
                updates.update(owner=None, lease_expires_at=None)
            updated = self._apply(batch, target, bump_attempts=bump_attempts, **updates)

        metrics.increment_counter(metrics.batches_total, status=target)
        log = logger.warning if target == "failed" else logger.info
        log(
            f"Batch {batch_id}: {batch.status} -> {target}",
            extra={"batch_id": batch_id, "status": target, "failure_reason": updates.get("failure_reason")},
        )
        return updated

    def _apply(self, batch: Batch, target: str, bump_attempts: bool = False, **updates: Any) -> Batch:
        if target not in BATCH_TRANSITIONS[batch.status]:
            raise BatchStateError(f"Cannot move {batch.batch_id} from {batch.status} to {target}")
        changes = {"status": target, "updated_at": utcnow(), **updates}
        if bump_attempts:
            changes["attempts"] = batch.attempts + 1
        updated = batch.model_copy(update=changes)
        self.ledger.save(updated, expected_status=batch.status, expected_owner=batch.owner)
        return updated


def _check_owner(batch: Batch, owner: str | None) -> None:
    """Only the runner holding a batch (or anyone, while it is unclaimed) may move it."""
    if batch.owner != owner:
        holder = batch.owner or "no runner"
        raise BatchStateError(f"Batch {batch.batch_id} is held by {holder}, not {owner or 'an unclaimed caller'}")
