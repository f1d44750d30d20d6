"""
Layer loader: moves one batch Bronze -> Silver -> Gold.

Flow for a batch:
1. Claim it in the tracker under a lease (pending -> in_progress, or resume in_progress)
2. Bronze -> Silver: normalize, quarantine rejects, deduplicate, write
3. Silver -> Gold: resolve dimension keys, build facts, check references, write
4. Mark completed (a fatal error instead releases the output and marks it failed)

Each write replaces the batch's rows in one layer as a unit, and the
tracker checkpoints after each one, so a re-run either resumes after the
last durable write or starts over and overwrites whatever the failed
attempt left behind.
"""

import os
import socket
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from medallion.config import PipelineSettings
from medallion.core.deduplicator import Deduplicator
from medallion.core.errors import (
    BatchCancelled,
    BatchFailed,
    BatchStateError,
    IntegrityError,
    KeyResolutionConflict,
    MedallionError,
    SchemaMismatch,
    StorageError,
    Timeout,
)
from medallion.core.keys import DimensionStore, KeyResolver
from medallion.core.models import (
    Batch,
    CanonicalRecord,
    FactRow,
    LayerTransition,
    LoadReport,
    QuarantineRecord,
    RawRecord,
    RecordError,
)
from medallion.core.models.batch import utcnow
from medallion.core.normalizer import RecordNormalizer, key_to_str
from medallion.core.schema import StarSchema
from medallion.observability import metrics
from medallion.observability.logger import get_logger, log_operation
from medallion.utils.validation import validate_batch_id, validate_source_id
from medallion.warehouse.layer_store import LayerStore

from .cancellation import CancellationToken
from .tracker import BatchTracker

logger = get_logger(__name__)

# Failures worth another attempt; anything else needs a human
RETRYABLE_ERRORS = (Timeout, StorageError, KeyResolutionConflict)


class LayerLoader:
    """
    Orchestrates Normalizer -> Deduplicator -> KeyResolver -> storage for one batch.

    Args:
        schema: Star schema of the domain being loaded
        store: Layered table storage (Bronze, Silver, Gold facts, quarantine)
        dimension_store: Gold dimension storage
        tracker: Batch ledger
        settings: Timeouts, retry bounds and invalid record policy
        runner_id: Prefix of the owner tokens this loader claims batches with
    """

    def __init__(
        self,
        schema: StarSchema,
        store: LayerStore,
        dimension_store: DimensionStore,
        tracker: BatchTracker,
        settings: PipelineSettings | None = None,
        runner_id: str | None = None,
    ):
        self.schema = schema
        self.store = store
        self.dimension_store = dimension_store
        self.tracker = tracker
        self.settings = settings or PipelineSettings()

        self.normalizer = RecordNormalizer(schema)
        self.deduplicator: Deduplicator[CanonicalRecord] = Deduplicator()
        self.resolver = KeyResolver(
            dimension_store,
            schema.dimensions,
            lock_timeout=self.settings.lock_timeout,
            max_conflict_retries=self.settings.max_conflict_retries,
        )

        self.runner_id = runner_id or f"{socket.gethostname()}:{os.getpid()}"

    # =======================
    # INGESTION
    # =======================

    def ingest(
        self,
        batch_id: str,
        source_id: str,
        payloads: Iterable[dict[str, Any]],
        ingested_at: datetime | None = None,
        file_name: str | None = None,
    ) -> Batch:
        """
        Write already-parsed payloads to Bronze and register the batch.

        Bronze is written first so a registered batch always has its raw
        rows; if registration then fails the Bronze rows are purged again, so
        the batch id can be ingested anew. A second ingest of an ingested
        batch id is rejected by the store.

        Returns:
            The pending Batch
        """
        validate_batch_id(batch_id)
        validate_source_id(source_id)
        ingested_at = ingested_at or utcnow()
        records = [
            RawRecord(
                batch_id=batch_id,
                source_id=source_id,
                ingested_at=ingested_at,
                file_name=file_name,
                sequence=sequence,
                payload=dict(payload),
            )
            for sequence, payload in enumerate(payloads)
        ]
        batch = Batch(batch_id=batch_id, source_id=source_id, ingested_at=ingested_at, file_name=file_name)

        self.store.write("bronze", records, batch_id, timeout=self.settings.storage_timeout)
        try:
            self.tracker.register(batch)
        except Exception as e:
            logger.error(
                f"Registering batch {batch_id} failed, purging its bronze rows: {e}",
                extra={"batch_id": batch_id, "error_type": type(e).__name__},
            )
            self.store.purge("bronze", batch_id, timeout=self.settings.storage_timeout)
            raise

        logger.info(
            f"Ingested {len(records)} raw records into bronze",
            extra={"batch_id": batch_id, "source_id": source_id, "records": len(records)},
        )
        return self.tracker.get(batch_id)

    # =======================
    # LOADING
    # =======================

    def run(self, batch_id: str, cancel: CancellationToken | None = None) -> LoadReport:
        """
        Load one batch end to end.

        A completed batch is not reloaded; its recorded report is returned.
        An in_progress batch (left behind by a Timeout) resumes from its
        checkpoint. A failed batch must go through retry() first. The run
        holds the batch through a tracker lease, so a second runner on the
        same ledger is turned away while this one is alive.

        Raises:
            Timeout: A bounded wait was exceeded; the batch stays in_progress
            BatchFailed: The batch was cancelled or hit a fatal error and is now failed
            BatchStateError: The batch is failed, or another runner holds it
        """
        batch = self.tracker.get(batch_id)
        if batch.status == "completed":
            logger.info(f"Batch {batch_id} already completed, skipping", extra={"batch_id": batch_id})
            return LoadReport.model_validate(batch.report) if batch.report else LoadReport(batch_id=batch_id)
        if batch.status == "failed":
            raise BatchStateError(
                f"Batch {batch_id} failed ({batch.failure_reason}); call retry() before running it again"
            )

        owner = f"{self.runner_id}/{uuid.uuid4().hex[:8]}"
        batch = self.tracker.claim(batch_id, owner)
        if batch.checkpoint is not None:
            logger.info(
                f"Resuming batch {batch_id} from checkpoint {batch.checkpoint}",
                extra={"batch_id": batch_id, "checkpoint": batch.checkpoint},
            )

        metrics.batches_in_progress.inc()
        try:
            with log_operation("Loading batch", logger=logger, batch_id=batch_id, domain=self.schema.domain) as op:
                report = self._execute(batch, cancel)
                self._check_cancel(cancel, "completion")
                self.tracker.mark_completed(batch_id, report, owner=owner)
                op.annotate(**report.counts())
        except Timeout:
            self.tracker.release(batch_id, owner)
            logger.warning(
                f"Batch {batch_id} timed out; left in_progress for retry",
                extra={"batch_id": batch_id},
            )
            raise
        except BatchStateError:
            # Lost the lease; the batch and its output belong to another runner now
            logger.warning(f"Batch {batch_id} was taken over during the run", extra={"batch_id": batch_id})
            raise
        except BatchCancelled as e:
            self._fail(batch_id, owner, f"cancelled: {e}")
            raise BatchFailed(batch_id, f"cancelled: {e}", batch.attempts) from e
        except MedallionError as e:
            reason = f"{type(e).__name__}: {e}"
            self._fail(batch_id, owner, reason)
            raise BatchFailed(batch_id, reason, batch.attempts) from e
        except Exception as e:
            self._fail(batch_id, owner, f"{type(e).__name__}: {e}")
            raise
        finally:
            metrics.batches_in_progress.dec()

        metrics.record_batch_load(self.schema.domain, report.counts(), op.elapsed)
        return report

    def retry(self, batch_id: str) -> Batch:
        """Release the failed attempt's Silver/Gold output and move the batch back to in_progress."""
        return self.tracker.retry(batch_id, release_output=self._release_output)

    def run_with_retries(
        self,
        batch_id: str,
        max_attempts: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> LoadReport:
        """
        Run a batch, retrying retryable failures up to ``max_attempts`` runs.

        Raises:
            BatchFailed: Terminal failure (non-retryable error, cancellation,
                or attempts exhausted); the batch is left failed
        """
        attempts = max_attempts or self.settings.max_attempts
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                return self.run(batch_id, cancel=cancel)
            except BatchFailed as e:
                last_error = e
                if not isinstance(e.__cause__, RETRYABLE_ERRORS):
                    raise
                if attempt < attempts:
                    self.retry(batch_id)
            except Timeout as e:
                # Still in_progress: the next run resumes from the checkpoint
                last_error = e

            logger.warning(
                f"Attempt {attempt}/{attempts} for batch {batch_id} failed: {last_error}",
                extra={"batch_id": batch_id, "attempt": attempt},
            )

        reason = f"retries exhausted: {last_error}"
        if self.tracker.status(batch_id) == "in_progress":
            self._fail(batch_id, None, reason)
        raise BatchFailed(batch_id, reason, attempts) from last_error

    # =======================
    # STEPS
    # =======================

    def _execute(self, batch: Batch, cancel: CancellationToken | None) -> LoadReport:
        batch_id = batch.batch_id
        previous = LoadReport.model_validate(batch.report) if batch.report else None

        if batch.checkpoint == "gold" and previous is not None:
            return previous.model_copy(update={"resumed_from": "gold"})

        if batch.checkpoint == "silver" and previous is not None:
            report = previous.model_copy(update={"resumed_from": "silver"})
            canonical = self.store.read("silver", batch_id, timeout=self.settings.storage_timeout)
        else:
            report = LoadReport(batch_id=batch_id)
            self._check_cancel(cancel, "bronze -> silver")
            canonical = self._bronze_to_silver(batch, report)
            self.tracker.checkpoint(batch_id, "silver", report, owner=batch.owner)

        self._check_cancel(cancel, "silver -> gold")
        self._silver_to_gold(batch, canonical, report)
        self.tracker.checkpoint(batch_id, "gold", report, owner=batch.owner)
        return report

    def _bronze_to_silver(self, batch: Batch, report: LoadReport) -> list[CanonicalRecord]:
        batch_id = batch.batch_id
        timeout = self.settings.storage_timeout

        raws = self.store.read("bronze", batch_id, timeout=timeout)
        report.read = len(raws)

        normalized, rejected = self.normalizer.normalize_batch(raws)
        report.normalized = len(normalized)

        quarantined = []
        for raw, error in rejected:
            raw_key = raw.payload.get(self.schema.business_key)
            report.add_error(RecordError(
                error_type="ValidationError",
                message=str(error),
                business_key=None if raw_key is None else str(raw_key),
                sequence=raw.sequence,
                fields=error.field_names,
            ))
            quarantined.append(QuarantineRecord(
                batch_id=batch_id,
                source_id=raw.source_id,
                sequence=raw.sequence,
                raw_payload=raw.payload,
                failed_fields=error.field_names,
                error_messages=[e.message for e in error.field_errors],
            ))
            logger.warning(
                f"Rejected raw record {raw.sequence}: {error}",
                extra={"batch_id": batch_id, "sequence": raw.sequence, "fields": error.field_names},
            )

        if self.settings.invalid_record_policy == "drop":
            quarantined = []
        self.store.quarantine(batch_id, quarantined, timeout=timeout)

        result = self.deduplicator.deduplicate(normalized)
        report.deduplicated_out = result.loser_count
        report.duplicate_keys = result.duplicate_keys
        if result.loser_count:
            logger.info(
                f"Removed {result.loser_count} duplicate records",
                extra={"batch_id": batch_id, "duplicate_keys": len(result.losers)},
            )

        written = self.store.write("silver", result.winners, batch_id, timeout=timeout)
        self.tracker.record_transition(batch_id, LayerTransition(
            source_layer="bronze",
            target_layer="silver",
            rows_read=len(raws),
            rows_written=written,
            attempt=max(batch.attempts, 1),
        ), owner=batch.owner)
        return result.winners

    def _silver_to_gold(self, batch: Batch, canonical: list[CanonicalRecord], report: LoadReport) -> None:
        batch_id = batch.batch_id
        records = sorted(
            (self.normalizer.revive(record) for record in canonical),
            key=lambda r: r.business_key,
        )
        if len({r.business_key for r in records}) != len(records):
            raise SchemaMismatch(f"Silver rows for batch {batch_id} are not unique per business key")

        keys, unresolved = self._resolve_dimensions(batch, records, report)

        facts = []
        verified: set[tuple[str, int]] = set()
        for record in records:
            try:
                dimension_keys = self._fact_keys(record, keys, unresolved, verified)
            except IntegrityError as e:
                metrics.increment_counter(metrics.integrity_errors_total, dimension=e.dimension)
                report.add_error(RecordError(
                    error_type="IntegrityError",
                    message=str(e),
                    business_key=record.business_key,
                    sequence=record.sequence,
                ))
                logger.warning(
                    f"Excluded fact {record.business_key}: {e}",
                    extra={"batch_id": batch_id, "business_key": record.business_key, "dimension": e.dimension},
                )
                continue

            facts.append(FactRow(
                fact=self.schema.fact.name,
                batch_id=batch_id,
                business_key=record.business_key,
                dimension_keys=dimension_keys,
                measures={name: record.values[name] for name in self.schema.fact.measures},
                degenerate={name: record.values[name] for name in self.schema.fact.degenerate},
            ))

        report.written = self.store.write("gold", facts, batch_id, timeout=self.settings.storage_timeout)
        self.tracker.record_transition(batch_id, LayerTransition(
            source_layer="silver",
            target_layer="gold",
            rows_read=len(records),
            rows_written=report.written,
            attempt=max(batch.attempts, 1),
        ), owner=batch.owner)

    def _resolve_dimensions(
        self, batch: Batch, records: list[CanonicalRecord], report: LoadReport
    ) -> tuple[dict[str, dict[str, int]], dict[str, dict[str, str]]]:
        """
        Resolve each dimension member seen in the batch exactly once.

        When several records mention the same member, the latest record's
        attributes are used, so a re-run observes the same attributes and
        resolves to the same keys.
        """
        keys: dict[str, dict[str, int]] = {}
        unresolved: dict[str, dict[str, str]] = {}

        for dim in self.schema.dimensions:
            keys[dim.name] = {}
            unresolved[dim.name] = {}
            members = Deduplicator(key=lambda r, field=dim.business_key: key_to_str(r.values[field]))
            for record in members.deduplicate(records).winners:
                business_key = key_to_str(record.values[dim.business_key])
                try:
                    resolution = self.resolver.resolve(
                        dim.name,
                        business_key,
                        {name: record.values.get(name) for name in dim.attributes},
                        as_of=batch.ingested_at,
                        batch_id=batch.batch_id,
                    )
                except IntegrityError as e:
                    unresolved[dim.name][business_key] = str(e)
                    continue

                keys[dim.name][business_key] = resolution.surrogate_key

        # Rows created by any attempt of this batch
        created = [
            row for dim in self.schema.dimensions
            for row in self.dimension_store.created_by(dim.name, batch.batch_id)
        ]
        report.newly_keyed = sum(1 for row in created if row.version == 1)
        report.scd_versioned = len(created) - report.newly_keyed
        return keys, unresolved

    def _fact_keys(
        self,
        record: CanonicalRecord,
        keys: dict[str, dict[str, int]],
        unresolved: dict[str, dict[str, str]],
        verified: set[tuple[str, int]],
    ) -> dict[str, int]:
        dimension_keys = {}
        for dim in self.schema.dimensions:
            business_key = key_to_str(record.values[dim.business_key])
            if business_key in unresolved[dim.name]:
                raise IntegrityError(dim.name, business_key, unresolved[dim.name][business_key])

            surrogate_key = keys[dim.name].get(business_key)
            if surrogate_key is None:
                raise IntegrityError(dim.name, business_key)
            if (dim.name, surrogate_key) not in verified:
                if not self.dimension_store.exists(dim.name, surrogate_key):
                    raise IntegrityError(dim.name, surrogate_key)
                verified.add((dim.name, surrogate_key))
            dimension_keys[dim.name] = surrogate_key
        return dimension_keys

    # =======================
    # HELPERS
    # =======================

    def _fail(self, batch_id: str, owner: str | None, reason: str) -> None:
        """Drop the attempt's Silver and Gold output, then mark the batch failed."""
        if self.tracker.get(batch_id).owner != owner:
            raise BatchStateError(f"Batch {batch_id} was taken over during the run; not failing it")
        try:
            self._release_output(batch_id)
        except MedallionError as e:
            logger.error(
                f"Could not release output of failed batch {batch_id}: {e}",
                extra={"batch_id": batch_id, "error_type": type(e).__name__},
            )
        self.tracker.mark_failed(batch_id, reason, owner=owner)

    def _release_output(self, batch_id: str) -> None:
        timeout = self.settings.storage_timeout
        silver_rows = self.store.purge("silver", batch_id, timeout=timeout)
        gold_rows = self.store.purge("gold", batch_id, timeout=timeout)
        self.store.quarantine(batch_id, [], timeout=timeout)
        logger.info(
            f"Released partial output of batch {batch_id}",
            extra={"batch_id": batch_id, "silver_rows": silver_rows, "gold_rows": gold_rows},
        )

    @staticmethod
    def _check_cancel(cancel: CancellationToken | None, step: str) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled(step)

