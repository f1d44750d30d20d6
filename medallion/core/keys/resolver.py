"""
Surrogate key resolution with SCD type-2 history.

Maps (dimension, business key, attributes) to a stable surrogate key,
allocating keys for unseen members and versioning members whose tracked
attributes changed. Observations older than the current version never
rewrite history; they resolve to the version that was in effect then.

Resolution of one business key is serialized through a per-key lock; the
store's check-and-set catches anything that slips past the lock (e.g.
another process), and the resolver retries a bounded number of times.
"""

from datetime import datetime
from typing import Any, NamedTuple

from pydantic import TypeAdapter

from medallion.core.errors import IntegrityError, KeyResolutionConflict
from medallion.core.models import DimensionRow
from medallion.core.schema import DimensionSpec
from medallion.observability import metrics
from medallion.observability.logger import get_logger

from .dimension_store import DimensionStore
from .locks import KeyLockTable

logger = get_logger(__name__)

_JSON_VALUES = TypeAdapter(Any)


class Resolution(NamedTuple):
    surrogate_key: int
    outcome: str  # existing, new, versioned, updated, historical


class KeyResolver:
    """
    Resolves business keys to surrogate keys.

    Args:
        store: Dimension storage
        dimensions: Dimension specs by name
        lock_timeout: Seconds to wait for a per-key lock
        max_conflict_retries: Check-and-set conflicts retried before giving up
    """

    def __init__(
        self,
        store: DimensionStore,
        dimensions: list[DimensionSpec],
        lock_timeout: float = 30.0,
        max_conflict_retries: int = 3,
    ):
        self.store = store
        self.dimensions = {d.name: d for d in dimensions}
        self.lock_timeout = lock_timeout
        self.max_conflict_retries = max_conflict_retries
        self.locks = KeyLockTable()

    def resolve(
        self,
        dimension: str,
        business_key: str,
        attributes: dict[str, Any] | None = None,
        as_of: datetime | None = None,
        batch_id: str | None = None,
    ) -> Resolution:
        """
        Return the current surrogate key for ``business_key``.

        Args:
            dimension: Dimension name
            business_key: Natural key of the member
            attributes: Observed attribute values (only declared attributes are kept)
            as_of: Effective time of the observation (the batch's as-of time)
            batch_id: Batch making the observation, recorded on new versions

        Raises:
            IntegrityError: Unseen key on a lookup-only dimension
            KeyResolutionConflict: Conflicts persisted past the retry bound
            Timeout: The per-key lock was not acquired in time
        """
        spec = self.dimensions.get(dimension)
        if spec is None:
            raise KeyError(f"Unknown dimension: {dimension}")
        if spec.lookup_only:
            resolution = Resolution(self.lookup(dimension, business_key), "existing")
            metrics.increment_counter(metrics.key_resolutions_total, dimension=dimension, outcome=resolution.outcome)
            return resolution
        if as_of is None:
            raise ValueError("as_of is required to resolve keys")
        observed = {name: (attributes or {}).get(name) for name in spec.attributes}

        with self.locks.hold((dimension, business_key), self.lock_timeout) as waited:
            metrics.observe_histogram(metrics.key_lock_wait_seconds, waited, dimension=dimension)
            attempt = 0
            while True:
                attempt += 1
                try:
                    resolution = self._resolve_once(spec, business_key, observed, as_of, batch_id)
                except KeyResolutionConflict:
                    metrics.increment_counter(metrics.key_conflicts_total, dimension=dimension)
                    if attempt > self.max_conflict_retries:
                        raise
                    logger.warning(
                        f"Key resolution conflict on {dimension}[{business_key}], retrying",
                        extra={"dimension": dimension, "business_key": business_key, "attempt": attempt},
                    )
                    continue

                metrics.increment_counter(metrics.key_resolutions_total, dimension=dimension, outcome=resolution.outcome)
                return resolution

    def lookup(self, dimension: str, business_key: str) -> int:
        """
        Return the current surrogate key without creating anything.

        Raises:
            IntegrityError: If the business key has no current row
        """
        row = self.store.current(dimension, business_key)
        if row is None:
            raise IntegrityError(dimension, business_key)
        return row.surrogate_key

    def _resolve_once(
        self,
        spec: DimensionSpec,
        business_key: str,
        observed: dict[str, Any],
        as_of: datetime,
        batch_id: str | None,
    ) -> Resolution:
        current = self.store.current(spec.name, business_key)

        if current is None:
            key = self.store.next_surrogate_key(spec.name)
            self.store.insert(DimensionRow(
                dimension=spec.name,
                surrogate_key=key,
                business_key=business_key,
                attributes=observed,
                effective_start=as_of,
                batch_id=batch_id,
            ))
            return Resolution(key, "new")

        if as_of < current.effective_start:
            return self._resolve_late(spec, business_key, as_of)

        changed = [
            name for name in spec.scd_tracked
            if not _same(current.attributes.get(name), observed.get(name))
        ]
        if changed:
            key = self.store.next_surrogate_key(spec.name)
            self.store.replace_current(current.surrogate_key, as_of, DimensionRow(
                dimension=spec.name,
                surrogate_key=key,
                business_key=business_key,
                attributes=observed,
                effective_start=as_of,
                batch_id=batch_id,
                version=current.version + 1,
            ))
            logger.debug(
                f"Versioned {spec.name}[{business_key}]: {current.surrogate_key} -> {key}",
                extra={"dimension": spec.name, "changed": changed},
            )
            return Resolution(key, "versioned")

        if not _same(current.attributes, observed):
            self.store.update_attributes(spec.name, current.surrogate_key, observed)
            return Resolution(current.surrogate_key, "updated")

        return Resolution(current.surrogate_key, "existing")

    def _resolve_late(self, spec: DimensionSpec, business_key: str, as_of: datetime) -> Resolution:
        """
        Map an observation older than the current version onto the version in
        effect at ``as_of`` (the earliest version when it predates them all).

        A batch retried after newer batches loaded lands here; its
        attributes are not applied, so the newer versions stay intact.
        """
        versions = self.store.history(spec.name, business_key)
        in_effect = next((v for v in reversed(versions) if v.covers(as_of)), versions[0])
        logger.debug(
            f"Late observation of {spec.name}[{business_key}] at {as_of.isoformat()} -> {in_effect.surrogate_key}",
            extra={"dimension": spec.name, "business_key": business_key},
        )
        return Resolution(in_effect.surrogate_key, "historical")


def _same(left: Any, right: Any) -> bool:
    """Compare values in their JSON form so stored and fresh values agree."""
    return _JSON_VALUES.dump_python(left, mode="json") == _JSON_VALUES.dump_python(right, mode="json")
