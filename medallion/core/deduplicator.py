"""
Deterministic deduplication of canonical records by business key.

Replaces a ROW_NUMBER() OVER (PARTITION BY key ORDER BY load_ts DESC)
window query with a plain grouping pass, so it can run without a database.
"""

from collections.abc import Callable, Iterable
from typing import Generic, TypeVar

from medallion.core.models import CanonicalRecord

T = TypeVar("T")


class DedupResult(Generic[T]):
    """Winners (one per key, sorted by key) and the losers they displaced."""

    __slots__ = ("winners", "losers")

    def __init__(self, winners: list[T], losers: dict[str, list[T]]):
        self.winners = winners
        self.losers = losers

    @property
    def loser_count(self) -> int:
        return sum(len(group) for group in self.losers.values())

    @property
    def duplicate_keys(self) -> list[str]:
        return sorted(self.losers)


class Deduplicator(Generic[T]):
    """
    Keeps exactly one record per business key.

    The winner is the record with the highest sort key. The default sort
    key for CanonicalRecord is (load_ts, batch_id, sequence, checksum),
    which is a total order within and across batches, so the choice does
    not depend on input order.
    """

    def __init__(
        self,
        key: Callable[[T], str] = lambda r: r.business_key,
        order: Callable[[T], tuple] = lambda r: r.sort_key(),
    ):
        self.key = key
        self.order = order

    def deduplicate(self, records: Iterable[T]) -> DedupResult[T]:
        groups: dict[str, list[T]] = {}
        for record in records:
            groups.setdefault(self.key(record), []).append(record)

        winners: list[T] = []
        losers: dict[str, list[T]] = {}
        for business_key in sorted(groups):
            ranked = sorted(groups[business_key], key=self.order, reverse=True)
            winners.append(ranked[0])
            if len(ranked) > 1:
                losers[business_key] = ranked[1:]

        return DedupResult(winners, losers)


def deduplicate(records: Iterable[CanonicalRecord]) -> DedupResult[CanonicalRecord]:
    """Deduplicate canonical records by business key."""
    return Deduplicator().deduplicate(records)
