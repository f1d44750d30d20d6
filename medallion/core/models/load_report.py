"""
LoadReport model summarising one Layer Loader run (ephemeral).
"""

from pydantic import BaseModel, Field

from .layers import Layer


class RecordError(BaseModel):
    """A per-record error collected during a run."""

    error_type: str
    message: str
    business_key: str | None = None
    sequence: int | None = None
    fields: list[str] = Field(default_factory=list)


class LoadReport(BaseModel):
    """
    Per-batch counts reported by the Layer Loader.

    Attributes:
        read: Bronze records read
        normalized: Records that normalized successfully
        deduplicated_out: Losing duplicates removed
        newly_keyed: Surrogate keys allocated for unseen business keys
        scd_versioned: New SCD versions opened
        written: Fact rows written to Gold
        failed: Records rejected (validation or integrity)
        errors: Details of each rejected record
        duplicate_keys: Business keys that had duplicates
        resumed_from: Checkpoint the run resumed from, if any
    """

    batch_id: str
    read: int = 0
    normalized: int = 0
    deduplicated_out: int = 0
    newly_keyed: int = 0
    scd_versioned: int = 0
    written: int = 0
    failed: int = 0
    errors: list[RecordError] = Field(default_factory=list)
    duplicate_keys: list[str] = Field(default_factory=list)
    resumed_from: Layer | None = None

    def add_error(self, error: RecordError) -> None:
        self.errors.append(error)
        self.failed += 1

    def counts(self) -> dict[str, int]:
        return {
            "read": self.read,
            "normalized": self.normalized,
            "deduplicated_out": self.deduplicated_out,
            "newly_keyed": self.newly_keyed,
            "scd_versioned": self.scd_versioned,
            "written": self.written,
            "failed": self.failed,
        }
