"""
Batch model representing one tracked unit of ingested data.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from .layers import BatchStatus, Layer


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LayerTransition(BaseModel):
    """Lineage entry for one layer-to-layer step of a batch."""

    source_layer: Layer
    target_layer: Layer
    rows_read: int = Field(0, ge=0)
    rows_written: int = Field(0, ge=0)
    attempt: int = Field(1, ge=1)
    recorded_at: datetime = Field(default_factory=utcnow)


class Batch(BaseModel):
    """
    Ledger entry owned by the BatchTracker.

    Attributes:
        batch_id: Lineage id referenced by every row the batch produces
        source_id: Source the batch was ingested from
        ingested_at: Ingestion timestamp; also the SCD as-of time
        file_name: Originating file name, if any
        status: pending, in_progress, completed or failed
        attempts: Number of times the batch entered in_progress
        checkpoint: Last layer durably written during the current attempt
        failure_reason: Reason recorded by the last mark_failed
        report: Summary of the last completed run
        lineage: Layer transitions recorded for this batch
        owner: Token of the run currently holding the batch, None when unclaimed
        lease_expires_at: When the owner's claim lapses unless renewed
    """

    batch_id: str = Field(..., min_length=1, max_length=255)
    source_id: str = Field(..., min_length=1)
    ingested_at: datetime = Field(default_factory=utcnow)
    file_name: str | None = None
    status: BatchStatus = "pending"
    attempts: int = Field(0, ge=0)
    checkpoint: Layer | None = None
    failure_reason: str | None = None
    report: dict[str, Any] | None = None
    lineage: list[LayerTransition] = Field(default_factory=list)
    owner: str | None = None
    lease_expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def lease_held(self, now: datetime) -> bool:
        """True while a runner owns the batch and its lease has not lapsed."""
        if self.owner is None:
            return False
        return self.lease_expires_at is None or self.lease_expires_at > now

    class Config:
        json_schema_extra = {
            "example": {
                "batch_id": "orders_20250301_001",
                "source_id": "orders_csv",
                "ingested_at": "2025-03-01T06:00:00Z",
                "file_name": "orders_2025_03_01.csv",
                "status": "completed",
                "attempts": 1,
                "checkpoint": "gold"
            }
        }
