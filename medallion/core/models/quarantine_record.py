"""
QuarantineRecord model representing raw rows the normalizer rejected.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator


class QuarantineRecord(BaseModel):
    """
    Rejected Bronze row with per-field error context.

    Attributes:
        batch_id: Batch the row belonged to
        source_id: Source of the rejected row
        sequence: Sequence of the raw record in its batch
        raw_payload: Original data before normalization
        failed_fields: Fields that failed
        error_messages: Corresponding error messages
        quarantined_at: When quarantined
    """

    batch_id: str
    source_id: str
    sequence: int
    raw_payload: dict[str, Any]
    failed_fields: list[str] = Field(..., min_length=1)
    error_messages: list[str] = Field(..., min_length=1)
    quarantined_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("error_messages")
    @classmethod
    def check_arrays_same_length(cls, v, info):
        """Validate that failed_fields and error_messages have the same length."""
        failed_fields = info.data.get("failed_fields", [])
        if len(v) != len(failed_fields):
            raise ValueError(
                f"error_messages length ({len(v)}) must match failed_fields length ({len(failed_fields)})"
            )
        return v
