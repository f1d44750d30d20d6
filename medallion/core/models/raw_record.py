"""
RawRecord model representing one ingested Bronze row (immutable, append-only).
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RawRecord(BaseModel):
    """
    A loosely-typed field mapping plus ingestion metadata.

    Attributes:
        batch_id: Batch that ingested this row
        source_id: Source identifier (e.g. "orders_csv")
        ingested_at: Ingestion timestamp (timezone-aware)
        file_name: Originating file name, if any
        sequence: Position in the originating input, unique within the batch
        payload: Field values exactly as received
    """

    batch_id: str = Field(..., min_length=1)
    source_id: str = Field(..., min_length=1)
    ingested_at: datetime
    file_name: str | None = None
    sequence: int = Field(..., ge=0)
    payload: dict[str, Any]

    @field_validator("ingested_at")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        """Naive ingestion timestamps are ambiguous across loads."""
        if v.tzinfo is None:
            raise ValueError("ingested_at must be timezone-aware")
        return v

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "batch_id": "orders_20250301_001",
                "source_id": "orders_csv",
                "ingested_at": "2025-03-01T06:00:00Z",
                "file_name": "orders_2025_03_01.csv",
                "sequence": 0,
                "payload": {
                    "order_id": "1001",
                    "customer_id": " cust-007 ",
                    "quantity": "2",
                    "revenue": "59.90"
                }
            }
        }
