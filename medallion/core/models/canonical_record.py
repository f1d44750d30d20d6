"""
CanonicalRecord model representing a typed, validated Silver row.
"""

import hashlib
import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator


def values_checksum(values: dict[str, Any]) -> str:
    """MD5 of the canonical JSON form of a value mapping."""
    data_str = json.dumps(values, sort_keys=True, default=str)
    return hashlib.md5(data_str.encode()).hexdigest()


class CanonicalRecord(BaseModel):
    """
    Typed projection of a RawRecord, keyed by its domain business key.

    Exactly one CanonicalRecord survives per (business_key, batch_id)
    once the deduplicator has run.

    Attributes:
        batch_id: Batch that produced the record
        source_id: Source of the originating raw record
        business_key: String form of the domain key (e.g. order id)
        load_ts: Timestamp the deduplicator orders by
        sequence: Sequence of the originating raw record
        values: Typed field values
        checksum: Fingerprint of ``values``
    """

    batch_id: str = Field(..., min_length=1)
    source_id: str
    business_key: str = Field(..., min_length=1)
    load_ts: datetime
    sequence: int = Field(..., ge=0)
    values: dict[str, Any]
    checksum: str = ""

    @model_validator(mode="before")
    @classmethod
    def fill_checksum(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("checksum") and isinstance(data.get("values"), dict):
            data = {**data, "checksum": values_checksum(data["values"])}
        return data

    def sort_key(self) -> tuple:
        """Total order used to pick the winning duplicate (highest wins)."""
        return (self.load_ts, self.batch_id, self.sequence, self.checksum)

    class Config:
        frozen = True
