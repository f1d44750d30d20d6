"""
DimensionRow model representing one version of a business entity in Gold.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator


class DimensionRow(BaseModel):
    """
    One versioned instance of a dimension member.

    Attributes:
        dimension: Dimension name (customer, product, ...)
        surrogate_key: System-generated key, never reused
        business_key: Natural key the row maps to
        attributes: Attribute values of this version
        effective_start: Start of the version's validity (inclusive)
        effective_end: End of validity (exclusive), None while current
        is_current: Whether this is the open version
        batch_id: Batch that created this version
        version: 1 for the first version of a member, incremented per SCD change
    """

    dimension: str = Field(..., min_length=1)
    surrogate_key: int = Field(..., gt=0)
    business_key: str = Field(..., min_length=1)
    attributes: dict[str, Any] = Field(default_factory=dict)
    effective_start: datetime
    effective_end: datetime | None = None
    is_current: bool = True
    batch_id: str | None = None
    version: int = Field(1, ge=1)

    @model_validator(mode="after")
    def check_interval(self) -> "DimensionRow":
        """An open interval is current; a closed one is not and never negative."""
        if self.effective_end is None and not self.is_current:
            raise ValueError("open-ended row must be current")
        if self.effective_end is not None:
            if self.is_current:
                raise ValueError("closed row cannot be current")
            if self.effective_end < self.effective_start:
                raise ValueError("effective_end precedes effective_start")
        return self

    def covers(self, moment: datetime) -> bool:
        """True when ``moment`` falls inside this version's interval."""
        if moment < self.effective_start:
            return False
        return self.effective_end is None or moment < self.effective_end

    class Config:
        json_schema_extra = {
            "example": {
                "dimension": "customer",
                "surrogate_key": 42,
                "business_key": "CUST-007",
                "attributes": {"customer_name": "Ada Park", "city": "Leeds"},
                "effective_start": "2025-03-01T06:00:00Z",
                "effective_end": None,
                "is_current": True,
                "batch_id": "orders_20250301_001",
                "version": 1
            }
        }
