"""
FactRow model representing one business event in Gold.
"""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


class FactRow(BaseModel):
    """
    A fact references dimensions only by surrogate key.

    Attributes:
        fact: Fact table name (e.g. "sales")
        batch_id: Lineage batch id
        business_key: Business key of the canonical record it came from
        dimension_keys: Dimension name -> surrogate key
        measures: Numeric measures (quantity, revenue, ...)
        degenerate: Degenerate dimension values carried on the fact
    """

    fact: str = Field(..., min_length=1)
    batch_id: str = Field(..., min_length=1)
    business_key: str = Field(..., min_length=1)
    dimension_keys: dict[str, int] = Field(default_factory=dict)
    measures: dict[str, Decimal | int | float | None] = Field(default_factory=dict)
    degenerate: dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True
