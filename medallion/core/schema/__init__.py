"""
Star schema declaration and configuration loading.
"""

from .schema_config import StarSchemaBuilder, StarSchemaLoader, parse_star_schema
from .star_schema import DimensionSpec, FactSpec, FieldSpec, StarSchema

__all__ = [
    "FieldSpec",
    "DimensionSpec",
    "FactSpec",
    "StarSchema",
    "StarSchemaLoader",
    "StarSchemaBuilder",
    "parse_star_schema",
]
