"""
Star schema configuration management.

Loads star schemas from YAML configuration files and provides a builder
for assembling them in code.
"""

from pathlib import Path
from typing import Any

import pydantic
import yaml

from medallion.core.errors import SchemaConfigError

from .star_schema import DimensionSpec, FactSpec, FieldSpec, StarSchema


class StarSchemaLoader:
    """
    Loads a StarSchema from a YAML configuration file.

    Expected YAML format:
    ```yaml
    domain: sales
    business_key: order_id
    load_timestamp: load_ts
    fields:
      order_id: {type: integer, required: true}
      customer_id: {type: text, required: true, case: upper}
      load_ts: {type: timestamp, required: true}
      quantity: {type: integer, required: true, min: 1}
    dimensions:
      customer:
        business_key: customer_id
        attributes: [customer_name, city]
        scd_tracked: [city]
    fact:
      name: sales
      measures: [quantity]
      degenerate: [order_id]
    ```
    """

    def __init__(self, config_path: str | Path):
        """
        Initialize the schema loader.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(f"Schema configuration file not found: {config_path}")

    def load(self) -> StarSchema:
        """
        Load and validate the star schema.

        Raises:
            SchemaConfigError: If YAML is invalid or the schema is inconsistent
        """
        with open(self.config_path) as f:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise SchemaConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        return parse_star_schema(config)


def parse_star_schema(config: Any) -> StarSchema:
    """
    Build a StarSchema from an already-parsed mapping.

    Fields and dimensions may be given either as a mapping keyed by name
    or as a list of entries carrying ``name``.
    """
    if not isinstance(config, dict):
        raise SchemaConfigError("Schema configuration must be a mapping")
    for section in ("domain", "business_key", "fields", "fact"):
        if section not in config:
            raise SchemaConfigError(f"Schema configuration must contain '{section}' section")

    try:
        return StarSchema(
            domain=config["domain"],
            business_key=config["business_key"],
            load_timestamp=config.get("load_timestamp"),
            fields=_named_entries(config["fields"], "fields"),
            dimensions=_named_entries(config.get("dimensions") or {}, "dimensions"),
            fact=config["fact"],
        )
    except pydantic.ValidationError as e:
        raise SchemaConfigError(f"Invalid star schema: {e}") from e


def _named_entries(section: Any, section_name: str) -> list[dict[str, Any]]:
    if isinstance(section, list):
        return section
    if not isinstance(section, dict):
        raise SchemaConfigError(f"'{section_name}' must be a mapping or a list")

    entries = []
    for name, body in section.items():
        body = body or {}
        if not isinstance(body, dict):
            raise SchemaConfigError(f"Entry '{name}' in '{section_name}' must be a mapping")
        entries.append({"name": name, **body})
    return entries


class StarSchemaBuilder:
    """
    Programmatically build a star schema (for testing or dynamic domains).
    """

    def __init__(self, domain: str, business_key: str, load_timestamp: str | None = None):
        self.domain = domain
        self.business_key = business_key
        self.load_timestamp = load_timestamp
        self.fields: list[FieldSpec] = []
        self.dimensions: list[DimensionSpec] = []
        self.fact: FactSpec | None = None

    def add_field(self, name: str, field_type: str = "text", **directives: Any) -> "StarSchemaBuilder":
        """Add a field spec (directives: required, trim, case, format, min, max, pattern)."""
        self.fields.append(FieldSpec(name=name, type=field_type, **directives))
        return self

    def add_dimension(
        self,
        name: str,
        business_key: str,
        attributes: list[str] | None = None,
        scd_tracked: list[str] | None = None,
        lookup_only: bool = False,
    ) -> "StarSchemaBuilder":
        """Add a dimension mapping."""
        self.dimensions.append(DimensionSpec(
            name=name,
            business_key=business_key,
            attributes=attributes or [],
            scd_tracked=scd_tracked or [],
            lookup_only=lookup_only,
        ))
        return self

    def set_fact(self, name: str, measures: list[str], degenerate: list[str] | None = None) -> "StarSchemaBuilder":
        """Set the fact mapping."""
        self.fact = FactSpec(name=name, measures=measures, degenerate=degenerate or [])
        return self

    def build(self) -> StarSchema:
        """Build and validate the star schema."""
        if self.fact is None:
            raise SchemaConfigError("A fact mapping is required; call set_fact() first")
        try:
            return StarSchema(
                domain=self.domain,
                business_key=self.business_key,
                load_timestamp=self.load_timestamp,
                fields=self.fields,
                dimensions=self.dimensions,
                fact=self.fact,
            )
        except pydantic.ValidationError as e:
            raise SchemaConfigError(f"Invalid star schema: {e}") from e
