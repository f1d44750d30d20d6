"""
Star schema declaration: field typing for Silver plus dimension and fact
mappings for Gold.
"""

from typing import Literal

from pydantic import BaseModel, Field, model_validator

FieldType = Literal["text", "integer", "decimal", "float", "boolean", "date", "timestamp"]
CaseDirective = Literal["upper", "lower", "title", "none"]


class FieldSpec(BaseModel):
    """
    Target type and parse directives for one payload field.

    Attributes:
        name: Payload field name
        type: Target type
        required: Missing/blank values are an error when True
        trim: Strip surrounding whitespace from text input before parsing
        case: Case folding applied to text fields
        format: strptime format for date/timestamp fields (ISO-8601 if None)
        min: Inclusive lower bound for numeric fields
        max: Inclusive upper bound for numeric fields
        pattern: Regex a text field must fully match
    """

    name: str = Field(..., min_length=1)
    type: FieldType = "text"
    required: bool = False
    trim: bool = True
    case: CaseDirective = "none"
    format: str | None = None
    min: float | None = None
    max: float | None = None
    pattern: str | None = None

    @model_validator(mode="after")
    def check_directives(self) -> "FieldSpec":
        numeric = self.type in ("integer", "decimal", "float")
        if (self.min is not None or self.max is not None) and not numeric:
            raise ValueError(f"min/max only apply to numeric fields ({self.name})")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"min exceeds max for field {self.name}")
        if self.format is not None and self.type not in ("date", "timestamp"):
            raise ValueError(f"format only applies to date/timestamp fields ({self.name})")
        if self.pattern is not None and self.type != "text":
            raise ValueError(f"pattern only applies to text fields ({self.name})")
        if self.case != "none" and self.type != "text":
            raise ValueError(f"case only applies to text fields ({self.name})")
        return self


class DimensionSpec(BaseModel):
    """
    Mapping from canonical fields to one dimension.

    Attributes:
        name: Dimension name
        business_key: Canonical field holding the dimension's natural key
        attributes: Canonical fields copied onto the dimension row
        scd_tracked: Attributes whose change opens a new SCD type-2 version;
            the remaining attributes are overwritten in place
        lookup_only: Never allocate keys; unseen business keys are integrity errors
    """

    name: str = Field(..., min_length=1)
    business_key: str = Field(..., min_length=1)
    attributes: list[str] = Field(default_factory=list)
    scd_tracked: list[str] = Field(default_factory=list)
    lookup_only: bool = False

    @model_validator(mode="after")
    def check_tracked_subset(self) -> "DimensionSpec":
        unknown = set(self.scd_tracked) - set(self.attributes)
        if unknown:
            raise ValueError(
                f"scd_tracked attributes {sorted(unknown)} are not attributes of {self.name}"
            )
        return self

    @property
    def is_scd(self) -> bool:
        return bool(self.scd_tracked)


class FactSpec(BaseModel):
    """Fact table mapping: measures and degenerate dimensions."""

    name: str = Field(..., min_length=1)
    measures: list[str] = Field(..., min_length=1)
    degenerate: list[str] = Field(default_factory=list)


class StarSchema(BaseModel):
    """
    Complete declaration of one domain's Silver shape and Gold star schema.

    Attributes:
        domain: Logical domain (e.g. "sales")
        business_key: Field identifying a canonical record within the domain
        load_timestamp: Timestamp field the deduplicator orders by;
            the raw record's ingestion time is used when None
        fields: Field specs for normalization
        dimensions: Dimension mappings
        fact: Fact mapping
    """

    domain: str = Field(..., min_length=1)
    business_key: str = Field(..., min_length=1)
    load_timestamp: str | None = None
    fields: list[FieldSpec] = Field(..., min_length=1)
    dimensions: list[DimensionSpec] = Field(default_factory=list)
    fact: FactSpec

    @model_validator(mode="after")
    def check_references(self) -> "StarSchema":
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError("field names must be unique")
        declared = set(names)

        key_spec = self.field(self.business_key)
        if key_spec is None:
            raise ValueError(f"business_key '{self.business_key}' is not a declared field")
        if not key_spec.required:
            raise ValueError(f"business_key '{self.business_key}' must be required")

        if self.load_timestamp is not None:
            ts_spec = self.field(self.load_timestamp)
            if ts_spec is None or ts_spec.type != "timestamp" or not ts_spec.required:
                raise ValueError(
                    f"load_timestamp '{self.load_timestamp}' must be a required timestamp field"
                )

        dim_names = [d.name for d in self.dimensions]
        if len(dim_names) != len(set(dim_names)):
            raise ValueError("dimension names must be unique")
        for dim in self.dimensions:
            missing = {dim.business_key, *dim.attributes} - declared
            if missing:
                raise ValueError(f"dimension {dim.name} references undeclared fields {sorted(missing)}")
            if not self.field(dim.business_key).required:
                raise ValueError(f"dimension {dim.name} business key '{dim.business_key}' must be required")

        missing = set(self.fact.measures) | set(self.fact.degenerate)
        missing -= declared
        if missing:
            raise ValueError(f"fact {self.fact.name} references undeclared fields {sorted(missing)}")
        for measure in self.fact.measures:
            if self.field(measure).type not in ("integer", "decimal", "float"):
                raise ValueError(f"measure '{measure}' must be numeric")
        return self

    def field(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def dimension(self, name: str) -> DimensionSpec:
        for dim in self.dimensions:
            if dim.name == name:
                return dim
        raise KeyError(name)
