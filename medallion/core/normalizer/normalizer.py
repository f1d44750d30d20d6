"""
Record normalizer: turns Bronze RawRecords into Silver CanonicalRecords.

The normalizer builds one parser per field from the star schema, applies
them to a raw payload and collects every field failure into a single
ValidationError. It never fills in a value on the caller's behalf.
"""

from datetime import date, datetime
from typing import Any

from medallion.core.errors import FieldError, SchemaMismatch, ValidationError
from medallion.core.models import CanonicalRecord, RawRecord
from medallion.core.schema import FieldSpec, StarSchema

from .base_parser import BaseParser, ParseFailure
from .parsers import (
    BooleanParser,
    DateParser,
    DecimalParser,
    FloatParser,
    IntegerParser,
    TextParser,
    TimestampParser,
)


def key_to_str(value: Any) -> str:
    """Render a typed business key value as its canonical string form."""
    if isinstance(value, datetime | date):
        return value.isoformat()
    return str(value)


class RecordNormalizer:
    """
    Applies a StarSchema's field specs to raw records.

    Usage:
        normalizer = RecordNormalizer(schema)
        canonical, rejected = normalizer.normalize_batch(raw_records)
    """

    PARSER_REGISTRY: dict[str, type[BaseParser]] = {
        "text": TextParser,
        "integer": IntegerParser,
        "decimal": DecimalParser,
        "float": FloatParser,
        "boolean": BooleanParser,
        "date": DateParser,
        "timestamp": TimestampParser,
    }

    def __init__(self, schema: StarSchema):
        self.schema = schema
        self.parsers: list[tuple[FieldSpec, BaseParser]] = []
        self._build_parsers()

    def _build_parsers(self) -> None:
        for spec in self.schema.fields:
            parser_class = self.PARSER_REGISTRY.get(spec.type)
            if not parser_class:
                raise ValueError(f"Unknown field type: {spec.type}")
            self.parsers.append((spec, parser_class(spec)))

    def normalize(self, raw: RawRecord) -> CanonicalRecord:
        """
        Normalize a single raw record.

        Args:
            raw: Bronze record to normalize

        Returns:
            CanonicalRecord with typed values for every declared field

        Raises:
            ValidationError: Listing every field that failed and why
        """
        values: dict[str, Any] = {}
        errors: list[FieldError] = []

        for spec, parser in self.parsers:
            present = spec.name in raw.payload
            value = raw.payload.get(spec.name)

            if _is_blank(value):
                if spec.required:
                    reason = "is blank" if present else "is missing from record"
                    errors.append(FieldError(spec.name, "missing", f"Required field {reason}"))
                else:
                    values[spec.name] = None
                continue

            try:
                values[spec.name] = parser.parse(value)
            except ParseFailure as e:
                errors.append(FieldError(spec.name, e.reason, e.message))

        if errors:
            raise ValidationError(errors, record_ref=f"{raw.batch_id}#{raw.sequence}")

        if self.schema.load_timestamp:
            load_ts = values[self.schema.load_timestamp]
        else:
            load_ts = raw.ingested_at

        return CanonicalRecord(
            batch_id=raw.batch_id,
            source_id=raw.source_id,
            business_key=key_to_str(values[self.schema.business_key]),
            load_ts=load_ts,
            sequence=raw.sequence,
            values=values,
        )

    def normalize_batch(
        self, records: list[RawRecord]
    ) -> tuple[list[CanonicalRecord], list[tuple[RawRecord, ValidationError]]]:
        """
        Normalize a batch, separating successes from failures.

        Returns:
            Tuple of (canonical records, [(raw record, error), ...])
        """
        normalized = []
        rejected = []
        for raw in records:
            try:
                normalized.append(self.normalize(raw))
            except ValidationError as e:
                rejected.append((raw, e))
        return normalized, rejected

    def revive(self, record: CanonicalRecord) -> CanonicalRecord:
        """
        Restore typed values on a record read back from storage.

        Raises:
            SchemaMismatch: If the stored values no longer fit the schema
        """
        values: dict[str, Any] = {}
        for spec, parser in self.parsers:
            if spec.name not in record.values:
                raise SchemaMismatch(
                    f"Stored record {record.business_key} in batch {record.batch_id} "
                    f"has no field '{spec.name}'"
                )
            value = record.values[spec.name]
            if value is None:
                if spec.required:
                    raise SchemaMismatch(f"Stored record {record.business_key} has null required field '{spec.name}'")
                values[spec.name] = None
                continue
            try:
                values[spec.name] = parser.revive(value)
            except ParseFailure as e:
                raise SchemaMismatch(
                    f"Stored record {record.business_key} field '{spec.name}': {e.message}"
                ) from e

        return record.model_copy(update={"values": values})


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")
