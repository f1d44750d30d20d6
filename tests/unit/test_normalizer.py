"""
Unit tests for field parsers and the record normalizer.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from medallion.core.errors import SchemaMismatch, ValidationError
from medallion.core.models import CanonicalRecord, RawRecord
from medallion.core.normalizer import (
    BooleanParser,
    DateParser,
    DecimalParser,
    FloatParser,
    IntegerParser,
    ParseFailure,
    RecordNormalizer,
    TextParser,
    TimestampParser,
    key_to_str,
)
from medallion.core.schema import FieldSpec

T0 = datetime(2025, 3, 1, 6, 0, tzinfo=timezone.utc)


def raw(payload, sequence=0, batch_id="orders_001"):
    return RawRecord(batch_id=batch_id, source_id="orders_csv", ingested_at=T0, sequence=sequence, payload=payload)


class TestTextParser:
    """Tests for TextParser"""

    def test_trims_and_folds_case(self):
        """Test trimming and upper-casing"""
        parser = TextParser(FieldSpec(name="customer_id", type="text", case="upper"))

        assert parser.parse("  cust-007 ") == "CUST-007"

    def test_title_case(self):
        """Test title casing"""
        parser = TextParser(FieldSpec(name="name", type="text", case="title"))

        assert parser.parse("ada park") == "Ada Park"

    def test_trim_disabled(self):
        """Test that trim=False keeps surrounding whitespace"""
        parser = TextParser(FieldSpec(name="code", type="text", trim=False))

        assert parser.parse(" x ") == " x "

    def test_integer_rendered_as_text(self):
        """Test that numeric identifiers survive as text"""
        parser = TextParser(FieldSpec(name="code", type="text"))

        assert parser.parse(42) == "42"

    def test_pattern_mismatch(self):
        """Test pattern violations report reason 'pattern'"""
        parser = TextParser(FieldSpec(name="customer_id", type="text", pattern=r"CUST-\d{3}"))

        with pytest.raises(ParseFailure) as exc_info:
            parser.parse("C-1")

        assert exc_info.value.reason == "pattern"

    @pytest.mark.parametrize("value", [True, 1.5, ["a"], {"a": 1}])
    def test_rejects_non_text(self, value):
        """Test that booleans, floats and containers are not text"""
        parser = TextParser(FieldSpec(name="code", type="text"))

        with pytest.raises(ParseFailure):
            parser.parse(value)


class TestIntegerParser:
    """Tests for IntegerParser"""

    @given(st.integers(min_value=-10**12, max_value=10**12))
    def test_accepts_integers_and_their_text(self, value):
        """Test that ints and their decimal strings parse to the same int"""
        parser = IntegerParser(FieldSpec(name="n", type="integer"))

        assert parser.parse(value) == value
        assert parser.parse(f" {value} ") == value

    @pytest.mark.parametrize("value", ["2.5", "two", 2.0, True, "1e3"])
    def test_rejects_non_integers(self, value):
        """Test that fractions, words, floats and booleans are rejected"""
        parser = IntegerParser(FieldSpec(name="n", type="integer"))

        with pytest.raises(ParseFailure) as exc_info:
            parser.parse(value)

        assert exc_info.value.reason == "type"

    def test_range_enforced(self):
        """Test min/max bounds"""
        parser = IntegerParser(FieldSpec(name="quantity", type="integer", min=1, max=10))

        assert parser.parse("10") == 10
        with pytest.raises(ParseFailure) as exc_info:
            parser.parse("0")
        assert exc_info.value.reason == "range"
        with pytest.raises(ParseFailure):
            parser.parse(11)


class TestDecimalParser:
    """Tests for DecimalParser"""

    def test_exact_text(self):
        """Test that decimal text keeps its exact value"""
        parser = DecimalParser(FieldSpec(name="revenue", type="decimal"))

        assert parser.parse("59.90") == Decimal("59.90")

    def test_float_uses_shortest_repr(self):
        """Test that 0.1 does not become 0.1000000000000000055..."""
        parser = DecimalParser(FieldSpec(name="revenue", type="decimal"))

        assert parser.parse(0.1) == Decimal("0.1")

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "abc", True])
    def test_rejects_non_finite_and_garbage(self, value):
        """Test that NaN, infinities, words and booleans are rejected"""
        parser = DecimalParser(FieldSpec(name="revenue", type="decimal"))

        with pytest.raises(ParseFailure):
            parser.parse(value)

    def test_minimum_bound(self):
        """Test decimal bounds compare exactly"""
        parser = DecimalParser(FieldSpec(name="revenue", type="decimal", min=0))

        assert parser.parse("0.00") == Decimal("0")
        with pytest.raises(ParseFailure):
            parser.parse("-0.01")


class TestFloatParser:
    """Tests for FloatParser"""

    @given(st.floats(allow_nan=False, allow_infinity=False))
    def test_finite_floats_accepted(self, value):
        """Test that any finite float parses to itself"""
        parser = FloatParser(FieldSpec(name="x", type="float"))

        assert parser.parse(value) == value

    @pytest.mark.parametrize("value", ["nan", "inf", float("inf")])
    def test_non_finite_rejected(self, value):
        """Test NaN and infinities are rejected"""
        parser = FloatParser(FieldSpec(name="x", type="float"))

        with pytest.raises(ParseFailure):
            parser.parse(value)


class TestBooleanParser:
    """Tests for BooleanParser"""

    @pytest.mark.parametrize("value,expected", [
        (True, True), ("true", True), ("YES", True), (1, True),
        (False, False), ("False", False), ("n", False), (0, False),
    ])
    def test_accepted_spellings(self, value, expected):
        """Test the accepted boolean spellings"""
        parser = BooleanParser(FieldSpec(name="flag", type="boolean"))

        assert parser.parse(value) is expected

    @pytest.mark.parametrize("value", ["maybe", 2, 1.0])
    def test_other_values_rejected(self, value):
        """Test that ambiguous values are rejected"""
        parser = BooleanParser(FieldSpec(name="flag", type="boolean"))

        with pytest.raises(ParseFailure):
            parser.parse(value)


class TestDateAndTimestampParsers:
    """Tests for DateParser and TimestampParser"""

    def test_iso_date(self):
        """Test ISO dates"""
        parser = DateParser(FieldSpec(name="d", type="date"))

        assert parser.parse("2025-03-01") == date(2025, 3, 1)

    def test_date_with_format(self):
        """Test dates with an explicit strptime format"""
        parser = DateParser(FieldSpec(name="d", type="date", format="%d/%m/%Y"))

        assert parser.parse("01/03/2025") == date(2025, 3, 1)

    def test_date_rejects_datetime(self):
        """Test that a datetime is not silently truncated"""
        parser = DateParser(FieldSpec(name="d", type="date"))

        with pytest.raises(ParseFailure):
            parser.parse(T0)

    def test_date_revive_uses_iso_regardless_of_format(self):
        """Test that stored dates come back from their ISO form"""
        parser = DateParser(FieldSpec(name="d", type="date", format="%d/%m/%Y"))

        assert parser.revive("2025-03-01") == date(2025, 3, 1)

    def test_naive_timestamp_taken_as_utc(self):
        """Test that timestamps without offset are UTC"""
        parser = TimestampParser(FieldSpec(name="ts", type="timestamp"))

        assert parser.parse("2025-03-01T06:00:00") == T0

    def test_offset_timestamp_kept(self):
        """Test that explicit offsets are respected"""
        parser = TimestampParser(FieldSpec(name="ts", type="timestamp"))

        parsed = parser.parse("2025-03-01T07:00:00+01:00")

        assert parsed == T0

    def test_invalid_timestamp(self):
        """Test garbage timestamps are rejected"""
        parser = TimestampParser(FieldSpec(name="ts", type="timestamp"))

        with pytest.raises(ParseFailure):
            parser.parse("yesterday")


class TestRecordNormalizer:
    """Tests for RecordNormalizer"""

    def test_normalize_valid_record(self, sales_schema, make_order):
        """Test a clean payload becomes a typed canonical record"""
        normalizer = RecordNormalizer(sales_schema)

        record = normalizer.normalize(raw(make_order(order_id=" 17 ", customer_id=" cust-007 ")))

        assert record.business_key == "17"
        assert record.values["order_id"] == 17
        assert record.values["customer_id"] == "CUST-007"
        assert record.values["customer_name"] == "Ada Park"
        assert record.values["revenue"] == Decimal("59.90")
        assert record.values["order_date"] == date(2025, 3, 1)
        assert record.load_ts == datetime(2025, 3, 1, 5, 0, tzinfo=timezone.utc)
        assert record.sequence == 0

    def test_all_field_errors_collected(self, sales_schema, make_order):
        """Test that every failing field is reported in one error"""
        normalizer = RecordNormalizer(sales_schema)
        payload = make_order(quantity="two", revenue="-5")
        del payload["customer_id"]

        with pytest.raises(ValidationError) as exc_info:
            normalizer.normalize(raw(payload, sequence=4))

        error = exc_info.value
        assert sorted(error.field_names) == ["customer_id", "quantity", "revenue"]
        reasons = {e.field_name: e.reason for e in error.field_errors}
        assert reasons == {"customer_id": "missing", "quantity": "type", "revenue": "range"}
        assert error.record_ref == "orders_001#4"

    def test_blank_required_field_is_missing(self, sales_schema, make_order):
        """Test that whitespace-only required values count as missing"""
        normalizer = RecordNormalizer(sales_schema)

        with pytest.raises(ValidationError) as exc_info:
            normalizer.normalize(raw(make_order(customer_name="   ")))

        assert exc_info.value.field_errors[0].reason == "missing"

    def test_blank_optional_field_becomes_none(self, sales_schema, make_order):
        """Test that optional blanks normalize to None, not a default"""
        normalizer = RecordNormalizer(sales_schema)

        record = normalizer.normalize(raw(make_order(city="")))

        assert record.values["city"] is None

    def test_undeclared_payload_fields_dropped(self, sales_schema, make_order):
        """Test that only declared fields reach Silver"""
        normalizer = RecordNormalizer(sales_schema)

        record = normalizer.normalize(raw(make_order(internal_note="ignore me")))

        assert "internal_note" not in record.values

    def test_ingestion_time_used_without_load_timestamp(self, make_order):
        """Test fallback to ingested_at when no load timestamp field is declared"""
        from medallion.core.schema import StarSchemaBuilder

        schema = (
            StarSchemaBuilder("sales", "order_id")
            .add_field("order_id", "integer", required=True)
            .add_field("quantity", "integer", required=True)
            .set_fact("sales", measures=["quantity"])
            .build()
        )

        record = RecordNormalizer(schema).normalize(raw({"order_id": "1", "quantity": "2"}))

        assert record.load_ts == T0

    def test_normalize_batch_splits_results(self, sales_schema, make_order):
        """Test batch normalization separates successes and failures"""
        normalizer = RecordNormalizer(sales_schema)
        records = [
            raw(make_order(order_id=1), sequence=0),
            raw(make_order(order_id="x"), sequence=1),
            raw(make_order(order_id=3), sequence=2),
        ]

        normalized, rejected = normalizer.normalize_batch(records)

        assert [r.business_key for r in normalized] == ["1", "3"]
        assert len(rejected) == 1
        assert rejected[0][0].sequence == 1
        assert rejected[0][1].field_names == ["order_id"]

    def test_revive_restores_types_after_json_round_trip(self, sales_schema, make_order):
        """Test that Silver rows read back from JSON get their types back"""
        normalizer = RecordNormalizer(sales_schema)
        record = normalizer.normalize(raw(make_order()))

        stored = CanonicalRecord.model_validate(record.model_dump(mode="json"))
        revived = normalizer.revive(stored)

        assert stored.values["revenue"] == "59.90"
        assert revived.values == record.values
        assert revived.checksum == record.checksum

    def test_revive_rejects_incompatible_rows(self, sales_schema, make_order):
        """Test that rows which no longer fit the schema raise SchemaMismatch"""
        normalizer = RecordNormalizer(sales_schema)
        record = normalizer.normalize(raw(make_order()))
        broken = record.model_copy(update={"values": {**record.values, "quantity": "lots"}})

        with pytest.raises(SchemaMismatch, match="quantity"):
            normalizer.revive(broken)

    def test_revive_rejects_missing_field(self, sales_schema, make_order):
        """Test that a stored row missing a declared field is a mismatch"""
        normalizer = RecordNormalizer(sales_schema)
        record = normalizer.normalize(raw(make_order()))
        values = dict(record.values)
        del values["category"]

        with pytest.raises(SchemaMismatch, match="category"):
            normalizer.revive(record.model_copy(update={"values": values}))


def test_key_to_str():
    """Test canonical string forms of business keys"""
    assert key_to_str(17) == "17"
    assert key_to_str(date(2025, 3, 1)) == "2025-03-01"
    assert key_to_str("CUST-007") == "CUST-007"
