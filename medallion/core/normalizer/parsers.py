"""
Strict field parsers for each supported field type.
"""

import math
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from .base_parser import BaseParser, ParseFailure

_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_TRUE_VALUES = ("true", "1", "yes", "y", "t")
_FALSE_VALUES = ("false", "0", "no", "n", "f")


class TextParser(BaseParser):
    """
    Text values with optional case folding and pattern check.

    Integers are accepted and rendered in decimal form so numeric
    identifiers survive JSON payloads.
    """

    def parse(self, value: Any) -> str:
        if isinstance(value, bool) or not isinstance(value, str | int):
            raise self.type_error(value)
        text = str(value)
        if self.spec.trim:
            text = text.strip()

        case = self.spec.case
        if case == "upper":
            text = text.upper()
        elif case == "lower":
            text = text.lower()
        elif case == "title":
            text = text.title()

        if self.spec.pattern is not None and not re.fullmatch(self.spec.pattern, text):
            raise ParseFailure("pattern", f"Value {text!r} does not match pattern {self.spec.pattern}")
        return text

    def revive(self, value: Any) -> str:
        if not isinstance(value, str):
            raise self.type_error(value)
        return value

    @property
    def field_type(self) -> str:
        return "text"


class _NumericParser(BaseParser):
    """Shared range checking for numeric parsers."""

    def check_range(self, number: Any) -> Any:
        spec = self.spec
        if spec.min is not None and number < self._bound(spec.min):
            raise ParseFailure("range", f"Value {number} is less than minimum {spec.min}")
        if spec.max is not None and number > self._bound(spec.max):
            raise ParseFailure("range", f"Value {number} exceeds maximum {spec.max}")
        return number

    def _bound(self, bound: float) -> Any:
        return bound


class IntegerParser(_NumericParser):
    """Integers from int or a plain decimal-digit string; no fractions, no floats."""

    def parse(self, value: Any) -> int:
        if isinstance(value, bool):
            raise self.type_error(value)
        if isinstance(value, int):
            return self.check_range(value)
        if isinstance(value, str):
            text = value.strip() if self.spec.trim else value
            if _INTEGER_RE.match(text):
                return self.check_range(int(text))
        raise self.type_error(value)

    @property
    def field_type(self) -> str:
        return "integer"


class DecimalParser(_NumericParser):
    """Exact decimals; floats go through their shortest repr."""

    def parse(self, value: Any) -> Decimal:
        if isinstance(value, bool):
            raise self.type_error(value)
        if isinstance(value, Decimal):
            number = value
        elif isinstance(value, int):
            number = Decimal(value)
        elif isinstance(value, float):
            number = Decimal(repr(value))
        elif isinstance(value, str):
            text = value.strip() if self.spec.trim else value
            try:
                number = Decimal(text)
            except InvalidOperation:
                raise self.type_error(value) from None
        else:
            raise self.type_error(value)

        if not number.is_finite():
            raise self.type_error(value, "value is not finite")
        return self.check_range(number)

    def _bound(self, bound: float) -> Decimal:
        return Decimal(repr(bound))

    @property
    def field_type(self) -> str:
        return "decimal"


class FloatParser(_NumericParser):
    """Finite floats."""

    def parse(self, value: Any) -> float:
        if isinstance(value, bool):
            raise self.type_error(value)
        if isinstance(value, int | float):
            number = float(value)
        elif isinstance(value, str):
            text = value.strip() if self.spec.trim else value
            try:
                number = float(text)
            except ValueError:
                raise self.type_error(value) from None
        else:
            raise self.type_error(value)

        if not math.isfinite(number):
            raise self.type_error(value, "value is not finite")
        return self.check_range(number)

    @property
    def field_type(self) -> str:
        return "float"


class BooleanParser(BaseParser):
    """Booleans from bool, 0/1 or a fixed set of words (avoids "False" -> True)."""

    def parse(self, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
        raise self.type_error(value)

    @property
    def field_type(self) -> str:
        return "boolean"


class DateParser(BaseParser):
    """Calendar dates using the field's format, or ISO-8601 when none is set."""

    def parse(self, value: Any) -> date:
        if isinstance(value, datetime):
            raise self.type_error(value, "expected a date without time")
        if isinstance(value, date):
            return value
        if not isinstance(value, str):
            raise self.type_error(value)
        return self._parse_text(value.strip() if self.spec.trim else value, self.spec.format)

    def revive(self, value: Any) -> date:
        if isinstance(value, date) and not isinstance(value, datetime):
            return value
        if not isinstance(value, str):
            raise self.type_error(value)
        return self._parse_text(value, None)

    def _parse_text(self, text: str, fmt: str | None) -> date:
        try:
            if fmt:
                return datetime.strptime(text, fmt).date()
            return date.fromisoformat(text)
        except ValueError as e:
            raise self.type_error(text, str(e)) from None

    @property
    def field_type(self) -> str:
        return "date"


class TimestampParser(BaseParser):
    """Timestamps; values without an offset are taken as UTC."""

    def parse(self, value: Any) -> datetime:
        if isinstance(value, datetime):
            return self._aware(value)
        if not isinstance(value, str):
            raise self.type_error(value)
        return self._parse_text(value.strip() if self.spec.trim else value, self.spec.format)

    def revive(self, value: Any) -> datetime:
        if isinstance(value, datetime):
            return self._aware(value)
        if not isinstance(value, str):
            raise self.type_error(value)
        return self._parse_text(value, None)

    def _parse_text(self, text: str, fmt: str | None) -> datetime:
        try:
            if fmt:
                parsed = datetime.strptime(text, fmt)
            else:
                parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise self.type_error(text, str(e)) from None
        return self._aware(parsed)

    @staticmethod
    def _aware(moment: datetime) -> datetime:
        if moment.tzinfo is None:
            return moment.replace(tzinfo=timezone.utc)
        return moment

    @property
    def field_type(self) -> str:
        return "timestamp"
