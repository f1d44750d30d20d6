"""
Record normalization: strict per-field parsing of raw payloads.
"""

from .base_parser import BaseParser, ParseFailure
from .normalizer import RecordNormalizer, key_to_str
from .parsers import (
    BooleanParser,
    DateParser,
    DecimalParser,
    FloatParser,
    IntegerParser,
    TextParser,
    TimestampParser,
)

__all__ = [
    "BaseParser",
    "ParseFailure",
    "RecordNormalizer",
    "key_to_str",
    "TextParser",
    "IntegerParser",
    "DecimalParser",
    "FloatParser",
    "BooleanParser",
    "DateParser",
    "TimestampParser",
]
