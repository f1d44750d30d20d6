"""
Base parser interface for all field types.

Every parser implements parse() for raw input and revive() for values
read back from storage in their JSON form.
"""

from abc import ABC, abstractmethod
from typing import Any

from medallion.core.schema import FieldSpec


class ParseFailure(Exception):
    """Raised when a single field value cannot be parsed."""

    def __init__(self, reason: str, message: str):
        self.reason = reason
        self.message = message
        super().__init__(message)


class BaseParser(ABC):
    """
    Abstract base class for field parsers.

    Parsers are strict: a value is either converted to the target type
    or rejected with a ParseFailure. They never substitute a value.
    """

    def __init__(self, spec: FieldSpec):
        self.spec = spec

    @abstractmethod
    def parse(self, value: Any) -> Any:
        """
        Convert a non-blank raw value to the target type.

        Raises:
            ParseFailure: If the value cannot be converted
        """

    def revive(self, value: Any) -> Any:
        """Convert a stored (JSON round-tripped) value back to the target type."""
        return self.parse(value)

    @property
    @abstractmethod
    def field_type(self) -> str:
        """Return the field type identifier."""

    def type_error(self, value: Any, detail: str | None = None) -> ParseFailure:
        message = f"Cannot parse {type(value).__name__} {value!r} as {self.field_type}"
        if detail:
            message = f"{message}: {detail}"
        return ParseFailure("type", message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(field={self.spec.name})"
