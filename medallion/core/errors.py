"""
Error taxonomy for the medallion pipeline.

Per-record errors (ValidationError, IntegrityError) are collected into the
batch report. Per-batch errors abort the batch and surface as BatchFailed.
"""

from typing import Any


class MedallionError(Exception):
    """Base class for all pipeline errors."""


class FieldError:
    """A single field that failed normalization."""

    __slots__ = ("field_name", "reason", "message")

    def __init__(self, field_name: str, reason: str, message: str):
        self.field_name = field_name
        self.reason = reason  # missing, type, range, pattern
        self.message = message

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field_name, "reason": self.reason, "message": self.message}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FieldError):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def __repr__(self) -> str:
        return f"FieldError({self.field_name!r}, {self.reason!r}, {self.message!r})"


class ValidationError(MedallionError):
    """Raised when one or more fields of a raw record cannot be normalized."""

    def __init__(self, field_errors: list[FieldError], record_ref: str | None = None):
        if not field_errors:
            raise ValueError("ValidationError requires at least one field error")
        self.field_errors = field_errors
        self.record_ref = record_ref
        details = "; ".join(f"{e.field_name}: {e.message}" for e in field_errors)
        prefix = f"[{record_ref}] " if record_ref else ""
        super().__init__(f"{prefix}{details}")

    @property
    def field_names(self) -> list[str]:
        return [e.field_name for e in self.field_errors]


class KeyResolutionConflict(MedallionError):
    """The current dimension row changed between read and check-and-set."""

    def __init__(self, dimension: str, business_key: str, expected_key: int | None):
        self.dimension = dimension
        self.business_key = business_key
        self.expected_key = expected_key
        super().__init__(
            f"Concurrent change on {dimension}[{business_key}] "
            f"(expected current surrogate key {expected_key})"
        )


class Timeout(MedallionError, TimeoutError):
    """A bounded wait (lock or storage) was exceeded."""

    def __init__(self, operation: str, timeout: float | None):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout}s")


class IntegrityError(MedallionError):
    """A fact row references a surrogate key with no dimension row."""

    def __init__(self, dimension: str, reference: Any, message: str | None = None):
        self.dimension = dimension
        self.reference = reference
        super().__init__(message or f"No {dimension} dimension row for {reference!r}")


class StorageError(MedallionError):
    """The storage backend failed or rejected an operation."""


class SchemaMismatch(MedallionError):
    """Stored rows do not match the configured schema."""


class SchemaConfigError(MedallionError, ValueError):
    """The star schema configuration is invalid."""


class BatchStateError(MedallionError):
    """An operation is not allowed in the batch's current state."""


class BatchNotFound(MedallionError, KeyError):
    """The batch id is not present in the ledger."""

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(batch_id)

    def __str__(self) -> str:
        return f"Unknown batch: {self.batch_id}"


class BatchCancelled(MedallionError):
    """The batch was cancelled between steps."""


class BatchFailed(MedallionError):
    """Terminal failure of a batch."""

    def __init__(self, batch_id: str, reason: str, attempts: int = 1):
        self.batch_id = batch_id
        self.reason = reason
        self.attempts = attempts
        super().__init__(f"Batch {batch_id} failed after {attempts} attempt(s): {reason}")
