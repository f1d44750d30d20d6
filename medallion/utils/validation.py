"""
Input validation utilities for the medallion pipeline.

Provides reusable checks for batch ids, source ids, query limits and SQL
identifiers supplied from the CLI or configuration.
"""

import re


class InvalidIdentifier(ValueError):
    """Raised when an identifier or parameter fails validation."""
    pass


_ID_RE = re.compile(r"^[a-zA-Z0-9_\-\.:]+$")
_SQL_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def validate_batch_id(batch_id: str, field_name: str = "batch_id") -> str:
    """
    Validate a batch id.

    Batch ids must be non-empty strings of alphanumerics, hyphens,
    underscores, dots and colons, at most 255 characters long.

    Returns:
        The validated batch id

    Raises:
        InvalidIdentifier: If validation fails

    Examples:
        >>> validate_batch_id("orders_20250301_001")
        'orders_20250301_001'
        >>> validate_batch_id("bad id!")  # doctest: +SKIP
        InvalidIdentifier: batch_id contains invalid characters
    """
    if not batch_id or not isinstance(batch_id, str):
        raise InvalidIdentifier(f"{field_name} must be a non-empty string")

    if batch_id != batch_id.strip():
        raise InvalidIdentifier(f"{field_name} must not have surrounding whitespace")

    if not _ID_RE.match(batch_id):
        raise InvalidIdentifier(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric, hyphens, underscores, dots and colons are allowed."
        )

    if len(batch_id) > 255:
        raise InvalidIdentifier(f"{field_name} exceeds maximum length of 255 characters")

    return batch_id


def validate_source_id(source_id: str, field_name: str = "source_id") -> str:
    """
    Validate a source id (same rules as batch ids).

    Examples:
        >>> validate_source_id("orders_csv")
        'orders_csv'
    """
    return validate_batch_id(source_id, field_name)


def validate_limit(limit: int, field_name: str = "limit", max_limit: int = 10000) -> int:
    """
    Validate a limit parameter for listings.

    Examples:
        >>> validate_limit(100)
        100
    """
    if not isinstance(limit, int) or isinstance(limit, bool):
        raise InvalidIdentifier(f"{field_name} must be an integer, got {type(limit).__name__}")

    if limit <= 0:
        raise InvalidIdentifier(f"{field_name} must be a positive integer, got {limit}")

    if limit > max_limit:
        raise InvalidIdentifier(f"{field_name} exceeds maximum of {max_limit}")

    return limit


def sanitize_sql_identifier(identifier: str, field_name: str = "identifier") -> str:
    """
    Validate an SQL identifier (schema or table name) used in dynamic SQL.

    Examples:
        >>> sanitize_sql_identifier("medallion")
        'medallion'
        >>> sanitize_sql_identifier("x; DROP TABLE y")  # doctest: +SKIP
        InvalidIdentifier: identifier contains invalid characters
    """
    if not identifier or not isinstance(identifier, str):
        raise InvalidIdentifier(f"{field_name} must be a non-empty string")

    identifier = identifier.strip()

    if not _SQL_IDENTIFIER_RE.match(identifier):
        raise InvalidIdentifier(
            f"{field_name} contains invalid characters. "
            "SQL identifiers must start with a letter or underscore and contain only "
            "alphanumeric characters and underscores."
        )

    if len(identifier) > 63:  # PostgreSQL limit
        raise InvalidIdentifier(f"{field_name} exceeds PostgreSQL maximum length of 63 characters")

    reserved_keywords = {
        "select", "insert", "update", "delete", "drop", "create", "alter",
        "table", "database", "index", "view", "user", "grant", "revoke"
    }
    if identifier.lower() in reserved_keywords:
        raise InvalidIdentifier(f"{field_name} '{identifier}' is a reserved SQL keyword")

    return identifier
