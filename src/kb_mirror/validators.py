"""
Input validation functions for kb_mirror tools.

Checks identifiers and numeric arguments coming from MCP tool calls before
they reach the sync service.
"""

import re

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")
MAX_IDENTIFIER_LENGTH = 128


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Document id")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_identifier(
    value: object, field_name: str = "Identifier"
) -> tuple[bool, str]:
    """
    Validate a book or document identifier.

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Must be a non-empty string (integers are accepted and stringified
          by the caller)
        - At most 128 characters
        - Letters, digits, ``_``, ``-`` and ``.`` only; no ``..``
    """
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        return (False, format_validation_error(field_name, "cannot be empty"))

    if len(value) > MAX_IDENTIFIER_LENGTH:
        return (
            False,
            format_validation_error(
                field_name,
                f"exceeds maximum length of {MAX_IDENTIFIER_LENGTH}",
            ),
        )

    if ".." in value or not _IDENTIFIER_PATTERN.match(value):
        return (
            False,
            format_validation_error(
                field_name, "contains invalid characters"
            ),
        )

    return (True, "")


def validate_identifier_list(
    values: object, field_name: str = "Identifiers"
) -> tuple[bool, str]:
    """
    Validate a list of identifiers.

    An empty list is rejected: callers pass ``None`` to mean "all".
    """
    if not isinstance(values, list):
        return (False, format_validation_error(field_name, "must be a list"))
    if not values:
        return (False, format_validation_error(field_name, "cannot be empty"))
    for value in values:
        ok, error = validate_identifier(value, field_name)
        if not ok:
            return (False, f"{error}: {value!r}")
    return (True, "")


def validate_limit(
    value: object, maximum: int = 500
) -> tuple[bool, str]:
    """
    Validate a positive page-size argument.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        return (False, format_validation_error("Limit", "must be an integer"))
    if not (1 <= value <= maximum):
        return (
            False,
            format_validation_error(
                "Limit", f"must be between 1 and {maximum}"
            ),
        )
    return (True, "")
