"""
Spec Validation - JSON Schema validation of requester specs.

Each business hook publishes a Draft 7 JSON Schema for the spec of its
kind. Input plugins validate specs against it before writing to the store.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

logger = logging.getLogger(__name__)

NAME_MAX_LENGTH = 253
NAMESPACE_MAX_LENGTH = 63


def validate_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Check that a hook's spec schema is itself a valid Draft 7 schema.

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except SchemaError as e:
        return False, f"Invalid schema: {e.message}"


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a spec against a JSON Schema, reporting every violation.

    Returns:
        Tuple of (is_valid, error_message). Messages are prefixed with the
        dotted path of the offending field.
    """
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        logger.error(f"Hook schema is invalid: {e.message}")
        return False, f"Invalid schema: {e.message}"

    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    errors = sorted(validator.iter_errors(spec), key=lambda e: list(e.absolute_path))
    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")

    return False, "; ".join(error_messages)


def validate_object_name(value: str, field_name: str = "name") -> Optional[str]:
    """
    Validate a name or namespace: lowercase alphanumerics and '-', starting
    and ending with an alphanumeric.

    Returns:
        An error message, or None if valid.
    """
    max_length = NAMESPACE_MAX_LENGTH if field_name == "namespace" else NAME_MAX_LENGTH
    if not value:
        return f"{field_name} must not be empty"
    if len(value) > max_length:
        return f"{field_name} must be at most {max_length} characters"
    allowed = set("abcdefghijklmnopqrstuvwxyz0123456789-")
    if any(c not in allowed for c in value):
        return f"{field_name} may only contain lowercase letters, digits and '-'"
    if not (value[0].isalnum() and value[-1].isalnum()):
        return f"{field_name} must start and end with a letter or digit"
    return None
