"""
Input validation helpers shared by every governance entry point.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from .errors import ValidationError


def validate_id(value: Any, field_name: str = "id") -> str:
    """Validate that value is a UUID string and return it."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required", field_name)
    try:
        uuid.UUID(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name} format", field_name)
    return value


def validate_non_empty(value: Any, field_name: str, max_length: Optional[int] = None) -> str:
    """Validate a required free-text field and return it stripped."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required and must be a non-empty string", field_name)
    if max_length is not None and len(value) > max_length:
        raise ValidationError(f"{field_name} must be less than {max_length} characters", field_name)
    return value.strip()


def validate_choice(value: Any, choices: List[str], field_name: str) -> str:
    """Validate that value is one of the allowed enum values."""
    if value not in choices:
        raise ValidationError(f"{field_name} must be one of: {', '.join(choices)}", field_name)
    return value


def optional_string_list(value: Any, field_name: str) -> Optional[List[str]]:
    """Return a list of strings, None when absent, or raise on a bad shape."""
    if value is None:
        return None
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{field_name} must be an array of strings", field_name)
    for item in value:
        if not isinstance(item, str):
            raise ValidationError(f"{field_name} must contain only strings", field_name)
    return list(value)


def parse_timestamp(value: str, field_name: str = "timestamp") -> datetime:
    """
    Parse an ISO-8601 timestamp into a naive UTC datetime.

    Stored timestamps are naive UTC (datetime.utcnow().isoformat()), so
    offset-aware input is converted to UTC before the tzinfo is dropped.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be an ISO-8601 string", field_name)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}", field_name)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
