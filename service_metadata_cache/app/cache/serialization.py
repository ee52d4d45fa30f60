"""
Storage adapter for values with timestamp fields.

Cache backends only hold text. ``times_to_strings`` walks a value and turns
every datetime leaf into its canonical string; ``strings_to_times`` reverses
it. For every timezone-aware datetime ``v``:

    strings_to_times(times_to_strings(v)) == v
"""

import re
from datetime import datetime, timezone
from typing import Any

from shared.errors import SerializationError

_CANONICAL_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{6}Z$")


def datetime_to_str(value: datetime) -> str:
    """Canonical UTC form of a timezone-aware datetime."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise SerializationError(
            "Naive datetimes cannot be stored",
            {"value": value.isoformat()}
        )
    try:
        utc = value.astimezone(timezone.utc)
    except OverflowError as e:
        raise SerializationError("Datetime out of range", {"error": str(e)})
    return utc.replace(tzinfo=None).isoformat(timespec="microseconds") + "Z"


def try_parse_datetime(value: str):
    """Parse a canonical timestamp string, or return None."""
    if not _CANONICAL_PATTERN.match(value):
        return None
    try:
        return datetime.fromisoformat(value[:-1]).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def times_to_strings(data: Any) -> Any:
    """Replace every datetime in ``data`` with its canonical string."""
    if isinstance(data, datetime):
        return datetime_to_str(data)
    if isinstance(data, dict):
        return {key: times_to_strings(value) for key, value in data.items()}
    if isinstance(data, (list, tuple)):
        return type(data)(times_to_strings(item) for item in data)
    return data


def strings_to_times(data: Any) -> Any:
    """Replace every canonical timestamp string in ``data`` with a datetime."""
    if isinstance(data, str):
        parsed = try_parse_datetime(data)
        return data if parsed is None else parsed
    if isinstance(data, dict):
        return {key: strings_to_times(value) for key, value in data.items()}
    if isinstance(data, (list, tuple)):
        return type(data)(strings_to_times(item) for item in data)
    return data
