"""Column value normalization shared by diffing, hashing, and serialization.

Row images coming off the binary log carry whatever Python types the
replication library decoded.  Everything that leaves the emitter goes through
:func:`normalize_value` first so equality checks and the JSON document agree
on one representation per value.
"""

from __future__ import annotations

import json
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, List, Mapping, Sequence, Union

ColumnValue = Union[
    None,
    bool,
    int,
    float,
    Decimal,
    str,
    bytes,
    bytearray,
    memoryview,
    datetime,
    date,
    time,
    timedelta,
]

NormalizedValue = Union[None, bool, int, float, str, List[object], Dict[str, object]]


def normalize_value(value: object) -> NormalizedValue:
    """Return the JSON-safe form of a decoded column value."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, Decimal):
        return format(value, "f")
    # datetime is a date subclass; both render as ISO-8601 text
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return str(value)
    if isinstance(value, (set, frozenset)):
        members = [normalize_value(item) for item in value]
        return sorted(members, key=value_to_text)
    if isinstance(value, Mapping):
        return {str(key): normalize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_value(item) for item in value]
    return str(value)


def values_equal(left: object, right: object) -> bool:
    """Compare two column values after normalization."""
    return normalize_value(left) == normalize_value(right)


def value_to_text(value: object) -> str:
    """Render a (normalized) value as canonical text."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(
            normalize_value(value),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
    if isinstance(value, str):
        return value
    normalized = normalize_value(value)
    return normalized if isinstance(normalized, str) else str(normalized)


def normalize_row(row: Sequence[object]) -> List[NormalizedValue]:
    return [normalize_value(value) for value in row]


__all__ = [
    "ColumnValue",
    "NormalizedValue",
    "normalize_row",
    "normalize_value",
    "value_to_text",
    "values_equal",
]
