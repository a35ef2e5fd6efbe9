"""Row identity resolution: primary key first, content hash otherwise."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .schema import TableSchema
from .values import NormalizedValue, normalize_value, value_to_text

HASH_SEPARATOR = "|"
HASH_PREFIX_BYTES = 8

RowKey = Union[NormalizedValue, Dict[str, NormalizedValue]]


class RowIdStrategy(str, Enum):
    PRIMARY_KEY = "primary_key"
    CONTENT_HASH = "content_hash"


@dataclass(frozen=True)
class RowIdentity:
    """Resolved identity of a row image."""

    value: str
    strategy: RowIdStrategy
    columns: Tuple[str, ...]
    key: RowKey


def positional_columns(count: int) -> List[str]:
    return [f"col_{index}" for index in range(1, count + 1)]


def column_names(schema: Optional[TableSchema], row: Sequence[object]) -> List[str]:
    """Return schema names when they fit the row, else ``col_<n>`` names."""
    if schema is not None and schema.matches_arity(row):
        return list(schema.columns)
    return positional_columns(len(row))


def primary_key_value(
    schema: Optional[TableSchema], row: Sequence[object]
) -> Optional[RowKey]:
    if schema is None or not schema.primary_key or not schema.matches_arity(row):
        return None
    if any(column not in schema.column_index for column in schema.primary_key):
        return None
    if len(schema.primary_key) == 1:
        return normalize_value(row[schema.column_index[schema.primary_key[0]]])
    return {
        column: normalize_value(row[schema.column_index[column]])
        for column in schema.primary_key
    }


def content_hash(values: Sequence[object]) -> str:
    joined = HASH_SEPARATOR.join(value_to_text(normalize_value(v)) for v in values)
    digest = hashlib.sha256(joined.encode("utf-8")).digest()
    return digest[:HASH_PREFIX_BYTES].hex()


def identify(schema: Optional[TableSchema], row: Sequence[object]) -> RowIdentity:
    """Derive a stable identity for ``row``.

    Rows of tables with a known primary key (and a schema that still matches
    the row arity) are identified by their key column values.  Every other row
    is identified by a truncated SHA-256 over all of its values, which means
    two rows with identical content share an identity.
    """
    key = primary_key_value(schema, row)
    if key is not None and schema is not None:
        return RowIdentity(
            value=value_to_text(key),
            strategy=RowIdStrategy.PRIMARY_KEY,
            columns=tuple(schema.primary_key),
            key=key,
        )
    digest = content_hash(row)
    return RowIdentity(
        value=digest,
        strategy=RowIdStrategy.CONTENT_HASH,
        columns=tuple(column_names(schema, row)),
        key=digest,
    )


__all__ = [
    "RowIdStrategy",
    "RowIdentity",
    "RowKey",
    "column_names",
    "content_hash",
    "identify",
    "positional_columns",
    "primary_key_value",
]
