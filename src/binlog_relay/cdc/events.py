"""Canonical change-event documents and the builder that produces them."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from ..errors import EventSerializationError, MalformedEventError, RowFormatError
from .identity import RowKey, column_names, identify
from .schema import TableSchema
from .values import NormalizedValue, normalize_value, value_to_text, values_equal

OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"
OPERATIONS = (OP_CREATE, OP_UPDATE, OP_DELETE)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class ColumnChange:
    column: str
    old: NormalizedValue
    new: NormalizedValue

    def to_dict(self) -> Dict[str, object]:
        return {"column": self.column, "from": self.old, "to": self.new}


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change as published on the bus."""

    op: str
    timestamp: str
    db: str
    table: str
    row_key: RowKey
    after: Optional[Dict[str, NormalizedValue]] = None
    before: Optional[Dict[str, NormalizedValue]] = None
    changes: Optional[List[ColumnChange]] = None
    tombstone: bool = False

    @property
    def row_key_text(self) -> str:
        return value_to_text(self.row_key)

    @property
    def changed_columns(self) -> List[str]:
        return [change.column for change in self.changes or ()]

    @property
    def event_id(self) -> str:
        return f"{self.db}.{self.table}:{self.op}:{self.row_key_text}"

    def to_dict(self) -> Dict[str, object]:
        document: Dict[str, object] = {
            "op": self.op,
            "timestamp": self.timestamp,
            "db": self.db,
            "table": self.table,
            "row_key": self.row_key,
        }
        if self.after is not None:
            document["after"] = dict(self.after)
        if self.before is not None:
            document["before"] = dict(self.before)
        if self.changes is not None:
            document["changes"] = [change.to_dict() for change in self.changes]
        if self.tombstone:
            document["tombstone"] = True
        return document

    def to_json(self, *, indent: Optional[int] = None) -> str:
        try:
            return json.dumps(self.to_dict(), ensure_ascii=False, indent=indent)
        except (TypeError, ValueError) as exc:
            raise EventSerializationError(
                f"cannot serialize {self.event_id}: {exc}"
            ) from exc

    def encode(self) -> bytes:
        return self.to_json().encode("utf-8")

    @classmethod
    def from_dict(cls, document: Mapping[str, object]) -> "ChangeEvent":
        op = document.get("op")
        if not isinstance(op, str) or op.lower() not in OPERATIONS:
            raise MalformedEventError(f"unknown op {op!r}")
        db = document.get("db")
        table = document.get("table")
        if not isinstance(db, str) or not isinstance(table, str):
            raise MalformedEventError("document must carry string 'db' and 'table'")
        if "row_key" not in document:
            raise MalformedEventError("document is missing 'row_key'")
        timestamp = document.get("timestamp") or ""
        after = _optional_mapping(document, "after")
        before = _optional_mapping(document, "before")
        changes: Optional[List[ColumnChange]] = None
        raw_changes = document.get("changes")
        if raw_changes is not None:
            if not isinstance(raw_changes, list):
                raise MalformedEventError("'changes' must be a list")
            changes = []
            for entry in raw_changes:
                if not isinstance(entry, Mapping) or "column" not in entry:
                    raise MalformedEventError("change entries need a 'column'")
                changes.append(
                    ColumnChange(
                        column=str(entry["column"]),
                        old=entry.get("from"),
                        new=entry.get("to"),
                    )
                )
        return cls(
            op=op,
            timestamp=str(timestamp),
            db=db,
            table=table,
            row_key=document["row_key"],
            after=after,
            before=before,
            changes=changes,
            tombstone=bool(document.get("tombstone", False)),
        )

    @classmethod
    def from_json(cls, raw: bytes | str) -> "ChangeEvent":
        try:
            document = json.loads(raw)
        except RecursionError as exc:
            raise MalformedEventError("payload is nested too deeply") from exc
        except ValueError as exc:
            raise MalformedEventError(f"payload is not valid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise MalformedEventError("payload must be a JSON object")
        return cls.from_dict(document)


def _optional_mapping(
    document: Mapping[str, object], name: str
) -> Optional[Dict[str, NormalizedValue]]:
    raw = document.get(name)
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise MalformedEventError(f"'{name}' must be an object")
    return {str(key): value for key, value in raw.items()}


def named_row(
    schema: Optional[TableSchema], row: Sequence[object]
) -> Dict[str, NormalizedValue]:
    names = column_names(schema, row)
    return {name: normalize_value(value) for name, value in zip(names, row)}


@dataclass
class ChangeEventBuilder:
    """Turns raw row images plus schema into :class:`ChangeEvent` objects.

    All three operations take their ``row_key`` from :func:`identify`, so rows
    of tables without a usable primary key fall back to a content hash rather
    than being dropped.
    """

    timezone: tzinfo
    clock: Callable[[], float] = field(default=time.time)

    def render_timestamp(self, timestamp: Optional[float] = None) -> str:
        epoch = timestamp if timestamp is not None else self.clock()
        return datetime.fromtimestamp(epoch, self.timezone).strftime(TIMESTAMP_FORMAT)

    def build_insert(
        self,
        db: str,
        table: str,
        schema: Optional[TableSchema],
        row: Sequence[object],
        *,
        timestamp: Optional[float] = None,
    ) -> ChangeEvent:
        identity = identify(schema, row)
        return ChangeEvent(
            op=OP_CREATE,
            timestamp=self.render_timestamp(timestamp),
            db=db,
            table=table,
            row_key=identity.key,
            after=named_row(schema, row),
        )

    def build_delete(
        self,
        db: str,
        table: str,
        schema: Optional[TableSchema],
        row: Sequence[object],
        *,
        timestamp: Optional[float] = None,
    ) -> ChangeEvent:
        identity = identify(schema, row)
        return ChangeEvent(
            op=OP_DELETE,
            timestamp=self.render_timestamp(timestamp),
            db=db,
            table=table,
            row_key=identity.key,
            before=named_row(schema, row),
            tombstone=True,
        )

    def build_update(
        self,
        db: str,
        table: str,
        schema: Optional[TableSchema],
        before: Sequence[object],
        after: Sequence[object],
        *,
        timestamp: Optional[float] = None,
    ) -> ChangeEvent:
        if len(before) != len(after):
            raise RowFormatError(
                f"update on {db}.{table} has before/after arity "
                f"{len(before)} != {len(after)}"
            )
        identity = identify(schema, after)
        changes = [
            ColumnChange(
                column=name,
                old=normalize_value(old),
                new=normalize_value(new),
            )
            for name, old, new in zip(column_names(schema, after), before, after)
            if not values_equal(old, new)
        ]
        return ChangeEvent(
            op=OP_UPDATE,
            timestamp=self.render_timestamp(timestamp),
            db=db,
            table=table,
            row_key=identity.key,
            changes=changes,
        )


__all__ = [
    "ChangeEvent",
    "ChangeEventBuilder",
    "ColumnChange",
    "OPERATIONS",
    "OP_CREATE",
    "OP_DELETE",
    "OP_UPDATE",
    "TIMESTAMP_FORMAT",
    "named_row",
]
