"""Replication stream primitives shared by the consumer and its adapters.

The binlog reader adapter in :mod:`binlog_relay.db` translates library events
into the small dataclasses below so the consumer loop can be unit tested with
plain iterators instead of a live MySQL server.
"""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Iterator, Optional, Protocol, Sequence, Tuple, Union

from .checkpoint import BinlogPosition
from .schema import TableSchema

ROWS_INSERT = "insert"
ROWS_UPDATE = "update"
ROWS_DELETE = "delete"
ROW_KINDS = (ROWS_INSERT, ROWS_UPDATE, ROWS_DELETE)

Row = Tuple[object, ...]


@dataclass(frozen=True)
class RotateEvent:
    """The source switched binary log files."""

    next_log_file: str
    position: int
    timestamp: float = 0.0

    @property
    def resume_position(self) -> BinlogPosition:
        return BinlogPosition(self.next_log_file, self.position)


@dataclass(frozen=True)
class TableMapEvent:
    table_id: int
    database: str
    table: str
    timestamp: float = 0.0


@dataclass(frozen=True)
class RowsEvent:
    """A batch of row images for one mapped table.

    ``rows`` holds one image per row for inserts and deletes.  For updates the
    images alternate ``before, after, before, after, ...``.
    """

    table_id: int
    kind: str
    rows: Sequence[Row]
    timestamp: float = 0.0


@dataclass(frozen=True)
class CommitEvent:
    """A transaction boundary; ``position`` is safe to resume from."""

    position: BinlogPosition
    timestamp: float = 0.0


UpstreamEvent = Union[RotateEvent, TableMapEvent, RowsEvent, CommitEvent]


class ReplicationSession(Protocol):
    """An open binlog stream yielding upstream events until closed."""

    def __iter__(self) -> Iterator[UpstreamEvent]: ...

    def close(self) -> None: ...


SessionFactory = Callable[[BinlogPosition], ReplicationSession]


class Catalog(Protocol):
    """Metadata connection used for start positions and table schemas."""

    def connect(self) -> None: ...

    def close(self) -> None: ...

    def head_position(self) -> BinlogPosition: ...

    def executed_gtid_set(self) -> str: ...

    def load_schema(self, database: str, table: str) -> TableSchema: ...


class ExponentialBackoff:
    """Reconnect delay policy.

    With the default ``multiplier`` of 1.0 every attempt waits
    ``base_interval``; a larger multiplier grows the delay up to
    ``max_interval``.
    """

    def __init__(
        self,
        base_interval: float = 5.0,
        multiplier: float = 1.0,
        max_interval: Optional[float] = None,
    ) -> None:
        if base_interval <= 0:
            raise ValueError("base_interval must be positive")
        if multiplier < 1:
            raise ValueError("multiplier must be at least 1.0")
        if max_interval is None:
            max_interval = base_interval
        if max_interval < base_interval:
            raise ValueError("max_interval must be >= base_interval")
        self.base_interval = base_interval
        self.multiplier = multiplier
        self.max_interval = max_interval
        self._attempt = 0

    @property
    def attempts(self) -> int:
        return self._attempt

    def reset(self) -> None:
        self._attempt = 0

    def next_delay(self) -> float:
        delay = min(
            self.base_interval * (self.multiplier**self._attempt), self.max_interval
        )
        self._attempt += 1
        return delay


@dataclass
class TableMapEntry:
    database: str
    table: str
    last_seen: float


class TableMapCache:
    """table_id -> (database, table) with last-seen based eviction."""

    def __init__(self) -> None:
        self._entries: Dict[int, TableMapEntry] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def remember(self, table_id: int, database: str, table: str, now: float) -> None:
        with self._lock:
            self._entries[table_id] = TableMapEntry(database, table, now)

    def lookup(self, table_id: int, now: float) -> Optional[TableMapEntry]:
        with self._lock:
            entry = self._entries.get(table_id)
            if entry is not None:
                entry.last_seen = now
            return entry

    def evict_stale(self, now: float, retention: float) -> int:
        """Drop entries not referenced within ``retention`` seconds."""
        with self._lock:
            stale = [
                table_id
                for table_id, entry in self._entries.items()
                if now - entry.last_seen > retention
            ]
            for table_id in stale:
                del self._entries[table_id]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


__all__ = [
    "Catalog",
    "CommitEvent",
    "ExponentialBackoff",
    "ROWS_DELETE",
    "ROWS_INSERT",
    "ROWS_UPDATE",
    "ROW_KINDS",
    "ReplicationSession",
    "RotateEvent",
    "Row",
    "RowsEvent",
    "SessionFactory",
    "TableMapCache",
    "TableMapEntry",
    "TableMapEvent",
    "UpstreamEvent",
]
