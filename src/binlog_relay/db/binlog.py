"""Replication session backed by ``mysql-replication``'s BinLogStreamReader."""

from __future__ import annotations

import logging
from threading import Lock
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, Mapping, Optional

from pymysqlreplication import BinLogStreamReader
from pymysqlreplication.event import RotateEvent as BinlogRotateEvent
from pymysqlreplication.event import XidEvent
from pymysqlreplication.row_event import (
    DeleteRowsEvent,
    TableMapEvent as BinlogTableMapEvent,
    UpdateRowsEvent,
    WriteRowsEvent,
)

from ..cdc.checkpoint import BinlogPosition
from ..cdc.replication import (
    ROWS_DELETE,
    ROWS_INSERT,
    ROWS_UPDATE,
    CommitEvent,
    RotateEvent,
    Row,
    RowsEvent,
    SessionFactory,
    TableMapEvent,
    UpstreamEvent,
)
from . import replication_kwargs

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from binlog_relay.config import Settings

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 30

STREAM_EVENTS = [
    BinlogRotateEvent,
    BinlogTableMapEvent,
    WriteRowsEvent,
    UpdateRowsEvent,
    DeleteRowsEvent,
    XidEvent,
]


def _row_values(values: Any) -> Row:
    if isinstance(values, Mapping):
        return tuple(values.values())
    return tuple(values)


def convert_event(event: Any, log_file: str, log_pos: int) -> Optional[UpstreamEvent]:
    """Translate a library event into the package's upstream event types.

    ``log_file``/``log_pos`` are the reader's position after ``event``.
    """
    timestamp = float(getattr(event, "timestamp", 0) or 0)
    if isinstance(event, BinlogRotateEvent):
        return RotateEvent(
            next_log_file=event.next_binlog,
            position=int(event.position),
            timestamp=timestamp,
        )
    if isinstance(event, BinlogTableMapEvent):
        return TableMapEvent(
            table_id=int(event.table_id),
            database=event.schema,
            table=event.table,
            timestamp=timestamp,
        )
    if isinstance(event, XidEvent):
        return CommitEvent(
            position=BinlogPosition(log_file=log_file, log_pos=int(log_pos)),
            timestamp=timestamp,
        )
    if isinstance(event, UpdateRowsEvent):
        rows = []
        for row in event.rows:
            rows.append(_row_values(row["before_values"]))
            rows.append(_row_values(row["after_values"]))
        return RowsEvent(
            table_id=int(event.table_id),
            kind=ROWS_UPDATE,
            rows=rows,
            timestamp=timestamp,
        )
    if isinstance(event, (WriteRowsEvent, DeleteRowsEvent)):
        return RowsEvent(
            table_id=int(event.table_id),
            kind=ROWS_INSERT if isinstance(event, WriteRowsEvent) else ROWS_DELETE,
            rows=[_row_values(row["values"]) for row in event.rows],
            timestamp=timestamp,
        )
    return None


class BinlogSession:
    """One blocking replication connection; ``close`` may be called from any thread."""

    def __init__(
        self,
        connection_settings: Dict[str, Any],
        server_id: int,
        start: BinlogPosition,
        reader_factory: Callable[..., Any] = BinLogStreamReader,
    ) -> None:
        kwargs: Dict[str, Any] = {
            "connection_settings": connection_settings,
            "server_id": server_id,
            "blocking": True,
            "resume_stream": True,
            "only_events": STREAM_EVENTS,
            "slave_heartbeat": HEARTBEAT_SECONDS,
        }
        if start.log_file:
            kwargs["log_file"] = start.log_file
            kwargs["log_pos"] = start.log_pos
        elif start.gtid_set is not None:
            kwargs["auto_position"] = start.gtid_set
        self._reader = reader_factory(**kwargs)
        self._lock = Lock()
        self._closed = False
        logger.info(
            "replication session opened (server_id=%d, start=%s)",
            server_id,
            start if start.log_file else f"gtid:{start.gtid_set or '<empty>'}",
        )

    def __iter__(self) -> Iterator[UpstreamEvent]:
        for event in self._reader:
            converted = convert_event(event, self._reader.log_file, self._reader.log_pos)
            if converted is not None:
                yield converted

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._reader.close()


def binlog_session_factory(settings: "Settings") -> SessionFactory:
    """Create a session factory for the configured replication endpoint."""
    connection_settings = replication_kwargs(settings)

    def _factory(start: BinlogPosition) -> BinlogSession:
        return BinlogSession(connection_settings, settings.server_id, start)

    return _factory


__all__ = ["BinlogSession", "STREAM_EVENTS", "binlog_session_factory", "convert_event"]
