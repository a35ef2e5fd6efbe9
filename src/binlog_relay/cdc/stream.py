"""Binlog stream consumer: connect, stream, reconnect, stop."""

from __future__ import annotations

import logging
import time
from threading import Event, Lock
from typing import Callable, Dict, Optional, Protocol, Sequence, Tuple

from ..errors import EventSerializationError, RowFormatError, TransportError
from ..metrics import EmitterMetrics
from .checkpoint import BinlogPosition, CheckpointStore
from .events import ChangeEvent, ChangeEventBuilder
from .replication import (
    ROWS_DELETE,
    ROWS_INSERT,
    ROWS_UPDATE,
    Catalog,
    CommitEvent,
    ExponentialBackoff,
    ReplicationSession,
    RotateEvent,
    Row,
    RowsEvent,
    SessionFactory,
    TableMapCache,
    TableMapEvent,
    UpstreamEvent,
)
from .schema import SchemaCache, TableSchema

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    def publish(self, payload: bytes, event_id: str) -> None: ...


class StreamEnded(ConnectionError):
    """The replication session stopped yielding events without a stop request."""


class StreamConsumer:
    """Drives one replication session at a time and publishes row changes.

    Events are handled strictly in upstream order on the calling thread.  Any
    failure of the session is followed by a backoff wait on the stop event and
    a fresh session starting from the last recorded position.
    """

    def __init__(
        self,
        *,
        checkpoint_name: str,
        session_factory: SessionFactory,
        catalog: Catalog,
        schema_cache: SchemaCache,
        builder: ChangeEventBuilder,
        publisher: EventPublisher,
        checkpoint_store: CheckpointStore,
        metrics: Optional[EmitterMetrics] = None,
        backoff: Optional[ExponentialBackoff] = None,
        use_gtid: bool = False,
        checkpoint_interval: int = 50,
        table_map_retention: float = 3600.0,
        table_map_sweep_interval: float = 300.0,
        stop_event: Optional[Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.checkpoint_name = checkpoint_name
        self._session_factory = session_factory
        self._catalog = catalog
        self._schema_cache = schema_cache
        self._builder = builder
        self._publisher = publisher
        self._checkpoint_store = checkpoint_store
        self._metrics = metrics or EmitterMetrics()
        self._backoff = backoff or ExponentialBackoff()
        self._use_gtid = use_gtid
        self._checkpoint_interval = max(1, checkpoint_interval)
        self._table_map_retention = table_map_retention
        self._table_map_sweep_interval = table_map_sweep_interval
        self._stop_event = stop_event or Event()
        self._clock = clock
        self._table_maps = TableMapCache()
        self._arity_mismatches: Dict[Tuple[str, str], Tuple[int, int]] = {}
        self._session: Optional[ReplicationSession] = None
        self._session_lock = Lock()
        self._position: Optional[BinlogPosition] = None
        self._persisted: Optional[BinlogPosition] = None
        self._since_checkpoint = 0
        self._last_sweep = clock()

    @property
    def metrics(self) -> EmitterMetrics:
        return self._metrics

    @property
    def position(self) -> Optional[BinlogPosition]:
        return self._position

    @property
    def table_maps(self) -> TableMapCache:
        return self._table_maps

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request shutdown and close the live session to unblock its read."""
        self._stop_event.set()
        with self._session_lock:
            session = self._session
        if session is not None:
            try:
                session.close()
            except Exception:  # noqa: BLE001 - the stream loop observes the stop
                logger.debug("closing replication session during stop failed", exc_info=True)

    def run_forever(self) -> None:
        logger.info("stream consumer %s starting", self.checkpoint_name)
        try:
            while not self._stop_event.is_set():
                try:
                    self.run_session()
                except Exception as exc:  # noqa: BLE001 - every failure reconnects
                    if self._stop_event.is_set():
                        break
                    delay = self._backoff.next_delay()
                    self._metrics.inc_reconnects()
                    if isinstance(exc, StreamEnded):
                        logger.warning("%s - reconnecting in %.2fs", exc, delay)
                    else:
                        logger.exception(
                            "replication session failed - reconnecting in %.2fs", delay
                        )
                    self._stop_event.wait(delay)
        finally:
            self._persist_checkpoint()
            logger.info(
                "stream consumer %s stopped at %s",
                self.checkpoint_name,
                self._position or "<head>",
            )

    def run_session(self) -> int:
        """Stream one session to completion; returns events handled.

        Raises :class:`StreamEnded` when the session runs dry without a stop
        request, so callers always treat end of stream as a dropped session.
        """
        self._catalog.connect()
        try:
            start = self._start_position()
            self._table_maps.clear()
            self._arity_mismatches.clear()
            self._metrics.set_table_map_size(0)
            session = self._session_factory(start)
            with self._session_lock:
                self._session = session
            if self._stop_event.is_set():
                session.close()
            processed = 0
            try:
                for event in session:
                    if self._stop_event.is_set():
                        break
                    self.handle(event)
                    processed += 1
                    if processed == 1:
                        self._backoff.reset()
            finally:
                with self._session_lock:
                    self._session = None
                session.close()
                self._persist_checkpoint()
            if not self._stop_event.is_set():
                raise StreamEnded(f"replication stream ended after {processed} events")
            return processed
        finally:
            self._catalog.close()

    def handle(self, event: UpstreamEvent) -> None:
        if isinstance(event, RotateEvent):
            logger.info(
                "binlog rotated to %s:%d", event.next_log_file, event.position
            )
            self._record_position(event.resume_position)
        elif isinstance(event, TableMapEvent):
            remembered = self._arity_mismatches.get((event.database, event.table))
            if remembered is not None and remembered[0] != event.table_id:
                del self._arity_mismatches[(event.database, event.table)]
            self._table_maps.remember(
                event.table_id, event.database, event.table, self._clock()
            )
            self._metrics.set_table_map_size(len(self._table_maps))
            if self._schema_cache.ensure(event.database, event.table) is None:
                self._metrics.inc_schema_errors()
        elif isinstance(event, RowsEvent):
            self._handle_rows(event)
        elif isinstance(event, CommitEvent):
            self._record_position(event.position)
        else:
            logger.debug("ignoring upstream event %r", event)
        self._since_checkpoint += 1
        if self._since_checkpoint >= self._checkpoint_interval:
            self._persist_checkpoint()
        self._sweep_table_maps()

    def _start_position(self) -> BinlogPosition:
        saved = self._checkpoint_store.load(self.checkpoint_name)
        candidates = [("checkpoint", saved), ("last seen position", self._position)]
        head: Optional[BinlogPosition] = None
        for label, position in candidates:
            if position is None:
                continue
            if position.log_file:
                head = head or self._catalog.head_position()
                if position.beyond(head):
                    logger.warning(
                        "%s %s is past the server's binlog head %s; not resuming from it",
                        label,
                        position,
                        head,
                    )
                    continue
            logger.info("resuming %s from %s %s", self.checkpoint_name, label, position)
            self._position = position
            return position
        self._position = None
        if self._use_gtid:
            gtid_set = self._catalog.executed_gtid_set()
            logger.info("starting from executed GTID set %s", gtid_set or "<empty>")
            return BinlogPosition(log_file="", log_pos=0, gtid_set=gtid_set)
        head = head or self._catalog.head_position()
        logger.info("starting from current binlog head %s", head)
        return head

    def _handle_rows(self, event: RowsEvent) -> None:
        entry = self._table_maps.lookup(event.table_id, self._clock())
        if entry is None:
            logger.warning(
                "no table map for table_id=%d; skipping %d %s rows",
                event.table_id,
                len(event.rows),
                event.kind,
            )
            self._metrics.inc_skipped_batches()
            return
        self._metrics.inc_rows(len(event.rows))
        schema = self._schema_for(
            event.table_id, entry.database, entry.table, event.rows
        )
        timestamp = event.timestamp or None
        if event.kind in (ROWS_INSERT, ROWS_DELETE):
            build = (
                self._builder.build_insert
                if event.kind == ROWS_INSERT
                else self._builder.build_delete
            )
            for row in event.rows:
                self._emit(
                    entry.database,
                    entry.table,
                    lambda row=row: build(
                        entry.database, entry.table, schema, row, timestamp=timestamp
                    ),
                )
        elif event.kind == ROWS_UPDATE:
            rows = list(event.rows)
            if len(rows) % 2:
                logger.error(
                    "update batch on %s.%s has odd row count %d; dropping trailing image",
                    entry.database,
                    entry.table,
                    len(rows),
                )
                self._metrics.inc_dropped()
                rows.pop()
            for index in range(0, len(rows), 2):
                before, after = rows[index], rows[index + 1]
                self._emit(
                    entry.database,
                    entry.table,
                    lambda before=before, after=after: self._builder.build_update(
                        entry.database,
                        entry.table,
                        schema,
                        before,
                        after,
                        timestamp=timestamp,
                    ),
                )
        else:
            logger.warning("unknown rows event kind %r", event.kind)

    def _schema_for(
        self, table_id: int, database: str, table: str, rows: Sequence[Row]
    ) -> Optional[TableSchema]:
        schema = self._schema_cache.get(database, table)
        if schema is None or not rows or schema.matches_arity(rows[0]):
            return schema
        key = (database, table)
        arity = len(rows[0])
        if self._arity_mismatches.get(key) == (table_id, arity):
            return schema
        logger.info(
            "cached schema for %s.%s has %d columns but rows have %d; reloading",
            database,
            table,
            len(schema.columns),
            arity,
        )
        self._schema_cache.invalidate(database, table)
        reloaded = self._schema_cache.ensure(database, table)
        if reloaded is None:
            self._metrics.inc_schema_errors()
        elif not reloaded.matches_arity(rows[0]):
            # historical rows after a DDL; the catalog only knows the current shape
            logger.warning(
                "schema for %s.%s still has %d columns for %d-column rows; "
                "not reloading again until the table is remapped",
                database,
                table,
                len(reloaded.columns),
                arity,
            )
            self._arity_mismatches[key] = (table_id, arity)
        return reloaded

    def _emit(
        self, database: str, table: str, build: Callable[[], ChangeEvent]
    ) -> None:
        try:
            event = build()
            payload = event.encode()
        except (RowFormatError, EventSerializationError) as exc:
            logger.error("dropping change on %s.%s: %s", database, table, exc)
            self._metrics.inc_dropped()
            return
        try:
            self._publisher.publish(payload, event.event_id)
        except TransportError as exc:
            logger.error("publish of %s failed: %s", event.event_id, exc)
            self._metrics.inc_dropped()
            return
        self._metrics.inc_published()

    def _record_position(self, position: BinlogPosition) -> None:
        self._position = position

    def _persist_checkpoint(self) -> None:
        self._since_checkpoint = 0
        position = self._position
        if position is None or position == self._persisted or not position.log_file:
            return
        try:
            self._checkpoint_store.save(self.checkpoint_name, position)
        except OSError:
            logger.exception("failed to persist checkpoint %s", position)
            return
        self._persisted = position

    def _sweep_table_maps(self) -> None:
        now = self._clock()
        if now - self._last_sweep < self._table_map_sweep_interval:
            return
        self._last_sweep = now
        evicted = self._table_maps.evict_stale(now, self._table_map_retention)
        if evicted:
            logger.info(
                "evicted %d stale table-map entries; %d remain",
                evicted,
                len(self._table_maps),
            )
        self._metrics.set_table_map_size(len(self._table_maps))


__all__ = ["EventPublisher", "StreamConsumer", "StreamEnded"]
