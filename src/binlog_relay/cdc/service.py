"""Emitter pipeline: owns every component of the binlog-to-bus path."""

from __future__ import annotations

import logging
from threading import Event
from typing import Optional

from ..bus.audit import open_audit_log
from ..bus.publisher import BusPublisher
from ..bus.transport import Transport, build_transport
from ..config import Settings
from ..metrics import EmitterMetrics
from .checkpoint import CheckpointStore, InMemoryCheckpointStore, PersistentCheckpointStore
from .events import ChangeEventBuilder
from .replication import Catalog, ExponentialBackoff, SessionFactory
from .schema import SchemaCache
from .stream import StreamConsumer

logger = logging.getLogger(__name__)


class Pipeline:
    """Explicit owner of the emitter's transport, caches, store and consumer."""

    def __init__(
        self,
        *,
        settings: Settings,
        transport: Transport,
        catalog: Catalog,
        session_factory: SessionFactory,
        checkpoint_store: CheckpointStore,
        metrics: Optional[EmitterMetrics] = None,
        stop_event: Optional[Event] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.catalog = catalog
        self.checkpoint_store = checkpoint_store
        self.metrics = metrics or EmitterMetrics()
        self.stop_event = stop_event or Event()
        self.schema_cache = SchemaCache(catalog.load_schema)
        self.publisher = BusPublisher(
            transport,
            settings.transport.destination,
            audit_log=open_audit_log(settings.message_log_file),
        )
        self.builder = ChangeEventBuilder(timezone=settings.timezone())
        growing = settings.reconnect_max_delay > settings.reconnect_delay
        self.consumer = StreamConsumer(
            checkpoint_name=settings.checkpoint_name,
            session_factory=session_factory,
            catalog=catalog,
            schema_cache=self.schema_cache,
            builder=self.builder,
            publisher=self.publisher,
            checkpoint_store=checkpoint_store,
            metrics=self.metrics,
            backoff=ExponentialBackoff(
                base_interval=settings.reconnect_delay,
                multiplier=2.0 if growing else 1.0,
                max_interval=settings.reconnect_max_delay,
            ),
            use_gtid=settings.use_gtid,
            checkpoint_interval=settings.checkpoint_interval,
            table_map_retention=settings.table_map_retention,
            table_map_sweep_interval=settings.table_map_sweep_interval,
            stop_event=self.stop_event,
        )

    def run_forever(self) -> None:
        logger.info(
            "emitting binlog changes from %s:%d to %s %s",
            self.settings.replication_host,
            self.settings.replication_port,
            self.settings.transport.kind,
            self.publisher.destination,
        )
        try:
            self.consumer.run_forever()
        finally:
            self.close()

    def stop(self) -> None:
        self.consumer.stop()

    def close(self) -> None:
        self.catalog.close()
        try:
            self.transport.close()
        except Exception:  # noqa: BLE001 - shutdown is best effort
            logger.exception("failed to close transport cleanly")


def build_checkpoint_store(settings: Settings) -> CheckpointStore:
    if settings.checkpoint_backend == "file":
        return PersistentCheckpointStore(
            settings.checkpoint_path, fsync=settings.checkpoint_fsync
        )
    return InMemoryCheckpointStore()


def build_pipeline(
    settings: Settings,
    *,
    transport: Optional[Transport] = None,
    catalog: Optional[Catalog] = None,
    session_factory: Optional[SessionFactory] = None,
    checkpoint_store: Optional[CheckpointStore] = None,
    metrics: Optional[EmitterMetrics] = None,
    stop_event: Optional[Event] = None,
) -> Pipeline:
    """Construct the emitter pipeline using application settings."""
    if catalog is None or session_factory is None:
        from ..db import MySQLCatalog
        from ..db.binlog import binlog_session_factory

        catalog = catalog or MySQLCatalog.from_settings(settings)
        session_factory = session_factory or binlog_session_factory(settings)

    return Pipeline(
        settings=settings,
        transport=transport or build_transport(settings.transport),
        catalog=catalog,
        session_factory=session_factory,
        checkpoint_store=checkpoint_store or build_checkpoint_store(settings),
        metrics=metrics,
        stop_event=stop_event,
    )


__all__ = ["Pipeline", "build_checkpoint_store", "build_pipeline"]
