"""Binlog change capture: normalization, identity, events and the stream loop."""

from .checkpoint import BinlogPosition, InMemoryCheckpointStore, PersistentCheckpointStore
from .events import ChangeEvent, ChangeEventBuilder, ColumnChange
from .identity import RowIdentity, RowIdStrategy, identify
from .replication import (
    CommitEvent,
    ExponentialBackoff,
    RotateEvent,
    RowsEvent,
    TableMapCache,
    TableMapEvent,
)
from .schema import SchemaCache, TableSchema
from .service import Pipeline, build_pipeline
from .stream import StreamConsumer

__all__ = [
    "BinlogPosition",
    "ChangeEvent",
    "ChangeEventBuilder",
    "ColumnChange",
    "CommitEvent",
    "ExponentialBackoff",
    "InMemoryCheckpointStore",
    "PersistentCheckpointStore",
    "Pipeline",
    "RotateEvent",
    "RowIdStrategy",
    "RowIdentity",
    "RowsEvent",
    "SchemaCache",
    "StreamConsumer",
    "TableMapCache",
    "TableMapEvent",
    "TableSchema",
    "build_pipeline",
    "identify",
]
