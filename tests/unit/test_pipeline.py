from threading import Event

import pytest

from binlog_relay.cdc.checkpoint import (
    BinlogPosition,
    InMemoryCheckpointStore,
    PersistentCheckpointStore,
)
from binlog_relay.cdc.replication import CommitEvent, RowsEvent, TableMapEvent
from binlog_relay.cdc.schema import TableSchema
from binlog_relay.cdc.service import build_checkpoint_store, build_pipeline
from binlog_relay.config import load_settings


class _Transport:
    def __init__(self):
        self.sent = []
        self.closed = False

    def publish(self, destination, payload, attributes):
        self.sent.append((destination, attributes["event_id"]))

    def subscribe(self, destination, stop_event):
        return iter(())

    def close(self):
        self.closed = True


class _Catalog:
    def __init__(self):
        self.closes = 0

    def connect(self):
        pass

    def close(self):
        self.closes += 1

    def head_position(self):
        return BinlogPosition("mysql-bin.000001", 4)

    def executed_gtid_set(self):
        return ""

    def load_schema(self, database, table):
        return TableSchema(database, table, ("id", "status"), ("id",))


class _Session:
    def __init__(self, events):
        self._events = events

    def __iter__(self):
        return iter(self._events)

    def close(self):
        pass


def _settings(tmp_path, **overrides):
    env = {
        "DB_USER": "repl",
        "DB_HOST": "mysql",
        "DB_NAME": "shop",
        "REDIS_CHANNEL": "cdc:shop",
        "CHECKPOINT_PATH": str(tmp_path / "cp.json"),
        "MESSAGE_LOG_FILE": str(tmp_path / "messages.log"),
        "RECONNECT_DELAY": "1s",
        "RECONNECT_MAX_DELAY": "30s",
    }
    env.update(overrides)
    return load_settings(env)


@pytest.mark.unit
def test_build_checkpoint_store_follows_backend(tmp_path):
    file_store = build_checkpoint_store(_settings(tmp_path))
    memory_store = build_checkpoint_store(_settings(tmp_path, CHECKPOINT_BACKEND="memory"))

    assert isinstance(file_store, PersistentCheckpointStore)
    assert file_store.path == tmp_path / "cp.json"
    assert isinstance(memory_store, InMemoryCheckpointStore)


@pytest.mark.unit
def test_pipeline_wires_settings_into_components(tmp_path):
    pipeline = build_pipeline(
        _settings(tmp_path),
        transport=_Transport(),
        catalog=_Catalog(),
        session_factory=lambda start: _Session([]),
    )

    assert pipeline.publisher.destination == "cdc:shop"
    assert pipeline.builder.timezone.key == "Asia/Kolkata"
    assert pipeline.consumer.checkpoint_name == "emitter-100"
    assert isinstance(pipeline.checkpoint_store, PersistentCheckpointStore)


@pytest.mark.unit
def test_pipeline_streams_to_transport_and_closes(tmp_path):
    stop = Event()
    transport = _Transport()
    catalog = _Catalog()
    events = [
        TableMapEvent(table_id=1, database="shop", table="orders"),
        RowsEvent(1, "insert", [(1, "new")]),
        CommitEvent(BinlogPosition("mysql-bin.000001", 300)),
    ]
    sessions = [_Session(events)]

    def factory(start):
        if sessions:
            return sessions.pop()
        pipeline.stop()
        return _Session([])

    pipeline = build_pipeline(
        _settings(tmp_path, RECONNECT_DELAY="1ms", RECONNECT_MAX_DELAY="1ms"),
        transport=transport,
        catalog=catalog,
        session_factory=factory,
        checkpoint_store=InMemoryCheckpointStore(),
        stop_event=stop,
    )

    pipeline.run_forever()

    assert transport.sent == [("cdc:shop", "shop.orders:create:1")]
    assert transport.closed
    assert stop.is_set()
    assert pipeline.checkpoint_store.load("emitter-100") == BinlogPosition(
        "mysql-bin.000001", 300
    )
    audit = (tmp_path / "messages.log").read_text()
    assert "event_id=shop.orders:create:1" in audit
