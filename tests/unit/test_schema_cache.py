import threading
import time

import pytest

from binlog_relay.cdc.schema import SchemaCache, TableSchema
from binlog_relay.errors import SchemaLoadError


class _CountingLoader:
    def __init__(self, delay: float = 0.0) -> None:
        self.calls: list[tuple[str, str]] = []
        self._delay = delay
        self._lock = threading.Lock()

    def __call__(self, database: str, table: str) -> TableSchema:
        with self._lock:
            self.calls.append((database, table))
        if self._delay:
            time.sleep(self._delay)
        return TableSchema(database, table, ("id", "name"), ("id",))


@pytest.mark.unit
def test_resolve_loads_once_and_caches():
    loader = _CountingLoader()
    cache = SchemaCache(loader)

    first = cache.resolve("shop", "orders")
    second = cache.resolve("shop", "orders")

    assert first is second
    assert loader.calls == [("shop", "orders")]
    assert first.column_index == {"id": 0, "name": 1}
    assert len(cache) == 1


@pytest.mark.unit
def test_concurrent_resolves_for_same_table_query_catalog_once():
    loader = _CountingLoader(delay=0.05)
    cache = SchemaCache(loader)
    results = []

    def worker():
        results.append(cache.resolve("shop", "orders"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert loader.calls == [("shop", "orders")]
    assert len(results) == 8
    assert all(result is results[0] for result in results)


@pytest.mark.unit
def test_loader_errors_surface_as_schema_load_error():
    def failing(database, table):
        raise ConnectionError("catalog down")

    cache = SchemaCache(failing)

    with pytest.raises(SchemaLoadError) as excinfo:
        cache.resolve("shop", "orders")

    assert excinfo.value.database == "shop"
    assert "catalog down" in str(excinfo.value)
    assert cache.get("shop", "orders") is None


@pytest.mark.unit
def test_ensure_logs_and_returns_none_on_failure(caplog):
    def failing(database, table):
        raise SchemaLoadError(database, table, "table not found in catalog")

    cache = SchemaCache(failing)

    assert cache.ensure("shop", "ghost") is None
    assert "falling back to positional columns" in caplog.text


@pytest.mark.unit
def test_invalidate_forces_reload():
    loader = _CountingLoader()
    cache = SchemaCache(loader)
    cache.resolve("shop", "orders")

    cache.invalidate("shop", "orders")
    cache.resolve("shop", "orders")

    assert loader.calls == [("shop", "orders"), ("shop", "orders")]


@pytest.mark.unit
def test_slow_load_does_not_block_other_tables():
    slow_started = threading.Event()
    release_slow = threading.Event()

    def loader(database, table):
        if (database, table) == ("a", "x"):
            slow_started.set()
            release_slow.wait(timeout=5)
        return TableSchema(database, table, ("id",), ("id",))

    cache = SchemaCache(loader)
    slow = threading.Thread(target=cache.resolve, args=("a", "x"))
    slow.start()
    try:
        assert slow_started.wait(timeout=5)

        fast = cache.resolve("b", "y")

        assert fast.table == "y"
        assert cache.get("a", "x") is None
    finally:
        release_slow.set()
        slow.join(timeout=5)
    assert cache.get("a", "x") is not None
