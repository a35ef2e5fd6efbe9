"""Prometheus counters for the emitter and subscriber pipelines."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge


class _MetricSet:
    """Counters/gauges on a private registry plus an in-process snapshot."""

    def __init__(
        self, namespace: str, registry: Optional[CollectorRegistry] = None
    ) -> None:
        self._namespace = namespace
        self.registry = registry or CollectorRegistry()
        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}
        self._snapshot: Dict[str, float] = defaultdict(float)
        self._lock = Lock()

    def _counter(self, name: str, documentation: str) -> None:
        self._counters[name] = Counter(
            f"{self._namespace}_{name}", documentation, registry=self.registry
        )

    def _gauge(self, name: str, documentation: str) -> None:
        self._gauges[name] = Gauge(
            f"{self._namespace}_{name}", documentation, registry=self.registry
        )

    def _inc(self, name: str, amount: float = 1) -> None:
        if amount <= 0:
            return
        self._counters[name].inc(amount)
        with self._lock:
            self._snapshot[f"{name}_total"] += amount

    def _set(self, name: str, value: float) -> None:
        self._gauges[name].set(value)
        with self._lock:
            self._snapshot[name] = value

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._snapshot)


class EmitterMetrics(_MetricSet):
    def __init__(
        self,
        namespace: str = "binlog_relay_emitter",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        super().__init__(namespace, registry)
        self._counter("rows", "Row images read from the replication stream")
        self._counter("events_published", "Change events accepted by the bus")
        self._counter("events_dropped", "Change events dropped after an error")
        self._counter("reconnects", "Replication session reconnect attempts")
        self._counter("schema_load_errors", "Schema catalog lookups that failed")
        self._counter("skipped_batches", "Row batches without a table map")
        self._gauge("table_map_size", "Cached table-map entries")

    def inc_rows(self, amount: int = 1) -> None:
        self._inc("rows", amount)

    def inc_published(self) -> None:
        self._inc("events_published")

    def inc_dropped(self) -> None:
        self._inc("events_dropped")

    def inc_reconnects(self) -> None:
        self._inc("reconnects")

    def inc_schema_errors(self) -> None:
        self._inc("schema_load_errors")

    def inc_skipped_batches(self) -> None:
        self._inc("skipped_batches")

    def set_table_map_size(self, value: int) -> None:
        self._set("table_map_size", value)


class SubscriberMetrics(_MetricSet):
    def __init__(
        self,
        namespace: str = "binlog_relay_subscriber",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        super().__init__(namespace, registry)
        self._counter("received", "Payloads received from the bus")
        self._counter("matched", "Events accepted by the filter")
        self._counter("malformed", "Payloads that could not be decoded")
        self._counter("coalesced", "Events superseded inside a debounce window")
        self._counter("flushed_early", "Pending events released early at the debounce cap")
        self._counter("dispatched", "Events delivered successfully")
        self._counter("dispatch_failures", "Events whose delivery failed")
        self._gauge("pending_depth", "Events waiting for their debounce timer")

    def inc_received(self) -> None:
        self._inc("received")

    def inc_matched(self) -> None:
        self._inc("matched")

    def inc_malformed(self) -> None:
        self._inc("malformed")

    def inc_coalesced(self) -> None:
        self._inc("coalesced")

    def inc_flushed_early(self) -> None:
        self._inc("flushed_early")

    def inc_dispatched(self) -> None:
        self._inc("dispatched")

    def inc_dispatch_failures(self) -> None:
        self._inc("dispatch_failures")

    def set_pending_depth(self, value: int) -> None:
        self._set("pending_depth", value)


__all__ = ["EmitterMetrics", "SubscriberMetrics"]
