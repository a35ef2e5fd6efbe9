import json
import threading

import pytest

from binlog_relay.cdc.events import ChangeEvent
from binlog_relay.config import TransportSettings
from binlog_relay.subscriber.config import SubscriberConfig
from binlog_relay.subscriber.dispatcher import (
    ConsolePrinter,
    DispatchOutcome,
    DispatchStatus,
    HttpDispatcher,
)
from binlog_relay.subscriber.filter import FilterSpec
from binlog_relay.subscriber.runner import SubscriberRunner, build_sink, run_subscribers


def _payload(table="orders", row_key=1, status="new", op="create"):
    return json.dumps(
        {
            "op": op,
            "timestamp": "2024-01-01 00:00:00",
            "db": "shop",
            "table": table,
            "row_key": row_key,
            "after": {"id": row_key, "status": status},
        }
    ).encode()


class _ScriptedTransport:
    """Yields its payloads once, then ends the subscription by setting stop."""

    def __init__(self, payloads, *, error=None):
        self._payloads = list(payloads)
        self._error = error
        self.destinations = []
        self.closed = False

    def publish(self, destination, payload, attributes):
        raise AssertionError("subscribers never publish")

    def subscribe(self, destination, stop_event):
        self.destinations.append(destination)
        if self._error is not None:
            error, self._error = self._error, None
            raise error
        yield from self._payloads
        stop_event.set()

    def close(self):
        self.closed = True


class _RecordingSink:
    def __init__(self, fail_keys=()):
        self.events = []
        self.closed = False
        self._fail_keys = set(fail_keys)
        self._lock = threading.Lock()

    def __call__(self, event):
        with self._lock:
            self.events.append(event)
        if event.row_key in self._fail_keys:
            return DispatchOutcome(
                status=DispatchStatus.FAILED,
                url="http://sink",
                op=event.op,
                db=event.db,
                table=event.table,
                row_key=event.row_key,
                status_code=500,
                duration_ms=1.0,
                response_body="",
                error="HTTP 500",
                timestamp="",
            )
        return None

    def close(self):
        self.closed = True


@pytest.mark.unit
def test_runner_filters_and_delivers_matching_events():
    transport = _ScriptedTransport(
        [_payload(row_key=1), _payload(table="secrets", row_key=2), _payload(row_key=3)]
    )
    sink = _RecordingSink()
    config = SubscriberConfig(
        name="orders", filter=FilterSpec.from_lists(exclude_tables=["secrets"])
    )
    runner = SubscriberRunner(config, transport, sink)

    runner.run()

    assert [event.row_key for event in sink.events] == [1, 3]
    assert transport.destinations == ["binlog:all"]
    assert transport.closed and sink.closed
    snapshot = runner.metrics.snapshot()
    assert snapshot["received_total"] == 3
    assert snapshot["matched_total"] == 2
    assert snapshot["dispatched_total"] == 2


@pytest.mark.unit
def test_malformed_payloads_are_counted_and_dropped(caplog):
    transport = _ScriptedTransport([b"{broken", b'{"op": "upsert"}', _payload()])
    sink = _RecordingSink()
    runner = SubscriberRunner(SubscriberConfig(name="orders"), transport, sink)

    runner.run()

    assert len(sink.events) == 1
    assert runner.metrics.snapshot()["malformed_total"] == 2
    assert "dropping malformed payload" in caplog.text


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw",
    [
        pytest.param(b"[" * 200000 + b"]" * 200000, id="deeply-nested"),
        pytest.param(
            b'{"op": "create", "db": "shop", "table": "orders", "row_key": '
            + b"9" * 5000
            + b"}",
            id="oversized-integer",
        ),
    ],
)
def test_undecodable_payload_does_not_interrupt_subscription(raw):
    transport = _ScriptedTransport([raw, _payload(row_key=7)])
    sink = _RecordingSink()
    runner = SubscriberRunner(
        SubscriberConfig(name="orders"), transport, sink, resubscribe_delay=0.01
    )

    runner.run()

    assert transport.destinations == ["binlog:all"]
    assert sink.events[-1].row_key == 7
    assert runner.metrics.snapshot()["received_total"] == 2


@pytest.mark.unit
def test_routing_errors_are_counted_and_the_loop_continues(caplog):
    class _ExplodingFilter:
        def matches(self, event):
            if event.row_key == 1:
                raise RuntimeError("filter bug")
            return True

    transport = _ScriptedTransport([_payload(row_key=1), _payload(row_key=2)])
    sink = _RecordingSink()
    runner = SubscriberRunner(SubscriberConfig(name="orders"), transport, sink)
    runner._filter = _ExplodingFilter()

    runner.run()

    assert [event.row_key for event in sink.events] == [2]
    assert transport.destinations == ["binlog:all"]
    assert runner.metrics.snapshot()["dispatch_failures_total"] == 1
    assert "failed to route create event on shop.orders" in caplog.text


@pytest.mark.unit
def test_failed_outcomes_and_sink_errors_count_as_dispatch_failures():
    sink = _RecordingSink(fail_keys={1})
    runner = SubscriberRunner(SubscriberConfig(name="s"), _ScriptedTransport([]), sink)

    runner.deliver(ChangeEvent.from_json(_payload(row_key=1)))
    runner.deliver(ChangeEvent.from_json(_payload(row_key=2)))

    def boom(event):
        raise RuntimeError("sink down")

    failing = SubscriberRunner(SubscriberConfig(name="s"), _ScriptedTransport([]), boom)
    failing.deliver(ChangeEvent.from_json(_payload()))

    assert runner.metrics.snapshot()["dispatch_failures_total"] == 1
    assert runner.metrics.snapshot()["dispatched_total"] == 1
    assert failing.metrics.snapshot()["dispatch_failures_total"] == 1


@pytest.mark.unit
def test_debounced_runner_flushes_latest_event_on_shutdown():
    transport = _ScriptedTransport(
        [
            _payload(row_key=1, status="new"),
            _payload(row_key=1, status="paid"),
            _payload(row_key=2, status="new"),
        ]
    )
    sink = _RecordingSink()
    config = SubscriberConfig(name="orders", debounce_seconds=60)
    runner = SubscriberRunner(config, transport, sink)

    runner.run()

    delivered = sorted((e.row_key, e.after["status"]) for e in sink.events)
    assert delivered == [(1, "paid"), (2, "new")]
    assert runner.metrics.snapshot()["coalesced_total"] == 1


@pytest.mark.unit
def test_subscription_errors_trigger_resubscribe(caplog):
    transport = _ScriptedTransport([_payload()], error=ConnectionError("redis gone"))
    sink = _RecordingSink()
    runner = SubscriberRunner(
        SubscriberConfig(name="orders"), transport, sink, resubscribe_delay=0.01
    )

    runner.run()

    assert transport.destinations == ["binlog:all", "binlog:all"]
    assert len(sink.events) == 1
    assert "subscription failed" in caplog.text


@pytest.mark.unit
def test_build_sink_picks_console_or_http():
    console = build_sink(SubscriberConfig(name="c", pretty_print=True))
    http = build_sink(SubscriberConfig(name="h", api_url="http://localhost:9/hook"))

    assert isinstance(console, ConsolePrinter)
    assert isinstance(http, HttpDispatcher)
    http.close()


class _CountdownTransport(_ScriptedTransport):
    """Sets stop only after every instance sharing ``remaining`` delivered."""

    def __init__(self, payloads, remaining, lock):
        super().__init__(payloads)
        self._remaining = remaining
        self._lock = lock

    def subscribe(self, destination, stop_event):
        self.destinations.append(destination)
        yield from self._payloads
        with self._lock:
            self._remaining[0] -= 1
            if self._remaining[0] == 0:
                stop_event.set()
        stop_event.wait(timeout=5)


@pytest.mark.unit
def test_run_subscribers_runs_each_config_independently():
    stop = threading.Event()
    transports = {}
    sinks = {}
    remaining = [2]
    lock = threading.Lock()

    def transport_factory(settings):
        transport = _CountdownTransport([_payload()], remaining, lock)
        transports[settings.channel] = transport
        return transport

    def sink_factory(config):
        sinks[config.name] = _RecordingSink()
        return sinks[config.name]

    configs = [
        SubscriberConfig(name="a", transport=TransportSettings(channel="ch:a")),
        SubscriberConfig(name="b", transport=TransportSettings(channel="ch:b")),
    ]

    runners = run_subscribers(
        configs, stop, transport_factory=transport_factory, sink_factory=sink_factory
    )

    assert [runner.config.name for runner in runners] == ["a", "b"]
    assert set(transports) == {"ch:a", "ch:b"}
    assert all(len(sink.events) == 1 for sink in sinks.values())
