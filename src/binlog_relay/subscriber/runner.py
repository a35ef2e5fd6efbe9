"""Subscriber loop: receive, decode, filter, coalesce, deliver."""

from __future__ import annotations

import logging
import threading
from threading import Event
from typing import Callable, List, Optional, Sequence

from ..bus.transport import Transport, build_transport
from ..cdc.events import ChangeEvent
from ..errors import MalformedEventError
from ..metrics import SubscriberMetrics
from .config import SubscriberConfig
from .debounce import DebounceCoalescer
from .dispatcher import ConsolePrinter, DispatchOutcome, HttpDispatcher
from .filter import EventFilter

logger = logging.getLogger(__name__)

Sink = Callable[[ChangeEvent], object]

RESUBSCRIBE_DELAY_SECONDS = 5.0


def build_sink(config: SubscriberConfig) -> Sink:
    """HTTP dispatcher when ``API_URL`` is set, console printer otherwise."""
    if config.console_mode:
        return ConsolePrinter(pretty=config.pretty_print, name=config.name)
    return HttpDispatcher(
        config.api_url,
        timeout=config.api_timeout,
        name=config.name,
        log_file=config.api_log_file or None,
    )


class SubscriberRunner:
    """One independent subscriber instance bound to a transport and a sink."""

    def __init__(
        self,
        config: SubscriberConfig,
        transport: Transport,
        sink: Sink,
        *,
        stop_event: Optional[Event] = None,
        metrics: Optional[SubscriberMetrics] = None,
        resubscribe_delay: float = RESUBSCRIBE_DELAY_SECONDS,
    ) -> None:
        self.config = config
        self._transport = transport
        self._sink = sink
        self._stop_event = stop_event or Event()
        self._metrics = metrics or SubscriberMetrics()
        self._resubscribe_delay = resubscribe_delay
        self._filter = EventFilter(config.filter)
        self._coalescer: Optional[DebounceCoalescer] = None
        if config.debounce_enabled:
            self._coalescer = DebounceCoalescer(
                config.debounce_seconds,
                self.deliver,
                max_workers=config.dispatch_workers,
                max_pending=config.debounce_max_pending,
                metrics=self._metrics,
                name=config.name or "subscriber",
            )

    @property
    def metrics(self) -> SubscriberMetrics:
        return self._metrics

    @property
    def coalescer(self) -> Optional[DebounceCoalescer]:
        return self._coalescer

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        destination = self.config.transport.destination
        logger.info(
            "[%s] subscriber start | transport=%s destination=%s mode=%s debounce=%.3fs",
            self.config.name,
            self.config.transport.kind,
            destination,
            "console" if self.config.console_mode else self.config.api_url,
            self.config.debounce_seconds,
        )
        if self._coalescer is not None:
            self._coalescer.start()
        try:
            while not self._stop_event.is_set():
                try:
                    for raw in self._transport.subscribe(destination, self._stop_event):
                        self.handle(raw)
                    if not self._stop_event.is_set():
                        logger.warning(
                            "[%s] subscription ended - resubscribing in %.1fs",
                            self.config.name,
                            self._resubscribe_delay,
                        )
                        self._stop_event.wait(self._resubscribe_delay)
                except Exception:  # noqa: BLE001 - resubscribe after any failure
                    if self._stop_event.is_set():
                        break
                    logger.exception(
                        "[%s] subscription failed - resubscribing in %.1fs",
                        self.config.name,
                        self._resubscribe_delay,
                    )
                    self._stop_event.wait(self._resubscribe_delay)
        finally:
            self._shutdown()

    def handle(self, raw: bytes) -> bool:
        """Process one payload; returns True when it matched the filter.

        Never raises: a payload that cannot be decoded or routed is counted
        and dropped so the subscription keeps its place on the bus.
        """
        self._metrics.inc_received()
        try:
            event = ChangeEvent.from_json(raw)
        except MalformedEventError as exc:
            self._metrics.inc_malformed()
            logger.warning("[%s] dropping malformed payload: %s", self.config.name, exc)
            return False
        except Exception:  # noqa: BLE001 - one payload must not end the subscription
            self._metrics.inc_malformed()
            logger.exception("[%s] dropping undecodable payload", self.config.name)
            return False
        try:
            if not self._filter.matches(event):
                return False
            self._metrics.inc_matched()
            if self._coalescer is not None:
                self._coalescer.submit(event)
            else:
                self.deliver(event)
        except Exception:  # noqa: BLE001 - one payload must not end the subscription
            self._metrics.inc_dispatch_failures()
            logger.exception(
                "[%s] failed to route %s event on %s.%s",
                self.config.name,
                event.op,
                event.db,
                event.table,
            )
            return False
        return True

    def deliver(self, event: ChangeEvent) -> None:
        try:
            result = self._sink(event)
        except Exception:  # noqa: BLE001 - a failing sink must not stop the loop
            self._metrics.inc_dispatch_failures()
            logger.exception("[%s] sink raised for %s", self.config.name, event.event_id)
            return
        if isinstance(result, DispatchOutcome) and not result.ok:
            self._metrics.inc_dispatch_failures()
        else:
            self._metrics.inc_dispatched()

    def _shutdown(self) -> None:
        if self._coalescer is not None:
            self._coalescer.stop(flush=True)
        try:
            self._transport.close()
        except Exception:  # noqa: BLE001 - shutdown is best effort
            logger.exception("[%s] failed to close transport cleanly", self.config.name)
        close = getattr(self._sink, "close", None)
        if callable(close):
            close()
        logger.info("[%s] subscriber stopped", self.config.name)


def run_subscribers(
    configs: Sequence[SubscriberConfig],
    stop_event: Event,
    *,
    transport_factory: Callable[..., Transport] = build_transport,
    sink_factory: Callable[[SubscriberConfig], Sink] = build_sink,
) -> List[SubscriberRunner]:
    """Run every configured subscriber on its own thread until ``stop_event``."""
    runners = [
        SubscriberRunner(
            config,
            transport_factory(config.transport),
            sink_factory(config),
            stop_event=stop_event,
        )
        for config in configs
    ]
    threads = []
    for runner in runners:
        thread = threading.Thread(
            target=runner.run,
            name=f"subscriber-{runner.config.name or len(threads)}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
    for thread in threads:
        thread.join()
    return runners


__all__ = ["SubscriberRunner", "build_sink", "run_subscribers"]
