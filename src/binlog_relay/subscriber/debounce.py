"""Per-row debounce: only the latest event for a row survives its window."""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..cdc.events import ChangeEvent
from ..metrics import SubscriberMetrics

logger = logging.getLogger(__name__)


def coalesce_key(event: ChangeEvent) -> str:
    return f"{event.db}.{event.table}:{event.row_key_text}"


@dataclass
class PendingDispatch:
    key: str
    event: ChangeEvent
    deadline: float
    first_seen: float
    coalesced: int = 0


class DebounceBuffer:
    """Pending events keyed by row, each with a sliding deadline.

    When more than ``max_entries`` rows are pending the oldest one is released
    early: it comes back from the next :meth:`pop_due` regardless of its
    deadline, so a full buffer shortens windows instead of losing rows.

    Not thread-safe; :class:`DebounceCoalescer` confines it to one thread.
    """

    def __init__(
        self,
        window_seconds: float,
        max_entries: int = 10000,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[SubscriberMetrics] = None,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._metrics = metrics
        self._entries: Dict[str, PendingDispatch] = {}
        self._released: List[PendingDispatch] = []

    def __len__(self) -> int:
        return len(self._entries) + len(self._released)

    def pending_keys(self) -> List[str]:
        return list(self._entries)

    def add(self, key: str, event: ChangeEvent, *, now: Optional[float] = None) -> bool:
        """Store ``event`` for ``key`` and re-arm its deadline.

        Returns True when an earlier pending event for the key was replaced.
        """
        current = now if now is not None else self._clock()
        entry = self._entries.get(key)
        if entry is not None:
            entry.event = event
            entry.deadline = current + self.window_seconds
            entry.coalesced += 1
            if self._metrics is not None:
                self._metrics.inc_coalesced()
            return True
        self._entries[key] = PendingDispatch(
            key=key,
            event=event,
            deadline=current + self.window_seconds,
            first_seen=current,
        )
        self._enforce_cap()
        self._report_depth()
        return False

    def next_deadline(self) -> Optional[float]:
        if self._released:
            return min(entry.first_seen for entry in self._released)
        if not self._entries:
            return None
        return min(entry.deadline for entry in self._entries.values())

    def pop_due(self, *, now: Optional[float] = None) -> List[PendingDispatch]:
        current = now if now is not None else self._clock()
        due, self._released = self._released, []
        expired = [entry for entry in self._entries.values() if entry.deadline <= current]
        for entry in expired:
            del self._entries[entry.key]
        due.extend(expired)
        if due:
            self._report_depth()
        return due

    def drain(self) -> List[PendingDispatch]:
        entries = self._released + list(self._entries.values())
        self._released = []
        self._entries.clear()
        self._report_depth()
        return entries

    def _enforce_cap(self) -> None:
        while len(self._entries) > self.max_entries:
            oldest_key = next(iter(self._entries))
            released = self._entries.pop(oldest_key)
            self._released.append(released)
            if self._metrics is not None:
                self._metrics.inc_flushed_early()
            logger.warning(
                "debounce buffer full - releasing pending %s event for %s early",
                released.event.op,
                oldest_key,
            )

    def _report_depth(self) -> None:
        if self._metrics is not None:
            self._metrics.set_pending_depth(len(self))


_STOP = object()


class DebounceCoalescer:
    """Actor thread owning a :class:`DebounceBuffer`.

    ``submit`` only enqueues; the actor applies events to the buffer, sleeps
    until the nearest deadline or the next message, and hands due events to a
    thread pool so dispatches for different rows run concurrently.
    """

    def __init__(
        self,
        window_seconds: float,
        dispatch: Callable[[ChangeEvent], object],
        *,
        max_workers: int = 4,
        max_pending: int = 10000,
        metrics: Optional[SubscriberMetrics] = None,
        name: str = "debounce",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._dispatch = dispatch
        self._clock = clock
        self._name = name
        self._buffer = DebounceBuffer(
            window_seconds, max_pending, clock=clock, metrics=metrics
        )
        self._inbox: "queue.Queue[object]" = queue.Queue()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix=f"{name}-dispatch"
        )
        self._thread: Optional[threading.Thread] = None
        self._flush_on_stop = True

    @property
    def window_seconds(self) -> float:
        return self._buffer.window_seconds

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._run, name=f"{self._name}-coalescer", daemon=True
        )
        self._thread.start()

    def submit(self, event: ChangeEvent) -> None:
        self._inbox.put((coalesce_key(event), event))

    def stop(self, *, flush: bool = True, timeout: Optional[float] = None) -> None:
        """Stop the actor; with ``flush`` pending events are dispatched first.

        Waits for in-flight dispatches to finish before returning.
        """
        self._flush_on_stop = flush
        self._inbox.put(_STOP)
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._executor.shutdown(wait=True)

    def _run(self) -> None:
        while True:
            deadline = self._buffer.next_deadline()
            wait = None if deadline is None else max(0.0, deadline - self._clock())
            try:
                message = self._inbox.get(timeout=wait)
            except queue.Empty:
                message = None
            if message is _STOP:
                break
            if message is not None:
                key, event = message  # type: ignore[misc]
                self._buffer.add(key, event)
            for entry in self._buffer.pop_due():
                self._hand_off(entry)
        remaining = self._buffer.drain()
        if self._flush_on_stop:
            for entry in remaining:
                self._hand_off(entry)
        elif remaining:
            logger.info(
                "%s: discarding %d pending events on shutdown", self._name, len(remaining)
            )

    def _hand_off(self, entry: PendingDispatch) -> None:
        logger.debug(
            "%s: dispatching %s after %d coalesced events",
            self._name,
            entry.key,
            entry.coalesced,
        )
        self._executor.submit(self._safe_dispatch, entry.event)

    def _safe_dispatch(self, event: ChangeEvent) -> None:
        try:
            self._dispatch(event)
        except Exception:  # noqa: BLE001 - sink errors must not stop the pool
            logger.exception("%s: dispatch of %s raised", self._name, event.event_id)


__all__ = [
    "DebounceBuffer",
    "DebounceCoalescer",
    "PendingDispatch",
    "coalesce_key",
]
