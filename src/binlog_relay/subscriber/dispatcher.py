"""Event sinks: HTTP delivery with outcome records, and console printing."""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Callable, Dict, Optional, TextIO

import httpx

from ..cdc.events import ChangeEvent

logger = logging.getLogger(__name__)

OUTCOME_LOGGER = "binlog_relay.dispatch"
BODY_LIMIT = 512


class DispatchStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class DispatchOutcome:
    """One delivery attempt as written to the outcome log."""

    status: DispatchStatus
    url: str
    op: str
    db: str
    table: str
    row_key: object
    status_code: Optional[int]
    duration_ms: float
    response_body: str
    error: Optional[str]
    timestamp: str
    subscriber: str = ""

    @property
    def ok(self) -> bool:
        return self.status is DispatchStatus.SUCCESS

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


def _truncate(text: str, limit: int = BODY_LIMIT) -> str:
    return text if len(text) <= limit else text[:limit]


def outcome_logger(name: str = "", log_file: Optional[str] = None) -> logging.Logger:
    """Return the outcome logger for a subscriber, teeing to ``log_file`` if set."""
    target = logging.getLogger(f"{OUTCOME_LOGGER}.{name}" if name else OUTCOME_LOGGER)
    if log_file and not any(
        isinstance(handler, logging.FileHandler)
        and handler.baseFilename == os.path.abspath(log_file)
        for handler in target.handlers
    ):
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(message)s"))
        target.addHandler(handler)
    if target.level == logging.NOTSET:
        target.setLevel(logging.INFO)
    return target


class HttpDispatcher:
    """POSTs each event document once; non-2xx and transport errors are failures."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
        name: str = "",
        log_file: Optional[str] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        if not url:
            raise ValueError("url must be provided")
        self.url = url
        self._name = name
        self._clock = clock
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        self._outcomes = outcome_logger(name, log_file)

    def __call__(self, event: ChangeEvent) -> DispatchOutcome:
        return self.dispatch(event)

    def dispatch(self, event: ChangeEvent) -> DispatchOutcome:
        started = self._clock()
        status_code: Optional[int] = None
        body = ""
        error: Optional[str] = None
        try:
            response = self._client.post(
                self.url,
                content=event.encode(),
                headers={"Content-Type": "application/json"},
            )
            status_code = response.status_code
            body = _truncate(response.text)
            if not response.is_success:
                error = f"HTTP {status_code}"
        except httpx.HTTPError as exc:
            error = f"{type(exc).__name__}: {exc}"
        outcome = DispatchOutcome(
            status=DispatchStatus.FAILED if error else DispatchStatus.SUCCESS,
            url=self.url,
            op=event.op,
            db=event.db,
            table=event.table,
            row_key=event.row_key,
            status_code=status_code,
            duration_ms=round((self._clock() - started) * 1000.0, 3),
            response_body=body,
            error=error,
            timestamp=datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            subscriber=self._name,
        )
        level = logging.INFO if outcome.ok else logging.ERROR
        self._outcomes.log(level, outcome.to_json())
        return outcome

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class ConsolePrinter:
    """Console-mode sink: one document per line, optionally indented."""

    def __init__(
        self, *, pretty: bool = False, name: str = "", stream: Optional[TextIO] = None
    ) -> None:
        self._pretty = pretty
        self._prefix = f"[{name}] " if name else ""
        self._stream = stream
        self._lock = Lock()

    def __call__(self, event: ChangeEvent) -> None:
        text = event.to_json(indent=2 if self._pretty else None)
        stream = self._stream or sys.stdout
        with self._lock:
            stream.write(f"{self._prefix}{text}\n")
            stream.flush()

    def close(self) -> None:
        return None


__all__ = [
    "ConsolePrinter",
    "DispatchOutcome",
    "DispatchStatus",
    "HttpDispatcher",
    "OUTCOME_LOGGER",
    "outcome_logger",
]
