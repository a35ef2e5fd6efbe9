"""Append-only audit log of published change events."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog:
    """Writes ``<RFC3339> event_id=<id> payload=<json>`` lines to a file."""

    def __init__(
        self, path: Path | str, *, now: Callable[[], datetime] = _utcnow
    ) -> None:
        self._path = Path(path)
        self._now = now
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def format_line(self, event_id: str, payload: bytes) -> str:
        stamp = self._now().isoformat(timespec="seconds").replace("+00:00", "Z")
        text = payload.decode("utf-8", errors="replace")
        return f"{stamp} event_id={event_id} payload={text}\n"

    def append(self, event_id: str, payload: bytes) -> None:
        line = self.format_line(event_id, payload)
        with self._lock:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line)


def open_audit_log(path: Optional[str]) -> Optional[AuditLog]:
    if not path:
        return None
    audit = AuditLog(path)
    try:
        audit.path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("unable to create audit log directory %s: %s", audit.path.parent, exc)
    logger.info("audit log enabled at %s", audit.path)
    return audit


__all__ = ["AuditLog", "open_audit_log"]
