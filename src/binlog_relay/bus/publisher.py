"""Publishes encoded change events to the bus."""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from ..errors import TransportError
from .audit import AuditLog
from .transport import Transport

logger = logging.getLogger(__name__)


class BusPublisher:
    """Sends payloads to one destination and tees accepted ones to the audit log."""

    def __init__(
        self,
        transport: Transport,
        destination: str,
        audit_log: Optional[AuditLog] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._transport = transport
        self._destination = destination
        self._audit_log = audit_log
        self._clock = clock

    @property
    def destination(self) -> str:
        return self._destination

    def publish(self, payload: bytes, event_id: str) -> None:
        attributes: Dict[str, str] = {
            "event_id": event_id,
            "ts": f"{self._clock():.6f}",
        }
        try:
            self._transport.publish(self._destination, payload, attributes)
        except TransportError:
            raise
        except Exception as exc:  # noqa: BLE001 - normalized for the stream loop
            raise TransportError(
                f"publish to {self._destination} failed: {exc}"
            ) from exc
        logger.debug("published %s to %s", event_id, self._destination)
        if self._audit_log is None:
            return
        try:
            self._audit_log.append(event_id, payload)
        except OSError as exc:
            logger.error(
                "failed to append %s to audit log %s: %s",
                event_id,
                self._audit_log.path,
                exc,
            )


__all__ = ["BusPublisher"]
