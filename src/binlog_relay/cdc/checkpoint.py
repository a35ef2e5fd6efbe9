"""Checkpoint store implementations for binlog resume positions."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Mapping, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


def split_log_name(log_file: str) -> Tuple[str, int]:
    """``mysql-bin.000042`` -> ``("mysql-bin", 42)``; unnumbered names get -1."""
    stem, _, suffix = log_file.rpartition(".")
    if stem and suffix.isdigit():
        return stem, int(suffix)
    return log_file, -1


@dataclass(frozen=True)
class BinlogPosition:
    """A resume point in the source's binary log.

    Positions order by the numeric suffix of ``log_file`` and then by
    ``log_pos``, so ``mysql-bin.1000000`` follows ``mysql-bin.999999``.
    """

    log_file: str
    log_pos: int
    gtid_set: Optional[str] = None

    @property
    def sequence(self) -> int:
        return split_log_name(self.log_file)[1]

    def same_log_series(self, other: "BinlogPosition") -> bool:
        return split_log_name(self.log_file)[0] == split_log_name(other.log_file)[0]

    def precedes(self, other: "BinlogPosition") -> bool:
        return (self.sequence, self.log_pos) < (other.sequence, other.log_pos)

    def beyond(self, head: "BinlogPosition") -> bool:
        """True when the server whose binlog ends at ``head`` cannot hold this position."""
        return not self.same_log_series(head) or head.precedes(self)

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {"log_file": self.log_file, "log_pos": self.log_pos}
        if self.gtid_set:
            data["gtid_set"] = self.gtid_set
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Optional["BinlogPosition"]:
        log_file = data.get("log_file")
        log_pos = data.get("log_pos")
        if not isinstance(log_file, str) or not log_file:
            return None
        if not isinstance(log_pos, int) or isinstance(log_pos, bool):
            return None
        gtid_set = data.get("gtid_set")
        return cls(
            log_file=log_file,
            log_pos=log_pos,
            gtid_set=gtid_set if isinstance(gtid_set, str) else None,
        )

    def __str__(self) -> str:
        return f"{self.log_file}:{self.log_pos}"


class CheckpointStore(Protocol):
    """Persistence backend for stream positions."""

    def load(self, name: str) -> Optional[BinlogPosition]: ...

    def save(self, name: str, position: BinlogPosition) -> None: ...

    def clear(self, name: str) -> None: ...


def _advances(
    name: str, current: Optional[BinlogPosition], position: BinlogPosition
) -> bool:
    if current is None:
        return True
    if current.same_log_series(position) and current.sequence == position.sequence:
        return current.log_pos < position.log_pos
    if not current.same_log_series(position) or position.precedes(current):
        logger.warning(
            "checkpoint %s moves back from %s to %s; assuming the binlog was reset",
            name,
            current,
            position,
        )
    return True


class InMemoryCheckpointStore:
    """Volatile checkpoint store; a restarted emitter resumes from the live head."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._positions: Dict[str, BinlogPosition] = {}

    def load(self, name: str) -> Optional[BinlogPosition]:
        with self._lock:
            return self._positions.get(name)

    def save(self, name: str, position: BinlogPosition) -> None:
        with self._lock:
            if _advances(name, self._positions.get(name), position):
                self._positions[name] = position

    def clear(self, name: str) -> None:
        with self._lock:
            self._positions.pop(name, None)


class PersistentCheckpointStore:
    """JSON file of ``{name: position}``, rewritten through a rename on every save."""

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = RLock()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - permission problems only
            logger.warning(
                "cannot create checkpoint directory %s: %s", self._path.parent, exc
            )
        self._positions: Dict[str, BinlogPosition] = self._read()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, name: str) -> Optional[BinlogPosition]:
        with self._lock:
            return self._positions.get(name)

    def save(self, name: str, position: BinlogPosition) -> None:
        with self._lock:
            if not _advances(name, self._positions.get(name), position):
                return
            self._positions[name] = position
            self._flush()

    def clear(self, name: str) -> None:
        with self._lock:
            if self._positions.pop(name, None) is not None:
                self._flush()

    def _read(self) -> Dict[str, BinlogPosition]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning("cannot read checkpoint file %s: %s", self._path, exc)
            return {}
        try:
            document = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError as exc:
            logger.warning("ignoring corrupt checkpoint file %s: %s", self._path, exc)
            return {}
        if not isinstance(document, dict):
            logger.warning("ignoring checkpoint file %s: expected a JSON object", self._path)
            return {}
        positions = {}
        for name, entry in document.items():
            position = BinlogPosition.from_dict(entry) if isinstance(entry, dict) else None
            if position is not None:
                positions[str(name)] = position
        return positions

    def _flush(self) -> None:
        document = {name: position.to_dict() for name, position in self._positions.items()}
        staging: Optional[str] = None
        try:
            fd, staging = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, sort_keys=True)
                handle.flush()
                if self._fsync:
                    os.fsync(handle.fileno())
            os.replace(staging, self._path)
        except OSError as exc:
            logger.error("cannot write checkpoint file %s: %s", self._path, exc)
            if staging is not None:
                with contextlib.suppress(OSError):
                    os.unlink(staging)
            raise


__all__ = [
    "BinlogPosition",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "PersistentCheckpointStore",
    "split_log_name",
]
