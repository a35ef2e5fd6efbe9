"""Table schema cache keyed by (database, table)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, Optional, Sequence, Tuple

from ..errors import SchemaLoadError

logger = logging.getLogger(__name__)

TableKey = Tuple[str, str]


@dataclass(frozen=True)
class TableSchema:
    """Ordered column names and primary key columns for one table."""

    database: str
    table: str
    columns: Tuple[str, ...]
    primary_key: Tuple[str, ...] = ()
    column_index: Dict[str, int] = field(
        init=False, repr=False, compare=False, hash=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "primary_key", tuple(self.primary_key))
        object.__setattr__(
            self,
            "column_index",
            {name: index for index, name in enumerate(self.columns)},
        )

    @property
    def key(self) -> TableKey:
        return self.database, self.table

    def matches_arity(self, row: Sequence[object]) -> bool:
        return len(self.columns) == len(row)


SchemaLoader = Callable[[str, str], TableSchema]


class SchemaCache:
    """Lazily populated schema map with one lock per table.

    The check-then-load sequence for a key runs under that key's lock, so two
    callers racing on the same table issue a single catalog query while
    lookups for other tables proceed independently.
    """

    def __init__(self, loader: SchemaLoader) -> None:
        self._loader = loader
        self._schemas: Dict[TableKey, TableSchema] = {}
        self._key_locks: Dict[TableKey, Lock] = {}
        self._registry_lock = Lock()

    def __len__(self) -> int:
        return len(self._schemas)

    def get(self, database: str, table: str) -> Optional[TableSchema]:
        return self._schemas.get((database, table))

    def resolve(self, database: str, table: str) -> TableSchema:
        key = (database, table)
        cached = self._schemas.get(key)
        if cached is not None:
            return cached
        with self._lock_for(key):
            cached = self._schemas.get(key)
            if cached is not None:
                return cached
            try:
                schema = self._loader(database, table)
            except SchemaLoadError:
                raise
            except Exception as exc:  # noqa: BLE001 - surfaced as SchemaLoadError
                raise SchemaLoadError(database, table, exc) from exc
            self._schemas[key] = schema
            logger.debug(
                "loaded schema for %s.%s: %d columns, primary key %s",
                database,
                table,
                len(schema.columns),
                list(schema.primary_key) or "<none>",
            )
            return schema

    def ensure(self, database: str, table: str) -> Optional[TableSchema]:
        """Resolve a schema, logging and returning ``None`` on failure."""
        try:
            return self.resolve(database, table)
        except SchemaLoadError as exc:
            logger.warning("%s; falling back to positional columns", exc)
            return None

    def invalidate(self, database: str, table: str) -> None:
        key = (database, table)
        with self._lock_for(key):
            self._schemas.pop(key, None)

    def _lock_for(self, key: TableKey) -> Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = Lock()
                self._key_locks[key] = lock
            return lock


__all__ = ["SchemaCache", "SchemaLoader", "TableKey", "TableSchema"]
