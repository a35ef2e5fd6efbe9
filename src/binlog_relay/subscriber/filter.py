"""Allow/deny filtering of decoded change events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import AbstractSet, FrozenSet, Iterable

from ..cdc.events import ChangeEvent


def _as_set(values: Iterable[str], *, lower: bool = False) -> FrozenSet[str]:
    cleaned = (value.strip() for value in values)
    return frozenset(
        value.lower() if lower else value for value in cleaned if value
    )


@dataclass(frozen=True)
class FilterSpec:
    """Allow-sets and deny-sets; an empty set places no restriction."""

    dbs: FrozenSet[str] = frozenset()
    tables: FrozenSet[str] = frozenset()
    ids: FrozenSet[str] = frozenset()
    ops: FrozenSet[str] = frozenset()
    change_any: FrozenSet[str] = frozenset()
    change_all: FrozenSet[str] = frozenset()
    exclude_dbs: FrozenSet[str] = frozenset()
    exclude_tables: FrozenSet[str] = frozenset()

    @classmethod
    def from_lists(
        cls,
        *,
        dbs: Iterable[str] = (),
        tables: Iterable[str] = (),
        ids: Iterable[str] = (),
        ops: Iterable[str] = (),
        change_any: Iterable[str] = (),
        change_all: Iterable[str] = (),
        exclude_dbs: Iterable[str] = (),
        exclude_tables: Iterable[str] = (),
    ) -> "FilterSpec":
        return cls(
            dbs=_as_set(dbs),
            tables=_as_set(tables),
            ids=_as_set(ids),
            ops=_as_set(ops, lower=True),
            change_any=_as_set(change_any),
            change_all=_as_set(change_all),
            exclude_dbs=_as_set(exclude_dbs),
            exclude_tables=_as_set(exclude_tables),
        )

    @property
    def unrestricted(self) -> bool:
        return not any(
            (
                self.dbs,
                self.tables,
                self.ids,
                self.ops,
                self.change_any,
                self.change_all,
                self.exclude_dbs,
                self.exclude_tables,
            )
        )


def _allowed(allow: AbstractSet[str], value: str) -> bool:
    return not allow or value in allow


class EventFilter:
    """Evaluates a :class:`FilterSpec` against events; pure and thread-safe.

    Deny-sets are checked first, then the allow-sets for database, table,
    row identity and operation, then the changed-column conditions.  The
    column conditions only look at ``changes``, so a non-empty
    ``change_any`` or ``change_all`` rejects creates and deletes.
    """

    def __init__(self, spec: FilterSpec) -> None:
        self.spec = spec

    def matches(self, event: ChangeEvent) -> bool:
        spec = self.spec
        if event.db in spec.exclude_dbs:
            return False
        if event.table in spec.exclude_tables:
            return False
        if not _allowed(spec.dbs, event.db):
            return False
        if not _allowed(spec.tables, event.table):
            return False
        if spec.ids and event.row_key_text not in spec.ids:
            return False
        if not _allowed(spec.ops, event.op.lower()):
            return False
        changed = set(event.changed_columns)
        if spec.change_any and not changed & spec.change_any:
            return False
        if spec.change_all and not spec.change_all <= changed:
            return False
        return True

    __call__ = matches


__all__ = ["EventFilter", "FilterSpec"]
