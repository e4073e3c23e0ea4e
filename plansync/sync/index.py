# plansync/sync/index.py
"""
Row index.

Remembers which table each row id belongs to and its foreign keys, so the
engine can route edits and deletes that arrive with only an id.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class RowRef:
    table: str
    row_id: str
    foreign_keys: dict[str, Any] = field(default_factory=dict)

    def parent(self, name: str) -> Any:
        return self.foreign_keys.get(name)


class UnknownEntityError(KeyError):
    """The engine has never seen a row with this id."""


class RowIndex:
    """id -> RowRef for every row fetched, created or reconciled this session."""

    def __init__(self) -> None:
        self._refs: dict[str, RowRef] = {}

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._refs

    def __len__(self) -> int:
        return len(self._refs)

    def remember(self, table: str, row: dict[str, Any]) -> RowRef | None:
        row_id = row.get("id")
        if not row_id:
            return None
        foreign_keys = {k: v for k, v in row.items() if k.endswith("_id")}
        ref = self._refs.get(row_id)
        if ref is None or ref.table != table:
            ref = RowRef(table=table, row_id=row_id)
            self._refs[row_id] = ref
        ref.foreign_keys.update(foreign_keys)
        return ref

    def remember_many(self, table: str, rows: list[dict[str, Any]]) -> None:
        for row in rows:
            self.remember(table, row)

    def lookup(self, row_id: str) -> RowRef | None:
        return self._refs.get(row_id)

    def require(self, row_id: str) -> RowRef:
        """
        Raises:
            UnknownEntityError: If the id was never seen
        """
        ref = self._refs.get(row_id)
        if ref is None:
            raise UnknownEntityError(f"Unknown entity {row_id}")
        return ref

    def forget(self, row_id: str) -> None:
        self._refs.pop(row_id, None)
