# plansync/models/events.py
"""
Realtime change notifications.

A ChangeEvent describes one row-level write observed on the backing store,
possibly made by another session.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """
    One row change on one table.

    new_row is empty for DELETE; old_row may carry only the primary key.
    Either may be a partial row.
    """

    kind: EventKind
    table: str
    new_row: dict[str, Any] = field(default_factory=dict)
    old_row: dict[str, Any] = field(default_factory=dict)

    @property
    def row_id(self) -> str | None:
        return self.new_row.get("id") or self.old_row.get("id")

    def value(self, name: str) -> Any:
        """Column value from new_row, falling back to old_row."""
        if self.new_row.get(name) is not None:
            return self.new_row[name]
        return self.old_row.get(name)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeEvent":
        """
        Parse a raw push payload ({eventType, table, new, old}).

        Raises:
            ValueError: If the payload is not a dict, names no table, or has
                an unknown event type
        """
        if not isinstance(payload, dict):
            raise ValueError(f"Change payload must be a dict, got {type(payload).__name__}")

        table = payload.get("table")
        if not table:
            raise ValueError("Change payload has no table")

        raw_kind = payload.get("eventType") or payload.get("kind")
        try:
            kind = EventKind(str(raw_kind).upper())
        except ValueError:
            raise ValueError(f"Unknown change kind {raw_kind!r} for table {table}") from None

        new_row = payload.get("new")
        old_row = payload.get("old")
        return cls(
            kind=kind,
            table=table,
            new_row=new_row if isinstance(new_row, dict) else {},
            old_row=old_row if isinstance(old_row, dict) else {},
        )
