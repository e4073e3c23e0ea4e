# plansync/backend/memory.py
"""
In-memory backing store.

Shared by every session of a process (tests, demos). Publishes a ChangeEvent
for each write, including cascaded deletes, and supports fault injection so
callers can exercise rollback paths.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any

from plansync.backend.feed import ChangeFeed, Subscription
from plansync.backend.presence import InMemoryPresenceChannel, InMemoryPresenceHub
from plansync.backend.store import (
    BackendError,
    BackingStore,
    EntityNotFoundError,
    check_columns,
    generate_id,
)
from plansync.models.events import ChangeEvent, EventKind
from plansync.models.tables import TABLES, get_table, sort_rows

logger = logging.getLogger(__name__)


@dataclass
class _Fault:
    """A scheduled failure for matching operations."""

    op: str | None
    table: str | None
    row_id: str | None
    remaining: int
    message: str
    retryable: bool

    def matches(self, op: str, table: str, row_id: str | None) -> bool:
        return (
            self.remaining > 0
            and (self.op is None or self.op == op)
            and (self.table is None or self.table == table)
            and (self.row_id is None or self.row_id == row_id)
        )


class InMemoryBackingStore(BackingStore):
    """
    Dict-backed store with a change feed.

    Features:
        - Cascading deletes with a DELETE event per removed row
        - Optional per-operation latency
        - Fault injection (inject_failure)
    """

    supports_transactions = False

    def __init__(
        self,
        feed: ChangeFeed | None = None,
        presence_hub: InMemoryPresenceHub | None = None,
        latency: float = 0.0,
    ) -> None:
        """
        Initialize an empty store.

        Args:
            feed: Change feed to publish to (new one if None)
            presence_hub: Presence hub shared by sessions (new one if None)
            latency: Seconds each operation waits before completing
        """
        self._tables: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in TABLES}
        self._feed = feed or ChangeFeed()
        self._presence_hub = presence_hub or InMemoryPresenceHub()
        self._latency = latency
        self._faults: list[_Fault] = []
        self.calls: list[tuple[str, str, str | None]] = []
        logger.info("Initialized InMemoryBackingStore")

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    def inject_failure(
        self,
        *,
        op: str | None = None,
        table: str | None = None,
        row_id: str | None = None,
        times: int = 1,
        message: str = "injected failure",
        retryable: bool = True,
    ) -> None:
        """
        Make the next matching operation(s) raise BackendError.

        Args:
            op: read/write/create/delete (None = any)
            table: Table name (None = any)
            row_id: Row id (None = any)
            times: Number of matching calls to fail
        """
        self._faults.append(
            _Fault(op, table, row_id, times, message, retryable)
        )

    async def _enter(self, op: str, table: str, row_id: str | None = None) -> None:
        get_table(table)
        self.calls.append((op, table, row_id))
        if self._latency:
            await asyncio.sleep(self._latency)
        for fault in self._faults:
            if fault.matches(op, table, row_id):
                fault.remaining -= 1
                logger.debug(f"Injected failure on {op} {table} {row_id}")
                raise BackendError(fault.message, retryable=fault.retryable)

    async def read(
        self, table: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        await self._enter("read", table)
        filters = filters or {}
        rows = [
            copy.deepcopy(row)
            for row in self._tables[table].values()
            if all(row.get(k) == v for k, v in filters.items())
        ]
        return sort_rows(get_table(table), rows)

    async def write(self, table: str, row_id: str, fields: dict[str, Any]) -> None:
        await self._enter("write", table, row_id)
        check_columns(table, fields)
        row = self._tables[table].get(row_id)
        if row is None:
            raise EntityNotFoundError(table, row_id)

        old_row = copy.deepcopy(row)
        row.update(copy.deepcopy(fields))
        self._feed.publish(
            ChangeEvent(EventKind.UPDATE, table, copy.deepcopy(row), old_row)
        )

    async def create(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        await self._enter("create", table)
        row = get_table(table).validate_new(fields)
        row["id"] = generate_id()
        self._tables[table][row["id"]] = row
        self._feed.publish(ChangeEvent(EventKind.INSERT, table, copy.deepcopy(row), {}))
        return copy.deepcopy(row)

    async def delete(self, table: str, row_id: str) -> None:
        await self._enter("delete", table, row_id)
        if row_id not in self._tables[table]:
            raise EntityNotFoundError(table, row_id)
        self._delete_cascade(table, row_id)

    def _delete_cascade(self, table: str, row_id: str) -> None:
        row = self._tables[table].pop(row_id, None)
        if row is None:
            return
        for child_table, fk in get_table(table).cascade:
            children = [
                child["id"]
                for child in self._tables[child_table].values()
                if child.get(fk) == row_id
            ]
            for child_id in children:
                self._delete_cascade(child_table, child_id)
        self._feed.publish(ChangeEvent(EventKind.DELETE, table, {}, row))

    def subscribe(self, table: str) -> Subscription:
        get_table(table)
        return self._feed.subscribe(table)

    def presence_channel(self, name: str) -> InMemoryPresenceChannel:
        return self._presence_hub.channel(name)

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Synchronous snapshot of a table (for inspection/testing)."""
        return sort_rows(get_table(table), copy.deepcopy(list(self._tables[table].values())))
