# plansync/backend/sqlite_store.py
"""
SQLite-backed backing store.

Provides async CRUD with WAL mode and IMMEDIATE transactions. Supports
multi-row transactions, so a reorder can be written atomically.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from plansync.backend.feed import ChangeFeed, Subscription
from plansync.backend.presence import InMemoryPresenceChannel, InMemoryPresenceHub
from plansync.backend.schema import init_db
from plansync.backend.store import (
    BackendError,
    BackingStore,
    EntityNotFoundError,
    check_columns,
    generate_id,
)
from plansync.models.events import ChangeEvent, EventKind
from plansync.models.tables import get_table, sort_rows

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteBackingStore(BackingStore):
    """
    Async SQLite-backed row storage.

    Features:
        - WAL mode for concurrent reads/writes
        - IMMEDIATE transactions for write safety
        - Transactional write_many (all-or-nothing)
        - No persistent connections (avoids resource leaks)
        - Change events published after commit
    """

    supports_transactions = True

    def __init__(
        self,
        db_path: str,
        feed: ChangeFeed | None = None,
        presence_hub: InMemoryPresenceHub | None = None,
    ) -> None:
        """
        Initialize SQLite backing store.

        Args:
            db_path: Path to SQLite database file
            feed: Change feed to publish to (new one if None)
            presence_hub: Presence hub shared by sessions (new one if None)
        """
        self._db_path = db_path
        self._feed = feed or ChangeFeed()
        self._presence_hub = presence_hub or InMemoryPresenceHub()
        logger.info(f"Created SQLiteBackingStore with path: {db_path}")

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    async def initialize(self) -> None:
        """Create the database file and schema."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        await init_db(self._db_path)

    async def read(
        self, table: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        spec = get_table(table)
        sql = "SELECT data FROM records WHERE table_name = ?"
        params: list[Any] = [table]

        for column, value in (filters or {}).items():
            if column not in spec.fields:
                raise BackendError(f"Unknown filter column {column} for {table}", retryable=False)
            if value is None:
                sql += " AND json_extract(data, ?) IS NULL"
                params.append(f"$.{column}")
            else:
                sql += " AND json_extract(data, ?) = ?"
                params.extend([f"$.{column}", value])

        try:
            async with aiosqlite.connect(self._db_path) as db:
                cursor = await db.execute(sql, params)
                fetched = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise BackendError(f"Read from {table} failed: {e}") from e

        return sort_rows(spec, [json.loads(row[0]) for row in fetched])

    async def write(self, table: str, row_id: str, fields: dict[str, Any]) -> None:
        await self.write_many(table, [(row_id, fields)])

    async def write_many(
        self, table: str, updates: list[tuple[str, dict[str, Any]]]
    ) -> None:
        """
        Update several rows atomically.

        Raises:
            EntityNotFoundError: If any row is missing (nothing is applied)
            BackendError: On database failure (nothing is applied)
        """
        get_table(table)
        for _, fields in updates:
            check_columns(table, fields)

        events: list[ChangeEvent] = []
        try:
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    for row_id, fields in updates:
                        old_row = await self._fetch(db, table, row_id)
                        if old_row is None:
                            raise EntityNotFoundError(table, row_id)
                        new_row = {**old_row, **fields}
                        await db.execute(
                            "UPDATE records SET data = ?, updated_at = ? "
                            "WHERE table_name = ? AND id = ?",
                            (json.dumps(new_row), _now(), table, row_id),
                        )
                        events.append(ChangeEvent(EventKind.UPDATE, table, new_row, old_row))
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
        except aiosqlite.Error as e:
            raise BackendError(f"Write to {table} failed: {e}") from e

        logger.debug(f"Updated {len(updates)} {table} row(s)")
        for event in events:
            self._feed.publish(event)

    async def create(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        row = get_table(table).validate_new(fields)
        row["id"] = generate_id()
        now = _now()

        try:
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute(
                    "INSERT INTO records (table_name, id, data, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (table, row["id"], json.dumps(row), now, now),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise BackendError(f"Insert into {table} failed: {e}") from e

        logger.debug(f"Created {table} row {row['id']}")
        self._feed.publish(ChangeEvent(EventKind.INSERT, table, dict(row), {}))
        return row

    async def delete(self, table: str, row_id: str) -> None:
        get_table(table)
        removed: list[tuple[str, dict[str, Any]]] = []

        try:
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    if await self._fetch(db, table, row_id) is None:
                        raise EntityNotFoundError(table, row_id)
                    await self._delete_cascade(db, table, row_id, removed)
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
        except aiosqlite.Error as e:
            raise BackendError(f"Delete from {table} failed: {e}") from e

        logger.debug(f"Deleted {table} row {row_id} ({len(removed)} row(s) incl. cascade)")
        for removed_table, old_row in removed:
            self._feed.publish(ChangeEvent(EventKind.DELETE, removed_table, {}, old_row))

    async def _delete_cascade(
        self,
        db: aiosqlite.Connection,
        table: str,
        row_id: str,
        removed: list[tuple[str, dict[str, Any]]],
    ) -> None:
        row = await self._fetch(db, table, row_id)
        if row is None:
            return
        for child_table, fk in get_table(table).cascade:
            cursor = await db.execute(
                "SELECT id FROM records WHERE table_name = ? AND json_extract(data, ?) = ?",
                (child_table, f"$.{fk}", row_id),
            )
            for (child_id,) in await cursor.fetchall():
                await self._delete_cascade(db, child_table, child_id, removed)
        await db.execute(
            "DELETE FROM records WHERE table_name = ? AND id = ?", (table, row_id)
        )
        removed.append((table, row))

    async def _fetch(
        self, db: aiosqlite.Connection, table: str, row_id: str
    ) -> dict[str, Any] | None:
        cursor = await db.execute(
            "SELECT data FROM records WHERE table_name = ? AND id = ?", (table, row_id)
        )
        found = await cursor.fetchone()
        return json.loads(found[0]) if found else None

    def subscribe(self, table: str) -> Subscription:
        get_table(table)
        return self._feed.subscribe(table)

    def presence_channel(self, name: str) -> InMemoryPresenceChannel:
        return self._presence_hub.channel(name)

    async def close(self) -> None:
        """
        Checkpoint WAL.

        Truncates WAL file to avoid unbounded growth.
        """
        try:
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                logger.info("WAL checkpoint completed")
        except aiosqlite.Error as e:
            logger.warning(f"WAL checkpoint failed: {e}")
