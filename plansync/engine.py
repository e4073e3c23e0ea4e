# plansync/engine.py
"""
SyncEngine: the surface the UI layer talks to.

Wires one EntityCache to the coalescer, executor, reconciler, reorder
manager and presence trackers. Reads are synchronous cache reads; every
mutation is applied to the cache first and confirmed by the backing store
afterwards.
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable
from uuid import uuid4

from plansync.backend.factory import create_backing_store
from plansync.backend.store import BackendError, BackingStore
from plansync.config.loader import load_config
from plansync.config.schema import PlanSyncConfig
from plansync.logging_config import configure_logging
from plansync.models import keys
from plansync.models.entities import (
    PresenceUser,
    initial_planning_window,
    release_plan_window,
)
from plansync.models.keys import CacheKey
from plansync.models.tables import (
    INITIAL_PLANNING,
    INITIATIVES,
    RELEASE_PLANS,
    TASK_UPDATES,
    TASKS,
    TableSpec,
    get_table,
)
from plansync.sync.cache import CachedEntry, EntityCache
from plansync.sync.coalescer import WriteCoalescer
from plansync.sync.executor import MutationExecutor, MutationOutcome, OptimisticWrite
from plansync.sync.index import RowIndex, RowRef
from plansync.sync.notices import Notifier
from plansync.sync.ordering import ReorderManager, ReorderOutcome
from plansync.sync.presence import PresenceTracker
from plansync.sync.queries import QueryService
from plansync.sync.reconciler import AGGREGATE, RECORD, ROWS, RealtimeReconciler, keys_for_row
from plansync.sync.rows import find_row, merge_row, prune_row, upsert_row

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "tmp-"

# Tables whose rows feed the dashboard timeline
_TIMELINE_TABLES = frozenset({INITIATIVES, INITIAL_PLANNING, RELEASE_PLANS})

_LABELS = {
    INITIATIVES: "initiative",
    INITIAL_PLANNING: "initial planning",
    RELEASE_PLANS: "release plan",
    TASK_UPDATES: "status update",
    TASKS: "task",
}


def _label(table: str) -> str:
    return _LABELS.get(table, table.rstrip("s").replace("_", " "))


@dataclass
class PendingEdit:
    """A coalesced field value plus the optimistic write it rolls back to."""

    value: Any
    write: OptimisticWrite


class SyncEngine:
    """
    Client-side sync engine for one session.

    Example:
        engine = SyncEngine(InMemoryBackingStore())
        engine.start()
        await engine.load(keys.initiative_list())
        engine.edit(initiative_id, "name", "Checkout v2")
        await engine.close()
    """

    def __init__(
        self,
        backend: BackingStore,
        config: PlanSyncConfig | None = None,
        notifier: Notifier | None = None,
        cache: EntityCache | None = None,
    ) -> None:
        """
        Initialize engine.

        Args:
            backend: Store owning the authoritative rows
            config: Engine configuration (defaults if None)
            notifier: Notice sink (a new one if None)
            cache: Cache to use (a new one if None); its loader is replaced
        """
        self.config = config or PlanSyncConfig()
        self.backend = backend
        self.notifier = notifier or Notifier(self.config.notices.history_size)
        self.index = RowIndex()
        self.queries = QueryService(backend, self.index)
        self.cache = cache if cache is not None else EntityCache()
        self.cache.set_loader(self._load)
        self.coalescer = WriteCoalescer(self.config.sync.debounce_seconds)
        self.executor = MutationExecutor(self.cache, self.notifier)
        self.reconciler = RealtimeReconciler(
            self.cache, backend, self.notifier, coalescer=self.coalescer, index=self.index
        )
        self.ordering = ReorderManager(self.cache, backend, self.notifier, self.executor)
        self._presence: dict[str, PresenceTracker] = {}
        self._owns_backend = False

    @classmethod
    async def open(
        cls, config: PlanSyncConfig | None = None, notifier: Notifier | None = None
    ) -> "SyncEngine":
        """
        Build an engine from configuration.

        Applies the logging section, creates the configured backing store
        and wires the engine to it. The engine is not started.

        Args:
            config: Configuration (loaded from the user config file if None)
            notifier: Notice sink (a new one if None)
        """
        config = config or load_config()
        configure_logging(config.logging.level, config.logging.json_output)
        backend = await create_backing_store(config)
        logger.info(f"Opened sync engine on {config.backend.kind} backend")
        engine = cls(backend, config, notifier)
        engine._owns_backend = True
        return engine

    # Lifecycle

    def start(self) -> None:
        """Start consuming realtime change streams. Requires a running loop."""
        self.reconciler.start()

    async def close(self) -> None:
        """
        Shut the session down.

        Pending edits are flushed (never dropped) before subscriptions and
        presence are torn down. A backend created by open() is closed too.
        """
        await self.coalescer.drain()
        for name in list(self._presence):
            await self.leave_presence(name)
        await self.reconciler.stop()
        await self.cache.close()
        if self._owns_backend:
            await self.backend.close()
        logger.info("Sync engine closed")

    async def __aenter__(self) -> "SyncEngine":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Reads

    def read(self, key: CacheKey) -> Any | None:
        """Latest locally-known value of a key (synchronous)."""
        return self.cache.read(key)

    def subscribe(
        self, key: CacheKey, listener: Callable[[CacheKey, CachedEntry | None], None]
    ) -> Callable[[], None]:
        """Re-render hook: listener fires on every change of key."""
        return self.cache.subscribe(key, listener)

    async def load(self, key: CacheKey) -> Any:
        """Cached value, fetched first if absent or stale."""
        return await self.cache.load(key)

    async def refresh(self, key: CacheKey) -> Any:
        return await self.cache.refresh(key)

    async def _load(self, key: CacheKey) -> Any:
        value = await self.queries.fetch(key)
        # Edits still waiting in the coalescer stay visible across refetches
        for (entity_id, field), pending in self.coalescer.pending_items():
            if isinstance(pending, PendingEdit):
                value = merge_row(value, entity_id, {field: pending.value})
        return value

    # Edits

    def edit(self, entity_id: str, field: str, value: Any, *, table: str | None = None) -> None:
        """
        Change one field of a row.

        The cache reflects the value before this returns; the network write
        is coalesced with further edits to the same field and sent once the
        debounce window passes. A failed write rolls back to the value
        before the whole burst.

        Raises:
            UnknownEntityError: If the row was never seen and no table is given
            ValueError: If the table is append-only or the field not editable
            RuntimeError: If called outside a running event loop
        """
        asyncio.get_running_loop()
        ref = self._resolve(entity_id, table)
        spec = get_table(ref.table)
        if spec.append_only:
            raise ValueError(f"{spec.name} entries are append-only and cannot be edited")
        if field not in spec.editable_fields:
            raise ValueError(f"Field '{field}' of {spec.name} is not editable")

        write = self.executor.apply(
            (key, lambda current: merge_row(current, entity_id, {field: value}))
            for key in self.cache.locate(entity_id)
        )
        earlier = self.coalescer.peek(entity_id, field)
        if isinstance(earlier, PendingEdit):
            write = earlier.write.absorb(write)

        self.coalescer.schedule(
            entity_id,
            field,
            PendingEdit(value=value, write=write),
            partial(self._flush_edit, ref.table, entity_id, field),
        )

    async def _flush_edit(
        self, table: str, entity_id: str, field: str, pending: PendingEdit
    ) -> MutationOutcome:
        refresh: list[CacheKey] = []
        if self.config.sync.refetch_on_success and table in _TIMELINE_TABLES:
            refresh.append(keys.dashboard_timeline())

        return await self.executor.commit(
            pending.write,
            lambda: self.backend.write(table, entity_id, {field: pending.value}),
            refresh=refresh,
            failure_message=f"Failed to save {_label(table)} {field.replace('_', ' ')}",
        )

    async def flush(self) -> None:
        """Send every pending edit now and wait for the writes."""
        await self.coalescer.drain()

    # Creation

    async def create(self, table: str, fields: dict[str, Any]) -> MutationOutcome:
        """
        Create a row optimistically under a temporary id.

        The row shows up in every loaded list it belongs to immediately; on
        success it is re-keyed to the stored id, on failure it is removed.
        A new initiative also gets its initial planning row.

        Raises:
            ValueError: Unknown table or invalid fields
        """
        spec = get_table(table)
        payload = await self._with_defaults(spec, dict(fields))
        row_fields = spec.validate_new(payload)

        temp_id = f"{TEMP_ID_PREFIX}{uuid4().hex[:12]}"
        speculative = {**row_fields, "id": temp_id}
        patches, refresh = self._insert_patches(spec, speculative)

        outcome = await self.executor.create(
            patches,
            lambda: self.backend.create(table, row_fields),
            temp_id,
            refresh=refresh,
            failure_message=f"Failed to create {_label(table)}",
        )
        if not outcome.ok:
            return outcome

        row = outcome.result
        self.index.remember(table, row)
        logger.info(f"Created {table} row {row['id']}")

        if table == INITIATIVES:
            planning = await self.create(
                INITIAL_PLANNING, {"initiative_id": row["id"], **initial_planning_window()}
            )
            if not planning.ok:
                logger.warning(f"Initiative {row['id']} created without initial planning")
        return outcome

    async def _with_defaults(self, spec: TableSpec, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Fill creation defaults: position at the end and release-plan dates.

        The end position comes from the cached collection when one is
        loaded, so the optimistic row appears without a network round trip.
        """
        if spec.name == RELEASE_PLANS:
            for name, default in release_plan_window().items():
                payload.setdefault(name, default)

        order_field = spec.order_field
        if order_field is not None and payload.get(order_field) is None:
            existing = self._cached_rows(spec, payload)
            if existing is None:
                filters = None
                if spec.parent_field is not None and payload.get(spec.parent_field) is not None:
                    filters = {spec.parent_field: payload[spec.parent_field]}
                try:
                    existing = await self.queries.rows(spec.name, filters)
                except BackendError as e:
                    logger.warning(f"Could not read {spec.name} positions: {e}")
                    existing = []
            positions = [r[order_field] for r in existing if isinstance(r.get(order_field), int)]
            payload[order_field] = max(positions) + 1 if positions else 0
        return payload

    def _cached_rows(
        self, spec: TableSpec, row: dict[str, Any]
    ) -> list[dict[str, Any]] | None:
        """Loaded collection the row would join, or None if none is cached."""
        for route, key in keys_for_row(spec.name, row):
            value = self.cache.read(key)
            if route.kind == spec.name and route.shape == ROWS and isinstance(value, list):
                return value
        return None

    def _insert_patches(
        self, spec: TableSpec, row: dict[str, Any]
    ) -> tuple[list[tuple[CacheKey, Callable[[Any], Any]]], list[CacheKey]]:
        """Cache patches placing a new row, and aggregate keys to refetch."""
        patches: list[tuple[CacheKey, Callable[[Any], Any]]] = []
        refresh: list[CacheKey] = []
        for route, key in keys_for_row(spec.name, row):
            if route.shape == AGGREGATE:
                refresh.append(key)
            elif route.shape == RECORD:
                patches.append((key, lambda current: row if current is None else current))
            else:
                patches.append(
                    (
                        key,
                        lambda current: upsert_row(
                            current,
                            row,
                            order_field=spec.order_field,
                            newest_first=spec.sort_descending,
                        ),
                    )
                )
        return patches, refresh

    # Removal

    async def remove(self, entity_id: str, *, table: str | None = None) -> MutationOutcome:
        """
        Delete a row, pruning it from the cache before the server confirms.

        Raises:
            UnknownEntityError: If the row was never seen and no table is given
            ValueError: If the table is append-only
        """
        ref = self._resolve(entity_id, table)
        spec = get_table(ref.table)
        if spec.append_only:
            raise ValueError(f"{spec.name} entries are append-only and cannot be deleted")

        self.coalescer.cancel(entity_id)
        refresh = [
            key
            for route, key in keys_for_row(ref.table, {**ref.foreign_keys, "id": entity_id})
            if route.shape == AGGREGATE and key.scope != entity_id
        ]
        outcome = await self.executor.mutate_many(
            [
                (key, lambda current: prune_row(current, entity_id))
                for key in self.cache.locate(entity_id)
            ],
            lambda: self.backend.delete(ref.table, entity_id),
            refresh=refresh,
            failure_message=f"Failed to delete {_label(ref.table)}",
        )
        if outcome.ok:
            self.index.forget(entity_id)
            logger.info(f"Deleted {ref.table} row {entity_id}")
        return outcome

    # Ordering

    async def reorder(self, collection_key: CacheKey, order: list[str]) -> ReorderOutcome:
        """
        Reorder a collection; see ReorderManager.reorder.

        Raises:
            ValueError: If order isn't a permutation of the loaded collection
        """
        await self.coalescer.drain()
        return await self.ordering.reorder(collection_key, order)

    # Task status log

    async def archive_task_status(self, task_id: str) -> MutationOutcome:
        """
        Move a task's detailed status into its update log and clear it.

        Raises:
            ValueError: If the task has no status text to archive
        """
        ref = self._resolve(task_id, TASKS)
        pending = self.coalescer.flush(task_id)
        if pending:
            await asyncio.gather(*pending)

        status = await self._current_value(ref, "detailed_status")
        if not isinstance(status, str) or not status.strip():
            raise ValueError(f"Task {task_id} has no status to archive")

        logged = await self.create(TASK_UPDATES, {"task_id": task_id, "content": status.strip()})
        if not logged.ok:
            return logged

        return await self.executor.mutate_many(
            [
                (key, lambda current: merge_row(current, task_id, {"detailed_status": None}))
                for key in self.cache.locate(task_id)
            ],
            lambda: self.backend.write(TASKS, task_id, {"detailed_status": None}),
            failure_message="Failed to clear task status",
        )

    async def _current_value(self, ref: RowRef, field: str) -> Any:
        for key in self.cache.locate(ref.row_id):
            row = find_row(self.cache.read(key), ref.row_id)
            if row is not None and field in row:
                return row[field]
        rows = await self.queries.rows(ref.table, {"id": ref.row_id})
        return rows[0].get(field) if rows else None

    # Presence

    async def presence(
        self, user: PresenceUser, name: str | None = None
    ) -> PresenceTracker:
        """Join a presence channel (the configured one by default)."""
        name = name or self.config.presence.channel
        tracker = self._presence.get(name)
        if tracker is None:
            tracker = PresenceTracker(
                self.backend.presence_channel(name),
                user,
                coalesce_seconds=self.config.presence.coalesce_seconds,
            )
            self._presence[name] = tracker
        await tracker.start()
        return tracker

    async def leave_presence(self, name: str | None = None) -> None:
        tracker = self._presence.pop(name or self.config.presence.channel, None)
        if tracker is not None:
            await tracker.stop()

    # Helpers

    def _resolve(self, entity_id: str, table: str | None) -> RowRef:
        if table is None:
            return self.index.require(entity_id)
        get_table(table)
        ref = self.index.lookup(entity_id)
        if ref is None or ref.table != table:
            return RowRef(table=table, row_id=entity_id)
        return ref
