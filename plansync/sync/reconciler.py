# plansync/sync/reconciler.py
"""
Realtime event reconciler.

Consumes the backing store's change streams and folds each event into the
entity cache: list-shaped views are patched in place, aggregate views are
invalidated. Payloads may be partial, so rows are merged, never overwritten.
Applying an event twice leaves the cache exactly as applying it once.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from plansync.backend.feed import Subscription
from plansync.backend.store import BackingStore
from plansync.models import keys
from plansync.models.events import ChangeEvent, EventKind
from plansync.models.keys import CacheKey
from plansync.models.tables import (
    DELIVERABLES,
    EPICS,
    INITIAL_PLANNING,
    INITIATIVES,
    RELEASE_PLANS,
    TABLES,
    TASK_DELIVERABLES,
    TASK_UPDATES,
    TASKS,
    TableSpec,
    sort_rows,
)
from plansync.sync.cache import EntityCache
from plansync.sync.coalescer import WriteCoalescer
from plansync.sync.index import RowIndex
from plansync.sync.notices import Notifier
from plansync.sync.rows import contains_row, merge_row, prune_row, upsert_row

logger = logging.getLogger(__name__)

ROWS = "rows"
RECORD = "record"
AGGREGATE = "aggregate"

TableListener = Callable[[ChangeEvent], None]


@dataclass(frozen=True)
class KeyRoute:
    """
    Template for the cache keys one table's rows appear in.

    scope_field names the column whose value becomes the key scope
    (None for unscoped keys). shape decides how an event is applied:
    ROWS lists are patched, a RECORD holds a single row, AGGREGATE views
    are invalidated.
    """

    kind: str
    view: str
    scope_field: str | None = None
    shape: str = ROWS

    def matches(self, key: CacheKey) -> bool:
        return key.kind == self.kind and key.view == self.view


_DETAIL = KeyRoute(INITIATIVES, keys.DETAIL, "initiative_id", AGGREGATE)
_TIMELINE = KeyRoute(INITIATIVES, keys.TIMELINE, None, AGGREGATE)

ROUTES: dict[str, tuple[KeyRoute, ...]] = {
    INITIATIVES: (
        KeyRoute(INITIATIVES, keys.LIST),
        KeyRoute(INITIATIVES, keys.DETAIL, "id", AGGREGATE),
        _TIMELINE,
    ),
    INITIAL_PLANNING: (
        KeyRoute(INITIAL_PLANNING, keys.BY_INITIATIVE, "initiative_id", RECORD),
        _DETAIL,
        _TIMELINE,
    ),
    RELEASE_PLANS: (
        KeyRoute(RELEASE_PLANS, keys.BY_INITIATIVE, "initiative_id"),
        _DETAIL,
        _TIMELINE,
    ),
    EPICS: (
        KeyRoute(EPICS, keys.BY_RELEASE, "release_plan_id"),
        _DETAIL,
    ),
    DELIVERABLES: (KeyRoute(DELIVERABLES, keys.BY_INITIATIVE, "initiative_id"),),
    TASKS: (KeyRoute(TASKS, keys.LIST),),
    TASK_DELIVERABLES: (KeyRoute(TASK_DELIVERABLES, keys.BY_TASK, "task_id"),),
    TASK_UPDATES: (KeyRoute(TASK_UPDATES, keys.BY_TASK, "task_id"),),
}

def keys_for_row(table: str, row: dict[str, Any]) -> list[tuple[KeyRoute, CacheKey]]:
    """Every cache key a row of table is shown under, given its columns."""
    found = []
    for route in ROUTES.get(table, ()):
        scope = None
        if route.scope_field is not None:
            scope = row.get(route.scope_field)
            if scope is None:
                continue
        found.append((route, CacheKey(route.kind, scope, route.view)))
    return found


# Keys scoped by a parent id that disappear with the parent
_OWNED_BY: dict[str, tuple[tuple[str, str], ...]] = {
    INITIATIVES: (
        (INITIATIVES, keys.DETAIL),
        (INITIAL_PLANNING, keys.BY_INITIATIVE),
        (RELEASE_PLANS, keys.BY_INITIATIVE),
        (DELIVERABLES, keys.BY_INITIATIVE),
    ),
    RELEASE_PLANS: ((EPICS, keys.BY_RELEASE),),
    TASKS: ((TASK_DELIVERABLES, keys.BY_TASK),),
}


class RealtimeReconciler:
    """
    Merges remote change events into the entity cache.

    Features:
        - One consuming task per table, events applied in arrival order
        - Fields with a pending local edit are not overwritten by remote echoes
        - DELETE prunes the row everywhere and clears its pending writes
        - Malformed payloads degrade to invalidation instead of failing
        - Best-effort notices for significant changes
    """

    def __init__(
        self,
        cache: EntityCache,
        backend: BackingStore,
        notifier: Notifier,
        coalescer: WriteCoalescer | None = None,
        index: RowIndex | None = None,
    ) -> None:
        self._cache = cache
        self._backend = backend
        self._notifier = notifier
        self._coalescer = coalescer
        self._index = index if index is not None else RowIndex()
        self._listeners: list[TableListener] = []
        self._subscriptions: dict[str, Subscription] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self.applied_count = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    # Lifecycle

    def start(self, tables: list[str] | None = None) -> None:
        """
        Subscribe to every table and start consuming.

        Subscriptions are registered before this returns, so no event
        published afterwards is missed.
        """
        loop = asyncio.get_running_loop()
        for table in tables or list(TABLES):
            if table in self._tasks:
                continue
            subscription = self._backend.subscribe(table)
            self._subscriptions[table] = subscription
            self._tasks[table] = loop.create_task(self._consume(table, subscription))
        logger.info(f"Reconciler listening on {len(self._tasks)} table(s)")

    async def stop(self) -> None:
        for subscription in self._subscriptions.values():
            subscription.close()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._subscriptions.clear()
        self._tasks.clear()

    async def _consume(self, table: str, subscription: Subscription) -> None:
        async for event in subscription:
            try:
                self.apply(event)
            except Exception:
                # A bad event must not end the stream
                logger.exception(f"Failed to reconcile {event.kind.value} on {table}")
                self.invalidate_table(table)
        logger.debug(f"Change stream for {table} closed")

    # Listeners

    def add_listener(self, listener: TableListener) -> Callable[[], None]:
        """Be told about every reconciled event (for manually managed views)."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # Applying events

    def apply_payload(self, payload: Any) -> None:
        """Parse and apply a raw push payload; unparseable payloads invalidate."""
        try:
            event = ChangeEvent.from_payload(payload)
        except ValueError as e:
            logger.warning(f"Malformed change payload: {e}")
            table = payload.get("table") if isinstance(payload, dict) else None
            if table in ROUTES:
                self.invalidate_table(table)
            return
        self.apply(event)

    def apply(self, event: ChangeEvent) -> None:
        routes = ROUTES.get(event.table)
        if routes is None:
            logger.warning(f"Ignoring change on unknown table {event.table}")
            return

        spec = TABLES[event.table]
        row_id = event.row_id
        if not row_id:
            logger.warning(f"{event.kind.value} on {event.table} has no row id; invalidating")
            self.invalidate_table(event.table)
            return

        if spec.append_only and event.kind is not EventKind.INSERT:
            logger.debug(f"Ignoring {event.kind.value} on append-only {event.table}")
            return

        if event.kind is EventKind.DELETE:
            self._apply_delete(event, spec, row_id, routes)
        else:
            self._apply_upsert(event, spec, row_id, routes)

        self.applied_count += 1
        self._announce(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Table listener {listener!r} failed")

    def invalidate_table(self, table: str) -> list[CacheKey]:
        """Invalidate every key of every kind/view the table's rows appear in."""
        invalidated: list[CacheKey] = []
        for route in ROUTES.get(table, ()):
            invalidated.extend(self._cache.invalidate_where(route.matches))
        return invalidated

    def _column(self, event: ChangeEvent, name: str) -> Any:
        """Column from the payload, falling back to what the index knows."""
        value = event.value(name)
        if value is None and event.row_id:
            ref = self._index.lookup(event.row_id)
            if ref is not None:
                value = ref.parent(name)
        return value

    def _previous(self, event: ChangeEvent, name: str) -> Any:
        """Value a column held before this event, if known."""
        value = event.old_row.get(name)
        if value is None and event.row_id:
            ref = self._index.lookup(event.row_id)
            if ref is not None:
                value = ref.parent(name)
        return value

    def _keys_for(self, event: ChangeEvent, route: KeyRoute) -> list[CacheKey] | None:
        """
        Concrete keys for a route, or None when its scope can't be resolved.

        A row whose foreign key changed maps to both its new and its
        previous scope.
        """
        name = route.scope_field
        if name is None:
            return [CacheKey(route.kind, None, route.view)]
        if name == "id":
            return [CacheKey(route.kind, event.row_id, route.view)]
        if name not in event.new_row:
            scope = self._column(event, name)
            return None if scope is None else [CacheKey(route.kind, scope, route.view)]

        scopes = [event.new_row[name], self._previous(event, name)]
        return [
            CacheKey(route.kind, scope, route.view)
            for i, scope in enumerate(scopes)
            if scope is not None and scope not in scopes[:i]
        ]

    def _apply_upsert(
        self,
        event: ChangeEvent,
        spec: TableSpec,
        row_id: str,
        routes: tuple[KeyRoute, ...],
    ) -> None:
        row = dict(event.new_row)
        fields = self._remote_fields(row_id, row)

        for route in routes:
            route_keys = self._keys_for(event, route)
            if route_keys is None:
                logger.info(
                    f"{event.table} row {row_id} has no {route.scope_field}; "
                    f"invalidating all {route.kind}/{route.view}"
                )
                self._cache.invalidate_where(route.matches)
                continue

            for key in route_keys:
                if key not in self._cache:
                    continue
                if route.shape == AGGREGATE:
                    self._cache.patch(key, lambda value: merge_row(value, row_id, fields))
                    self._cache.invalidate(key)
                elif route.shape == RECORD:
                    self._patch_record(key, spec, row_id, row, fields)
                else:
                    self._patch_rows(key, route, spec, row_id, row, fields)

        self._index.remember(event.table, {**event.old_row, **row})

    def _patch_rows(
        self,
        key: CacheKey,
        route: KeyRoute,
        spec: TableSpec,
        row_id: str,
        row: dict[str, Any],
        fields: dict[str, Any],
    ) -> None:
        value = self._cache.read(key)
        if not isinstance(value, list):
            self._cache.invalidate(key)
            return

        # A row re-parented away from this key's scope leaves it
        if route.scope_field in row and row[route.scope_field] != key.scope:
            self._cache.patch(key, lambda current: prune_row(current, row_id))
            return

        if contains_row(value, row_id):
            resort = spec.order_field is not None and spec.order_field in fields

            def merge(current: list[dict[str, Any]]) -> list[dict[str, Any]]:
                merged = merge_row(current, row_id, fields)
                # A remote reorder moves the row, not just its index
                if resort and merged is not current:
                    return sort_rows(spec, merged)
                return merged

            self._cache.patch(key, merge)
        elif spec.is_complete(row):
            self._cache.patch(
                key,
                lambda current: upsert_row(
                    current,
                    row,
                    order_field=spec.order_field,
                    newest_first=spec.sort_descending,
                ),
            )
        else:
            # Partial row we have never seen: only a refetch can place it
            self._cache.invalidate(key)

    def _patch_record(
        self,
        key: CacheKey,
        spec: TableSpec,
        row_id: str,
        row: dict[str, Any],
        fields: dict[str, Any],
    ) -> None:
        current = self._cache.read(key)
        if isinstance(current, dict) and current.get("id") == row_id:
            self._cache.patch(key, lambda value: merge_row(value, row_id, fields))
        elif spec.is_complete(row):
            self._cache.set(key, row)
        else:
            self._cache.invalidate(key)

    def _remote_fields(self, row_id: str, row: dict[str, Any]) -> dict[str, Any]:
        """Payload fields minus those with a local edit waiting to be flushed."""
        if self._coalescer is None:
            return row
        pending = self._coalescer.pending_fields(row_id)
        if pending:
            logger.debug(f"Keeping local values of {sorted(pending)} for {row_id}")
        return {k: v for k, v in row.items() if k not in pending}

    def _apply_delete(
        self,
        event: ChangeEvent,
        spec: TableSpec,
        row_id: str,
        routes: tuple[KeyRoute, ...],
    ) -> None:
        for key in self._cache.locate(row_id):
            self._cache.patch(key, lambda value: prune_row(value, row_id))

        for route in routes:
            if route.shape == ROWS:
                continue
            route_keys = self._keys_for(event, route)
            if route_keys is None:
                self._cache.invalidate_where(route.matches)
                continue
            for key in route_keys:
                if route.shape == RECORD and key in self._cache:
                    current = self._cache.read(key)
                    if isinstance(current, dict) and current.get("id") == row_id:
                        self._cache.set(key, None)
                elif route.shape == AGGREGATE and not (
                    route.scope_field == "id" and key.scope == row_id
                ):
                    self._cache.invalidate(key)

        for kind, view in _OWNED_BY.get(spec.name, ()):
            owned = CacheKey(kind, row_id, view)
            if owned in self._cache:
                logger.debug(f"Dropping {owned}: owner {row_id} was deleted")
                self._cache.remove(owned)

        if self._coalescer is not None:
            self._coalescer.cancel(row_id)
        self._index.forget(row_id)

    # Notices

    def _announce(self, event: ChangeEvent) -> None:
        try:
            if event.table == INITIATIVES:
                self._announce_initiative(event)
            elif event.table == DELIVERABLES and event.kind is EventKind.UPDATE:
                new_status = event.new_row.get("status")
                if new_status == "done" and event.old_row.get("status") != "done":
                    self._notifier.success(f'"{event.value("name")}" marked complete!')
        except Exception:
            logger.exception("Failed to emit change notice")

    def _announce_initiative(self, event: ChangeEvent) -> None:
        if event.kind is EventKind.INSERT:
            self._notifier.info("New initiative created", event.new_row.get("name"))
        elif event.kind is EventKind.DELETE:
            self._notifier.info("Initiative was deleted")
        else:
            old_status = event.old_row.get("status")
            new_status = event.new_row.get("status")
            if old_status is not None and new_status is not None and old_status != new_status:
                self._notifier.info(f'"{event.value("name")}" status changed to {new_status}')
