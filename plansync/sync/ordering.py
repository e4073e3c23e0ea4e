# plansync/sync/ordering.py
"""
Reorder manager.

Turns a user-visible permutation of an ordered collection into dense
zero-based position writes. The cache is reordered first; the writes follow.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from plansync.backend.store import BackingStore
from plansync.models import keys
from plansync.models.keys import CacheKey
from plansync.models.tables import INITIATIVES, RELEASE_PLANS, TASKS
from plansync.sync.cache import EntityCache
from plansync.sync.executor import MutationExecutor
from plansync.sync.notices import Notifier
from plansync.sync.rows import reorder_rows, row_ids

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderedCollection:
    """
    One orderable collection and every cache key that displays it.

    The first display key is the canonical list the permutation is
    validated against.
    """

    table: str
    order_field: str
    scope: str | None
    display_keys: tuple[CacheKey, ...]


@dataclass
class ReorderOutcome:
    ok: bool
    written: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.ok


def resolve_collection(key: CacheKey) -> OrderedCollection:
    """
    Map a cache key to the collection it shows.

    Raises:
        ValueError: If the key doesn't display an orderable collection
    """
    if key.kind == INITIATIVES and key.view in (keys.LIST, keys.TIMELINE):
        return OrderedCollection(
            INITIATIVES,
            "order_index",
            None,
            (keys.initiative_list(), keys.dashboard_timeline()),
        )
    if key.kind == RELEASE_PLANS and key.view == keys.BY_INITIATIVE and key.scope:
        return OrderedCollection(
            RELEASE_PLANS,
            "order_index",
            key.scope,
            (
                keys.release_plans(key.scope),
                keys.initiative_detail(key.scope),
                keys.dashboard_timeline(),
            ),
        )
    if key.kind == INITIATIVES and key.view == keys.DETAIL and key.scope:
        return resolve_collection(keys.release_plans(key.scope))
    if key.kind == TASKS and key.view == keys.LIST:
        return OrderedCollection(TASKS, "display_order", None, (keys.task_list(),))
    raise ValueError(f"{key} is not an orderable collection")


def _reorder_plan_groups(
    plans: list[dict[str, Any]], order: list[str], order_field: str
) -> list[dict[str, Any]]:
    """Reorder release plans, keeping the synthetic Backlog group last."""
    real = [plan for plan in plans if not plan.get("synthetic")]
    synthetic = [plan for plan in plans if plan.get("synthetic")]
    reordered = reorder_rows(real, order, order_field)
    if reordered is real:
        return plans
    return [*reordered, *synthetic]


class ReorderManager:
    """
    Optimistic dense reordering.

    Positions are written in one transaction when the store supports it.
    Otherwise each row is written separately; a partial failure is not
    rolled back but resolved by refetching every displaying key.
    """

    def __init__(
        self,
        cache: EntityCache,
        backend: BackingStore,
        notifier: Notifier,
        executor: MutationExecutor | None = None,
    ) -> None:
        self._cache = cache
        self._backend = backend
        self._notifier = notifier
        self._executor = executor or MutationExecutor(cache, notifier)

    def current_order(self, collection: OrderedCollection) -> list[str] | None:
        """Ids of the collection as cached, or None if nothing is loaded."""
        for key in collection.display_keys:
            value = self._cache.read(key)
            if value is None:
                continue
            rows = self._rows_in(collection, key, value)
            if rows is not None:
                return row_ids(rows)
        return None

    def _rows_in(
        self, collection: OrderedCollection, key: CacheKey, value: Any
    ) -> list[dict[str, Any]] | None:
        if collection.table != RELEASE_PLANS or key.kind == RELEASE_PLANS:
            return value if isinstance(value, list) else None
        if key.view == keys.DETAIL and isinstance(value, dict):
            return [p for p in value.get("release_plans") or [] if not p.get("synthetic")]
        if key.view == keys.TIMELINE and isinstance(value, list):
            for initiative in value:
                if initiative.get("id") == collection.scope:
                    return initiative.get("release_plans") or []
        return None

    def _updater(
        self, collection: OrderedCollection, key: CacheKey, order: list[str]
    ) -> Callable[[Any], Any]:
        order_field = collection.order_field

        if collection.table != RELEASE_PLANS or key.kind == RELEASE_PLANS:
            return lambda value: reorder_rows(value, order, order_field)

        if key.view == keys.DETAIL:

            def reorder_detail(value: dict[str, Any]) -> dict[str, Any]:
                plans = value.get("release_plans") or []
                reordered = _reorder_plan_groups(plans, order, order_field)
                if reordered is plans:
                    return value
                return {**value, "release_plans": reordered}

            return reorder_detail

        def reorder_timeline(value: list[dict[str, Any]]) -> list[dict[str, Any]]:
            changed = False
            rows = []
            for initiative in value:
                if initiative.get("id") == collection.scope:
                    plans = initiative.get("release_plans") or []
                    reordered = reorder_rows(plans, order, order_field)
                    if reordered is not plans:
                        initiative = {**initiative, "release_plans": reordered}
                        changed = True
                rows.append(initiative)
            return rows if changed else value

        return reorder_timeline

    async def reorder(self, collection_key: CacheKey, new_order: list[str]) -> ReorderOutcome:
        """
        Reorder a collection to new_order.

        Args:
            collection_key: Any key displaying the collection
            new_order: Every id of the collection, in the desired order

        Returns:
            ReorderOutcome listing written and failed ids

        Raises:
            ValueError: If the key isn't orderable, the collection isn't
                loaded, or new_order isn't a permutation of it
        """
        collection = resolve_collection(collection_key)
        current = self.current_order(collection)
        if current is None:
            raise ValueError(f"Cannot reorder {collection_key}: collection not loaded")
        if len(set(new_order)) != len(new_order) or sorted(new_order) != sorted(current):
            raise ValueError(
                f"New order for {collection.table} must be a permutation of {current}"
            )

        self._executor.apply(
            (key, self._updater(collection, key, new_order))
            for key in collection.display_keys
        )

        order_field = collection.order_field
        updates = [(row_id, {order_field: index}) for index, row_id in enumerate(new_order)]

        if self._backend.supports_transactions:
            outcome = await self._write_transaction(collection, updates)
        else:
            outcome = await self._write_each(collection, updates)

        if outcome.ok:
            logger.info(f"Reordered {len(new_order)} {collection.table}")
        else:
            await self._resync(collection, outcome)
        return outcome

    async def _write_transaction(
        self, collection: OrderedCollection, updates: list[tuple[str, dict[str, Any]]]
    ) -> ReorderOutcome:
        ids = [row_id for row_id, _ in updates]
        try:
            await self._backend.write_many(collection.table, updates)
        except Exception as e:
            logger.warning(f"Transactional reorder of {collection.table} failed: {e}")
            return ReorderOutcome(ok=False, failed=ids)
        return ReorderOutcome(ok=True, written=ids)

    async def _write_each(
        self, collection: OrderedCollection, updates: list[tuple[str, dict[str, Any]]]
    ) -> ReorderOutcome:
        results = await asyncio.gather(
            *(self._backend.write(collection.table, row_id, fields) for row_id, fields in updates),
            return_exceptions=True,
        )
        outcome = ReorderOutcome(ok=True)
        for (row_id, _), result in zip(updates, results):
            if isinstance(result, BaseException):
                logger.warning(f"Position write for {row_id} failed: {result}")
                outcome.failed.append(row_id)
            else:
                outcome.written.append(row_id)
        outcome.ok = not outcome.failed
        return outcome

    async def _resync(self, collection: OrderedCollection, outcome: ReorderOutcome) -> None:
        """Refetch every displaying key so the cache matches the stored order."""
        for key in collection.display_keys:
            if key not in self._cache:
                continue
            try:
                await self._cache.refresh(key)
            except Exception as e:
                logger.warning(f"Refetch of {key} after failed reorder failed: {e}")
                self._cache.invalidate(key)

        self._notifier.warning(
            "Order may be out of sync",
            f"{len(outcome.failed)} of {len(outcome.failed) + len(outcome.written)} "
            "positions failed to save; reloaded the latest order",
        )
