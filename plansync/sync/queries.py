# plansync/sync/queries.py
"""
Query service.

Builds the value of every cache view from backing-store reads. This is the
cache's loader: initial loads and background refetches both come through
fetch().
"""

import logging
from typing import Any, Awaitable, Callable

from plansync.backend.store import BackingStore, EntityNotFoundError
from plansync.models import keys
from plansync.models.keys import CacheKey
from plansync.models.tables import (
    DELIVERABLES,
    EPICS,
    INITIAL_PLANNING,
    INITIATIVES,
    RELEASE_PLANS,
    TASK_DELIVERABLES,
    TASK_UPDATES,
    TASKS,
)
from plansync.sync.index import RowIndex
from plansync.sync.retry import read_retry

logger = logging.getLogger(__name__)

BACKLOG_ID = "backlog"
BACKLOG_GOAL = "Backlog / Unassigned"


def backlog_group(epics: list[dict[str, Any]]) -> dict[str, Any]:
    """Synthetic release-plan group holding epics with no release plan."""
    return {
        "id": BACKLOG_ID,
        "goal": BACKLOG_GOAL,
        "status": "Pending",
        "synthetic": True,
        "epics": epics,
    }


class QueryService:
    """
    Fetches cache views from the backing store.

    Every row read is recorded in the RowIndex so later edits and deletes
    can be routed by id alone.
    """

    def __init__(self, backend: BackingStore, index: RowIndex) -> None:
        self._backend = backend
        self._index = index
        self._handlers: dict[tuple[str, str], Callable[[str | None], Awaitable[Any]]] = {
            ("initiatives", keys.LIST): self._initiative_list,
            ("initiatives", keys.TIMELINE): self._timeline,
            ("initiatives", keys.DETAIL): self._initiative_detail,
            ("initial_planning", keys.BY_INITIATIVE): self._initial_planning,
            ("release_plans", keys.BY_INITIATIVE): self._release_plans,
            ("epics", keys.BY_RELEASE): self._epics_by_release,
            ("deliverables", keys.BY_INITIATIVE): self._deliverables,
            ("tasks", keys.LIST): self._task_list,
            ("task_deliverables", keys.BY_TASK): self._task_deliverables,
            ("task_updates", keys.BY_TASK): self._task_updates,
        }

    def supports(self, key: CacheKey) -> bool:
        return (key.kind, key.view) in self._handlers

    async def fetch(self, key: CacheKey) -> Any:
        """
        Fetch the authoritative value of a cache key.

        Raises:
            ValueError: If no view is registered for the key
            BackendError: If the read failed after retries
        """
        handler = self._handlers.get((key.kind, key.view))
        if handler is None:
            raise ValueError(f"No query registered for {key}")
        logger.debug(f"Fetching {key}")
        return await handler(key.scope)

    async def rows(
        self, table: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Plain table read with retries; rows are recorded in the index."""
        return await self._read(table, filters)

    @read_retry
    async def _read(
        self, table: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        rows = await self._backend.read(table, filters)
        self._index.remember_many(table, rows)
        return rows

    async def _initiative_list(self, _scope: str | None) -> list[dict[str, Any]]:
        return await self._read(INITIATIVES)

    async def _timeline(self, _scope: str | None) -> list[dict[str, Any]]:
        """Every initiative with its initial planning and release plans."""
        initiatives = await self._read(INITIATIVES)
        planning = await self._read(INITIAL_PLANNING)
        plans = await self._read(RELEASE_PLANS)

        planning_by_initiative = {row["initiative_id"]: row for row in planning}
        return [
            {
                **initiative,
                "initial_planning": planning_by_initiative.get(initiative["id"]),
                "release_plans": [
                    plan for plan in plans if plan["initiative_id"] == initiative["id"]
                ],
            }
            for initiative in initiatives
        ]

    async def _initiative_detail(self, initiative_id: str | None) -> dict[str, Any]:
        """
        One initiative with its planning, ordered release plans and epics.

        Epics without a release plan are grouped under a synthetic Backlog
        entry appended after the real release plans.

        Raises:
            EntityNotFoundError: If the initiative doesn't exist
        """
        found = await self._read(INITIATIVES, {"id": initiative_id})
        if not found:
            raise EntityNotFoundError(INITIATIVES, str(initiative_id))

        planning = await self._read(INITIAL_PLANNING, {"initiative_id": initiative_id})
        plans = await self._read(RELEASE_PLANS, {"initiative_id": initiative_id})
        epics = await self._read(EPICS, {"initiative_id": initiative_id})

        release_plans = [
            {**plan, "epics": [e for e in epics if e.get("release_plan_id") == plan["id"]]}
            for plan in plans
        ]
        plan_ids = {plan["id"] for plan in plans}
        orphaned = [e for e in epics if e.get("release_plan_id") not in plan_ids]
        if orphaned:
            release_plans.append(backlog_group(orphaned))

        return {
            "initiative": found[0],
            "initial_planning": planning[0] if planning else None,
            "release_plans": release_plans,
        }

    async def _initial_planning(self, initiative_id: str | None) -> dict[str, Any] | None:
        rows = await self._read(INITIAL_PLANNING, {"initiative_id": initiative_id})
        return rows[0] if rows else None

    async def _release_plans(self, initiative_id: str | None) -> list[dict[str, Any]]:
        return await self._read(RELEASE_PLANS, {"initiative_id": initiative_id})

    async def _epics_by_release(self, release_plan_id: str | None) -> list[dict[str, Any]]:
        return await self._read(EPICS, {"release_plan_id": release_plan_id})

    async def _deliverables(self, initiative_id: str | None) -> list[dict[str, Any]]:
        return await self._read(DELIVERABLES, {"initiative_id": initiative_id})

    async def _task_list(self, _scope: str | None) -> list[dict[str, Any]]:
        return await self._read(TASKS)

    async def _task_deliverables(self, task_id: str | None) -> list[dict[str, Any]]:
        return await self._read(TASK_DELIVERABLES, {"task_id": task_id})

    async def _task_updates(self, task_id: str | None) -> list[dict[str, Any]]:
        return await self._read(TASK_UPDATES, {"task_id": task_id})
