# plansync/models/keys.py
"""
Cache key factory.

Every cached query result is addressed by (kind, scope, view). Two views of
overlapping data are distinct keys and are invalidated independently.
"""

from typing import NamedTuple


class CacheKey(NamedTuple):
    """Structured cache address."""

    kind: str
    scope: str | None
    view: str

    def __str__(self) -> str:
        scope = f"#{self.scope}" if self.scope is not None else ""
        return f"{self.kind}{scope}:{self.view}"


LIST = "list"
DETAIL = "detail"
TIMELINE = "timeline"
BY_INITIATIVE = "by_initiative"
BY_RELEASE = "by_release"
BY_TASK = "by_task"


def initiative_list() -> CacheKey:
    return CacheKey("initiatives", None, LIST)


def initiative_detail(initiative_id: str) -> CacheKey:
    return CacheKey("initiatives", initiative_id, DETAIL)


def dashboard_timeline() -> CacheKey:
    return CacheKey("initiatives", None, TIMELINE)


def initial_planning(initiative_id: str) -> CacheKey:
    return CacheKey("initial_planning", initiative_id, BY_INITIATIVE)


def release_plans(initiative_id: str) -> CacheKey:
    """
    Ordered release-plan collection of one initiative.

    Used as a reorder target; the rows themselves are displayed inside
    initiative_detail().
    """
    return CacheKey("release_plans", initiative_id, BY_INITIATIVE)


def epics_by_release(release_plan_id: str) -> CacheKey:
    return CacheKey("epics", release_plan_id, BY_RELEASE)


def deliverables(initiative_id: str) -> CacheKey:
    return CacheKey("deliverables", initiative_id, BY_INITIATIVE)


def task_list() -> CacheKey:
    return CacheKey("tasks", None, LIST)


def task_deliverables(task_id: str) -> CacheKey:
    return CacheKey("task_deliverables", task_id, BY_TASK)


def task_updates(task_id: str) -> CacheKey:
    return CacheKey("task_updates", task_id, BY_TASK)
