# plansync/models/__init__.py
"""
Data models for plansync.

Provides row models, the table registry, cache keys and change events.
"""

from plansync.models import keys
from plansync.models.entities import (
    Deliverable,
    DeliverableStatus,
    Epic,
    EpicStatus,
    InitialPlanning,
    Initiative,
    InitiativeStatus,
    PlanningStatus,
    PresenceUser,
    ReleasePlan,
    ReleaseStatus,
    Task,
    TaskDeliverable,
    TaskPhase,
    TaskUpdate,
)
from plansync.models.events import ChangeEvent, EventKind
from plansync.models.keys import CacheKey
from plansync.models.tables import TABLES, TableSpec, get_table

__all__ = [
    # Rows
    "Initiative",
    "InitiativeStatus",
    "InitialPlanning",
    "PlanningStatus",
    "ReleasePlan",
    "ReleaseStatus",
    "Epic",
    "EpicStatus",
    "Deliverable",
    "DeliverableStatus",
    "Task",
    "TaskPhase",
    "TaskDeliverable",
    "TaskUpdate",
    "PresenceUser",
    # Registry and addressing
    "TABLES",
    "TableSpec",
    "get_table",
    "CacheKey",
    "keys",
    # Realtime
    "ChangeEvent",
    "EventKind",
]
