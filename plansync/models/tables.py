# plansync/models/tables.py
"""
Static table registry.

Describes each persisted collection: its row model, parent foreign key,
order field, read ordering, cascade children and whether it is append-only.
"""

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from plansync.models.entities import (
    Deliverable,
    Epic,
    InitialPlanning,
    Initiative,
    ReleasePlan,
    Task,
    TaskDeliverable,
    TaskUpdate,
)

INITIATIVES = "initiatives"
INITIAL_PLANNING = "initial_planning"
RELEASE_PLANS = "release_plans"
EPICS = "epics"
DELIVERABLES = "deliverables"
TASKS = "tasks"
TASK_DELIVERABLES = "task_deliverables"
TASK_UPDATES = "task_updates"


@dataclass(frozen=True)
class TableSpec:
    """Metadata for one backing-store table."""

    name: str
    model: type[BaseModel]
    parent_field: str | None = None
    order_field: str | None = None
    sort_field: str | None = None
    sort_descending: bool = False
    append_only: bool = False
    # (child table, foreign key on the child) deleted along with this row
    cascade: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @property
    def fields(self) -> frozenset[str]:
        return frozenset(self.model.model_fields)

    @property
    def required_fields(self) -> frozenset[str]:
        return frozenset(
            name for name, info in self.model.model_fields.items() if info.is_required()
        )

    @property
    def editable_fields(self) -> frozenset[str]:
        """Fields a field-level edit may touch (ids and positions are excluded)."""
        if self.append_only:
            return frozenset()
        excluded = {"id", self.order_field, self.parent_field}
        return frozenset(f for f in self.fields if f not in excluded)

    def validate_new(self, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Validate a creation payload and fill defaults.

        Raises:
            pydantic.ValidationError (a ValueError) on unknown or invalid fields
        """
        row = self.model.model_validate(fields)
        return row.model_dump(mode="json", exclude={"id"})

    def is_complete(self, row: dict[str, Any]) -> bool:
        """True if row carries an id and every required column."""
        return "id" in row and self.required_fields.issubset(row)


TABLES: dict[str, TableSpec] = {
    INITIATIVES: TableSpec(
        name=INITIATIVES,
        model=Initiative,
        order_field="order_index",
        sort_field="order_index",
        cascade=(
            (INITIAL_PLANNING, "initiative_id"),
            (RELEASE_PLANS, "initiative_id"),
            (EPICS, "initiative_id"),
            (DELIVERABLES, "initiative_id"),
        ),
    ),
    INITIAL_PLANNING: TableSpec(
        name=INITIAL_PLANNING,
        model=InitialPlanning,
        parent_field="initiative_id",
    ),
    RELEASE_PLANS: TableSpec(
        name=RELEASE_PLANS,
        model=ReleasePlan,
        parent_field="initiative_id",
        order_field="order_index",
        sort_field="order_index",
        cascade=((EPICS, "release_plan_id"),),
    ),
    EPICS: TableSpec(
        name=EPICS,
        model=Epic,
        parent_field="initiative_id",
    ),
    DELIVERABLES: TableSpec(
        name=DELIVERABLES,
        model=Deliverable,
        parent_field="initiative_id",
        sort_field="date",
    ),
    TASKS: TableSpec(
        name=TASKS,
        model=Task,
        order_field="display_order",
        sort_field="display_order",
        cascade=(
            (TASK_DELIVERABLES, "task_id"),
            (TASK_UPDATES, "task_id"),
        ),
    ),
    TASK_DELIVERABLES: TableSpec(
        name=TASK_DELIVERABLES,
        model=TaskDeliverable,
        parent_field="task_id",
    ),
    TASK_UPDATES: TableSpec(
        name=TASK_UPDATES,
        model=TaskUpdate,
        parent_field="task_id",
        sort_field="created_at",
        sort_descending=True,
        append_only=True,
    ),
}


def get_table(name: str) -> TableSpec:
    """
    Look up a table spec by name.

    Raises:
        ValueError: If the table is unknown
    """
    try:
        return TABLES[name]
    except KeyError:
        raise ValueError(f"Unknown table '{name}'") from None


def sort_rows(spec: TableSpec, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Order rows the way reads return them. Rows missing the sort field go last."""
    if spec.sort_field is None:
        return list(rows)
    key = spec.sort_field
    present = [r for r in rows if r.get(key) is not None]
    missing = [r for r in rows if r.get(key) is None]
    present.sort(key=lambda r: r[key], reverse=spec.sort_descending)
    return present + missing
