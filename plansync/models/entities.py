# plansync/models/entities.py
"""
Row models for every table the tracker persists.

Field names match the backing store's snake_case columns. Rows travel through
the cache as plain JSON dicts (model_dump(mode="json")); these models validate
rows at creation time and describe which fields exist.
"""

from datetime import date, datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class InitiativeStatus(str, Enum):
    """Initiative lifecycle."""

    PLANNING = "Initiative Planning"
    RELEASE_PLANNING = "Release Planning"
    DEVELOPMENT = "Development"
    RELEASED = "Released"
    ON_HOLD = "On Hold"


class PlanningStatus(str, Enum):
    PRD = "PRD"
    SOLUTIONING = "Solutioning"
    RELEASE_PLAN_PLANNING = "Release plan planning"
    DONE = "Done"


class ReleaseStatus(str, Enum):
    PLANNING = "Planning"
    DEVELOPMENT = "Development"
    RELEASED = "Released"
    PENDING = "Pending"


class EpicStatus(str, Enum):
    PENDING = "Pending"
    PLANNING = "Planning"
    READY_FOR_REVIEW = "Ready for review"
    READY_FOR_DEV = "Ready for dev"
    DEV = "Dev"
    DONE = "Done"


class DeliverableStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"


class TaskType(str, Enum):
    DEV = "Dev"
    POC = "POC"
    RESEARCH = "Research"


class TaskBacklog(str, Enum):
    RND = "R&D"
    PRODUCT = "Product"
    UX = "UX"


class TaskPhase(str, Enum):
    PLANNING = "Planning"
    DEVELOPMENT = "Development"
    RELEASED = "Released"


class _Row(BaseModel):
    """Common base: rows reject unknown columns."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    id: str | None = None


class Initiative(_Row):
    """Root of the planning tree."""

    name: str = Field(min_length=1)
    status: InitiativeStatus = InitiativeStatus.PLANNING
    pm: str | None = None
    ux: str | None = None
    group: str | None = None
    tech_lead: str | None = None
    developers: list[str] | None = None
    detailed_status: str | None = None
    order_index: int = Field(default=0, ge=0)


class InitialPlanning(_Row):
    """Scheduling and document links, one per initiative."""

    initiative_id: str
    start_date: str | None = None
    planned_end_date: str | None = None
    status: PlanningStatus | None = None
    prd_link: str | None = None
    figma_link: str | None = None
    release_plan_summary: str | None = None


class ReleasePlan(_Row):
    initiative_id: str
    goal: str = ""
    status: ReleaseStatus = ReleaseStatus.PLANNING
    pre_planning_start_date: str | None = None
    pre_planning_end_date: str | None = None
    planning_start_date: str | None = None
    planning_end_date: str | None = None
    dev_start_date: str | None = None
    dev_end_date: str | None = None
    qa_event_date: str | None = None
    external_release_date: str | None = None
    loe: str | None = None
    devs: str | None = None
    kpi: str | None = None
    req_doc: str | None = None
    order_index: int = Field(default=0, ge=0)


class Epic(_Row):
    """An epic; release_plan_id None means it sits in the Backlog group."""

    initiative_id: str
    release_plan_id: str | None = None
    name: str = Field(min_length=1)
    description: str | None = None
    status: EpicStatus = EpicStatus.PENDING
    jira_link: str | None = None
    loe: str | None = None
    ac: str | None = None
    figma_link: str | None = None


class Deliverable(_Row):
    initiative_id: str
    name: str = Field(min_length=1)
    date: str | None = None
    status: DeliverableStatus = DeliverableStatus.PENDING


class Task(_Row):
    """Roadmap filler: flat, independently ordered."""

    name: str = Field(min_length=1)
    description: str | None = None
    pm: str | None = None
    ux: str | None = None
    group: str | None = None
    developers: list[str] | None = None
    type: TaskType | None = None
    target_date: str | None = None
    backlog: TaskBacklog | None = None
    jira_link: str | None = None
    phase: TaskPhase = TaskPhase.PLANNING
    detailed_status: str | None = None
    display_order: int = Field(default=0, ge=0)


class TaskDeliverable(_Row):
    task_id: str
    name: str = Field(min_length=1)
    date: str | None = None
    status: DeliverableStatus = DeliverableStatus.PENDING


class TaskUpdate(_Row):
    """Immutable log entry. Created, never edited or deleted."""

    task_id: str
    content: str = Field(min_length=1)
    created_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


class PresenceUser(BaseModel):
    """Ephemeral presence payload. Never persisted."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    avatar_url: str | None = None
    email: str | None = None


def initial_planning_window(today: date | None = None) -> dict[str, str]:
    """Default schedule for a new initiative: six weeks from today."""
    today = today or date.today()
    return {
        "start_date": today.isoformat(),
        "planned_end_date": (today + timedelta(weeks=6)).isoformat(),
    }


def release_plan_window(today: date | None = None) -> dict[str, str]:
    """
    Default schedule for a new release plan.

    Two weeks of planning starting today, then six weeks of development
    starting when planning ends.
    """
    today = today or date.today()
    planning_end = today + timedelta(weeks=2)
    return {
        "planning_start_date": today.isoformat(),
        "planning_end_date": planning_end.isoformat(),
        "dev_start_date": planning_end.isoformat(),
        "dev_end_date": (today + timedelta(weeks=8)).isoformat(),
    }
