# plansync/config/schema.py
"""
Pydantic configuration models for plansync.

All models use extra="ignore" to allow unknown YAML keys without crashing.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class SyncConfig(BaseModel):
    """Write coalescing and refetch behaviour."""

    model_config = ConfigDict(extra="ignore")

    debounce_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=10.0,
        description="Idle window before a coalesced field edit is written",
    )
    refetch_on_success: bool = Field(
        default=True,
        description="Invalidate derived views (e.g. dashboard timeline) after a confirmed write",
    )


class BackendConfig(BaseModel):
    """Backing store selection."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["memory", "sqlite"] = Field(
        default="memory", description="Backing store implementation"
    )
    db_path: str = Field(
        default=".plansync/plansync.db",
        description="SQLite database file (kind='sqlite' only)",
    )


class PresenceConfig(BaseModel):
    """Presence channel configuration."""

    model_config = ConfigDict(extra="ignore")

    channel: str = Field(default="online-users", description="Presence channel name")
    coalesce_seconds: float = Field(
        default=0.25,
        ge=0.0,
        le=5.0,
        description="Window that collapses join/leave bursts into one recompute",
    )


class NoticeConfig(BaseModel):
    """User-visible notice settings."""

    model_config = ConfigDict(extra="ignore")

    history_size: int = Field(
        default=50, ge=1, le=1000, description="Number of notices kept in memory"
    )


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Log level for the plansync logger"
    )
    json_output: bool = Field(default=True, description="Emit JSON lines to stderr")


class PlanSyncConfig(BaseModel):
    """Root configuration for plansync."""

    model_config = ConfigDict(extra="ignore")

    sync: SyncConfig = Field(default_factory=SyncConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    presence: PresenceConfig = Field(default_factory=PresenceConfig)
    notices: NoticeConfig = Field(default_factory=NoticeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
