# plansync/config/__init__.py
"""Configuration system for plansync."""

from .loader import get_config_path, load_config
from .schema import (
    BackendConfig,
    LoggingConfig,
    NoticeConfig,
    PlanSyncConfig,
    PresenceConfig,
    SyncConfig,
)

__all__ = [
    "PlanSyncConfig",
    "SyncConfig",
    "BackendConfig",
    "PresenceConfig",
    "NoticeConfig",
    "LoggingConfig",
    "load_config",
    "get_config_path",
]
