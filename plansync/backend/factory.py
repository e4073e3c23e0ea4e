# plansync/backend/factory.py
"""Factory for creating the configured backing store."""

from plansync.config.schema import PlanSyncConfig

from .memory import InMemoryBackingStore
from .sqlite_store import SQLiteBackingStore


async def create_backing_store(
    config: PlanSyncConfig,
) -> InMemoryBackingStore | SQLiteBackingStore:
    """
    Create and initialize the backing store named by config.backend.kind.

    Args:
        config: Root PlanSyncConfig

    Returns:
        SQLiteBackingStore for kind="sqlite", InMemoryBackingStore otherwise
    """
    if config.backend.kind == "sqlite":
        store = SQLiteBackingStore(config.backend.db_path)
        await store.initialize()
        return store
    return InMemoryBackingStore()
