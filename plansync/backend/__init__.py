# plansync/backend/__init__.py
"""
Backing store implementations.

Exports:
    - BackingStore: Abstract CRUD + subscribe + presence API
    - InMemoryBackingStore: Process-local store with fault injection
    - SQLiteBackingStore: Persistent store with multi-row transactions
    - ChangeFeed: Per-table event fan-out
    - InMemoryPresenceHub: Ephemeral presence channels
"""

from plansync.backend.factory import create_backing_store
from plansync.backend.feed import ChangeFeed, Subscription
from plansync.backend.memory import InMemoryBackingStore
from plansync.backend.presence import (
    InMemoryPresenceHub,
    PresenceChannel,
    PresenceEvent,
    PresenceEventKind,
)
from plansync.backend.sqlite_store import SQLiteBackingStore
from plansync.backend.store import BackendError, BackingStore, EntityNotFoundError

__all__ = [
    "BackingStore",
    "BackendError",
    "EntityNotFoundError",
    "InMemoryBackingStore",
    "SQLiteBackingStore",
    "ChangeFeed",
    "Subscription",
    "InMemoryPresenceHub",
    "PresenceChannel",
    "PresenceEvent",
    "PresenceEventKind",
    "create_backing_store",
]
