# plansync/sync/__init__.py
"""
Synchronization components.

Exports:
    - EntityCache: Keyed in-memory store, the single source of truth for reads
    - WriteCoalescer: Per-field debounce with ordered flushing
    - MutationExecutor: Optimistic apply / commit / rollback
    - RealtimeReconciler: Folds remote change events into the cache
    - ReorderManager: Dense reordering of ordered collections
    - PresenceTracker: Advisory who's-online list
    - QueryService: Builds cache views from backing-store reads
"""

from plansync.sync.cache import CachedEntry, EntityCache
from plansync.sync.coalescer import WriteCoalescer
from plansync.sync.executor import MutationExecutor, MutationOutcome, OptimisticWrite
from plansync.sync.index import RowIndex, RowRef, UnknownEntityError
from plansync.sync.notices import Notice, NoticeLevel, Notifier
from plansync.sync.ordering import ReorderManager, ReorderOutcome, resolve_collection
from plansync.sync.presence import PresenceTracker, dedupe_users
from plansync.sync.queries import BACKLOG_ID, QueryService
from plansync.sync.reconciler import ROUTES, KeyRoute, RealtimeReconciler

__all__ = [
    "EntityCache",
    "CachedEntry",
    "WriteCoalescer",
    "MutationExecutor",
    "MutationOutcome",
    "OptimisticWrite",
    "RealtimeReconciler",
    "KeyRoute",
    "ROUTES",
    "ReorderManager",
    "ReorderOutcome",
    "resolve_collection",
    "PresenceTracker",
    "dedupe_users",
    "QueryService",
    "BACKLOG_ID",
    "RowIndex",
    "RowRef",
    "UnknownEntityError",
    "Notifier",
    "Notice",
    "NoticeLevel",
]
