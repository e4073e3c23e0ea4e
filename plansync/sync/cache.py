# plansync/sync/cache.py
"""
Entity cache.

In-memory store of query results addressed by CacheKey, and the single source
of truth for rendering. Every component mutates it only through set / patch /
invalidate / remove. Staleness is event-driven; entries have no TTL.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from plansync.models.keys import CacheKey
from plansync.sync.rows import contains_row

logger = logging.getLogger(__name__)

Loader = Callable[[CacheKey], Awaitable[Any]]
Listener = Callable[[CacheKey, "CachedEntry | None"], None]
Updater = Callable[[Any], Any]


@dataclass
class CachedEntry:
    """
    Latest locally-known value for one key.

    version increases on every local write; a background refetch that
    started before a local write is discarded when it completes.
    """

    value: Any
    stale: bool = False
    version: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EntityCache:
    """
    Addressable in-memory cache with reactive listeners.

    Features:
        - Synchronous reads of the latest local value
        - patch() never raises; an absent key is a no-op
        - invalidate() refetches in the background only while a key is displayed
        - Injectable: one instance per session, no module-level state
    """

    def __init__(self, loader: Loader | None = None) -> None:
        """
        Initialize an empty cache.

        Args:
            loader: Coroutine function fetching the authoritative value of a key
        """
        self._loader = loader
        self._entries: dict[CacheKey, CachedEntry] = {}
        self._listeners: dict[CacheKey, list[Listener]] = {}
        self._refetches: dict[CacheKey, asyncio.Task] = {}
        self._refetch_again: set[CacheKey] = set()

    def set_loader(self, loader: Loader | None) -> None:
        self._loader = loader

    # Reads

    def get(self, key: CacheKey) -> CachedEntry | None:
        return self._entries.get(key)

    def read(self, key: CacheKey) -> Any | None:
        """Latest locally-known value, or None if the key was never loaded."""
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def locate(self, row_id: str) -> list[CacheKey]:
        """Keys whose cached value contains a row with this id."""
        return [key for key, entry in self._entries.items() if contains_row(entry.value, row_id)]

    def is_displayed(self, key: CacheKey) -> bool:
        return bool(self._listeners.get(key))

    # Writes

    def set(self, key: CacheKey, value: Any, *, stale: bool = False) -> None:
        """Store a value, replacing any previous one."""
        entry = self._entries.get(key)
        if entry is None:
            self._entries[key] = CachedEntry(value=value, stale=stale)
        else:
            entry.value = value
            entry.stale = stale
            entry.version += 1
            entry.updated_at = datetime.now(timezone.utc)
        self._notify(key)

    def patch(self, key: CacheKey, updater: Updater) -> bool:
        """
        Apply a pure function to the cached value.

        Never raises. Absent key: no-op (the eventual fetch populates it).
        An updater that raises degrades to invalidating the key.

        Returns:
            True if the cached value changed
        """
        entry = self._entries.get(key)
        if entry is None:
            return False

        try:
            new_value = updater(entry.value)
        except Exception:
            logger.exception(f"Patch of {key} failed; invalidating instead")
            self.invalidate(key)
            return False

        if new_value is entry.value:
            return False

        entry.value = new_value
        entry.version += 1
        entry.updated_at = datetime.now(timezone.utc)
        self._notify(key)
        return True

    def invalidate(self, key: CacheKey) -> None:
        """
        Mark a key stale.

        If the key is displayed (has listeners), refetch it in the background.
        A second invalidation while a refetch is in flight queues exactly one
        follow-up refetch.
        """
        entry = self._entries.get(key)
        if entry is None:
            return

        if not entry.stale:
            entry.stale = True
            logger.debug(f"Invalidated {key}")
            self._notify(key)

        if self.is_displayed(key):
            self._schedule_refetch(key)

    def invalidate_where(self, predicate: Callable[[CacheKey], bool]) -> list[CacheKey]:
        """Invalidate every key matching predicate; returns the keys."""
        matched = [key for key in self._entries if predicate(key)]
        for key in matched:
            self.invalidate(key)
        return matched

    def remove(self, key: CacheKey) -> None:
        """Drop an entry entirely (e.g. its entity was deleted)."""
        if self._entries.pop(key, None) is None:
            return
        task = self._refetches.pop(key, None)
        if task is not None:
            task.cancel()
        self._refetch_again.discard(key)
        self._notify(key)

    # Fetching

    async def refresh(self, key: CacheKey) -> Any:
        """
        Fetch a key now and store the result.

        Raises:
            RuntimeError: If no loader is configured
            Exception: Whatever the loader raises
        """
        if self._loader is None:
            raise RuntimeError("EntityCache has no loader configured")

        entry = self._entries.get(key)
        start_version = entry.version if entry is not None else None

        value = await self._loader(key)

        entry = self._entries.get(key)
        if start_version is not None:
            if entry is None:
                logger.debug(f"Discarded fetch of {key}: removed while in flight")
                return None
            if entry.version != start_version:
                logger.debug(f"Discarded fetch of {key}: written locally while in flight")
                return entry.value

        self.set(key, value)
        return value

    async def load(self, key: CacheKey) -> Any:
        """Return the cached value, fetching first if absent or stale."""
        entry = self._entries.get(key)
        if entry is not None and not entry.stale:
            return entry.value
        return await self.refresh(key)

    def _schedule_refetch(self, key: CacheKey) -> None:
        if self._loader is None:
            return
        if key in self._refetches:
            self._refetch_again.add(key)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop; {key} stays stale until next load")
            return
        self._refetches[key] = loop.create_task(self._background_refetch(key))

    async def _background_refetch(self, key: CacheKey) -> None:
        try:
            await self.refresh(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Stale reads are never surfaced as errors
            logger.warning(f"Background refetch of {key} failed: {e}")
        finally:
            self._refetches.pop(key, None)

        if key in self._refetch_again:
            self._refetch_again.discard(key)
            entry = self._entries.get(key)
            if entry is not None and self.is_displayed(key):
                self._schedule_refetch(key)

    async def settle(self) -> None:
        """Wait until no background refetch is in flight."""
        while self._refetches:
            await asyncio.gather(*list(self._refetches.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel background refetches."""
        tasks = list(self._refetches.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._refetches.clear()
        self._refetch_again.clear()

    # Listeners

    def subscribe(self, key: CacheKey, listener: Listener) -> Callable[[], None]:
        """
        Listen for changes to one key.

        Subscribing to a stale key triggers a refetch.

        Returns:
            Function that removes the listener
        """
        self._listeners.setdefault(key, []).append(listener)

        entry = self._entries.get(key)
        if entry is not None and entry.stale:
            self._schedule_refetch(key)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(key, None)

        return unsubscribe

    def _notify(self, key: CacheKey) -> None:
        entry = self._entries.get(key)
        for listener in list(self._listeners.get(key, ())):
            try:
                listener(key, entry)
            except Exception:
                logger.exception(f"Cache listener for {key} failed")
