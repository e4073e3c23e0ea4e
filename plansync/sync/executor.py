# plansync/sync/executor.py
"""
Optimistic mutation executor.

Applies a change to the cache before the network round trip, issues the
write, and on failure restores the pre-mutation snapshot. Mutations on the
same key are not serialized: each snapshots independently.
"""

import copy
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from plansync.models.keys import CacheKey
from plansync.sync.cache import EntityCache, Updater
from plansync.sync.notices import Notifier
from plansync.sync.rows import (
    contains_row,
    find_row,
    holds_rows,
    iter_rows,
    merge_row,
    prune_row,
    rekey_row,
)

logger = logging.getLogger(__name__)

WriteFn = Callable[[], Awaitable[Any]]

_ABSENT = object()


def _confirm(value: Any, temp_id: str, row: dict[str, Any]) -> Any:
    """Swap a speculative row for the stored one."""
    if contains_row(value, row["id"]):
        # The realtime INSERT got there first
        return prune_row(value, temp_id)
    return rekey_row(value, temp_id, row["id"], row)


Reverts = dict[str, tuple[dict[str, Any], dict[str, Any]]]


def _field_reverts(snapshot: Any, expected: Any) -> Reverts:
    """
    Column changes a write made: row id -> (values before, values written).

    Empty when the write added, removed or moved rows, since those cannot
    be undone field by field.
    """
    if expected is _ABSENT:
        return {}
    before = {row["id"]: row for row in iter_rows(snapshot)}
    after = {row["id"]: row for row in iter_rows(expected)}
    if list(before) != list(after):
        return {}

    reverts: Reverts = {}
    for row_id, row in after.items():
        old = before[row_id]
        changed = [
            name
            for name in old.keys() | row.keys()
            if old.get(name) != row.get(name)
            and not holds_rows(old.get(name))
            and not holds_rows(row.get(name))
        ]
        if changed:
            reverts[row_id] = (
                {name: old.get(name) for name in changed},
                {name: row.get(name) for name in changed},
            )
    return reverts


def _revert(value: Any, reverts: Reverts) -> Any:
    """Put back old column values that still hold what the write set."""
    for row_id, (old_fields, new_fields) in reverts.items():
        current = find_row(value, row_id)
        if current is None:
            continue
        unchanged = {
            name: old
            for name, old in old_fields.items()
            if current.get(name) == new_fields[name]
        }
        if unchanged:
            value = merge_row(value, row_id, unchanged)
    return value


@dataclass
class OptimisticWrite:
    """
    Record of an optimistic change across one or more keys.

    snapshots: value of each key before the change
    expected: value this change left in each key
    """

    snapshots: dict[CacheKey, Any] = field(default_factory=dict)
    expected: dict[CacheKey, Any] = field(default_factory=dict)

    @property
    def keys(self) -> list[CacheKey]:
        return list(self.snapshots)

    def absorb(self, later: "OptimisticWrite") -> "OptimisticWrite":
        """
        Fold a later write on top of this one.

        Keeps this write's snapshots (the state before the whole burst) and
        adopts the later write's expected values.
        """
        snapshots = dict(later.snapshots)
        snapshots.update(self.snapshots)
        expected = dict(self.expected)
        expected.update(later.expected)
        return OptimisticWrite(snapshots=snapshots, expected=expected)


@dataclass
class MutationOutcome:
    """Result of a mutation. Failures are reported here, not raised."""

    ok: bool
    result: Any = None
    error: BaseException | None = None
    rolled_back: list[CacheKey] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.ok


class MutationExecutor:
    """
    Optimistic apply / commit / rollback.

    Features:
        - Synchronous apply: the UI sees the change before any network I/O
        - Rollback never clobbers a value newer than this write's
        - Failures surface as an ERROR notice; nothing is retried
        - Successful writes can invalidate derived views
    """

    def __init__(self, cache: EntityCache, notifier: Notifier) -> None:
        self._cache = cache
        self._notifier = notifier

    def apply(self, patches: Iterable[tuple[CacheKey, Updater]]) -> OptimisticWrite:
        """
        Snapshot then patch each key.

        Absent keys are skipped (nothing is displayed for them yet).
        """
        write = OptimisticWrite()
        for key, updater in patches:
            entry = self._cache.get(key)
            if entry is None:
                continue
            if key not in write.snapshots:
                write.snapshots[key] = copy.deepcopy(entry.value)
            self._cache.patch(key, updater)
            write.expected[key] = self._cache.read(key)
        return write

    async def commit(
        self,
        write: OptimisticWrite,
        write_fn: WriteFn,
        *,
        refresh: Iterable[CacheKey] = (),
        failure_message: str = "Failed to save changes",
    ) -> MutationOutcome:
        """
        Run the network write for an applied optimistic change.

        Args:
            write: Result of apply()
            write_fn: Coroutine function performing the network write
            refresh: Derived keys to invalidate after a successful write
            failure_message: Notice shown when the write fails

        Returns:
            MutationOutcome (ok=False with error on failure)
        """
        try:
            result = write_fn()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            rolled_back = self.rollback(write)
            logger.warning(f"{failure_message}: {type(e).__name__}: {e}")
            self._notifier.error(failure_message, str(e) or None)
            return MutationOutcome(ok=False, error=e, rolled_back=rolled_back)

        for key in refresh:
            self._cache.invalidate(key)
        return MutationOutcome(ok=True, result=result)

    def rollback(self, write: OptimisticWrite) -> list[CacheKey]:
        """
        Undo an optimistic change.

        A key still holding this write's value gets its snapshot back. A key
        that has moved on (a newer local edit or a reconciled remote change
        to another row) only has the fields this write changed reverted, and
        only where they still hold this write's values. Keys where that is
        not possible (rows added, removed or moved) are invalidated.

        Returns:
            Keys rolled back
        """
        restored = []
        for key, snapshot in write.snapshots.items():
            entry = self._cache.get(key)
            if entry is None:
                continue
            expected = write.expected.get(key, _ABSENT)
            if entry.value is expected or entry.value == expected:
                self._cache.set(key, snapshot, stale=entry.stale)
                restored.append(key)
                continue

            reverts = _field_reverts(snapshot, expected)
            if reverts and self._cache.patch(key, lambda value: _revert(value, reverts)):
                logger.info(f"Rolled back fields of {key} around newer changes")
                restored.append(key)
            else:
                logger.info(f"Not rolling back {key}: superseded by a newer value")
                self._cache.invalidate(key)
        return restored

    async def mutate(
        self,
        key: CacheKey,
        patch_fn: Updater,
        write_fn: WriteFn,
        *,
        refresh: Iterable[CacheKey] = (),
        failure_message: str = "Failed to save changes",
    ) -> MutationOutcome:
        """Snapshot, patch, write, and roll back on failure for one key."""
        return await self.mutate_many(
            [(key, patch_fn)], write_fn, refresh=refresh, failure_message=failure_message
        )

    async def mutate_many(
        self,
        patches: Iterable[tuple[CacheKey, Updater]],
        write_fn: WriteFn,
        *,
        refresh: Iterable[CacheKey] = (),
        failure_message: str = "Failed to save changes",
    ) -> MutationOutcome:
        write = self.apply(patches)
        return await self.commit(
            write, write_fn, refresh=refresh, failure_message=failure_message
        )

    async def create(
        self,
        patches: Iterable[tuple[CacheKey, Updater]],
        write_fn: WriteFn,
        temp_id: str,
        *,
        refresh: Iterable[CacheKey] = (),
        failure_message: str = "Failed to create item",
    ) -> MutationOutcome:
        """
        Optimistically insert a row under a temporary id.

        write_fn must return the stored row. On success the temporary id is
        re-keyed to the server id everywhere in the cache; on failure the
        speculative row is removed.
        """
        write = self.apply(patches)
        try:
            row = await write_fn()
        except Exception as e:
            for key in write.keys:
                current = self._cache.read(key)
                if isinstance(current, dict) and current.get("id") == temp_id:
                    self._cache.set(key, write.snapshots[key])
                else:
                    self._cache.patch(key, lambda value: prune_row(value, temp_id))
            logger.warning(f"{failure_message}: {type(e).__name__}: {e}")
            self._notifier.error(failure_message, str(e) or None)
            return MutationOutcome(ok=False, error=e, rolled_back=write.keys)

        for key in self._cache.locate(temp_id):
            self._cache.patch(key, lambda value: _confirm(value, temp_id, row))
        for key in refresh:
            self._cache.invalidate(key)
        return MutationOutcome(ok=True, result=row)
