# plansync/sync/coalescer.py
"""
Debounced write coalescer.

Keeps one timer per (entity, field). Every schedule() resets that pair's idle
window; when the window passes uninterrupted the last scheduled value is
flushed exactly once. Writes to one pair are strictly ordered: a flush that
becomes due while the previous one is in flight waits for it.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

FlushFn = Callable[[Any], Awaitable[Any] | Any]
SlotKey = tuple[str, str]

_MISSING = object()


@dataclass
class _Slot:
    """Timer arena entry for one (entity, field) pair."""

    value: Any = None
    flush_fn: FlushFn | None = None
    pending: bool = False
    timer: asyncio.TimerHandle | None = None
    inflight: asyncio.Task | None = None


class WriteCoalescer:
    """
    Per-field debounce with ordered flushing.

    Features:
        - N schedules inside the window produce 1 flush with the last value
        - Pending writes are flushed, never dropped, on teardown (flush/drain)
        - cancel() clears the arena for deleted entities
    """

    def __init__(self, window_seconds: float = 1.0) -> None:
        """
        Initialize coalescer.

        Args:
            window_seconds: Idle window before a pending value is flushed
        """
        self._window = window_seconds
        self._slots: dict[SlotKey, _Slot] = {}
        self.flush_count = 0

    @property
    def window_seconds(self) -> float:
        return self._window

    def __len__(self) -> int:
        """Number of (entity, field) pairs with a pending or in-flight write."""
        return len(self._slots)

    def schedule(self, entity_id: str, field: str, value: Any, flush_fn: FlushFn) -> None:
        """
        Schedule value to be flushed after the idle window.

        Replaces any pending value for the same pair and restarts its timer.

        Raises:
            RuntimeError: If called outside a running event loop
        """
        loop = asyncio.get_running_loop()
        key = (entity_id, field)
        slot = self._slots.setdefault(key, _Slot())

        slot.value = value
        slot.flush_fn = flush_fn
        slot.pending = True
        if slot.timer is not None:
            slot.timer.cancel()
        slot.timer = loop.call_later(self._window, self._fire, key)

    def peek(self, entity_id: str, field: str, default: Any = None) -> Any:
        """Pending (not yet flushed) value for a pair, or default."""
        slot = self._slots.get((entity_id, field))
        if slot is None or not slot.pending:
            return default
        return slot.value

    def has_pending(self, entity_id: str, field: str | None = None) -> bool:
        if field is not None:
            return self.peek(entity_id, field, _MISSING) is not _MISSING
        return bool(self.pending_fields(entity_id))

    def pending_items(self) -> list[tuple[SlotKey, Any]]:
        """((entity, field), value) for every value waiting to be flushed."""
        return [(key, slot.value) for key, slot in self._slots.items() if slot.pending]

    def pending_fields(self, entity_id: str) -> set[str]:
        """Fields of an entity with a value waiting to be flushed."""
        return {
            field
            for (slot_entity, field), slot in self._slots.items()
            if slot_entity == entity_id and slot.pending
        }

    def flush(self, entity_id: str | None = None) -> list[asyncio.Task]:
        """
        Fire pending timers now instead of waiting out the window.

        Teardown path: a component going away hands its last edit to the
        network rather than dropping it.

        Args:
            entity_id: Only flush this entity's fields (None = everything)

        Returns:
            The flush tasks started
        """
        tasks = []
        for key, slot in list(self._slots.items()):
            if slot.pending and (entity_id is None or key[0] == entity_id):
                task = self._fire(key)
                if task is not None:
                    tasks.append(task)
        return tasks

    async def drain(self) -> None:
        """Flush every pending value and wait for all in-flight flushes."""
        while True:
            self.flush()
            inflight = [
                slot.inflight
                for slot in self._slots.values()
                if slot.inflight is not None and not slot.inflight.done()
            ]
            if not inflight:
                return
            await asyncio.wait(inflight)

    def cancel(self, entity_id: str) -> int:
        """
        Drop pending writes for an entity that no longer exists.

        In-flight flushes can't be cancelled and run to completion.

        Returns:
            Number of pending writes dropped
        """
        dropped = 0
        for key, slot in list(self._slots.items()):
            if key[0] != entity_id:
                continue
            if slot.timer is not None:
                slot.timer.cancel()
                slot.timer = None
            if slot.pending:
                dropped += 1
            slot.pending = False
            slot.value = None
            slot.flush_fn = None
            if slot.inflight is None or slot.inflight.done():
                del self._slots[key]

        if dropped:
            logger.info(f"Dropped {dropped} pending write(s) for deleted entity {entity_id}")
        return dropped

    def _fire(self, key: SlotKey) -> asyncio.Task | None:
        slot = self._slots.get(key)
        if slot is None or not slot.pending:
            return None

        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None

        value, flush_fn = slot.value, slot.flush_fn
        slot.pending = False
        slot.value = None
        slot.flush_fn = None

        previous = slot.inflight
        task = asyncio.get_running_loop().create_task(
            self._flush(key, flush_fn, value, previous)
        )
        slot.inflight = task
        return task

    async def _flush(
        self,
        key: SlotKey,
        flush_fn: FlushFn,
        value: Any,
        previous: asyncio.Task | None,
    ) -> None:
        entity_id, field = key
        if previous is not None and not previous.done():
            await asyncio.wait([previous])

        try:
            result = flush_fn(value)
            if inspect.isawaitable(result):
                await result
            self.flush_count += 1
            logger.debug(f"Flushed {field} for {entity_id}")
        except Exception:
            logger.exception(f"Flush of {field} for {entity_id} failed")
        finally:
            slot = self._slots.get(key)
            if (
                slot is not None
                and slot.inflight is asyncio.current_task()
                and not slot.pending
            ):
                del self._slots[key]
