# tests/unit/test_executor.py
"""
Tests for MutationExecutor: optimistic apply, commit and rollback.
"""

import asyncio

import pytest

from plansync.backend.store import BackendError
from plansync.models import keys
from plansync.sync.cache import EntityCache
from plansync.sync.executor import MutationExecutor
from plansync.sync.notices import NoticeLevel, Notifier
from plansync.sync.rows import merge_row, upsert_row


@pytest.fixture
def cache() -> EntityCache:
    cache = EntityCache()
    cache.set(keys.initiative_list(), [{"id": "i1", "name": "Checkout", "order_index": 0}])
    return cache


@pytest.fixture
def notifier() -> Notifier:
    return Notifier()


@pytest.fixture
def executor(cache: EntityCache, notifier: Notifier) -> MutationExecutor:
    return MutationExecutor(cache, notifier)


def _rename(name):
    return lambda rows: merge_row(rows, "i1", {"name": name})


@pytest.mark.asyncio
async def test_optimistic_value_visible_before_write_completes(
    executor: MutationExecutor, cache: EntityCache
):
    """Test that the cache shows the new value while the write is in flight."""
    release = asyncio.Event()

    async def slow_write():
        await release.wait()

    task = asyncio.create_task(
        executor.mutate(keys.initiative_list(), _rename("Checkout v2"), slow_write)
    )
    await asyncio.sleep(0)

    assert cache.read(keys.initiative_list())[0]["name"] == "Checkout v2"

    release.set()
    outcome = await task
    assert outcome.ok
    assert cache.read(keys.initiative_list())[0]["name"] == "Checkout v2"


@pytest.mark.asyncio
async def test_failed_write_restores_snapshot(
    executor: MutationExecutor, cache: EntityCache, notifier: Notifier
):
    """Test that a failed write restores exactly the pre-edit value and notifies."""
    before = cache.read(keys.initiative_list())

    async def failing_write():
        raise BackendError("network down")

    outcome = await executor.mutate(keys.initiative_list(), _rename("Broken"), failing_write)

    assert not outcome.ok
    assert isinstance(outcome.error, BackendError)
    assert cache.read(keys.initiative_list()) == before
    assert outcome.rolled_back == [keys.initiative_list()]
    assert notifier.history[-1].level is NoticeLevel.ERROR


@pytest.mark.asyncio
async def test_rollback_does_not_clobber_newer_value(
    executor: MutationExecutor, cache: EntityCache
):
    """Test that a late failure leaves a newer local value in place."""
    release = asyncio.Event()

    async def late_failure():
        await release.wait()
        raise BackendError("timeout")

    task = asyncio.create_task(
        executor.mutate(keys.initiative_list(), _rename("First"), late_failure)
    )
    await asyncio.sleep(0)
    cache.patch(keys.initiative_list(), _rename("Second"))
    release.set()
    outcome = await task

    assert not outcome.ok
    assert outcome.rolled_back == []
    assert cache.read(keys.initiative_list())[0]["name"] == "Second"
    assert cache.get(keys.initiative_list()).stale is True


@pytest.mark.asyncio
async def test_success_invalidates_refresh_keys(executor: MutationExecutor, cache: EntityCache):
    """Test that derived views are invalidated after a successful write."""
    cache.set(keys.dashboard_timeline(), [{"id": "i1", "name": "Checkout"}])

    async def ok_write():
        return None

    outcome = await executor.mutate(
        keys.initiative_list(),
        _rename("Renamed"),
        ok_write,
        refresh=[keys.dashboard_timeline()],
    )

    assert outcome
    assert cache.get(keys.dashboard_timeline()).stale is True


def test_absorb_keeps_earliest_snapshot(executor: MutationExecutor, cache: EntityCache):
    """Test that folding a burst keeps the pre-burst snapshot."""
    original = cache.read(keys.initiative_list())

    first = executor.apply([(keys.initiative_list(), _rename("a"))])
    second = executor.apply([(keys.initiative_list(), _rename("ab"))])
    burst = first.absorb(second)

    assert burst.snapshots[keys.initiative_list()] == original
    assert burst.expected[keys.initiative_list()][0]["name"] == "ab"

    executor.rollback(burst)
    assert cache.read(keys.initiative_list()) == original


@pytest.mark.asyncio
async def test_create_rekeys_temporary_id(executor: MutationExecutor, cache: EntityCache):
    """Test that a confirmed creation swaps the temp id for the stored id."""
    speculative = {"id": "tmp-1", "name": "Search", "order_index": 1}

    async def create():
        return {"id": "srv-9", "name": "Search", "order_index": 1, "status": "Initiative Planning"}

    outcome = await executor.create(
        [(keys.initiative_list(), lambda rows: upsert_row(rows, speculative))],
        create,
        "tmp-1",
    )

    assert outcome.ok
    ids = [row["id"] for row in cache.read(keys.initiative_list())]
    assert ids == ["i1", "srv-9"]
    assert cache.read(keys.initiative_list())[1]["status"] == "Initiative Planning"


@pytest.mark.asyncio
async def test_create_failure_removes_speculative_row(
    executor: MutationExecutor, cache: EntityCache, notifier: Notifier
):
    """Test that a failed creation removes the temp row."""
    speculative = {"id": "tmp-2", "name": "Search", "order_index": 1}

    async def create():
        raise BackendError("insert rejected")

    outcome = await executor.create(
        [(keys.initiative_list(), lambda rows: upsert_row(rows, speculative))],
        create,
        "tmp-2",
        failure_message="Failed to create initiative",
    )

    assert not outcome.ok
    assert [row["id"] for row in cache.read(keys.initiative_list())] == ["i1"]
    assert notifier.history[-1].message == "Failed to create initiative"


@pytest.mark.asyncio
async def test_create_when_insert_event_arrived_first(
    executor: MutationExecutor, cache: EntityCache
):
    """Test that a row already reconciled under its stored id is not duplicated."""
    speculative = {"id": "tmp-3", "name": "Search", "order_index": 1}
    stored = {"id": "srv-3", "name": "Search", "order_index": 1}

    async def create():
        cache.patch(keys.initiative_list(), lambda rows: upsert_row(rows, stored))
        return stored

    await executor.create(
        [(keys.initiative_list(), lambda rows: upsert_row(rows, speculative))],
        create,
        "tmp-3",
    )

    assert [row["id"] for row in cache.read(keys.initiative_list())] == ["i1", "srv-3"]


@pytest.mark.asyncio
async def test_absent_keys_are_skipped(executor: MutationExecutor, cache: EntityCache):
    """Test that mutating a never-loaded key touches nothing."""

    async def ok_write():
        return "done"

    outcome = await executor.mutate(keys.task_list(), lambda rows: rows + [{"id": "x"}], ok_write)

    assert outcome.result == "done"
    assert keys.task_list() not in cache


@pytest.mark.asyncio
async def test_rollback_reverts_fields_around_change_to_other_row(notifier: Notifier):
    """Test that a failed edit is undone when another row of the key changed meanwhile."""
    cache = EntityCache()
    cache.set(
        keys.initiative_list(),
        [{"id": "a", "name": "a", "pm": None}, {"id": "b", "name": "b", "pm": None}],
    )
    executor = MutationExecutor(cache, notifier)
    release = asyncio.Event()

    async def late_failure():
        await release.wait()
        raise BackendError("rejected")

    task = asyncio.create_task(
        executor.mutate(
            keys.initiative_list(),
            lambda rows: merge_row(rows, "a", {"name": "A-failed"}),
            late_failure,
        )
    )
    await asyncio.sleep(0)
    cache.patch(keys.initiative_list(), lambda rows: merge_row(rows, "b", {"pm": "Dana"}))
    release.set()
    outcome = await task

    assert outcome.rolled_back == [keys.initiative_list()]
    assert cache.read(keys.initiative_list()) == [
        {"id": "a", "name": "a", "pm": None},
        {"id": "b", "name": "b", "pm": "Dana"},
    ]
    assert cache.get(keys.initiative_list()).stale is False
