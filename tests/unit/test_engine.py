# tests/unit/test_engine.py
"""
End-to-end tests for SyncEngine over the in-memory backing store.

Tests cover:
    - Optimistic visibility and debounced coalescing of field edits
    - Rollback of a whole edit burst on write failure
    - Optimistic creation with temp-id rekeying and initial planning
    - Removal, status archiving and append-only guards
    - Teardown flushing pending edits
    - Two sessions kept in sync through the change feed
"""

import asyncio
import logging

import pytest
import pytest_asyncio

from plansync.backend.memory import InMemoryBackingStore
from plansync.backend.sqlite_store import SQLiteBackingStore
from plansync.config.schema import PlanSyncConfig, SyncConfig
from plansync.engine import TEMP_ID_PREFIX, SyncEngine
from plansync.logging_config import JsonFormatter
from plansync.models import keys
from plansync.models.entities import PresenceUser
from plansync.sync.index import UnknownEntityError
from plansync.sync.notices import NoticeLevel

DEBOUNCE = 0.05


def _config(debounce: float = DEBOUNCE) -> PlanSyncConfig:
    return PlanSyncConfig(sync=SyncConfig(debounce_seconds=debounce))


@pytest.fixture
def store() -> InMemoryBackingStore:
    return InMemoryBackingStore()


@pytest_asyncio.fixture
async def engine(store: InMemoryBackingStore) -> SyncEngine:
    engine = SyncEngine(store, _config())
    yield engine
    await engine.close()


def _writes(store: InMemoryBackingStore) -> list[tuple[str, str, str | None]]:
    return [call for call in store.calls if call[0] == "write"]


@pytest.mark.asyncio
async def test_edit_is_visible_immediately_and_coalesced(store, engine):
    """Test that a typing burst shows at once and is written once."""
    initiative = await store.create("initiatives", {"name": "Checkout"})
    await engine.load(keys.initiative_list())

    for text in ("a", "ab", "abc"):
        engine.edit(initiative["id"], "name", text)
        assert engine.read(keys.initiative_list())[0]["name"] == text
        await asyncio.sleep(DEBOUNCE / 5)

    assert _writes(store) == []
    await asyncio.sleep(DEBOUNCE * 4)

    assert _writes(store) == [("write", "initiatives", initiative["id"])]
    assert store.rows("initiatives")[0]["name"] == "abc"
    assert engine.read(keys.initiative_list())[0]["name"] == "abc"


@pytest.mark.asyncio
async def test_failed_write_rolls_back_whole_burst(store, engine):
    """Test that a rejected write restores the value from before the burst."""
    initiative = await store.create("initiatives", {"name": "Checkout"})
    await engine.load(keys.initiative_list())
    store.inject_failure(op="write", retryable=False, message="rejected")

    engine.edit(initiative["id"], "name", "a")
    engine.edit(initiative["id"], "name", "ab")
    await engine.flush()

    assert engine.read(keys.initiative_list())[0]["name"] == "Checkout"
    assert store.rows("initiatives")[0]["name"] == "Checkout"
    notice = engine.notifier.history[-1]
    assert notice.level is NoticeLevel.ERROR
    assert notice.message == "Failed to save initiative name"


@pytest.mark.asyncio
async def test_pending_edit_survives_refetch(store, engine):
    """Test that a refetch during the debounce window keeps the local value."""
    initiative = await store.create("initiatives", {"name": "Checkout"})
    await engine.load(keys.initiative_list())

    engine.edit(initiative["id"], "name", "Checkout v2")
    await engine.refresh(keys.initiative_list())

    assert engine.read(keys.initiative_list())[0]["name"] == "Checkout v2"


@pytest.mark.asyncio
async def test_edit_rejects_non_editable_fields(store, engine):
    """Test that ids, positions and unknown fields cannot be edited."""
    initiative = await store.create("initiatives", {"name": "Checkout"})
    await engine.load(keys.initiative_list())

    for field in ("id", "order_index", "colour"):
        with pytest.raises(ValueError, match="not editable"):
            engine.edit(initiative["id"], field, "x")


@pytest.mark.asyncio
async def test_edit_unknown_entity_raises(engine):
    """Test that an id never seen by the session cannot be routed."""
    with pytest.raises(UnknownEntityError):
        engine.edit("ghost", "name", "x")


@pytest.mark.asyncio
async def test_create_initiative_rekeys_and_adds_planning(store, engine):
    """Test optimistic creation ends with the stored id and planning row."""
    await store.create("initiatives", {"name": "Checkout"})
    await engine.load(keys.initiative_list())

    outcome = await engine.create("initiatives", {"name": "Search"})

    assert outcome.ok
    created = outcome.result
    assert not created["id"].startswith(TEMP_ID_PREFIX)
    assert created["order_index"] == 1
    cached_ids = [row["id"] for row in engine.read(keys.initiative_list())]
    assert cached_ids[-1] == created["id"]
    assert not any(row_id.startswith(TEMP_ID_PREFIX) for row_id in cached_ids)
    [planning] = store.rows("initial_planning")
    assert planning["initiative_id"] == created["id"]
    assert planning["start_date"] is not None


@pytest.mark.asyncio
async def test_create_release_plan_gets_default_window(store, engine):
    """Test that a new release plan is dated and placed last."""
    initiative = await store.create("initiatives", {"name": "Checkout"})
    await store.create("release_plans", {"initiative_id": initiative["id"], "goal": "MVP"})

    outcome = await engine.create(
        "release_plans", {"initiative_id": initiative["id"], "goal": "GA"}
    )

    assert outcome.result["order_index"] == 1
    assert outcome.result["planning_start_date"] is not None
    assert outcome.result["dev_end_date"] is not None


@pytest.mark.asyncio
async def test_failed_create_leaves_no_trace(store, engine):
    """Test that a rejected insert removes the speculative row."""
    await engine.load(keys.task_list())
    store.inject_failure(op="create", table="tasks", retryable=False)

    outcome = await engine.create("tasks", {"name": "Audit"})

    assert not outcome.ok
    assert engine.read(keys.task_list()) == []
    assert engine.notifier.history[-1].message == "Failed to create task"


@pytest.mark.asyncio
async def test_remove_prunes_cache_and_store(store, engine):
    """Test that a removed row disappears locally and remotely."""
    task = await store.create("tasks", {"name": "Audit"})
    await engine.load(keys.task_list())

    outcome = await engine.remove(task["id"])

    assert outcome.ok
    assert engine.read(keys.task_list()) == []
    assert store.rows("tasks") == []
    assert task["id"] not in engine.index


@pytest.mark.asyncio
async def test_failed_remove_restores_row(store, engine):
    """Test that a rejected delete puts the row back."""
    task = await store.create("tasks", {"name": "Audit"})
    await engine.load(keys.task_list())
    store.inject_failure(op="delete", retryable=False)

    outcome = await engine.remove(task["id"])

    assert not outcome.ok
    assert [row["id"] for row in engine.read(keys.task_list())] == [task["id"]]


@pytest.mark.asyncio
async def test_archive_task_status_logs_and_clears(store, engine):
    """Test that the current status moves into the update log."""
    task = await store.create("tasks", {"name": "Audit"})
    await engine.load(keys.task_list())
    engine.edit(task["id"], "detailed_status", "  Waiting on legal ")

    outcome = await engine.archive_task_status(task["id"])

    assert outcome.ok
    [update] = store.rows("task_updates")
    assert update["content"] == "Waiting on legal"
    assert store.rows("tasks")[0]["detailed_status"] is None
    assert engine.read(keys.task_list())[0]["detailed_status"] is None


@pytest.mark.asyncio
async def test_archive_without_status_raises(store, engine):
    """Test that archiving an empty status is refused."""
    task = await store.create("tasks", {"name": "Audit"})
    await engine.load(keys.task_list())

    with pytest.raises(ValueError, match="no status"):
        await engine.archive_task_status(task["id"])


@pytest.mark.asyncio
async def test_task_updates_are_append_only(store, engine):
    """Test that log entries can be neither edited nor removed."""
    task = await store.create("tasks", {"name": "Audit"})
    update = await store.create("task_updates", {"task_id": task["id"], "content": "Kickoff"})
    await engine.load(keys.task_updates(task["id"]))

    with pytest.raises(ValueError, match="append-only"):
        engine.edit(update["id"], "content", "Edited")
    with pytest.raises(ValueError, match="append-only"):
        await engine.remove(update["id"])


@pytest.mark.asyncio
async def test_close_flushes_pending_edits(store):
    """Test that teardown sends the last edit instead of dropping it."""
    engine = SyncEngine(store, _config(debounce=10.0))
    task = await store.create("tasks", {"name": "Audit"})
    await engine.load(keys.task_list())

    engine.edit(task["id"], "name", "Audit (final)")
    await engine.close()

    assert store.rows("tasks")[0]["name"] == "Audit (final)"


@pytest.mark.asyncio
async def test_reorder_via_engine(store, engine):
    """Test that the engine reorders a loaded collection densely."""
    rows = [await store.create("tasks", {"name": n, "display_order": i}) for i, n in enumerate("xyz")]
    await engine.load(keys.task_list())

    outcome = await engine.reorder(keys.task_list(), [rows[2]["id"], rows[0]["id"], rows[1]["id"]])

    assert outcome.ok
    assert [r["name"] for r in store.rows("tasks")] == ["z", "x", "y"]
    assert [r["display_order"] for r in engine.read(keys.task_list())] == [0, 1, 2]


@pytest.mark.asyncio
async def test_two_sessions_converge(store):
    """Test that one session's edits and creations reach another session."""
    alice = SyncEngine(store, _config())
    bob = SyncEngine(store, _config())
    alice.start()
    bob.start()
    try:
        initiative = await store.create("initiatives", {"name": "Checkout"})
        await alice.load(keys.initiative_list())
        await bob.load(keys.initiative_list())

        alice.edit(initiative["id"], "name", "Checkout v2")
        await alice.flush()
        created = await alice.create("initiatives", {"name": "Search"})
        await asyncio.sleep(0.05)

        bob_rows = bob.read(keys.initiative_list())
        assert [row["id"] for row in bob_rows] == [initiative["id"], created.result["id"]]
        assert bob_rows[0]["name"] == "Checkout v2"
        assert bob.notifier.history[-1].message == "New initiative created"
    finally:
        await alice.close()
        await bob.close()


@pytest.mark.asyncio
async def test_presence_through_engine(store, engine):
    """Test that the engine joins and leaves the configured channel."""
    tracker = await engine.presence(PresenceUser(id="u1", name="Ana"))
    await asyncio.sleep(0.3)

    assert [u.id for u in tracker.users] == ["u1"]

    await engine.leave_presence()
    assert not tracker.running


@pytest.mark.asyncio
async def test_remote_reorder_moves_rows_in_other_session(store):
    """Test that a reorder made by one session re-sorts the other session's list."""
    ids = {}
    for position, name in enumerate("abc"):
        row = await store.create("initiatives", {"name": name, "order_index": position})
        ids[name] = row["id"]
    alice = SyncEngine(store, _config())
    bob = SyncEngine(store, _config())
    alice.start()
    bob.start()
    try:
        await alice.load(keys.initiative_list())
        await bob.load(keys.initiative_list())

        outcome = await alice.reorder(keys.initiative_list(), [ids["c"], ids["a"], ids["b"]])
        await asyncio.sleep(0.05)

        assert outcome.ok
        rows = bob.read(keys.initiative_list())
        assert [row["name"] for row in rows] == ["c", "a", "b"]
        assert [row["order_index"] for row in rows] == [0, 1, 2]
    finally:
        await alice.close()
        await bob.close()


@pytest.mark.asyncio
async def test_failed_edit_rolls_back_around_remote_change(store):
    """Test that a failed edit is undone even after another row changed remotely."""
    a = await store.create("initiatives", {"name": "a", "order_index": 0})
    b = await store.create("initiatives", {"name": "b", "order_index": 1})
    alice = SyncEngine(store, _config())
    bob = SyncEngine(store, _config())
    alice.start()
    bob.start()
    try:
        await alice.load(keys.initiative_list())
        await bob.load(keys.initiative_list())
        store.inject_failure(op="write", row_id=a["id"], retryable=False)

        alice.edit(a["id"], "name", "A-failed")
        bob.edit(b["id"], "pm", "Dana")
        await bob.flush()
        await asyncio.sleep(0.02)
        await alice.flush()

        rows = alice.read(keys.initiative_list())
        assert [row["name"] for row in rows] == ["a", "b"]
        assert rows[1]["pm"] == "Dana"
        assert alice.cache.get(keys.initiative_list()).stale is False
    finally:
        await alice.close()
        await bob.close()


@pytest.mark.asyncio
async def test_create_shows_row_before_store_confirms():
    """Test that creation into a loaded list needs no read and is visible at once."""
    store = InMemoryBackingStore(latency=0.05)
    engine = SyncEngine(store, _config())
    await store.create("tasks", {"name": "Audit", "display_order": 0})
    await engine.load(keys.task_list())
    store.calls.clear()

    pending = asyncio.create_task(engine.create("tasks", {"name": "Review"}))
    await asyncio.sleep(0.01)

    rows = engine.read(keys.task_list())
    assert [row["name"] for row in rows] == ["Audit", "Review"]
    assert rows[1]["id"].startswith(TEMP_ID_PREFIX)
    assert rows[1]["display_order"] == 1

    outcome = await pending
    assert outcome.ok
    assert [call[0] for call in store.calls] == ["create"]
    await engine.close()


@pytest.mark.asyncio
async def test_open_applies_logging_and_builds_backend(tmp_path):
    """Test that open() configures logging and the backing store from config."""
    config = PlanSyncConfig(
        backend={"kind": "sqlite", "db_path": str(tmp_path / "plansync.db")},
        logging={"level": "WARNING", "json_output": False},
    )

    engine = await SyncEngine.open(config)
    try:
        logger = logging.getLogger("plansync")
        assert isinstance(engine.backend, SQLiteBackingStore)
        assert logger.level == logging.WARNING
        assert not isinstance(logger.handlers[0].formatter, JsonFormatter)
    finally:
        await engine.close()
        logger = logging.getLogger("plansync")
        logger.handlers.clear()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)
