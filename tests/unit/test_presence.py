# tests/unit/test_presence.py
"""
Tests for PresenceTracker and the in-memory presence hub.
"""

import asyncio

import pytest

from plansync.backend.presence import InMemoryPresenceHub
from plansync.models.entities import PresenceUser
from plansync.sync.presence import PresenceTracker, dedupe_users


def _user(user_id: str, name: str) -> PresenceUser:
    return PresenceUser(id=user_id, name=name, avatar_url=f"https://avatars.example/{user_id}.png")


def test_dedupe_keeps_last_payload_per_user():
    """Test de-duplication by user id with last broadcast winning."""
    state = {
        "u1": [{"id": "u1", "name": "Ana (laptop)"}, {"id": "u1", "name": "Ana (phone)"}],
        "u2": [{"id": "u2", "name": "Ben"}],
        "broken": [{"name": "no id"}],
    }

    users = dedupe_users(state)

    assert [(u.id, u.name) for u in users] == [("u1", "Ana (phone)"), ("u2", "Ben")]


@pytest.mark.asyncio
async def test_sessions_see_each_other_and_leave():
    """Test join/track/leave across two sessions on one channel."""
    hub = InMemoryPresenceHub()
    ana = PresenceTracker(hub.channel("online-users"), _user("u1", "Ana"), coalesce_seconds=0.01)
    ben = PresenceTracker(hub.channel("online-users"), _user("u2", "Ben"), coalesce_seconds=0.01)

    await ana.start()
    await ben.start()
    await asyncio.sleep(0.05)

    assert {u.id for u in ana.users} == {"u1", "u2"}
    assert {u.id for u in ben.users} == {"u1", "u2"}

    await ben.stop()
    await asyncio.sleep(0.05)

    assert [u.id for u in ana.users] == ["u1"]
    assert ben.users == []
    assert hub.member_count("online-users") == 1

    await ana.stop()


@pytest.mark.asyncio
async def test_same_user_in_two_tabs_listed_once():
    """Test that two sessions of one user appear as a single entry."""
    hub = InMemoryPresenceHub()
    tab1 = PresenceTracker(hub.channel("online-users"), _user("u1", "Ana"), coalesce_seconds=0.01)
    tab2 = PresenceTracker(hub.channel("online-users"), _user("u1", "Ana"), coalesce_seconds=0.01)

    await tab1.start()
    await tab2.start()
    await asyncio.sleep(0.05)

    assert tab1.count == 1
    assert hub.member_count("online-users") == 2

    await tab1.stop()
    await tab2.stop()


@pytest.mark.asyncio
async def test_join_burst_coalesces_into_one_recompute():
    """Test that a reconnect storm is rate-capped to a single recompute."""
    hub = InMemoryPresenceHub()
    watcher = PresenceTracker(hub.channel("online-users"), _user("w", "Watcher"), coalesce_seconds=0.1)
    await watcher.start()
    await asyncio.sleep(0.15)
    baseline = watcher.recompute_count

    others = [
        PresenceTracker(hub.channel("online-users"), _user(f"u{i}", f"User {i}"), coalesce_seconds=0.1)
        for i in range(20)
    ]
    for tracker in others:
        await tracker.start()
    await asyncio.sleep(0.2)

    assert watcher.events_seen > 20
    assert watcher.recompute_count - baseline == 1
    assert watcher.count == 21

    for tracker in [watcher, *others]:
        await tracker.stop()


@pytest.mark.asyncio
async def test_listeners_notified_on_change():
    """Test that listeners get the new list when membership changes."""
    hub = InMemoryPresenceHub()
    tracker = PresenceTracker(hub.channel("room"), _user("u1", "Ana"), coalesce_seconds=0)
    seen = []
    tracker.subscribe(lambda users: seen.append([u.id for u in users]))

    await tracker.start()
    await asyncio.sleep(0.01)
    await tracker.stop()

    assert seen[0] == ["u1"]
    assert seen[-1] == []
    assert not tracker.running
