# plansync/backend/presence.py
"""
Ephemeral presence channels.

Presence is pub/sub with no persistence: a session joins a named channel,
tracks a payload, and every member is told about sync/join/leave changes.
State lives only as long as the sessions stay joined.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator
from uuid import uuid4

logger = logging.getLogger(__name__)

_CLOSED = object()


class PresenceEventKind(Enum):
    SYNC = "sync"
    JOIN = "join"
    LEAVE = "leave"


@dataclass(frozen=True)
class PresenceEvent:
    """
    A presence change.

    state maps presence key -> payloads of every session under that key,
    as seen right after the change.
    """

    kind: PresenceEventKind
    key: str | None
    state: dict[str, list[dict[str, Any]]] = field(default_factory=dict)


class PresenceChannel(ABC):
    """One session's handle on a named presence channel."""

    @abstractmethod
    async def join(self, key: str) -> None:
        """Join under a presence key (usually the user id)."""

    @abstractmethod
    async def track(self, payload: dict[str, Any]) -> None:
        """Broadcast this session's payload; replaces any earlier one."""

    @abstractmethod
    async def leave(self) -> None:
        """Leave the channel and end the event stream."""

    @abstractmethod
    def events(self) -> AsyncIterator[PresenceEvent]:
        """Stream of presence events for this session."""

    @abstractmethod
    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        """Current state: presence key -> payloads."""


class _HubRoom:
    """Shared state of one named channel."""

    def __init__(self, name: str) -> None:
        self.name = name
        # session id -> (presence key, payload or None until tracked)
        self.members: dict[str, tuple[str, dict[str, Any] | None]] = {}
        self.queues: dict[str, asyncio.Queue] = {}

    def state(self) -> dict[str, list[dict[str, Any]]]:
        grouped: dict[str, list[dict[str, Any]]] = {}
        for key, payload in self.members.values():
            if payload is not None:
                grouped.setdefault(key, []).append(dict(payload))
        return grouped

    def broadcast(self, kind: PresenceEventKind, key: str | None) -> None:
        event = PresenceEvent(kind=kind, key=key, state=self.state())
        for queue in self.queues.values():
            queue.put_nowait(event)


class InMemoryPresenceHub:
    """Process-local presence server shared by every session of a store."""

    def __init__(self) -> None:
        self._rooms: dict[str, _HubRoom] = {}

    def channel(self, name: str) -> "InMemoryPresenceChannel":
        room = self._rooms.setdefault(name, _HubRoom(name))
        return InMemoryPresenceChannel(room)

    def member_count(self, name: str) -> int:
        room = self._rooms.get(name)
        return len(room.members) if room else 0


class InMemoryPresenceChannel(PresenceChannel):
    def __init__(self, room: _HubRoom) -> None:
        self._room = room
        self._session_id = uuid4().hex[:12]
        self._key: str | None = None
        self._queue: asyncio.Queue = asyncio.Queue()

    async def join(self, key: str) -> None:
        self._key = key
        self._room.members[self._session_id] = (key, None)
        self._room.queues[self._session_id] = self._queue
        self._queue.put_nowait(
            PresenceEvent(kind=PresenceEventKind.SYNC, key=None, state=self._room.state())
        )
        logger.debug(f"Session {self._session_id} joined presence channel {self._room.name}")

    async def track(self, payload: dict[str, Any]) -> None:
        if self._key is None:
            raise RuntimeError("track() called before join()")
        self._room.members[self._session_id] = (self._key, dict(payload))
        self._room.broadcast(PresenceEventKind.JOIN, self._key)

    async def leave(self) -> None:
        if self._session_id not in self._room.members:
            return
        self._room.members.pop(self._session_id, None)
        self._room.queues.pop(self._session_id, None)
        self._queue.put_nowait(_CLOSED)
        self._room.broadcast(PresenceEventKind.LEAVE, self._key)
        logger.debug(f"Session {self._session_id} left presence channel {self._room.name}")

    async def events(self) -> AsyncIterator[PresenceEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        return self._room.state()
