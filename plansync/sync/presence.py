# plansync/sync/presence.py
"""
Presence tracker ("who's online").

Joins an ephemeral channel, broadcasts this session's user, and keeps an
advisory list of present users de-duplicated by user id. Nothing here is
persisted or read by business logic.
"""

import asyncio
import logging
from typing import Any, Callable

from pydantic import ValidationError

from plansync.backend.presence import PresenceChannel, PresenceEvent
from plansync.models.entities import PresenceUser

logger = logging.getLogger(__name__)

PresenceListener = Callable[[list[PresenceUser]], None]


def dedupe_users(state: dict[str, list[dict[str, Any]]]) -> list[PresenceUser]:
    """One entry per user id; the last payload seen for an id wins."""
    by_id: dict[str, PresenceUser] = {}
    for payloads in state.values():
        for payload in payloads:
            try:
                user = PresenceUser.model_validate(payload)
            except ValidationError as e:
                logger.debug(f"Skipping malformed presence payload: {e}")
                continue
            by_id.pop(user.id, None)
            by_id[user.id] = user
    return list(by_id.values())


class PresenceTracker:
    """
    Maintains the present-user list for one channel.

    Bursts of sync/join/leave events (e.g. after a reconnect) arriving within
    coalesce_seconds collapse into a single recompute.
    """

    def __init__(
        self,
        channel: PresenceChannel,
        user: PresenceUser,
        coalesce_seconds: float = 0.25,
    ) -> None:
        self._channel = channel
        self._user = user
        self._coalesce = coalesce_seconds
        self._state: dict[str, list[dict[str, Any]]] = {}
        self._users: list[PresenceUser] = []
        self._listeners: list[PresenceListener] = []
        self._task: asyncio.Task | None = None
        self._timer: asyncio.TimerHandle | None = None
        self.events_seen = 0
        self.recompute_count = 0

    @property
    def users(self) -> list[PresenceUser]:
        return list(self._users)

    @property
    def count(self) -> int:
        return len(self._users)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, listener: PresenceListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def start(self) -> None:
        """Join the channel, start listening, then broadcast this user."""
        if self.running:
            return
        await self._channel.join(self._user.id)
        self._task = asyncio.get_running_loop().create_task(self._listen())
        await self._channel.track(self._user.model_dump(mode="json"))
        logger.info(f"Presence started for {self._user.id}")

    async def stop(self) -> None:
        """Leave the channel and discard the user list."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        await self._channel.leave()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=1.0)
            except asyncio.TimeoutError:
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        self._state = {}
        self._set_users([])
        logger.info(f"Presence stopped for {self._user.id}")

    async def _listen(self) -> None:
        try:
            async for event in self._channel.events():
                self._on_event(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Presence stream failed")

    def _on_event(self, event: PresenceEvent) -> None:
        self.events_seen += 1
        self._state = event.state
        if self._coalesce <= 0:
            self._recompute()
            return
        if self._timer is None:
            self._timer = asyncio.get_running_loop().call_later(
                self._coalesce, self._recompute
            )

    def _recompute(self) -> None:
        self._timer = None
        self.recompute_count += 1
        self._set_users(dedupe_users(self._state))

    def _set_users(self, users: list[PresenceUser]) -> None:
        if users == self._users:
            return
        self._users = users
        for listener in list(self._listeners):
            try:
                listener(self.users)
            except Exception:
                logger.exception("Presence listener failed")
