# plansync/backend/feed.py
"""
In-process change feed.

Fans every published ChangeEvent out to the open subscriptions of its table,
in publication order.
"""

import asyncio
import logging
from collections import defaultdict

from plansync.models.events import ChangeEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """Async iterator over the change events of one table."""

    def __init__(self, feed: "ChangeFeed", table: str) -> None:
        self._feed = feed
        self.table = table
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def deliver(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        """Stop the stream; pending events already queued are still yielded."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        self._feed.unregister(self)


class ChangeFeed:
    """Per-table publish/subscribe hub."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)

    def subscribe(self, table: str) -> Subscription:
        subscription = Subscription(self, table)
        self._subscriptions[table].add(subscription)
        logger.debug(f"Subscribed to {table} ({len(self._subscriptions[table])} open)")
        return subscription

    def unregister(self, subscription: Subscription) -> None:
        self._subscriptions[subscription.table].discard(subscription)

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(event.table, ())):
            subscription.deliver(event)

    def subscriber_count(self, table: str) -> int:
        return len(self._subscriptions.get(table, ()))
