"""In-process change feed for row-level notifications.

Writers publish a ``ChangeEvent`` after their transaction commits; every open
``Subscription`` whose table, event type and equality filter match receives
it. Delivery is best-effort: nothing is replayed for late subscribers, which
is why session code always pairs a subscription with a polling fallback.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from moodchat.schemas.events import ChangeEventResponse, EventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: EventType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None

    @property
    def row(self) -> dict[str, Any]:
        return self.new if self.new is not None else (self.old or {})

    def to_response(self) -> ChangeEventResponse:
        return ChangeEventResponse(
            table=self.table,
            event_type=self.event_type,
            new=self.new,
            old=self.old,
        )


def _same(left: Any, right: Any) -> bool:
    # UUIDs arrive either as objects or strings depending on the caller
    return left == right or str(left) == str(right)


@dataclass(eq=False)
class Subscription:
    """Cancelable stream of change events for one table/event/filter."""

    feed: "ChangeFeed"
    table: str
    event_type: EventType
    filters: dict[str, Any] = field(default_factory=dict)
    _queue: asyncio.Queue = field(default_factory=asyncio.Queue, init=False, repr=False)
    _closed: bool = field(default=False, init=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.event_type != self.event_type:
            return False
        row = event.row
        return all(key in row and _same(row[key], value) for key, value in self.filters.items())

    def deliver(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.feed.unsubscribe(self)
        # Wake up a consumer blocked in get()
        self._queue.put_nowait(None)

    async def get(self) -> ChangeEvent | None:
        """Next event, or None once the subscription is closed."""
        if self._closed:
            return None
        event = await self._queue.get()
        if self._closed:
            return None
        return event

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class ChangeFeed:
    def __init__(self):
        self._subscriptions: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, table: str, event_type: EventType, **filters: Any) -> Subscription:
        subscription = Subscription(
            feed=self,
            table=table,
            event_type=event_type,
            filters=filters,
        )
        self._subscriptions.append(subscription)
        logger.debug("Subscribed to %s %s %s", event_type, table, filters)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver to every matching subscription; returns the delivery count."""
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.deliver(event)
                delivered += 1
        return delivered


# Process-wide feed used by the HTTP layer
change_feed = ChangeFeed()


def get_change_feed() -> ChangeFeed:
    return change_feed
