"""
Per-user notification fan-out.

A best-effort, in-memory side channel for workflow events (for example
report status changes). It holds no backlog: an event published while a
user has no subscribers is discarded, and a new subscription only sees
events published after it was opened. Sync queue outcomes are never pushed
through here; clients poll the queue for those.

Invariants:
    - A channel exists only while it has at least one subscriber
    - publish() never blocks; a full subscriber buffer drops its oldest event
    - Events are delivered to each subscriber in publish order

How to change safely:
    - Keep callers on the NotificationHub protocol so a distributed pub/sub
      backend can replace InMemoryNotificationHub
    - Never persist events here
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100

_CLOSED = object()


@dataclass
class NotificationEvent:
    """An event pushed to a user's live subscribers.

    Attributes:
        type: Event type (e.g. "report_status")
        message: Human-readable message
        title: Optional short title
        data: Optional structured payload
        timestamp: Unix ms, stamped by the hub on publish
    """

    type: str
    message: str = ""
    title: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class Subscription:
    """Live handle on one user's channel.

    Iterate with ``async for``; iteration ends once the subscription is
    closed (explicitly, by leaving ``async with``, or by the hub shutting
    down).
    """

    def __init__(self, hub: InMemoryNotificationHub, user_id: str, buffer_size: int) -> None:
        self.user_id = user_id
        self._hub = hub
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=buffer_size)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, item: Any) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                if item is not _CLOSED:
                    self.dropped += 1

    def deliver(self, event: NotificationEvent) -> None:
        if not self._closed:
            self._offer(event)

    async def get(self, timeout: float | None = None) -> NotificationEvent | None:
        """Next event, or None if the subscription is closed.

        Raises:
            asyncio.TimeoutError: If no event arrives within ``timeout`` seconds
        """
        if self._closed and self._queue.empty():
            return None
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        """Close the subscription and detach it from the hub."""
        if self._closed:
            return
        self._closed = True
        self._offer(_CLOSED)
        self._hub._detach(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> NotificationEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class NotificationHub(Protocol):
    """Fan-out interface used by the request layer and workflow publishers."""

    def subscribe(self, user_id: str) -> Subscription: ...

    def publish(self, user_id: str, event: NotificationEvent) -> int: ...

    def subscriber_count(self, user_id: str) -> int: ...

    def close(self) -> None: ...


class InMemoryNotificationHub:
    """Process-local NotificationHub.

    Example:
        >>> hub = InMemoryNotificationHub()
        >>> async with hub.subscribe("u1") as sub:
        ...     hub.publish("u1", NotificationEvent(type="report_status", message="done"))
        ...     event = await sub.get()
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.buffer_size = buffer_size
        self._channels: dict[str, set[Subscription]] = {}

    def subscribe(self, user_id: str) -> Subscription:
        subscription = Subscription(self, user_id, self.buffer_size)
        channel = self._channels.get(user_id)
        if channel is None:
            channel = self._channels[user_id] = set()
            logger.debug("Opened notification channel", extra={"user_id": user_id})
        channel.add(subscription)
        return subscription

    def publish(self, user_id: str, event: NotificationEvent) -> int:
        """Stamp the event and deliver it to every live subscriber.

        Returns:
            Number of subscribers the event reached (0 = discarded)
        """
        event.timestamp = int(time.time() * 1000)
        channel = self._channels.get(user_id)
        if not channel:
            return 0

        for subscription in list(channel):
            subscription.deliver(event)

        logger.debug(
            "Published notification",
            extra={"user_id": user_id, "type": event.type, "subscribers": len(channel)},
        )
        return len(channel)

    def subscriber_count(self, user_id: str) -> int:
        return len(self._channels.get(user_id, ()))

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def close(self) -> None:
        """Close every subscription and drop all channels."""
        for channel in list(self._channels.values()):
            for subscription in list(channel):
                subscription.close()
        self._channels.clear()

    def _detach(self, subscription: Subscription) -> None:
        channel = self._channels.get(subscription.user_id)
        if channel is None:
            return
        channel.discard(subscription)
        if not channel:
            del self._channels[subscription.user_id]
            logger.debug("Closed notification channel", extra={"user_id": subscription.user_id})
