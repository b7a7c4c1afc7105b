"""Async pub/sub event bus for message status and diagnostics events."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine
from uuid import uuid4

from switchboard.utils.logging import get_logger

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(str, Enum):
    MESSAGE_STATUS_CHANGED = "message.status_changed"
    WEBHOOK_TESTED = "webhook.tested"


@dataclass
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


@dataclass
class MessageStatusChanged(Event):
    type: EventType = field(default=EventType.MESSAGE_STATUS_CHANGED, init=False)
    # data keys: message_id, status, generation, error_message


@dataclass
class WebhookTested(Event):
    type: EventType = field(default=EventType.WEBHOOK_TESTED, init=False)
    # data keys: capability, success, response_time_ms, error


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

Handler = Callable[[Event], Coroutine[Any, Any, None]]


@dataclass(eq=False)
class Subscription:
    event_type: EventType
    handler: Handler
    queue: asyncio.Queue[Event]
    task: asyncio.Task[None] | None = None


class EventBus:
    """Fan-out of events to subscribers, one queue and consumer task each.

    Subscribers may come and go while the bus runs (a status stream
    subscribes for the life of one HTTP connection). A subscriber that
    falls behind loses events rather than blocking publishers.
    """

    def __init__(self, max_queue_size: int = 256) -> None:
        self._subscriptions: dict[EventType, list[Subscription]] = {}
        self._max_queue_size = max_queue_size
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, event_type: EventType, handler: Handler) -> Subscription:
        subscription = Subscription(
            event_type, handler, asyncio.Queue(maxsize=self._max_queue_size)
        )
        self._subscriptions.setdefault(event_type, []).append(subscription)
        if self._running:
            self._spawn(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.event_type, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if subscription.task is not None:
            subscription.task.cancel()
            subscription.task = None

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscriptions.get(event_type, []))

    async def publish(self, event: Event) -> None:
        for subscription in list(self._subscriptions.get(event.type, [])):
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                log.warning(
                    "event_queue_full",
                    event_type=event.type.value,
                    handler=subscription.handler.__qualname__,
                )

    async def start(self) -> None:
        self._running = True
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                if subscription.task is None:
                    self._spawn(subscription)

    async def stop(self) -> None:
        self._running = False
        tasks = []
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                if subscription.task is not None:
                    subscription.task.cancel()
                    tasks.append(subscription.task)
                    subscription.task = None
        await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, subscription: Subscription) -> None:
        subscription.task = asyncio.create_task(
            self._consume(subscription),
            name=f"bus-{subscription.event_type.value}-{subscription.handler.__qualname__}",
        )

    async def _consume(self, subscription: Subscription) -> None:
        while True:
            event = await subscription.queue.get()
            try:
                await subscription.handler(event)
            except Exception:
                log.exception("handler_error", event_type=event.type.value)
