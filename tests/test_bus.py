"""Tests for the async event bus."""

import asyncio
import pytest
from switchboard.core.bus import Event, EventBus, EventType, MessageStatusChanged, WebhookTested


@pytest.fixture
def bus():
    return EventBus()


def status_event(message_id="m1", status="completed"):
    return MessageStatusChanged(data={"message_id": message_id, "status": status})


class TestEventBus:
    async def test_publish_subscribe(self, bus):
        received = []

        async def handler(event: Event):
            received.append(event)

        bus.subscribe(EventType.MESSAGE_STATUS_CHANGED, handler)
        await bus.start()

        await bus.publish(status_event())
        await asyncio.sleep(0.1)

        assert len(received) == 1
        assert received[0].data["message_id"] == "m1"
        assert received[0].type == EventType.MESSAGE_STATUS_CHANGED

        await bus.stop()

    async def test_multiple_subscribers(self, bus):
        received_a = []
        received_b = []

        async def handler_a(event: Event):
            received_a.append(event)

        async def handler_b(event: Event):
            received_b.append(event)

        bus.subscribe(EventType.MESSAGE_STATUS_CHANGED, handler_a)
        bus.subscribe(EventType.MESSAGE_STATUS_CHANGED, handler_b)
        await bus.start()

        await bus.publish(status_event())
        await asyncio.sleep(0.1)

        assert len(received_a) == 1
        assert len(received_b) == 1

        await bus.stop()

    async def test_event_type_filtering(self, bus):
        statuses = []
        tested = []

        async def on_status(event: Event):
            statuses.append(event)

        async def on_tested(event: Event):
            tested.append(event)

        bus.subscribe(EventType.MESSAGE_STATUS_CHANGED, on_status)
        bus.subscribe(EventType.WEBHOOK_TESTED, on_tested)
        await bus.start()

        await bus.publish(status_event(status="error"))
        await bus.publish(WebhookTested(data={"capability": "chat", "success": True}))
        await asyncio.sleep(0.1)

        assert len(statuses) == 1
        assert len(tested) == 1
        assert statuses[0].data["status"] == "error"
        assert tested[0].data["capability"] == "chat"

        await bus.stop()

    async def test_handler_error_doesnt_crash_bus(self, bus):
        good_received = []

        async def bad_handler(event: Event):
            raise RuntimeError("boom")

        async def good_handler(event: Event):
            good_received.append(event)

        bus.subscribe(EventType.MESSAGE_STATUS_CHANGED, bad_handler)
        bus.subscribe(EventType.MESSAGE_STATUS_CHANGED, good_handler)
        await bus.start()

        await bus.publish(status_event())
        await asyncio.sleep(0.1)

        assert len(good_received) == 1

        await bus.stop()

    async def test_publish_without_subscribers(self, bus):
        await bus.publish(status_event())

    async def test_event_has_id_and_timestamp(self):
        event = status_event()
        assert event.id
        assert event.timestamp is not None

    async def test_queue_overflow_doesnt_crash(self):
        bus = EventBus(max_queue_size=2)

        async def slow_handler(event: Event):
            await asyncio.sleep(1)

        bus.subscribe(EventType.MESSAGE_STATUS_CHANGED, slow_handler)
        await bus.start()

        for i in range(5):
            await bus.publish(status_event(message_id=str(i)))

        await asyncio.sleep(0.1)
        await bus.stop()


class TestSubscriptions:
    async def test_subscribe_while_running(self, bus):
        received = []

        async def handler(event: Event):
            received.append(event)

        await bus.start()
        subscription = bus.subscribe(EventType.MESSAGE_STATUS_CHANGED, handler)
        assert subscription.task is not None

        await bus.publish(status_event())
        await asyncio.sleep(0.1)
        assert len(received) == 1

        await bus.stop()
        assert subscription.task is None

    async def test_unsubscribe_stops_delivery(self, bus):
        received = []

        async def handler(event: Event):
            received.append(event)

        subscription = bus.subscribe(EventType.MESSAGE_STATUS_CHANGED, handler)
        await bus.start()
        bus.unsubscribe(subscription)
        assert bus.subscriber_count(EventType.MESSAGE_STATUS_CHANGED) == 0

        await bus.publish(status_event())
        await asyncio.sleep(0.1)
        assert received == []

        # Unsubscribing twice is harmless
        bus.unsubscribe(subscription)
        await bus.stop()

    async def test_events_queue_until_start(self, bus):
        received = []

        async def handler(event: Event):
            received.append(event)

        bus.subscribe(EventType.MESSAGE_STATUS_CHANGED, handler)
        await bus.publish(status_event())
        assert received == []

        await bus.start()
        await asyncio.sleep(0.1)
        assert len(received) == 1
        await bus.stop()

    def test_event_to_dict(self):
        event = status_event(message_id="m9", status="error")
        data = event.to_dict()
        assert data["type"] == "message.status_changed"
        assert data["id"] == event.id
        assert data["data"] == {"message_id": "m9", "status": "error"}
        assert data["timestamp"] == event.timestamp.isoformat()
