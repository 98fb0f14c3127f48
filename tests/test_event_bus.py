"""Tests for the notification EventBus."""

import asyncio

import pytest

from chatdesk.events.bus import EventBus
from chatdesk.types import Notification, NotificationType


@pytest.fixture
def bus():
    return EventBus()


class TestSubscribeAndEmit:
    async def test_async_handler(self, bus: EventBus):
        received = []

        async def handler(note: Notification):
            received.append(note)

        bus.subscribe(NotificationType.STREAM_START, handler)
        note = Notification(type=NotificationType.STREAM_START, data={"message_id": "m"})
        await bus.emit(note)

        assert received == [note]

    async def test_sync_handler(self, bus: EventBus):
        received = []
        bus.subscribe(NotificationType.MESSAGE_CREATED, received.append)
        await bus.emit(Notification(type=NotificationType.MESSAGE_CREATED))
        assert len(received) == 1

    async def test_no_cross_delivery(self, bus: EventBus):
        received = []
        bus.subscribe(NotificationType.STREAM_START, received.append)
        await bus.emit(Notification(type=NotificationType.STREAM_COMPLETE))
        assert received == []

    async def test_string_topic(self, bus: EventBus):
        received = []
        bus.subscribe("stream.token", received.append)
        bus.publish(NotificationType.STREAM_TOKEN, {"content": "x"})
        assert received[0].data == {"content": "x"}


class TestWildcard:
    async def test_wildcard_receives_all(self, bus: EventBus):
        received = []
        bus.subscribe("*", lambda n: received.append(n.type))
        bus.publish(NotificationType.CONVERSATION_CREATED)
        bus.publish(NotificationType.STREAM_TOKEN)
        await bus.emit(Notification(type=NotificationType.SETTINGS_UPDATED))
        assert received == [
            NotificationType.CONVERSATION_CREATED,
            NotificationType.STREAM_TOKEN,
            NotificationType.SETTINGS_UPDATED,
        ]


class TestPublish:
    def test_sync_handlers_run_inline(self, bus: EventBus):
        received = []
        bus.subscribe(NotificationType.STREAM_TOKEN, received.append)
        bus.publish(NotificationType.STREAM_TOKEN, {"content": "a"})
        assert len(received) == 1

    async def test_async_handlers_are_scheduled(self, bus: EventBus):
        received = []

        async def handler(note: Notification):
            await asyncio.sleep(0)
            received.append(note.data["n"])

        bus.subscribe(NotificationType.STREAM_TOKEN, handler)
        bus.publish(NotificationType.STREAM_TOKEN, {"n": 1})
        bus.publish(NotificationType.STREAM_TOKEN, {"n": 2})
        assert received == []
        await bus.drain()
        assert sorted(received) == [1, 2]

    def test_async_handler_without_loop_is_dropped(self, bus: EventBus):
        called = []

        async def handler(note: Notification):
            called.append(note)

        bus.subscribe(NotificationType.STREAM_TOKEN, handler)
        bus.publish(NotificationType.STREAM_TOKEN)
        assert called == []
        assert len(bus.history) == 1

    async def test_failing_handler_is_isolated(self, bus: EventBus):
        received = []

        def bad(note: Notification):
            raise ValueError("boom")

        async def bad_async(note: Notification):
            raise ValueError("async boom")

        bus.subscribe(NotificationType.STREAM_ERROR, bad)
        bus.subscribe(NotificationType.STREAM_ERROR, bad_async)
        bus.subscribe(NotificationType.STREAM_ERROR, received.append)
        bus.publish(NotificationType.STREAM_ERROR, {"error": "x"})
        await bus.drain()
        assert len(received) == 1


class TestUnsubscribe:
    async def test_unsubscribe(self, bus: EventBus):
        received = []
        bus.subscribe(NotificationType.STREAM_COMPLETE, received.append)
        await bus.emit(Notification(type=NotificationType.STREAM_COMPLETE))
        bus.unsubscribe(NotificationType.STREAM_COMPLETE, received.append)
        await bus.emit(Notification(type=NotificationType.STREAM_COMPLETE))
        assert len(received) == 1

    def test_unsubscribe_nonexistent(self, bus: EventBus):
        # Should not raise
        bus.unsubscribe(NotificationType.STREAM_COMPLETE, lambda n: None)


class TestHistory:
    async def test_history_limit(self, bus: EventBus):
        bus._max_history = 5
        for i in range(10):
            bus.publish(NotificationType.STREAM_TOKEN, {"i": i})
        assert [n.data["i"] for n in bus.history] == [5, 6, 7, 8, 9]

    async def test_clear(self, bus: EventBus):
        bus.subscribe(NotificationType.STREAM_START, lambda n: None)
        bus.publish(NotificationType.STREAM_START)
        bus.clear()
        assert bus.history == []
        assert len(bus._handlers) == 0


class TestErrorHandling:
    async def test_emit_handler_exception_does_not_propagate(self, bus: EventBus):
        async def bad_handler(note: Notification):
            raise ValueError("boom")

        received = []

        async def good_handler(note: Notification):
            received.append(note)

        bus.subscribe(NotificationType.STREAM_START, bad_handler)
        bus.subscribe(NotificationType.STREAM_START, good_handler)

        # Should not raise
        await bus.emit(Notification(type=NotificationType.STREAM_START))
        assert len(received) == 1
