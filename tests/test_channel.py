"""Tests for StreamChannel ordering and close semantics."""

from __future__ import annotations

import asyncio

from chatdesk.llm.channel import StreamChannel
from chatdesk.types import StreamEvent


async def _drain(channel: StreamChannel) -> list[StreamEvent]:
    return [e async for e in channel]


class TestOrdering:
    async def test_normal_sequence(self):
        ch = StreamChannel("m")
        assert ch.emit(StreamEvent.start("m"))
        assert ch.emit(StreamEvent.token("m", "a", 1))
        assert ch.emit(StreamEvent.complete("m", 1, 0.0))
        events = await _drain(ch)
        assert [e.type.value for e in events] == ["start", "token", "complete"]
        assert not ch.emit(StreamEvent.token("m", "late", 2))

    def test_token_before_start_dropped(self):
        ch = StreamChannel("m")
        assert not ch.emit(StreamEvent.token("m", "a", 1))
        assert ch.emit(StreamEvent.start("m"))

    def test_duplicate_start_dropped(self):
        ch = StreamChannel("m")
        assert ch.emit(StreamEvent.start("m"))
        assert not ch.emit(StreamEvent.start("m"))

    def test_nothing_after_terminal(self):
        ch = StreamChannel("m")
        ch.emit(StreamEvent.start("m"))
        ch.emit(StreamEvent.failure("m", "x"))
        assert not ch.emit(StreamEvent.token("m", "late", 1))
        assert not ch.emit(StreamEvent.complete("m", 1, 0.0))

    def test_foreign_message_id_dropped(self):
        ch = StreamChannel("m")
        ch.emit(StreamEvent.start("m"))
        assert not ch.emit(StreamEvent.token("other", "a", 1))


class TestEndAndClose:
    async def test_end_without_terminal_stops_iteration(self):
        ch = StreamChannel("m")
        ch.emit(StreamEvent.start("m"))
        ch.end()
        events = await _drain(ch)
        assert [e.type.value for e in events] == ["start"]

    async def test_close_drops_queued_events(self):
        ch = StreamChannel("m")
        ch.emit(StreamEvent.start("m"))
        ch.emit(StreamEvent.token("m", "a", 1))
        ch.close()
        assert await _drain(ch) == []
        assert not ch.emit(StreamEvent.token("m", "b", 1))

    async def test_close_wakes_blocked_consumer(self):
        ch = StreamChannel("m")
        consumer = asyncio.create_task(_drain(ch))
        await asyncio.sleep(0)
        ch.close()
        assert await asyncio.wait_for(consumer, timeout=1) == []

    def test_close_is_idempotent(self):
        ch = StreamChannel("m")
        ch.close()
        ch.close()
        assert ch.closed
