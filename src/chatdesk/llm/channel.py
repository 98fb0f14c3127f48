"""Per-request event channel between an adapter and its consumer.

Each ``stream_message`` call writes into its own channel instead of a
shared emitter, so detaching a consumer is just ``close()``: nothing has to
remember which listeners belong to which message.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from chatdesk.types import EventType, StreamEvent

_logger = logging.getLogger(__name__)

# Queue sentinel: no more events will arrive
_END = None


class StreamChannel:
    """Ordered, single-consumer stream of ``StreamEvent`` for one message.

    Ordering is enforced on the producer side: exactly one ``start`` first,
    then tokens, then one terminal event.  Out-of-order events are dropped
    with a warning.  After ``close()`` nothing more is delivered, including
    events already queued.
    """

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._started = False
        self._ended = False
        self._closed = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def emit(self, event: StreamEvent) -> bool:
        """Queue *event*; return ``False`` if it was dropped."""
        if self._closed or self._ended:
            return False
        if event.message_id != self.message_id:
            _logger.warning(
                "Channel %s dropping event for %s", self.message_id, event.message_id,
            )
            return False
        if event.type is EventType.START:
            if self._started:
                _logger.warning("Channel %s: duplicate start dropped", self.message_id)
                return False
            self._started = True
        elif not self._started:
            _logger.warning(
                "Channel %s: %s before start dropped", self.message_id, event.type.value,
            )
            return False

        self._queue.put_nowait(event)
        if event.is_terminal:
            self.end()
        return True

    def end(self) -> None:
        """Signal that the producer is finished, terminal event or not."""
        if self._ended:
            return
        self._ended = True
        self._queue.put_nowait(_END)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Detach the consumer.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        # Wake a consumer blocked in get()
        self._queue.put_nowait(_END)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if self._closed or item is _END:
                return
            yield item
