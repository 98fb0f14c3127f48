"""Stream orchestrator: one state machine per in-flight assistant message.

    IDLE -> STARTING -> STREAMING -> COMPLETED | FAILED | ABORTED

The orchestrator owns the store record of the assistant message while it
streams.  Tokens are accumulated in memory and flushed to the store at most
once per ``flush_interval``; terminal transitions always write.  The UI
sees every event through the notification bus.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from chatdesk.events.bus import EventBus
from chatdesk.llm.base import ProviderAdapter
from chatdesk.llm.channel import StreamChannel
from chatdesk.llm.registry import ProviderRegistry
from chatdesk.store import RecordStore, StoreError
from chatdesk.types import (
    STREAM_TOPICS,
    EventType,
    GenerationRequest,
    NotificationType,
    Provider,
    Role,
    StreamEvent,
)

_logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL = 0.05  # seconds


class StreamState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamState.COMPLETED, StreamState.FAILED, StreamState.ABORTED)


def should_flush(now: float, last_flush: float | None, interval: float) -> bool:
    """True when a partial write is due.  The first token always flushes."""
    return last_flush is None or now - last_flush >= interval


@dataclass
class StreamHandle:
    """Live binding between a message id and the adapter servicing it."""

    message_id: str
    conversation_id: str
    provider: Provider
    adapter: ProviderAdapter
    channel: StreamChannel
    state: StreamState = StreamState.IDLE
    producer: asyncio.Task[None] | None = None
    parts: list[str] = field(default_factory=list)
    token_count: int = 0
    last_flush: float | None = None

    @property
    def content(self) -> str:
        return "".join(self.parts)


class StreamOrchestrator:
    """Runs generation requests against the registry's adapters.

    Parameters
    ----------
    store:
        Record store for the assistant message.
    registry:
        Source of adapters.  A provider without one fails locally.
    bus:
        Notification sink for the UI (optional).
    flush_interval:
        Minimum seconds between partial-content writes per message.
    clock:
        Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        store: RecordStore,
        registry: ProviderRegistry,
        bus: EventBus | None = None,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._registry = registry
        self._bus = bus or EventBus()
        self.flush_interval = flush_interval
        self._clock = clock
        self._handles: dict[str, StreamHandle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def active(self) -> list[str]:
        """Message ids currently bound to an adapter."""
        return list(self._handles)

    def state(self, message_id: str) -> StreamState | None:
        handle = self._handles.get(message_id)
        return handle.state if handle else None

    def start(self, request: GenerationRequest, provider: Provider | str) -> asyncio.Task[StreamState]:
        """Run ``stream()`` in the background and return its task."""
        task = asyncio.create_task(
            self.stream(request, provider), name=f"stream-{request.message_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def stream(self, request: GenerationRequest, provider: Provider | str) -> StreamState:
        """Create the assistant record, stream into it, return the final state."""
        message_id = request.message_id
        if message_id in self._handles:
            raise ValueError(f"Message {message_id} is already streaming")
        p = Provider.parse(provider)

        # IDLE -> STARTING: placeholder record
        self._store.create_message(
            request.conversation_id,
            Role.ASSISTANT.value,
            "",
            model=request.model,
            provider=p.value,
            streaming=True,
            message_id=message_id,
        )

        adapter = self._registry.get_adapter(p)
        if adapter is None:
            cause = f"Provider {p.value} is not configured"
            _logger.warning("Stream %s not started: %s", message_id, cause)
            self._store.update_message(message_id, streaming=False, error=cause)
            return StreamState.FAILED

        handle = StreamHandle(
            message_id=message_id,
            conversation_id=request.conversation_id,
            provider=p,
            adapter=adapter,
            channel=StreamChannel(message_id),
            state=StreamState.STARTING,
        )
        self._handles[message_id] = handle
        _logger.debug("Stream %s starting on %s/%s", message_id, p.value, request.model)

        producer = asyncio.create_task(
            adapter.stream_message(request, handle.channel),
            name=f"adapter-{message_id}",
        )
        handle.producer = producer
        producer.add_done_callback(lambda _t: handle.channel.end())

        try:
            async for event in handle.channel:
                self._on_event(handle, event)
                if handle.state.is_terminal:
                    break

            if handle.state is StreamState.ABORTED:
                # The adapter unwinds on its own; keep the task reachable
                self._tasks.add(producer)
                producer.add_done_callback(self._tasks.discard)
                producer.add_done_callback(_log_orphan)
                return handle.state

            await producer
        except asyncio.CancelledError:
            if not handle.state.is_terminal:
                self.abort(message_id)
            producer.cancel()
            raise
        except Exception as e:
            _logger.warning("stream_message raised for %s: %s", message_id, e)
            if not handle.state.is_terminal:
                self._fail(handle, f"{type(e).__name__}: {e}")
        else:
            if not handle.state.is_terminal:
                self._fail(handle, "Stream ended without a terminal event")
        return handle.state

    def abort(self, message_id: str) -> bool:
        """Cancel the stream for *message_id*.  Returns False if none is active."""
        handle = self._handles.get(message_id)
        if handle is None or handle.state.is_terminal:
            return False
        handle.state = StreamState.ABORTED
        self._release(handle)
        try:
            handle.adapter.abort_stream(message_id)
        except Exception:
            _logger.exception("abort_stream failed for %s", message_id)
        handle.channel.close()
        # The adapter may not have registered the stream yet
        if handle.producer is not None:
            handle.producer.cancel()
        self._write(handle, content=handle.content, token_count=handle.token_count,
                    streaming=False)
        self._publish(NotificationType.STREAM_ABORTED, {"message_id": message_id})
        _logger.info("Stream %s aborted", message_id)
        return True

    async def shutdown(self) -> None:
        """Abort every active stream and wait for background tasks."""
        for message_id in list(self._handles):
            self.abort(message_id)
        # Aborted streams hand their adapter task over while unwinding
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _on_event(self, handle: StreamHandle, event: StreamEvent) -> None:
        if handle.state.is_terminal or self._handles.get(handle.message_id) is not handle:
            _logger.debug(
                "Ignoring %s for released stream %s", event.type.value, handle.message_id,
            )
            return

        if event.type is EventType.START:
            handle.state = StreamState.STREAMING
            self._publish_event(event)
        elif event.type is EventType.TOKEN:
            handle.parts.append(event.content)
            handle.token_count = event.token_count
            now = self._clock()
            if should_flush(now, handle.last_flush, self.flush_interval):
                handle.last_flush = now
                if not self._write(handle, content=handle.content,
                                   token_count=handle.token_count):
                    self.abort(handle.message_id)
                    return
            self._publish_event(event)
        elif event.type is EventType.COMPLETE:
            handle.state = StreamState.COMPLETED
            self._release(handle)
            self._write(
                handle,
                content=handle.content,
                token_count=event.token_count,
                cost=event.cost,
                streaming=False,
                metadata={"model": event.model, "input_tokens": event.input_tokens},
            )
            self._publish_event(event)
            _logger.debug(
                "Stream %s completed: %d tokens, cost %.6f",
                handle.message_id, event.token_count, event.cost,
            )
        elif event.type is EventType.ERROR:
            self._fail(handle, event.error)

    def _fail(self, handle: StreamHandle, cause: str) -> None:
        handle.state = StreamState.FAILED
        self._release(handle)
        self._write(
            handle,
            content=handle.content,
            token_count=handle.token_count,
            streaming=False,
            error=cause or "Unknown error",
        )
        self._publish_event(StreamEvent.failure(handle.message_id, cause))
        _logger.info("Stream %s failed: %s", handle.message_id, cause)

    def _release(self, handle: StreamHandle) -> None:
        if self._handles.get(handle.message_id) is handle:
            del self._handles[handle.message_id]

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _write(self, handle: StreamHandle, **fields: Any) -> bool:
        try:
            self._store.update_message(handle.message_id, **fields)
        except StoreError as e:
            _logger.warning("Could not persist %s: %s", handle.message_id, e)
            return False
        return True

    def _publish_event(self, event: StreamEvent) -> None:
        self._publish(STREAM_TOPICS[event.type], event.to_dict())

    def _publish(self, topic: NotificationType, data: dict[str, Any]) -> None:
        self._bus.publish(topic, data)


def _log_orphan(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _logger.debug("Aborted stream task ended with %s", exc)
