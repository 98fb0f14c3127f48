"""Adapter contract and the streaming loop the adapters share.

There is no adapter base class.  Each backend implements the
``ProviderAdapter`` protocol on its own and composes the pieces here:
``ActiveStreams`` for per-message bookkeeping and ``run_stream`` for the
transport -> decoder -> normalizer -> channel pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, runtime_checkable

import httpx

from chatdesk.types import GenerationRequest, ModelInfo, Provider, StreamEvent

from .channel import StreamChannel
from .errors import ProviderError
from .normalize import _Normalizer
from .transport import RetryPolicy, TransportError, open_stream
from .wire import NDJSONDecoder, SSEDecoder

_logger = logging.getLogger(__name__)


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capability set every backend offers."""

    provider: Provider

    def set_credential(self, secret: str) -> None:
        """Use *secret* for subsequent requests."""

    async def test_connection(self) -> bool:
        """Report reachability / credential validity.  Never raises."""

    async def list_models(self) -> list[ModelInfo]:
        """Available models; falls back to a fixed catalog.  Never raises."""

    async def stream_message(
        self, request: GenerationRequest, channel: StreamChannel,
    ) -> None:
        """Generate into *channel*; return after the terminal event."""

    def abort_stream(self, message_id: str) -> None:
        """Stop forwarding events for *message_id* and stop the transport."""

    async def aclose(self, *, drain: bool = False) -> None:
        """Release HTTP resources.

        With *drain*, in-flight streams run to completion first; otherwise
        they are aborted.
        """


# ---------------------------------------------------------------------------
# In-flight bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class _Active:
    channel: StreamChannel
    task: asyncio.Task[Any] | None = None
    abort: asyncio.Event = field(default_factory=asyncio.Event)


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class ActiveStreams:
    """Message ids currently streaming through one adapter instance."""

    def __init__(self) -> None:
        self._streams: dict[str, _Active] = {}
        self._idle = asyncio.Event()
        self._idle.set()

    def register(self, channel: StreamChannel) -> asyncio.Event:
        """Track *channel*; return the event that signals an abort.

        Must be called from the task that runs the stream, which ``abort``
        cancels if it is blocked on the network.
        Raises ``ValueError`` if the message id is already streaming.
        """
        if channel.message_id in self._streams:
            raise ValueError(f"Message {channel.message_id} is already streaming")
        active = _Active(channel, task=_current_task())
        self._streams[channel.message_id] = active
        self._idle.clear()
        return active.abort

    def abort(self, message_id: str) -> bool:
        active = self._streams.pop(message_id, None)
        if active is None:
            return False
        active.abort.set()
        active.channel.close()
        if active.task is not None and active.task is not _current_task():
            active.task.cancel()
        return True

    def release(self, message_id: str) -> None:
        """Forget *message_id* once its task has finished with the transport."""
        self._streams.pop(message_id, None)
        if not self._streams:
            self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until every registered stream has been released."""
        await self._idle.wait()

    def abort_all(self) -> None:
        for message_id in list(self._streams):
            self.abort(message_id)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._streams

    def __len__(self) -> int:
        return len(self._streams)


# ---------------------------------------------------------------------------
# Shared streaming loop
# ---------------------------------------------------------------------------

@dataclass
class StreamPlan:
    """What an adapter contributes to one streaming call."""

    url: str
    body: dict[str, Any]
    headers: dict[str, str]
    decoder: SSEDecoder | NDJSONDecoder
    normalizer: _Normalizer
    method: str = "POST"


async def _chunks(response: httpx.Response, abort: asyncio.Event) -> AsyncIterator[bytes]:
    async for chunk in response.aiter_bytes():
        if abort.is_set():
            return
        yield chunk
        # Give other streams and the UI a turn between reads
        await asyncio.sleep(0)
        if abort.is_set():
            return


async def run_stream(
    client: httpx.AsyncClient,
    plan: StreamPlan,
    channel: StreamChannel,
    policy: RetryPolicy,
    abort: asyncio.Event,
) -> None:
    """Drive one stream from request to terminal event.

    Emits ``start`` before touching the network and exactly one terminal
    event unless aborted.  A channel closed before the request goes out
    means the consumer already gave up, so nothing is sent.  All failures
    are converted to an ``error`` event; nothing propagates except task
    cancellation.
    """
    message_id = channel.message_id
    normalizer = plan.normalizer
    channel.emit(StreamEvent.start(message_id))
    if abort.is_set() or channel.closed:
        _logger.debug("Stream %s aborted before the request was sent", message_id)
        return

    try:
        async with open_stream(
            client, plan.method, plan.url,
            policy=policy, headers=plan.headers, json=plan.body,
        ) as response:
            async for frame in plan.decoder.decode(_chunks(response, abort)):
                if abort.is_set():
                    break
                for event in normalizer.handle(frame):
                    channel.emit(event)
                if normalizer.finished:
                    break
    except asyncio.CancelledError:
        if not abort.is_set():
            raise
        _logger.debug("Stream %s cancelled by abort", message_id)
        return
    except TransportError as e:
        _logger.warning("Stream %s could not start: %s", message_id, e)
        channel.emit(StreamEvent.failure(message_id, str(e)))
        return
    except ProviderError as e:
        _logger.warning("Stream %s: provider reported an error: %s", message_id, e)
        channel.emit(StreamEvent.failure(message_id, str(e)))
        return
    except httpx.HTTPError as e:
        _logger.warning("Stream %s interrupted: %s", message_id, e)
        channel.emit(
            StreamEvent.failure(message_id, f"Stream interrupted: {e or type(e).__name__}"),
        )
        return
    except Exception as e:
        _logger.exception("Unexpected error in stream %s", message_id)
        channel.emit(StreamEvent.failure(message_id, f"{type(e).__name__}: {e}"))
        return

    if abort.is_set():
        _logger.debug("Stream %s aborted", message_id)
        return
    if not normalizer.finished:
        _logger.debug("Stream %s ended without a stop frame", message_id)
        channel.emit(normalizer.finish())
