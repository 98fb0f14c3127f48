"""Token normalizers: provider-native frames -> ``StreamEvent``.

One normalizer instance services exactly one stream.  It accumulates the
generated text so it can report a running output-token estimate and, at
completion, fall back to estimated usage when the provider reports none.

Token estimation is deliberately crude: ``ceil(characters / 4)``.  It is
not a tokenizer and is only used where the provider gives no counts.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from chatdesk.types import CostTable, GenerationRequest, Provider, StreamEvent

from .errors import ProviderError
from .wire import DONE, Frame

_logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """Character-based token estimate: ``ceil(len(text) / 4)``."""
    return math.ceil(len(text) / 4)


def estimate_input_tokens(request: GenerationRequest) -> int:
    """Estimated prompt size of *request*: history plus system prompt as one text."""
    chars = sum(len(m.content) for m in request.history)
    chars += len(request.params.system_prompt)
    return math.ceil(chars / 4)


def compute_cost(input_tokens: int, output_tokens: int, table: CostTable) -> float:
    """USD cost of a completion under *table*."""
    if table.is_free:
        return 0.0
    return (
        (input_tokens / 1000) * table.input_per_1k
        + (output_tokens / 1000) * table.output_per_1k
    )


class _Normalizer:
    """Accumulator shared by the three provider normalizers."""

    provider: Provider

    def __init__(self, request: GenerationRequest, cost_table: CostTable) -> None:
        self._request = request
        self._cost_table = cost_table
        self._content: list[str] = []
        self._chars = 0
        self._input_tokens: int | None = None
        self._output_tokens: int | None = None
        self._model = request.model
        self.finished = False

    @property
    def message_id(self) -> str:
        return self._request.message_id

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def output_estimate(self) -> int:
        return math.ceil(self._chars / 4)

    def handle(self, frame: Frame | object) -> list[StreamEvent]:
        """Map one frame to zero or more events.

        Frames that cannot be mapped are logged and dropped; they never
        produce an ``error`` event.
        Raises ``ProviderError`` for an explicit error payload.
        """
        if self.finished:
            return []
        try:
            events = self._map(frame)
        except ProviderError:
            self.finished = True
            raise
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            _logger.warning(
                "Dropping unmappable frame for %s: %s (%.200r)",
                self.message_id, e, frame,
            )
            return []
        if any(ev.is_terminal for ev in events):
            self.finished = True
        return events

    def finish(self) -> StreamEvent:
        """Terminal event for a stream that ended without a stop frame."""
        self.finished = True
        return self._complete()

    # ------------------------------------------------------------------

    def _map(self, frame: Any) -> list[StreamEvent]:
        raise NotImplementedError

    def _token(self, text: str) -> StreamEvent:
        self._content.append(text)
        self._chars += len(text)
        return StreamEvent.token(self.message_id, text, self.output_estimate)

    def _complete(self) -> StreamEvent:
        input_tokens = self._input_tokens
        if input_tokens is None:
            input_tokens = estimate_input_tokens(self._request)
        output_tokens = self._output_tokens
        if output_tokens is None:
            output_tokens = self.output_estimate
        return StreamEvent.complete(
            self.message_id,
            token_count=output_tokens,
            cost=compute_cost(input_tokens, output_tokens, self._cost_table),
            input_tokens=input_tokens,
            model=self._model,
        )


def _error_text(err: Any) -> str:
    if isinstance(err, dict):
        kind = err.get("type", "")
        msg = err.get("message", "") or str(err)
        return f"{kind}: {msg}" if kind else msg
    return str(err)


class ClaudeNormalizer(_Normalizer):
    """Anthropic Messages API stream.

    Usage may arrive spread over ``message_start`` (input) and
    ``message_delta`` (output), or all at once on ``message_stop``.
    """

    provider = Provider.CLAUDE

    def _map(self, frame: Any) -> list[StreamEvent]:
        if frame is DONE:
            return [self._complete()]
        kind = frame.get("type")
        if kind == "content_block_delta":
            text = (frame.get("delta") or {}).get("text")
            return [self._token(text)] if text else []
        if kind == "message_start":
            message = frame.get("message") or {}
            self._model = message.get("model") or self._model
            self._take_usage(message.get("usage"))
            return []
        if kind == "message_delta":
            self._take_usage(frame.get("usage"))
            return []
        if kind == "message_stop":
            self._take_usage(frame.get("usage"))
            return [self._complete()]
        if kind == "error":
            raise ProviderError(self.provider, _error_text(frame.get("error")))
        return []

    def _take_usage(self, usage: dict[str, Any] | None) -> None:
        if not usage:
            return
        if usage.get("input_tokens") is not None:
            self._input_tokens = int(usage["input_tokens"])
        if usage.get("output_tokens") is not None:
            self._output_tokens = int(usage["output_tokens"])


class OpenAINormalizer(_Normalizer):
    """OpenAI chat-completions stream.

    No usage frame is guaranteed, so completion on ``[DONE]`` normally
    reports estimates.  A ``usage`` object, when the server sends one, wins.
    """

    provider = Provider.OPENAI

    def _map(self, frame: Any) -> list[StreamEvent]:
        if frame is DONE:
            return [self._complete()]
        if frame.get("error"):
            raise ProviderError(self.provider, _error_text(frame["error"]))
        usage = frame.get("usage")
        if usage:
            if usage.get("prompt_tokens") is not None:
                self._input_tokens = int(usage["prompt_tokens"])
            if usage.get("completion_tokens") is not None:
                self._output_tokens = int(usage["completion_tokens"])
        if frame.get("model"):
            self._model = frame["model"]
        choices = frame.get("choices") or []
        if not choices:
            return []
        content = (choices[0].get("delta") or {}).get("content")
        return [self._token(content)] if content else []


class OllamaNormalizer(_Normalizer):
    """Ollama ``/api/chat`` stream.  Always free of charge."""

    provider = Provider.OLLAMA

    def __init__(self, request: GenerationRequest, cost_table: CostTable | None = None) -> None:
        super().__init__(request, CostTable())

    def _map(self, frame: Any) -> list[StreamEvent]:
        if frame is DONE:
            return [self._complete()]
        if frame.get("error"):
            raise ProviderError(self.provider, _error_text(frame["error"]))
        events: list[StreamEvent] = []
        content = (frame.get("message") or {}).get("content")
        if content:
            events.append(self._token(content))
        if frame.get("done"):
            if frame.get("model"):
                self._model = frame["model"]
            if frame.get("prompt_eval_count") is not None:
                self._input_tokens = int(frame["prompt_eval_count"])
            if frame.get("eval_count") is not None:
                self._output_tokens = int(frame["eval_count"])
            events.append(self._complete())
        return events
