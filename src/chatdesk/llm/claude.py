"""Anthropic Messages API adapter."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chatdesk.types import CostTable, GenerationRequest, ModelInfo, Provider, Role

from .base import ActiveStreams, StreamPlan, run_stream
from .channel import StreamChannel
from .normalize import ClaudeNormalizer
from .transport import RetryPolicy, request_with_retry
from .wire import SSEDecoder

_logger = logging.getLogger(__name__)

DEFAULT_URL = "https://api.anthropic.com/v1"
API_VERSION = "2023-06-01"

COST_TABLE = CostTable(input_per_1k=0.015, output_per_1k=0.075)

MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("claude-3-opus-20240229", "Claude 3 Opus", 4096),
    ModelInfo("claude-3-sonnet-20240229", "Claude 3 Sonnet", 4096),
    ModelInfo("claude-3-haiku-20240307", "Claude 3 Haiku", 4096),
    ModelInfo("claude-2.1", "Claude 2.1", 100000),
    ModelInfo("claude-2.0", "Claude 2.0", 100000),
)


class ClaudeAdapter:
    """Streams from ``POST /messages``; auth via the ``x-api-key`` header.

    The model catalog is fixed; Anthropic is not queried for it.
    """

    provider = Provider.CLAUDE

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_URL,
        policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._policy = policy or RetryPolicy()
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self._policy.timeout, read=300),
        )
        self._active = ActiveStreams()

    def set_credential(self, secret: str) -> None:
        self._api_key = secret

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self._api_key,
            "anthropic-version": API_VERSION,
        }

    async def test_connection(self) -> bool:
        try:
            await request_with_retry(
                self._client, "GET", "/models",
                headers=self._headers(),
                policy=RetryPolicy(max_attempts=1, timeout=self._policy.timeout),
            )
        except Exception as e:
            _logger.info("Claude connection test failed: %s", e)
            return False
        return True

    async def list_models(self) -> list[ModelInfo]:
        return list(MODELS)

    def _body(self, request: GenerationRequest) -> dict[str, Any]:
        # System turns are not allowed in the messages list
        messages = [m.to_dict() for m in request.history if m.role != Role.SYSTEM.value]
        body: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.params.max_tokens,
            "temperature": request.params.temperature,
            "stream": True,
        }
        if request.params.system_prompt:
            body["system"] = request.params.system_prompt
        return body

    async def stream_message(
        self, request: GenerationRequest, channel: StreamChannel,
    ) -> None:
        abort = self._active.register(channel)
        plan = StreamPlan(
            url="/messages",
            body=self._body(request),
            headers=self._headers(),
            decoder=SSEDecoder(),
            normalizer=ClaudeNormalizer(request, COST_TABLE),
        )
        try:
            await run_stream(self._client, plan, channel, self._policy, abort)
        finally:
            self._active.release(request.message_id)

    def abort_stream(self, message_id: str) -> None:
        if self._active.abort(message_id):
            _logger.debug("Aborted Claude stream %s", message_id)

    async def aclose(self, *, drain: bool = False) -> None:
        if drain:
            await self._active.wait_idle()
        else:
            self._active.abort_all()
        await self._client.aclose()
