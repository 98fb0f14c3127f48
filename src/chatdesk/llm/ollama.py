"""Ollama native API adapter (``/api/chat``, ``/api/tags``)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chatdesk.types import CostTable, GenerationRequest, ModelInfo, Provider, Role

from .base import ActiveStreams, StreamPlan, run_stream
from .channel import StreamChannel
from .normalize import OllamaNormalizer
from .transport import RetryPolicy, request_with_retry
from .wire import NDJSONDecoder

_logger = logging.getLogger(__name__)

DEFAULT_URL = "http://localhost:11434"

COST_TABLE = CostTable()

# Every locally pulled model is offered
MODEL_PREFIX = ""

FALLBACK_MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("llama2", "Llama 2", 4096),
    ModelInfo("mistral", "Mistral", 8192),
    ModelInfo("codellama", "Code Llama", 4096),
)


def normalize_base_url(url: str) -> str:
    """Strip ``/api`` or ``/v1`` suffixes; the adapter adds its own paths."""
    base = (url or DEFAULT_URL).rstrip("/")
    for suffix in ("/api", "/v1"):
        base = base.removesuffix(suffix)
    return base


class OllamaAdapter:
    """Streams newline-delimited JSON from a local Ollama server.

    No authentication; a credential may be set but is never sent.
    """

    provider = Provider.OLLAMA

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = normalize_base_url(base_url)
        self._policy = policy or RetryPolicy()
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self._policy.timeout, read=300),
        )
        self._credential = ""
        self._active = ActiveStreams()

    def set_credential(self, secret: str) -> None:
        self._credential = secret

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _probe_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=1, timeout=self._policy.timeout)

    async def _tags(self) -> list[str]:
        resp = await request_with_retry(
            self._client, "GET", "/api/tags",
            headers=self._headers(), policy=self._probe_policy(),
        )
        return [str(m["name"]) for m in resp.json().get("models") or []]

    async def test_connection(self) -> bool:
        try:
            await self._tags()
        except Exception as e:
            _logger.info("Ollama connection test failed (%s): %s", self.base_url, e)
            return False
        return True

    async def list_models(self) -> list[ModelInfo]:
        try:
            names = [n for n in await self._tags() if n.startswith(MODEL_PREFIX)]
        except Exception as e:
            _logger.warning("Error fetching Ollama models, using fallback: %s", e)
            return list(FALLBACK_MODELS)
        if not names:
            return list(FALLBACK_MODELS)
        return [ModelInfo(name) for name in names]

    def _body(self, request: GenerationRequest) -> dict[str, Any]:
        messages = request.messages()
        if request.params.system_prompt:
            messages = [
                {"role": Role.SYSTEM.value, "content": request.params.system_prompt},
                *(m for m in messages if m["role"] != Role.SYSTEM.value),
            ]
        return {
            "model": request.model,
            "messages": messages,
            "stream": True,
            "options": {
                "temperature": request.params.temperature,
                "num_predict": request.params.max_tokens,
            },
        }

    async def stream_message(
        self, request: GenerationRequest, channel: StreamChannel,
    ) -> None:
        abort = self._active.register(channel)
        plan = StreamPlan(
            url="/api/chat",
            body=self._body(request),
            headers=self._headers(),
            decoder=NDJSONDecoder(),
            normalizer=OllamaNormalizer(request, COST_TABLE),
        )
        try:
            await run_stream(self._client, plan, channel, self._policy, abort)
        finally:
            self._active.release(request.message_id)

    def abort_stream(self, message_id: str) -> None:
        if self._active.abort(message_id):
            _logger.debug("Aborted Ollama stream %s", message_id)

    async def aclose(self, *, drain: bool = False) -> None:
        if drain:
            await self._active.wait_idle()
        else:
            self._active.abort_all()
        await self._client.aclose()
