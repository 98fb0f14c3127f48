"""OpenAI chat-completions adapter."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chatdesk.types import CostTable, GenerationRequest, ModelInfo, Provider, Role

from .base import ActiveStreams, StreamPlan, run_stream
from .channel import StreamChannel
from .normalize import OpenAINormalizer
from .transport import RetryPolicy, request_with_retry
from .wire import SSEDecoder

_logger = logging.getLogger(__name__)

DEFAULT_URL = "https://api.openai.com/v1"

COST_TABLE = CostTable(input_per_1k=0.03, output_per_1k=0.06)

# Only chat models are offered from the discovered catalog
MODEL_PREFIX = "gpt"

FALLBACK_MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("gpt-4-turbo-preview", "GPT-4 Turbo", 4096),
    ModelInfo("gpt-4", "GPT-4", 8192),
    ModelInfo("gpt-3.5-turbo", "GPT-3.5 Turbo", 4096),
)


class OpenAIAdapter:
    """Streams from ``POST /chat/completions``; bearer-token auth."""

    provider = Provider.OPENAI

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
            "Authorization": f"Bearer {self._api_key}",
        }

    def _probe_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=1, timeout=self._policy.timeout)

    async def test_connection(self) -> bool:
        try:
            await request_with_retry(
                self._client, "GET", "/models",
                headers=self._headers(), policy=self._probe_policy(),
            )
        except Exception as e:
            _logger.info("OpenAI connection test failed: %s", e)
            return False
        return True

    async def list_models(self) -> list[ModelInfo]:
        try:
            resp = await request_with_retry(
                self._client, "GET", "/models",
                headers=self._headers(), policy=self._probe_policy(),
            )
            data = resp.json()
            ids = sorted(
                str(m["id"]) for m in data.get("data", [])
                if str(m.get("id", "")).startswith(MODEL_PREFIX)
            )
        except Exception as e:
            _logger.warning("Error fetching OpenAI models, using fallback: %s", e)
            return list(FALLBACK_MODELS)
        if not ids:
            return list(FALLBACK_MODELS)
        known = {m.id: m for m in FALLBACK_MODELS}
        return [known.get(model_id, ModelInfo(model_id)) for model_id in ids]

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
            "max_tokens": request.params.max_tokens,
            "temperature": request.params.temperature,
            "stream": True,
        }

    async def stream_message(
        self, request: GenerationRequest, channel: StreamChannel,
    ) -> None:
        abort = self._active.register(channel)
        plan = StreamPlan(
            url="/chat/completions",
            body=self._body(request),
            headers=self._headers(),
            decoder=SSEDecoder(),
            normalizer=OpenAINormalizer(request, COST_TABLE),
        )
        try:
            await run_stream(self._client, plan, channel, self._policy, abort)
        finally:
            self._active.release(request.message_id)

    def abort_stream(self, message_id: str) -> None:
        if self._active.abort(message_id):
            _logger.debug("Aborted OpenAI stream %s", message_id)

    async def aclose(self, *, drain: bool = False) -> None:
        if drain:
            await self._active.wait_idle()
        else:
            self._active.abort_all()
        await self._client.aclose()
