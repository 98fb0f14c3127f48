"""Provider registry: zero-or-one adapter per configured provider.

An adapter exists for a hosted provider only while it has an API key; the
local Ollama adapter always exists.  Replacing an adapter never disturbs
streams already bound to the old instance: the old instance is retired and
closed once its last stream finishes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from chatdesk.config import ChatConfig
from chatdesk.types import ModelInfo, Provider

from .base import ProviderAdapter
from .claude import ClaudeAdapter
from .ollama import OllamaAdapter
from .openai import OpenAIAdapter
from .transport import RetryPolicy

_logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Provider, ChatConfig], "ProviderAdapter | None"]


def policy_from_config(config: ChatConfig) -> RetryPolicy:
    return RetryPolicy(max_attempts=config.retry_attempts, timeout=config.timeout)


def build_adapter(provider: Provider, config: ChatConfig) -> ProviderAdapter | None:
    """Default factory.  Returns ``None`` for a hosted provider without a key."""
    policy = policy_from_config(config)
    if provider is Provider.OLLAMA:
        adapter = OllamaAdapter(config.url(provider), policy=policy)
        if config.api_key(provider):
            adapter.set_credential(config.api_key(provider))
        return adapter
    key = config.api_key(provider)
    if not key:
        return None
    if provider is Provider.CLAUDE:
        return ClaudeAdapter(key, config.url(provider), policy=policy)
    return OpenAIAdapter(key, config.url(provider), policy=policy)


class ProviderRegistry:
    """Holds the live adapters keyed by provider.

    Parameters
    ----------
    config:
        Credential source: API keys and endpoints are read here at
        construction and on explicit update calls only.
    factory:
        Adapter constructor; tests inject fakes through it.
    """

    def __init__(
        self,
        config: ChatConfig,
        factory: AdapterFactory | None = None,
    ) -> None:
        self._config = config
        self._factory = factory or build_adapter
        self._adapters: dict[Provider, ProviderAdapter] = {}
        self._built_from: dict[Provider, tuple[Any, ...]] = {}
        # Replaced adapters not yet closed
        self._retired: list[ProviderAdapter] = []
        self._closing: set[asyncio.Task[None]] = set()
        for provider in Provider:
            self._rebuild(provider)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_adapter(self, provider: Provider | str) -> ProviderAdapter | None:
        """Adapter for *provider*, or ``None`` when it is not configured."""
        try:
            return self._adapters.get(Provider.parse(provider))
        except ValueError:
            return None

    @property
    def configured(self) -> list[Provider]:
        return [p for p in Provider if p in self._adapters]

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_credential(self, provider: Provider | str, secret: str) -> None:
        """Replace (or create, or drop) the adapter for *provider*."""
        p = Provider.parse(provider)
        self._config.spec(p).api_key = secret
        self._rebuild(p)
        _logger.info(
            "Credential updated for %s (%s)",
            p.value, "configured" if p in self._adapters else "removed",
        )

    def update_endpoint(self, provider: Provider | str, url: str) -> None:
        """Point the local provider at *url*."""
        p = Provider.parse(provider)
        if p is not Provider.OLLAMA:
            raise ValueError(f"Endpoint can only be changed for ollama, not {p.value}")
        self._config.spec(p).url = url
        self._rebuild(p)
        _logger.info("Ollama endpoint set to %s", url)

    def update_config(self, config: ChatConfig) -> None:
        """Adopt new settings, rebuilding adapters whose inputs changed."""
        self._config = config
        for provider in Provider:
            if self._built_from.get(provider) != _inputs(provider, config):
                self._rebuild(provider)

    # ------------------------------------------------------------------
    # Convenience pass-throughs
    # ------------------------------------------------------------------

    async def test_connection(self, provider: Provider | str) -> bool:
        adapter = self.get_adapter(provider)
        if adapter is None:
            return False
        return await adapter.test_connection()

    async def list_models(self, provider: Provider | str) -> list[ModelInfo]:
        adapter = self.get_adapter(provider)
        if adapter is None:
            return []
        return await adapter.list_models()

    async def aclose(self) -> None:
        """Close every adapter, aborting streams still running on them."""
        adapters = list(self._adapters.values()) + self._retired
        self._adapters.clear()
        self._built_from.clear()
        self._retired.clear()
        for adapter in adapters:
            try:
                await adapter.aclose()
            except Exception:
                _logger.exception("Error closing %s adapter", adapter.provider.value)
        while self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _rebuild(self, provider: Provider) -> None:
        old = self._adapters.pop(provider, None)
        if old is not None:
            self._retire(old)
        adapter = self._factory(provider, self._config)
        self._built_from[provider] = _inputs(provider, self._config)
        if adapter is not None:
            self._adapters[provider] = adapter

    def _retire(self, adapter: ProviderAdapter) -> None:
        self._retired.append(adapter)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Nothing can be streaming without a loop; aclose() picks it up
            return
        task = loop.create_task(self._close_when_idle(adapter))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_when_idle(self, adapter: ProviderAdapter) -> None:
        try:
            await adapter.aclose(drain=True)
        except Exception:
            _logger.exception("Error closing retired %s adapter", adapter.provider.value)
        else:
            _logger.debug("Retired %s adapter closed", adapter.provider.value)
        finally:
            if adapter in self._retired:
                self._retired.remove(adapter)


def _inputs(provider: Provider, config: ChatConfig) -> tuple[Any, ...]:
    """Settings an adapter is built from."""
    return (
        config.api_key(provider), config.url(provider),
        config.retry_attempts, config.timeout,
    )
