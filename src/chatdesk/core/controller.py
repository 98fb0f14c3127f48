"""Application facade: everything a UI calls, in one place.

``ChatController`` wires the record store, the provider registry and the
stream orchestrator together and exposes the operations a front end needs
(conversations, messages, sending, stopping, settings, statistics).  It
holds no state of its own beyond the current settings.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from chatdesk.config import ChatConfig, save_config
from chatdesk.events.bus import EventBus
from chatdesk.llm.normalize import estimate_tokens
from chatdesk.llm.registry import ProviderRegistry
from chatdesk.store import SQLiteStore
from chatdesk.types import (
    Conversation,
    GenerationRequest,
    Message,
    ModelInfo,
    NotificationType,
    Provider,
    Role,
    SamplingParams,
    UsageStats,
)

from .orchestrator import StreamOrchestrator, StreamState

_logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    """Outcome of ``send_message``."""

    user_message: Message
    assistant_message: Message | None
    state: StreamState


class ChatController:
    """Facade over store, registry and orchestrator.

    Parameters
    ----------
    config:
        Current settings.  Replaced wholesale by ``update_settings``.
    store:
        Record store; closed by ``shutdown``.
    registry:
        Provider adapters.  Built from *config* when omitted.
    bus:
        Notification sink shared with the store and orchestrator.
    config_path:
        Where settings changes are persisted.  ``None`` keeps them in memory.
    """

    def __init__(
        self,
        config: ChatConfig,
        store: SQLiteStore,
        registry: ProviderRegistry | None = None,
        bus: EventBus | None = None,
        config_path: str | Path | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._bus = bus or EventBus()
        self._registry = registry or ProviderRegistry(config)
        self._config_path = config_path
        self.orchestrator = StreamOrchestrator(
            store,
            self._registry,
            bus=self._bus,
            flush_interval=config.stream_rate_limit_ms / 1000,
        )

    @classmethod
    def from_config(
        cls, config: ChatConfig, config_path: str | Path | None = None,
    ) -> ChatController:
        """Build the full object graph from settings."""
        bus = EventBus()
        store = SQLiteStore(config.db_path, bus=bus)
        return cls(config, store, bus=bus, config_path=config_path)

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(self, title: str | None = None) -> Conversation:
        return self._store.create_conversation(title)

    def get_conversation(self, conversation_id: str) -> Conversation:
        conv = self._store.get_conversation(conversation_id)
        if conv is None:
            raise KeyError(f"Conversation {conversation_id} not found")
        return conv

    def list_conversations(self, limit: int = 50, offset: int = 0) -> list[Conversation]:
        return self._store.list_conversations(limit, offset)

    def search_conversations(self, query: str, limit: int = 50) -> list[Conversation]:
        return self._store.search_conversations(query, limit)

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        self.get_conversation(conversation_id)
        return self._store.update_conversation(conversation_id, title=title)

    def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation, stopping any reply still streaming into it."""
        for message in self._store.get_messages(conversation_id):
            if message.streaming:
                self.orchestrator.abort(message.id)
        self._store.delete_conversation(conversation_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def list_messages(self, conversation_id: str) -> list[Message]:
        self.get_conversation(conversation_id)
        return self._store.get_messages(conversation_id)

    def delete_message(self, message_id: str) -> None:
        self.orchestrator.abort(message_id)
        self._store.delete_message(message_id)

    def search_messages(self, query: str, limit: int = 50) -> list[Message]:
        return self._store.search_messages(query, limit)

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        provider: Provider | str | None = None,
        model: str | None = None,
    ) -> SendResult:
        """Store the user's message and stream the assistant reply into the store.

        Returns once the reply reaches a terminal state.  Stream events are
        published on the bus while it runs.
        """
        user_message, request, p = self._prepare(conversation_id, content, provider, model)
        state = await self.orchestrator.stream(request, p)
        return SendResult(
            user_message=user_message,
            assistant_message=self._store.get_message(request.message_id),
            state=state,
        )

    def submit_message(
        self,
        conversation_id: str,
        content: str,
        provider: Provider | str | None = None,
        model: str | None = None,
    ) -> tuple[Message, str, asyncio.Task[StreamState]]:
        """Like ``send_message`` but returns at once with the reply's message id."""
        user_message, request, p = self._prepare(conversation_id, content, provider, model)
        task = self.orchestrator.start(request, p)
        return user_message, request.message_id, task

    def stop_generation(self, message_id: str) -> bool:
        return self.orchestrator.abort(message_id)

    def _prepare(
        self,
        conversation_id: str,
        content: str,
        provider: Provider | str | None,
        model: str | None,
    ) -> tuple[Message, GenerationRequest, Provider]:
        self.get_conversation(conversation_id)
        p = Provider.parse(provider or self._config.provider)

        user_message = self._store.create_message(
            conversation_id,
            Role.USER.value,
            content,
            token_count=estimate_tokens(content),
            cost=0.0,
        )
        # Failed replies are not sent back to the model
        history = [
            m.to_chat_message()
            for m in self._store.get_messages(conversation_id)
            if m.role != Role.SYSTEM.value and not m.error
        ]
        request = GenerationRequest(
            message_id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            model=model or self._config.model,
            history=tuple(history),
            params=SamplingParams(
                temperature=self._config.temperature,
                max_tokens=self._config.max_tokens,
                system_prompt=self._config.system_prompt,
            ),
        )
        return user_message, request, p

    # ------------------------------------------------------------------
    # Settings and providers
    # ------------------------------------------------------------------

    def get_settings(self) -> ChatConfig:
        return self._config

    def update_settings(self, **changes: Any) -> ChatConfig:
        """Validate and apply *changes*.  Raises ``ConfigError`` on bad values."""
        config = self._config.updated(**changes)
        self._apply(config)
        return config

    def set_api_key(self, provider: Provider | str, api_key: str) -> None:
        p = Provider.parse(provider)
        self._registry.update_credential(p, api_key)
        self._persist()
        self._bus.publish(NotificationType.SETTINGS_UPDATED, {"provider": p.value})

    def set_ollama_endpoint(self, url: str) -> ChatConfig:
        providers = dict(self._config.providers)
        providers[Provider.OLLAMA] = {
            "api_key": self._config.api_key(Provider.OLLAMA), "url": url,
        }
        return self.update_settings(providers=providers)

    async def test_connection(self, provider: Provider | str) -> bool:
        return await self._registry.test_connection(provider)

    async def list_models(self, provider: Provider | str) -> list[ModelInfo]:
        return await self._registry.list_models(provider)

    def _apply(self, config: ChatConfig) -> None:
        self._config = config
        self._registry.update_config(config)
        self.orchestrator.flush_interval = config.stream_rate_limit_ms / 1000
        self._persist()
        self._bus.publish(NotificationType.SETTINGS_UPDATED, _redacted(config))

    def _persist(self) -> None:
        if self._config_path is not None:
            save_config(self._config, self._config_path)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def export_conversation(self, conversation_id: str) -> dict[str, Any]:
        self.get_conversation(conversation_id)
        return self._store.export_conversation(conversation_id)

    def usage_stats(self) -> UsageStats:
        return self._store.usage_stats()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Abort active streams, close adapters and the store."""
        _logger.debug("Shutting down with %d active stream(s)", len(self.orchestrator.active))
        await self.orchestrator.shutdown()
        await self._registry.aclose()
        self._store.close()


def _redacted(config: ChatConfig) -> dict[str, Any]:
    data = config.to_dict()
    for spec in data["providers"].values():
        spec["api_key"] = bool(spec["api_key"])
    return data
