"""Tests for the ChatController facade."""

from __future__ import annotations

import asyncio
import sqlite3

import pytest
import yaml

from chatdesk.config import ChatConfig, ConfigError
from chatdesk.core.controller import ChatController
from chatdesk.core.orchestrator import StreamState
from chatdesk.events.bus import EventBus
from chatdesk.llm.registry import ProviderRegistry
from chatdesk.store import SQLiteStore
from chatdesk.types import ModelInfo, NotificationType, Provider, StreamEvent


class EchoAdapter:
    """Replies with the last user message, one word per token."""

    def __init__(self, provider: Provider, key: str = ""):
        self.provider = provider
        self.key = key
        self.requests = []
        self.gate: asyncio.Event | None = None
        self.aborted: list[str] = []

    def set_credential(self, secret: str) -> None:
        self.key = secret

    async def test_connection(self) -> bool:
        return True

    async def list_models(self) -> list[ModelInfo]:
        return [ModelInfo("echo-1")]

    async def stream_message(self, request, channel) -> None:
        self.requests.append(request)
        mid = request.message_id
        channel.emit(StreamEvent.start(mid))
        words = request.history[-1].content.split()
        for i, word in enumerate(words, 1):
            if self.gate is not None:
                await self.gate.wait()
            channel.emit(StreamEvent.token(mid, word + " ", i))
            await asyncio.sleep(0)
        channel.emit(StreamEvent.complete(mid, len(words), 0.001 * len(words)))

    def abort_stream(self, message_id: str) -> None:
        self.aborted.append(message_id)

    async def aclose(self, *, drain: bool = False) -> None:
        pass


class EchoFactory:
    def __init__(self):
        self.built: dict[Provider, EchoAdapter] = {}

    def __call__(self, provider: Provider, config: ChatConfig):
        if provider is not Provider.OLLAMA and not config.api_key(provider):
            return None
        adapter = EchoAdapter(provider, config.api_key(provider))
        self.built[provider] = adapter
        return adapter


@pytest.fixture
def factory() -> EchoFactory:
    return EchoFactory()


@pytest.fixture
def controller(factory, tmp_path):
    config = ChatConfig(system_prompt="Be terse.")
    config.spec(Provider.CLAUDE).api_key = "sk-ant"
    bus = EventBus()
    store = SQLiteStore(":memory:", bus=bus)
    registry = ProviderRegistry(config, factory=factory)
    ctl = ChatController(config, store, registry=registry, bus=bus,
                         config_path=tmp_path / "chatdesk.yaml")
    yield ctl
    try:
        store.close()
    except sqlite3.ProgrammingError:
        pass


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------

class TestSendMessage:
    async def test_round_trip(self, controller, factory):
        conv = controller.create_conversation("Chat")
        result = await controller.send_message(conv.id, "hello there world")

        assert result.state is StreamState.COMPLETED
        assert result.user_message.role == "user"
        assert result.user_message.token_count == 5  # ceil(17 / 4)
        assert result.user_message.cost == 0.0
        reply = result.assistant_message
        assert reply.content == "hello there world "
        assert reply.streaming is False
        assert reply.provider == "claude"
        assert reply.model == "claude-3-sonnet-20240229"

        request = factory.built[Provider.CLAUDE].requests[0]
        assert request.params.system_prompt == "Be terse."
        assert request.params.temperature == 0.7
        assert [m.content for m in request.history] == ["hello there world"]

        conv = controller.get_conversation(conv.id)
        assert conv.total_tokens == 5 + 3

    async def test_history_skips_failed_replies(self, controller, factory):
        conv = controller.create_conversation()
        await controller.send_message(conv.id, "first")
        failed = await controller.send_message(conv.id, "to openai", provider="openai")
        assert failed.state is StreamState.FAILED
        assert failed.assistant_message.error == "Provider openai is not configured"

        await controller.send_message(conv.id, "third")
        request = factory.built[Provider.CLAUDE].requests[-1]
        assert [(m.role, m.content) for m in request.history] == [
            ("user", "first"),
            ("assistant", "first "),
            ("user", "to openai"),
            ("user", "third"),
        ]

    async def test_explicit_provider_and_model(self, controller, factory):
        conv = controller.create_conversation()
        result = await controller.send_message(conv.id, "hi", provider="ollama", model="llama2")
        assert result.state is StreamState.COMPLETED
        assert result.assistant_message.model == "llama2"
        assert factory.built[Provider.OLLAMA].requests[0].model == "llama2"

    async def test_unknown_conversation(self, controller):
        with pytest.raises(KeyError):
            await controller.send_message("missing", "hi")

    async def test_stop_generation(self, controller, factory):
        adapter = factory.built[Provider.CLAUDE]
        adapter.gate = asyncio.Event()
        conv = controller.create_conversation()
        _, message_id, task = controller.submit_message(conv.id, "a b c")
        await asyncio.sleep(0.01)

        assert controller.stop_generation(message_id) is True
        assert await task is StreamState.ABORTED
        assert adapter.aborted == [message_id]
        adapter.gate.set()
        await controller.shutdown()

    async def test_stream_notifications(self, controller):
        topics = []
        controller.bus.subscribe("*", lambda n: topics.append(n.type.value))
        conv = controller.create_conversation()
        await controller.send_message(conv.id, "one two")
        stream_topics = [t for t in topics if t.startswith("stream.")]
        assert stream_topics == [
            "stream.start", "stream.token", "stream.token", "stream.complete",
        ]
        assert "message.created" in topics


# ---------------------------------------------------------------------------
# Conversations and messages
# ---------------------------------------------------------------------------

class TestConversations:
    def test_crud(self, controller):
        conv = controller.create_conversation()
        assert conv.title == "New Conversation"
        controller.rename_conversation(conv.id, "Renamed")
        assert controller.get_conversation(conv.id).title == "Renamed"
        assert [c.id for c in controller.search_conversations("renam")] == [conv.id]
        controller.delete_conversation(conv.id)
        with pytest.raises(KeyError):
            controller.get_conversation(conv.id)

    def test_rename_missing(self, controller):
        with pytest.raises(KeyError):
            controller.rename_conversation("missing", "x")

    async def test_messages(self, controller):
        conv = controller.create_conversation()
        await controller.send_message(conv.id, "find me")
        messages = controller.list_messages(conv.id)
        assert [m.role for m in messages] == ["user", "assistant"]
        assert len(controller.search_messages("find")) == 2

        controller.delete_message(messages[1].id)
        assert [m.role for m in controller.list_messages(conv.id)] == ["user"]
        assert controller.get_conversation(conv.id).total_tokens == 2

    async def test_export_and_stats(self, controller):
        conv = controller.create_conversation("Exported")
        await controller.send_message(conv.id, "a b")
        data = controller.export_conversation(conv.id)
        assert data["conversation"]["title"] == "Exported"
        assert len(data["messages"]) == 2
        stats = controller.usage_stats()
        assert stats.total_messages == 2
        assert stats.most_used_provider == "claude"
        with pytest.raises(KeyError):
            controller.export_conversation("missing")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class TestSettings:
    def test_update_settings(self, controller, tmp_path):
        notes = []
        controller.bus.subscribe(NotificationType.SETTINGS_UPDATED, notes.append)

        new = controller.update_settings(temperature=1.5, stream_rate_limit_ms=200)
        assert controller.get_settings() is new
        assert new.temperature == 1.5
        assert controller.orchestrator.flush_interval == pytest.approx(0.2)

        saved = yaml.safe_load((tmp_path / "chatdesk.yaml").read_text())
        assert saved["temperature"] == 1.5
        assert notes[-1].data["temperature"] == 1.5
        # Keys are never published
        assert notes[-1].data["providers"]["claude"]["api_key"] is True

    def test_invalid_update_leaves_settings(self, controller):
        before = controller.get_settings()
        with pytest.raises(ConfigError):
            controller.update_settings(temperature=9)
        assert controller.get_settings() is before

    def test_set_api_key(self, controller, tmp_path):
        assert controller.registry.get_adapter("openai") is None
        controller.set_api_key("openai", "sk-oai")
        assert controller.registry.get_adapter("openai").key == "sk-oai"
        saved = yaml.safe_load((tmp_path / "chatdesk.yaml").read_text())
        assert saved["providers"]["openai"]["api_key"] == "sk-oai"

    def test_set_ollama_endpoint(self, controller):
        cfg = controller.set_ollama_endpoint("http://gpu:11434")
        assert cfg.ollama_endpoint == "http://gpu:11434"
        with pytest.raises(ConfigError):
            controller.set_ollama_endpoint("not a url")

    async def test_models_and_connection(self, controller):
        assert [m.id for m in await controller.list_models("claude")] == ["echo-1"]
        assert await controller.test_connection("claude") is True
        assert await controller.test_connection("openai") is False


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    async def test_shutdown_closes_store(self, controller):
        conv = controller.create_conversation()
        await controller.shutdown()
        with pytest.raises(sqlite3.ProgrammingError):
            controller.get_conversation(conv.id)

    async def test_from_config(self, tmp_path):
        config = ChatConfig(db_path=str(tmp_path / "db" / "chat.db"))
        ctl = ChatController.from_config(config)
        conv = ctl.create_conversation("persisted")
        assert ctl.registry.get_adapter("ollama") is not None
        await ctl.shutdown()
        assert (tmp_path / "db" / "chat.db").exists()
        store = SQLiteStore(config.db_path)
        assert store.get_conversation(conv.id).title == "persisted"
        store.close()
