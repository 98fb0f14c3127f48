"""Shared data types for chatdesk."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class Provider(str, enum.Enum):
    """The closed set of supported backends."""

    CLAUDE = "claude"
    OPENAI = "openai"
    OLLAMA = "ollama"

    @classmethod
    def parse(cls, value: Provider | str) -> Provider:
        if isinstance(value, Provider):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown provider: {value!r}") from None


@dataclass(frozen=True)
class CostTable:
    """USD cost per 1,000 tokens."""

    input_per_1k: float = 0.0
    output_per_1k: float = 0.0

    @property
    def is_free(self) -> bool:
        return self.input_per_1k == 0 and self.output_per_1k == 0


@dataclass(frozen=True)
class ModelInfo:
    """A model offered by a provider."""

    id: str
    name: str = ""
    max_tokens: int = 4096

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, "name", self.id)


# ---------------------------------------------------------------------------
# Generation requests
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ChatMessage:
    """One turn of conversation history as sent to a provider."""

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class SamplingParams:
    temperature: float = 0.7
    max_tokens: int = 2048
    system_prompt: str = ""


@dataclass(frozen=True)
class GenerationRequest:
    """Everything an adapter needs to produce one assistant message.

    Immutable once submitted; ``message_id`` is chosen by the caller and
    identifies the assistant message being produced.
    """

    message_id: str
    conversation_id: str
    model: str
    history: tuple[ChatMessage, ...] = ()
    params: SamplingParams = field(default_factory=SamplingParams)

    def __post_init__(self) -> None:
        # Accept any iterable of ChatMessage/dicts but store a tuple
        items = []
        for m in self.history:
            if isinstance(m, ChatMessage):
                items.append(m)
            else:
                items.append(ChatMessage(role=m["role"], content=m["content"]))
        object.__setattr__(self, "history", tuple(items))

    def messages(self) -> list[dict[str, str]]:
        """History as plain role/content dicts."""
        return [m.to_dict() for m in self.history]


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    START = "start"
    TOKEN = "token"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """Normalized event emitted while generating one assistant message.

    ``start`` carries only the message id, ``token`` a text delta and the
    running output-token estimate, ``complete`` the final token counts and
    cost, ``error`` a human-readable cause.
    """

    type: EventType
    message_id: str
    content: str = ""
    token_count: int = 0
    input_tokens: int = 0
    cost: float = 0.0
    error: str = ""
    model: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.COMPLETE, EventType.ERROR)

    @classmethod
    def start(cls, message_id: str) -> StreamEvent:
        return cls(EventType.START, message_id)

    @classmethod
    def token(cls, message_id: str, content: str, token_count: int) -> StreamEvent:
        return cls(EventType.TOKEN, message_id, content=content, token_count=token_count)

    @classmethod
    def complete(
        cls,
        message_id: str,
        token_count: int,
        cost: float,
        input_tokens: int = 0,
        model: str = "",
    ) -> StreamEvent:
        return cls(
            EventType.COMPLETE, message_id,
            token_count=token_count, input_tokens=input_tokens,
            cost=cost, model=model,
        )

    @classmethod
    def failure(cls, message_id: str, error: str) -> StreamEvent:
        return cls(EventType.ERROR, message_id, error=error)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value, "message_id": self.message_id}
        if self.type is EventType.TOKEN:
            data.update(content=self.content, token_count=self.token_count)
        elif self.type is EventType.COMPLETE:
            data.update(
                token_count=self.token_count,
                input_tokens=self.input_tokens,
                cost=self.cost,
            )
            if self.model:
                data["model"] = self.model
        elif self.type is EventType.ERROR:
            data["error"] = self.error
        return data


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

@dataclass
class Conversation:
    id: str
    title: str
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    total_tokens: int = 0
    estimated_cost: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "total_tokens": self.total_tokens,
            "estimated_cost": self.estimated_cost,
            "metadata": dict(self.metadata),
        }


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    model: str = ""
    provider: str = ""
    token_count: int = 0
    cost: float = 0.0
    timestamp: float = field(default_factory=time.time)
    streaming: bool = False
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_chat_message(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "model": self.model,
            "provider": self.provider,
            "token_count": self.token_count,
            "cost": self.cost,
            "timestamp": self.timestamp,
            "streaming": self.streaming,
            "error": self.error,
            "metadata": dict(self.metadata),
        }


@dataclass
class UsageStats:
    total_conversations: int = 0
    total_messages: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    messages_this_month: int = 0
    cost_this_month: float = 0.0
    average_tokens_per_message: float = 0.0
    most_used_model: str = ""
    most_used_provider: str = ""


# ---------------------------------------------------------------------------
# UI notifications
# ---------------------------------------------------------------------------

class NotificationType(enum.Enum):
    """Topics pushed to the UI-facing notification sink."""

    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_UPDATED = "conversation.updated"
    CONVERSATION_DELETED = "conversation.deleted"
    MESSAGE_CREATED = "message.created"
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_DELETED = "message.deleted"
    SETTINGS_UPDATED = "settings.updated"

    STREAM_START = "stream.start"
    STREAM_TOKEN = "stream.token"
    STREAM_COMPLETE = "stream.complete"
    STREAM_ERROR = "stream.error"
    STREAM_ABORTED = "stream.aborted"


STREAM_TOPICS: dict[EventType, NotificationType] = {
    EventType.START: NotificationType.STREAM_START,
    EventType.TOKEN: NotificationType.STREAM_TOKEN,
    EventType.COMPLETE: NotificationType.STREAM_COMPLETE,
    EventType.ERROR: NotificationType.STREAM_ERROR,
}


@dataclass
class Notification:
    """One-way message to the UI layer."""

    type: NotificationType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
