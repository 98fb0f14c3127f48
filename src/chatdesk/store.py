"""Conversation and message record store."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from chatdesk.events.bus import EventBus
from chatdesk.types import (
    Conversation,
    Message,
    NotificationType,
    UsageStats,
)

_logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"

# Fields update_message() accepts
_MESSAGE_FIELDS = ("content", "token_count", "cost", "streaming", "error", "metadata")


class StoreError(Exception):
    """A store operation referred to a missing record or failed."""

    def __init__(self, message: str, operation: str) -> None:
        super().__init__(message)
        self.operation = operation


class RecordStore(Protocol):
    """What the streaming core needs from storage."""

    def create_message(self, conversation_id: str, role: str, content: str,
                       **fields: Any) -> Message: ...

    def update_message(self, message_id: str, **fields: Any) -> Message: ...

    def get_messages(self, conversation_id: str) -> list[Message]: ...


class SQLiteStore:
    """SQLite-backed conversations, messages and usage statistics.

    Every mutation publishes a ``created`` / ``updated`` / ``deleted``
    notification on *bus* when one is given.
    """

    def __init__(self, db_path: str = "~/.chatdesk/chatdesk.db", bus: EventBus | None = None):
        if db_path == ":memory:":
            self.db_path = None
            self._conn = sqlite3.connect(":memory:")
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._bus = bus
        self._init_schema()

    def _init_schema(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                total_tokens INTEGER NOT NULL DEFAULT 0,
                estimated_cost REAL NOT NULL DEFAULT 0,
                metadata TEXT DEFAULT '{}'
            );
            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                model TEXT DEFAULT '',
                provider TEXT DEFAULT '',
                token_count INTEGER NOT NULL DEFAULT 0,
                cost REAL NOT NULL DEFAULT 0,
                timestamp REAL NOT NULL,
                streaming INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                metadata TEXT DEFAULT '{}'
            );
            CREATE INDEX IF NOT EXISTS idx_msg_conversation ON messages(conversation_id);
            CREATE INDEX IF NOT EXISTS idx_conv_updated ON conversations(updated_at);
        """)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(self, title: str | None = None) -> Conversation:
        now = time.time()
        conv = Conversation(
            id=str(uuid.uuid4()), title=title or DEFAULT_TITLE,
            created_at=now, updated_at=now,
        )
        self._conn.execute(
            "INSERT INTO conversations (id, title, created_at, updated_at, metadata) "
            "VALUES (?, ?, ?, ?, ?)",
            (conv.id, conv.title, now, now, json.dumps(conv.metadata)),
        )
        self._conn.commit()
        self._notify(NotificationType.CONVERSATION_CREATED, conv.to_dict())
        return conv

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = self._conn.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,),
        ).fetchone()
        return _conversation(row) if row else None

    def list_conversations(self, limit: int = 50, offset: int = 0) -> list[Conversation]:
        """Most recently updated first."""
        rows = self._conn.execute(
            "SELECT * FROM conversations ORDER BY updated_at DESC LIMIT ? OFFSET ?",
            (limit, offset),
        ).fetchall()
        return [_conversation(r) for r in rows]

    def search_conversations(self, query: str, limit: int = 50,
                             offset: int = 0) -> list[Conversation]:
        """Case-insensitive title substring search."""
        rows = self._conn.execute(
            "SELECT * FROM conversations WHERE instr(lower(title), lower(?)) > 0 "
            "ORDER BY updated_at DESC LIMIT ? OFFSET ?",
            (query, limit, offset),
        ).fetchall()
        return [_conversation(r) for r in rows]

    def update_conversation(self, conversation_id: str, *, title: str | None = None,
                            metadata: dict[str, Any] | None = None) -> Conversation:
        conv = self.get_conversation(conversation_id)
        if conv is None:
            raise StoreError(f"Conversation {conversation_id} not found", "update")
        if title is not None:
            conv.title = title
        if metadata is not None:
            conv.metadata = metadata
        conv.updated_at = time.time()
        self._conn.execute(
            "UPDATE conversations SET title = ?, metadata = ?, updated_at = ? WHERE id = ?",
            (conv.title, json.dumps(conv.metadata), conv.updated_at, conv.id),
        )
        self._conn.commit()
        self._notify(NotificationType.CONVERSATION_UPDATED, conv.to_dict())
        return conv

    def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and its messages.  Missing ids are ignored."""
        cur = self._conn.execute(
            "DELETE FROM conversations WHERE id = ?", (conversation_id,),
        )
        if cur.rowcount == 0:
            return
        self._conn.execute(
            "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,),
        )
        self._conn.commit()
        self._notify(NotificationType.CONVERSATION_DELETED, {"id": conversation_id})

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        model: str = "",
        provider: str = "",
        token_count: int = 0,
        cost: float = 0.0,
        streaming: bool = False,
        message_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        msg = Message(
            id=message_id or str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            model=model,
            provider=provider,
            token_count=token_count,
            cost=cost,
            streaming=streaming,
            metadata=metadata or {},
        )
        try:
            self._conn.execute(
                "INSERT INTO messages (id, conversation_id, role, content, model, provider, "
                "token_count, cost, timestamp, streaming, error, metadata) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (msg.id, msg.conversation_id, msg.role, msg.content, msg.model,
                 msg.provider, msg.token_count, msg.cost, msg.timestamp,
                 int(msg.streaming), msg.error, json.dumps(msg.metadata)),
            )
        except sqlite3.IntegrityError as e:
            raise StoreError(f"Message {msg.id} already exists", "create") from e
        self._touch_conversation(conversation_id, msg.token_count, msg.cost, msg.timestamp)
        self._conn.commit()
        self._notify(NotificationType.MESSAGE_CREATED, msg.to_dict())
        return msg

    def get_message(self, message_id: str) -> Message | None:
        row = self._conn.execute(
            "SELECT * FROM messages WHERE id = ?", (message_id,),
        ).fetchone()
        return _message(row) if row else None

    def get_messages(self, conversation_id: str) -> list[Message]:
        """Messages of a conversation, oldest first."""
        rows = self._conn.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY timestamp, seq",
            (conversation_id,),
        ).fetchall()
        return [_message(r) for r in rows]

    def update_message(self, message_id: str, **fields: Any) -> Message:
        """Partial update of content/token_count/cost/streaming/error/metadata."""
        unknown = set(fields) - set(_MESSAGE_FIELDS)
        if unknown:
            raise StoreError(f"Cannot update fields: {', '.join(sorted(unknown))}", "update")
        msg = self.get_message(message_id)
        if msg is None:
            raise StoreError(f"Message {message_id} not found", "update")

        old_tokens, old_cost = msg.token_count, msg.cost
        for name, value in fields.items():
            setattr(msg, name, value)
        self._conn.execute(
            "UPDATE messages SET content = ?, token_count = ?, cost = ?, streaming = ?, "
            "error = ?, metadata = ? WHERE id = ?",
            (msg.content, msg.token_count, msg.cost, int(msg.streaming), msg.error,
             json.dumps(msg.metadata), msg.id),
        )
        if msg.token_count != old_tokens or msg.cost != old_cost:
            self._touch_conversation(
                msg.conversation_id, msg.token_count - old_tokens, msg.cost - old_cost,
            )
        self._conn.commit()
        self._notify(NotificationType.MESSAGE_UPDATED, msg.to_dict())
        return msg

    def delete_message(self, message_id: str) -> None:
        """Delete one message and back its usage out of the conversation."""
        msg = self.get_message(message_id)
        if msg is None:
            return
        self._conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        self._touch_conversation(msg.conversation_id, -msg.token_count, -msg.cost)
        self._conn.commit()
        self._notify(NotificationType.MESSAGE_DELETED, {"id": message_id})

    def search_messages(self, query: str, limit: int = 50) -> list[Message]:
        """Case-insensitive content search, newest first."""
        rows = self._conn.execute(
            "SELECT * FROM messages WHERE instr(lower(content), lower(?)) > 0 "
            "ORDER BY timestamp DESC, seq DESC LIMIT ?",
            (query, limit),
        ).fetchall()
        return [_message(r) for r in rows]

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def usage_stats(self, now: float | None = None) -> UsageStats:
        messages = [
            _message(r) for r in self._conn.execute("SELECT * FROM messages").fetchall()
        ]
        total_conversations = self._conn.execute(
            "SELECT COUNT(*) FROM conversations",
        ).fetchone()[0]

        current = datetime.fromtimestamp(now if now is not None else time.time())
        this_month = [
            m for m in messages
            if (d := datetime.fromtimestamp(m.timestamp)).year == current.year
            and d.month == current.month
        ]
        models = Counter(m.model for m in messages if m.model)
        providers = Counter(m.provider for m in messages if m.provider)
        total_tokens = sum(m.token_count for m in messages)

        return UsageStats(
            total_conversations=total_conversations,
            total_messages=len(messages),
            total_tokens=total_tokens,
            total_cost=sum(m.cost for m in messages),
            messages_this_month=len(this_month),
            cost_this_month=sum(m.cost for m in this_month),
            average_tokens_per_message=total_tokens / len(messages) if messages else 0.0,
            most_used_model=models.most_common(1)[0][0] if models else "",
            most_used_provider=providers.most_common(1)[0][0] if providers else "",
        )

    def export_conversation(self, conversation_id: str) -> dict[str, Any]:
        conv = self.get_conversation(conversation_id)
        if conv is None:
            raise StoreError(f"Conversation {conversation_id} not found", "export")
        return {
            "conversation": conv.to_dict(),
            "messages": [m.to_dict() for m in self.get_messages(conversation_id)],
            "exported_at": time.time(),
        }

    def close(self):
        self._conn.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _touch_conversation(self, conversation_id: str, tokens: int, cost: float,
                            when: float | None = None) -> None:
        self._conn.execute(
            "UPDATE conversations SET total_tokens = total_tokens + ?, "
            "estimated_cost = estimated_cost + ?, updated_at = ? WHERE id = ?",
            (tokens, cost, when or time.time(), conversation_id),
        )

    def _notify(self, topic: NotificationType, data: dict[str, Any]) -> None:
        if self._bus is not None:
            self._bus.publish(topic, data)


def _conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        title=row["title"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        total_tokens=row["total_tokens"],
        estimated_cost=row["estimated_cost"],
        metadata=json.loads(row["metadata"] or "{}"),
    )


def _message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        model=row["model"] or "",
        provider=row["provider"] or "",
        token_count=row["token_count"],
        cost=row["cost"],
        timestamp=row["timestamp"],
        streaming=bool(row["streaming"]),
        error=row["error"],
        metadata=json.loads(row["metadata"] or "{}"),
    )
