"""Streaming core: orchestrator state machine and the application facade."""

from chatdesk.core.controller import ChatController, SendResult
from chatdesk.core.orchestrator import (
    StreamHandle,
    StreamOrchestrator,
    StreamState,
    should_flush,
)

__all__ = [
    "ChatController",
    "SendResult",
    "StreamHandle",
    "StreamOrchestrator",
    "StreamState",
    "should_flush",
]
