"""Provider adapters and the streaming pipeline beneath them."""

from chatdesk.llm.base import ActiveStreams, ProviderAdapter, StreamPlan, run_stream
from chatdesk.llm.channel import StreamChannel
from chatdesk.llm.claude import ClaudeAdapter
from chatdesk.llm.errors import ProviderError
from chatdesk.llm.ollama import OllamaAdapter
from chatdesk.llm.openai import OpenAIAdapter
from chatdesk.llm.registry import ProviderRegistry
from chatdesk.llm.transport import RetryPolicy, TransportError

__all__ = [
    "ActiveStreams",
    "ClaudeAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderError",
    "ProviderRegistry",
    "RetryPolicy",
    "StreamChannel",
    "StreamPlan",
    "TransportError",
    "run_stream",
]
