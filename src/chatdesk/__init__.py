"""chatdesk: streaming multi-provider LLM chat core."""

__version__ = "0.1.0"
