"""UI-facing notification bus."""

from chatdesk.events.bus import EventBus

__all__ = ["EventBus"]
