"""Async pub/sub EventBus: the UI-facing notification sink.

Delivery is one-way.  Publishers never wait on acknowledgement and a
failing subscriber only loses its own copy of a notification; the UI is
expected to re-read the store to catch up.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from chatdesk.types import Notification, NotificationType

_logger = logging.getLogger(__name__)

# Sentinel used for wildcard subscriptions (receive all notifications)
_WILDCARD = "*"

# Subscribers may be sync or async callables taking a Notification
Handler = Callable[[Notification], Any]


class EventBus:
    """Lightweight async pub/sub bus.

    - Subscribe to a specific ``NotificationType`` or ``"*"`` for everything.
    - Sync handlers run inline; async handlers are awaited by ``emit()`` or
      scheduled as tasks by ``publish()``.
    - ``publish()`` is fire-and-forget for callers that must not suspend.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[Notification] = []
        self._max_history = max_history
        self._pending: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, topic: NotificationType | str, handler: Handler) -> None:
        """Register *handler* for *topic* (or ``"*"`` for all)."""
        self._handlers.setdefault(self._key(topic), []).append(handler)

    def unsubscribe(self, topic: NotificationType | str, handler: Handler) -> None:
        handlers = self._handlers.get(self._key(topic), [])
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    async def emit(self, notification: Notification) -> None:
        """Deliver *notification* and wait for async handlers to finish.

        Exceptions in individual handlers are logged and do not propagate.
        """
        handlers = self._record(notification)
        if not handlers:
            return
        await asyncio.gather(
            *(self._call_handler(h, notification) for h in handlers),
            return_exceptions=True,
        )

    def publish(self, topic: NotificationType, data: dict[str, Any] | None = None) -> None:
        """Deliver without suspending the caller.

        Async handlers are scheduled on the running loop; without a running
        loop they are dropped with a debug log.
        """
        notification = Notification(type=topic, data=data or {})
        for handler in self._record(notification):
            try:
                result = handler(notification)
            except Exception:
                _logger.exception(
                    "EventBus handler %s raised for %s",
                    getattr(handler, "__name__", handler), topic.value,
                )
                continue
            if inspect.isawaitable(result):
                self._schedule(result, topic)

    async def drain(self) -> None:
        """Wait for handlers scheduled by ``publish()``."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def history(self) -> list[Notification]:
        """Return a copy of the recent notifications."""
        return list(self._history)

    def clear(self) -> None:
        """Remove all handlers and history."""
        self._handlers.clear()
        self._history.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, notification: Notification) -> list[Handler]:
        self._history.append(notification)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
        handlers = list(self._handlers.get(self._key(notification.type), []))
        handlers.extend(self._handlers.get(_WILDCARD, []))
        return handlers

    def _schedule(self, awaitable: Any, topic: NotificationType) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _logger.debug("No running loop, dropping async delivery of %s", topic.value)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        async def _run() -> None:
            try:
                await awaitable
            except Exception:
                _logger.exception("EventBus async handler raised for %s", topic.value)

        task = loop.create_task(_run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    def _key(topic: NotificationType | str) -> str:
        if isinstance(topic, NotificationType):
            return topic.value
        return str(topic)

    @staticmethod
    async def _call_handler(handler: Handler, notification: Notification) -> None:
        try:
            result = handler(notification)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for %s",
                getattr(handler, "__name__", handler),
                notification.type.value,
            )
