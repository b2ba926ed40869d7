"""Lookup table from event type to domain handler."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from outbox_pipeline.protocols import EventHandlerProtocol

HandlerFunc = Callable[[str, dict[str, Any]], Awaitable[Any]]


class HandlerRegistry:
    """
    Maps ``event_type`` to the coroutine that processes it.

    Handlers are either objects with an async ``handle(event_type, payload)``
    method or plain async callables with the same signature.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, HandlerFunc] = {}

    def register(self, event_type: str, handler: EventHandlerProtocol | HandlerFunc) -> None:
        if event_type in self._handlers:
            raise ValueError(f"Handler already registered for event type '{event_type}'")
        self._handlers[event_type] = handler.handle if hasattr(handler, "handle") else handler

    def handler(self, event_type: str) -> Callable[[HandlerFunc], HandlerFunc]:
        """Decorator form of ``register``."""

        def decorator(func: HandlerFunc) -> HandlerFunc:
            self.register(event_type, func)
            return func

        return decorator

    def get(self, event_type: str) -> HandlerFunc | None:
        return self._handlers.get(event_type)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._handlers

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)
