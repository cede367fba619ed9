"""Event bus for decoupled transcript observers.

Usage:
    bus = EventBus()

    async def on_delta(event):
        print(event.data["text"], end="")

    bus.subscribe("message.delta", on_delta)
    await bus.publish("message.delta", {"text": "Hel"})
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import inspect
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Simple publish/subscribe bus.

    Handlers may be plain callables or coroutine functions. A failing handler
    is logged and never interrupts the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable[[Event], Any]]] = {}

    def subscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        """Subscribe ``handler`` to ``event_name``."""
        self._subscribers.setdefault(event_name, []).append(handler)
        LOGGER.debug(
            "events.subscribed",
            extra={"event": "events.subscribed", "name": event_name},
        )

    def unsubscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        """Remove a handler; unknown handlers are ignored."""
        handlers = self._subscribers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> None:
        """Deliver an event to every subscriber, in subscription order."""
        event = Event(name=event_name, data=data, source=source)
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - observers must not break a stream.
                LOGGER.error(
                    "events.handler.failed",
                    extra={
                        "event": "events.handler.failed",
                        "name": event_name,
                        "error": str(exc),
                    },
                )

    def clear(self, event_name: str | None = None) -> None:
        """Clear subscribers for one event, or all of them."""
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
