"""Async pub/sub bus carrying engine lifecycle events to observers.

The retry session and the continuation controller publish
``StreamEvent`` objects here; the CLI display and the HTTP service
subscribe without the engine knowing about either.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Callable

from coder_stream.types import EventType, StreamEvent

_logger = logging.getLogger(__name__)

# Subscribe with this to receive every event
WILDCARD = "*"

Handler = Callable[[StreamEvent], Any]


class EventBus:
    """Fan events out to sync or async handlers.

    Handlers registered for a specific ``EventType`` run together with the
    wildcard handlers, concurrently.  A failing handler is logged and never
    affects the publisher or the other handlers.  The most recent
    *max_history* events are kept for inspection.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: deque[StreamEvent] = deque(maxlen=max_history)

    def subscribe(self, event_type: EventType | str, handler: Handler) -> Callable[[], None]:
        """Register *handler*; returns a callable that removes it again."""
        key = _key(event_type)
        self._handlers.setdefault(key, []).append(handler)
        return lambda: self.unsubscribe(key, handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        handlers = self._handlers.get(_key(event_type))
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: StreamEvent) -> None:
        self._history.append(event)
        targets = [
            *self._handlers.get(_key(event.type), ()),
            *self._handlers.get(WILDCARD, ()),
        ]
        if targets:
            await asyncio.gather(*(_deliver(h, event) for h in targets))

    async def publish(self, event_type: EventType, data: dict[str, Any] | None = None) -> None:
        """Build a ``StreamEvent`` and emit it."""
        await self.emit(StreamEvent(type=event_type, data=data or {}))

    @property
    def history(self) -> list[StreamEvent]:
        return list(self._history)

    def events_of(self, event_type: EventType) -> list[StreamEvent]:
        """Recorded events of one type, oldest first."""
        return [e for e in self._history if e.type == event_type]

    def clear(self) -> None:
        """Drop all handlers and recorded events."""
        self._handlers.clear()
        self._history.clear()


def _key(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


async def _deliver(handler: Handler, event: StreamEvent) -> None:
    try:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        _logger.exception(
            "Event handler %s failed on %s",
            getattr(handler, "__name__", repr(handler)), event.type.value,
        )
