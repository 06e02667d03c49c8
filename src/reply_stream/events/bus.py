"""Reply event bus: lifecycle events and user notices.

The coordinator publishes; the UI subscribes.  Delivery is in subscription
order so a notice is rendered before anything emitted after it.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict, deque
from typing import Any, Callable

from reply_stream.types import EventType, ReplyEvent

_logger = logging.getLogger(__name__)

Handler = Callable[[ReplyEvent], Any]


class EventBus:
    """Per-type subscriptions with a bounded record of emitted events.

    Handlers may be sync or async.  A failing handler is logged and skipped;
    it never breaks the reply that emitted the event.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[EventType, list[Handler]] = defaultdict(list)
        self._history: deque[ReplyEvent] = deque(maxlen=max_history)

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: ReplyEvent) -> None:
        self._history.append(event)
        for handler in list(self._handlers.get(event.type, [])):
            await self._deliver(handler, event)

    async def notify(self, message: str, **data: Any) -> None:
        """Surface a user-visible notice."""
        await self.emit(
            ReplyEvent(type=EventType.NOTICE, data={"message": message, **data}),
        )

    @property
    def history(self) -> list[ReplyEvent]:
        return list(self._history)

    @staticmethod
    async def _deliver(handler: Handler, event: ReplyEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "Handler %s failed on %s",
                getattr(handler, "__name__", handler), event.type.value,
            )
