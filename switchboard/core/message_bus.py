"""Lightweight in-process publish/subscribe bus for agent events."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, List

from .models import BusEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[BusEvent], None]


class AgentEventBus:
    """Fan events out of nested calls to whichever listener is attached.

    Handlers run synchronously in emission order; a failing handler is logged
    and does not prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Attach a handler and return a callable that detaches it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, event_type: str, **data: Any) -> None:
        event = BusEvent(type=event_type, data=data, timestamp=time.time())
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event handler failed for %s", event_type)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    @asynccontextmanager
    async def deliver(self) -> AsyncIterator[asyncio.Queue[BusEvent]]:
        """Context manager yielding a queue that receives every emitted event."""
        queue: asyncio.Queue[BusEvent] = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            yield queue
        finally:
            unsubscribe()
