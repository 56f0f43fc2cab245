"""Backend-side fan-out of named events.

Session output, status changes and bridge notifications are emitted here once
and reach two kinds of consumers:

- in-process listeners registered with ``listen`` (the local channel),
- per-connection receivers created with ``receiver`` (remote websocket clients).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]


@dataclass
class BusEvent:
    event: str
    payload: Any


class BusReceiver:
    """Bounded queue of every event emitted after its creation."""

    def __init__(self, bus: "EventBus", maxsize: int) -> None:
        self._bus = bus
        self._queue: "asyncio.Queue[BusEvent]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _push(self, item: BusEvent) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Event receiver lagged, dropped {item.event} ({self.dropped} total)")

    async def recv(self) -> BusEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._bus._receivers.discard(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> BusEvent:
        return await self.recv()


class EventBus:
    def __init__(self, queue_size: int = 1024) -> None:
        self._listeners: Dict[str, List[EventHandler]] = {}
        self._receivers: set = set()
        self._queue_size = queue_size

    def emit(self, event: str, payload: Any = None) -> None:
        """Deliver to every listener of ``event`` and every receiver. Never raises."""
        for handler in list(self._listeners.get(event, ())):
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Listener for {event} failed: {e}")
        if self._receivers:
            item = BusEvent(event=event, payload=payload)
            for receiver in list(self._receivers):
                receiver._push(item)

    def listen(self, event: str, handler: EventHandler) -> Callable[[], None]:
        handlers = self._listeners.setdefault(event, [])
        handlers.append(handler)

        def unlisten() -> None:
            current = self._listeners.get(event)
            if current and handler in current:
                current.remove(handler)
                if not current:
                    del self._listeners[event]

        return unlisten

    def receiver(self, maxsize: Optional[int] = None) -> BusReceiver:
        rx = BusReceiver(self, maxsize or self._queue_size)
        self._receivers.add(rx)
        return rx

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))
