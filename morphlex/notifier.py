"""Event sinks for execution progress.

The executor emits events synchronously, in production order, to whatever
``Notifier`` is attached. Delivery needs no acknowledgement.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Protocol

from morphlex.schemas import Event


class Notifier(Protocol):
    """Ordered event sink."""

    def notify(self, event: Event) -> None:
        ...


class NullNotifier:
    """Drops every event. Used until an observer attaches."""

    def notify(self, event: Event) -> None:
        return None


class EventRecorder:
    """Keeps every event in a list, in production order."""

    def __init__(self):
        self.events: list[Event] = []

    def notify(self, event: Event) -> None:
        self.events.append(event)


class QueueNotifier:
    """Puts events on an ``asyncio.Queue`` for a consumer task.

    Iterating the notifier yields events until ``close()`` has been called
    and the queue is drained.
    """

    _CLOSED = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    def notify(self, event: Event) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._queue.put_nowait(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
