"""Event bus: non-blocking fan-out of execution events to bounded subscriber rings."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import AsyncIterator

from autoflow.core.types import ExecutionEvent

logger = logging.getLogger(__name__)


class Subscription:
    """
    One consumer's view of the event stream.

    Events are kept in a ring of ``maxlen`` entries. When the consumer falls
    behind, the oldest events are dropped and counted in ``dropped``.
    """

    def __init__(self, maxlen: int) -> None:
        self._buffer: deque[ExecutionEvent] = deque(maxlen=maxlen)
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    def _push(self, event: ExecutionEvent) -> None:
        if self._buffer.maxlen is not None and len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
        self._buffer.append(event)
        self._ready.set()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    def drain(self) -> list[ExecutionEvent]:
        """Return and clear everything buffered so far, oldest first."""
        events = list(self._buffer)
        self._buffer.clear()
        self._ready.clear()
        return events

    async def get(self) -> ExecutionEvent | None:
        """Wait for the next event. Returns None once closed and empty."""
        while not self._buffer:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        event = self._buffer.popleft()
        if not self._buffer and not self._closed:
            self._ready.clear()
        return event

    async def __aiter__(self) -> AsyncIterator[ExecutionEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class EventBus:
    """Publish/subscribe channel for ExecutionEvents."""

    def __init__(self, maxlen: int = 1000) -> None:
        self._maxlen = maxlen
        self._subscribers: list[Subscription] = []
        self._history: deque[ExecutionEvent] = deque(maxlen=maxlen)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, maxlen: int | None = None) -> Subscription:
        sub = Subscription(maxlen or self._maxlen)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close()
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def publish(self, event: ExecutionEvent) -> None:
        """Append ``event`` to every subscriber ring. Never blocks."""
        self._history.append(event)
        for sub in list(self._subscribers):
            sub._push(event)
            if sub.dropped and sub.dropped % self._maxlen == 1:
                logger.warning(f"Slow event subscriber: {sub.dropped} events dropped")

    def recent(self, limit: int | None = None) -> list[ExecutionEvent]:
        """Most recent events across all runs, oldest first."""
        events = list(self._history)
        if limit is not None:
            events = events[-limit:]
        return events

    def clear_history(self) -> None:
        self._history.clear()
