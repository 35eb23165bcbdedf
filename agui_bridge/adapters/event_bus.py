"""In-process broadcast bus for inbound agent messages.

Ingress publishes every parsed message here, tagged with its session
id. Subscribers are plain callbacks invoked synchronously in publish
order; a subscriber may unsubscribe itself (or others) from inside its
own callback. Runs that want to await messages use ``stream()``, which
wraps a callback around an asyncio queue.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from .protocol import BusEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[BusEvent], None]


class BroadcastBus:
    """Fan-out of BusEvents to every current subscriber."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*. Returns an unsubscribe function."""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        """Idempotent."""
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def publish(self, event: BusEvent) -> None:
        # Iterate a snapshot so callbacks can unsubscribe mid-delivery.
        for callback in list(self._subscribers):
            if callback not in self._subscribers:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Bus subscriber failed on %s from session %s",
                    event.message.type, event.session_id[:8],
                )

    def stream(
        self,
        session_id: str | None = None,
        maxsize: int = 5000,
    ) -> BusStream:
        """Open a queue-backed subscription, optionally scoped to one session."""
        return BusStream(self, session_id=session_id, maxsize=maxsize)


class BusStream:
    """Queue-backed subscription. Subscribed on construction; call close().

    A stream whose queue fills up is marked overflowed and unsubscribed.
    From then on ``get()`` returns None, because the sequence has a gap
    and a consumer waiting for a terminal message could wait forever.
    """

    def __init__(
        self,
        bus: BroadcastBus,
        session_id: str | None = None,
        maxsize: int = 5000,
    ) -> None:
        self._bus = bus
        self.session_id = session_id
        self._queue: asyncio.Queue[BusEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._overflowed = False
        bus.subscribe(self._deliver)

    def _deliver(self, event: BusEvent) -> None:
        if self._closed:
            return
        if self.session_id is not None and event.session_id != self.session_id:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Bus stream queue full at %s for session %s; closing stream",
                event.message.type, event.session_id[:8],
            )
            self._overflowed = True
            self.close()

    async def get(self, timeout: float | None = None) -> BusEvent | None:
        """Next event, or None once the stream has overflowed.

        Raises asyncio.TimeoutError when *timeout* elapses.
        """
        if self._overflowed:
            return None
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    async def __aiter__(self) -> AsyncIterator[BusEvent]:
        while not self._closed:
            yield await self._queue.get()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def overflowed(self) -> bool:
        return self._overflowed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus.unsubscribe(self._deliver)
