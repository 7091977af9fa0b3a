"""Per-user live channels: one ingest queue in, N subscriber queues out.

Device sync and push ingestion ``feed()`` raw readings into the channel's
ingest queue; the user's pipeline consumes them through ``readings()`` and
``publish()``es the resulting events to every subscriber.

All queues are bounded.  When a queue is full the oldest item is dropped,
so a slow subscriber only loses its own backlog and never stalls the
pipeline or other subscribers.

Wire format for subscribers is Server-Sent Events (``StreamEvent.to_sse``).
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator

from src.biometrics.base import BiometricReading, ProcessedBiometricData, utc_now

logger = logging.getLogger("wellpulse.biometrics.streaming")

_CLOSE = object()


class EventKind(str, Enum):
    CONNECTED = "connected"
    DATA = "data"
    ERROR = "error"


@dataclass
class StreamEvent:
    """One event on a user's live feed.

    Attributes:
        kind:      'connected', 'data' or 'error'.
        user_id:   Owner of the stream.
        timestamp: When the event was produced.
        reading:   The released reading, for data events.
        processed: Real-time processing output, for data events.
        message:   Error description, for error events.
        fatal:     True when the stream terminates after this error.
    """

    kind: EventKind
    user_id: str
    timestamp: datetime = field(default_factory=utc_now)
    reading: BiometricReading | None = None
    processed: ProcessedBiometricData | None = None
    message: str | None = None
    fatal: bool = False

    @classmethod
    def connected(cls, user_id: str) -> StreamEvent:
        return cls(kind=EventKind.CONNECTED, user_id=user_id)

    @classmethod
    def data(cls, processed: ProcessedBiometricData) -> StreamEvent:
        return cls(
            kind=EventKind.DATA,
            user_id=processed.original.user_id,
            reading=processed.original,
            processed=processed,
        )

    @classmethod
    def error(cls, user_id: str, message: str, fatal: bool = False) -> StreamEvent:
        return cls(kind=EventKind.ERROR, user_id=user_id, message=message, fatal=fatal)

    def payload(self) -> dict[str, Any]:
        if self.kind == EventKind.DATA and self.reading is not None:
            body: dict[str, Any] = {"reading": self.reading.to_dict()}
            if self.processed is not None:
                processed = self.processed.to_dict()
                processed.pop("original", None)
                body["processed"] = processed
            return body
        if self.kind == EventKind.ERROR:
            return {"message": self.message, "fatal": self.fatal}
        return {"user_id": self.user_id, "timestamp": self.timestamp.isoformat()}

    def to_sse(self) -> str:
        return f"event: {self.kind.value}\ndata: {json.dumps(self.payload(), default=str)}\n\n"


def _offer(queue: asyncio.Queue, item: Any) -> bool:
    """Put without blocking, evicting the oldest item if full.

    Returns:
        True if an item had to be evicted.
    """
    evicted = False
    while True:
        try:
            queue.put_nowait(item)
            return evicted
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
                evicted = True
            except asyncio.QueueEmpty:
                pass


class Subscription:
    """A consumer's view of a channel.  Async-iterate to receive events."""

    def __init__(self, channel: BroadcastChannel, buffer_size: int) -> None:
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: StreamEvent) -> None:
        if self._closed:
            return
        if _offer(self._queue, event):
            self.dropped += 1

    def _terminate(self) -> None:
        if not self._closed:
            self._closed = True
            _offer(self._queue, _CLOSE)

    def close(self) -> None:
        """Stop receiving events.  Other subscribers are unaffected."""
        self._channel.unsubscribe(self)
        self._terminate()

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> StreamEvent:
        item = await self._queue.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class BroadcastChannel:
    """Fan-out channel for one user's pipeline.

    Args:
        user_id:     Owner of the channel.
        buffer_size: Capacity of the ingest queue and of each subscriber queue.
    """

    def __init__(self, user_id: str, buffer_size: int = 100) -> None:
        self.user_id = user_id
        self._buffer_size = buffer_size
        self._ingest: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._subscribers: list[Subscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ── Ingest side ──

    def feed(self, reading: BiometricReading) -> None:
        """Queue a raw reading for the pipeline."""
        if self._closed:
            return
        if _offer(self._ingest, reading):
            logger.warning("Ingest queue full for user %s; dropped oldest reading", self.user_id)

    async def readings(self) -> AsyncIterator[BiometricReading]:
        """Yield fed readings until the channel closes."""
        while True:
            item = await self._ingest.get()
            if item is _CLOSE:
                return
            yield item

    # ── Subscriber side ──

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self._buffer_size)
        if self._closed:
            sub._terminate()
            return sub
        self._subscribers.append(sub)
        logger.debug("User %s: %d subscriber(s)", self.user_id, len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def publish(self, event: StreamEvent) -> int:
        """Deliver ``event`` to every subscriber.  Returns the subscriber count."""
        for sub in list(self._subscribers):
            sub._deliver(event)
        return len(self._subscribers)

    def close(self, final_event: StreamEvent | None = None) -> None:
        """Terminate the ingest side and every subscriber.

        Args:
            final_event: Delivered to all subscribers before they terminate.
        """
        if self._closed:
            return
        if final_event is not None:
            self.publish(final_event)
        self._closed = True
        _offer(self._ingest, _CLOSE)
        for sub in self._subscribers:
            sub._terminate()
        self._subscribers.clear()
        logger.info("Closed channel for user %s", self.user_id)
