"""Ordered notification stream for a console session.

Every session owns one ``EventBus``. Publishing appends the event to the queue
of each live subscription synchronously, so all subscribers observe the events
of a session in exactly the order they were emitted. Nothing is shared between
sessions and no ordering exists across them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

LOGGER = logging.getLogger(__name__)


class EventName(str, Enum):
    """Session notifications.

    connected: The session reached the connected state.
    debug: Diagnostic detail, only published in debug mode.
    message: Human-readable status line.
    deviceInfo: Firmware metadata for display.
    stateChanged: A new deduplicated state snapshot.
    error: A transient or fatal failure.
    disconnected: The session left the connected state for good or on power off.
    telemetryRaw: Decoded telemetry as received, for the message-bus bridge.
    """

    CONNECTED = "connected"
    DEBUG = "debug"
    MESSAGE = "message"
    DEVICE_INFO = "deviceInfo"
    STATE_CHANGED = "stateChanged"
    ERROR = "error"
    DISCONNECTED = "disconnected"
    TELEMETRY_RAW = "telemetryRaw"


@dataclass(slots=True, frozen=True)
class SessionEvent:
    name: EventName
    data: Any = None
    topic: Optional[str] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


_CLOSED = object()


class Subscription:
    """Async iterator over the events of one session."""

    def __init__(self, bus: "EventBus") -> None:
        self._bus = bus
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def _put(self, event: SessionEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def get_nowait(self) -> SessionEvent:
        item = self._queue.get_nowait()
        if item is _CLOSED:
            raise asyncio.QueueEmpty
        return item

    async def get(self) -> SessionEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._discard(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> SessionEvent:
        return await self.get()


class EventBus:
    """Fan-out of session events to any number of subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def publish(
        self, name: EventName, data: Any = None, *, topic: Optional[str] = None
    ) -> SessionEvent:
        event = SessionEvent(name=name, data=data, topic=topic)
        for subscription in list(self._subscriptions):
            subscription._put(event)
        return event

    def close(self) -> None:
        """Terminate every subscription; iterators finish after draining."""

        for subscription in list(self._subscriptions):
            subscription.close()

    def _discard(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
