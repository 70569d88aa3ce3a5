"""Message-bus bridge mirroring console sessions onto MQTT topics.

Topics are ``<prefix>/<console name>/<topic>``:

- raw telemetry goes to the topic named by the transport (``Status``,
  ``MediaState``)
- every deduplicated snapshot goes to ``State``
- firmware metadata goes to ``Info``
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, List, Optional

from .adapters.mqtt import MQTTConnectionError
from .core import DeviceInfo, MessagePublisher
from .events import EventName, SessionEvent, Subscription
from .session import ConsoleSession
from .telemetry import StateSnapshot

LOGGER = logging.getLogger(__name__)

STATE_TOPIC = "State"
INFO_TOPIC = "Info"


def _json_default(value: Any) -> Any:
    try:
        return str(value)
    except Exception:  # pragma: no cover - defensive fallback
        return repr(value)


def _info_document(info: DeviceInfo) -> Dict[str, Any]:
    return {
        "firmwareRevision": info.firmware_revision,
        "locale": info.locale,
        "liveTvProvider": info.live_tv_provider,
    }


class TelemetryBridge:
    """Publishes the events of attached sessions to a message bus."""

    def __init__(self, publisher: MessagePublisher, *, prefix: str) -> None:
        self._publisher = publisher
        self._prefix = prefix.strip("/")
        self._subscriptions: List[Subscription] = []
        self._tasks: List[asyncio.Task[None]] = []
        self._published = 0

    @property
    def published(self) -> int:
        return self._published

    def topic_for(self, console_name: str, topic: str) -> str:
        return f"{self._prefix}/{console_name}/{topic}"

    def attach(self, session: ConsoleSession) -> None:
        subscription = session.subscribe()
        self._subscriptions.append(subscription)
        self._tasks.append(
            asyncio.create_task(self._forward(session.name, subscription))
        )

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._subscriptions.clear()
        self._tasks.clear()

    def handle_event(self, console_name: str, event: SessionEvent) -> None:
        if event.name is EventName.TELEMETRY_RAW:
            self._publish(console_name, event.topic or "Telemetry", event.data)
        elif event.name is EventName.STATE_CHANGED and isinstance(
            event.data, StateSnapshot
        ):
            self._publish(console_name, STATE_TOPIC, event.data.as_dict())
        elif event.name is EventName.DEVICE_INFO and isinstance(event.data, DeviceInfo):
            self._publish(console_name, INFO_TOPIC, _info_document(event.data))

    async def _forward(self, console_name: str, subscription: Subscription) -> None:
        async for event in subscription:
            self.handle_event(console_name, event)

    def _publish(self, console_name: str, topic: str, document: Optional[Any]) -> None:
        full_topic = self.topic_for(console_name, topic)
        payload = json.dumps(document, default=_json_default).encode("utf-8")
        try:
            self._publisher.publish(full_topic, payload, qos=0, retain=False)
        except (MQTTConnectionError, RuntimeError) as exc:
            LOGGER.warning("Publish to %s failed: %s", full_topic, exc)
            return
        self._published += 1
