"""Public facade for one console protocol session."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from .adapters.smartglass import SmartGlassTransport
from .channels import ChannelMultiplexer
from .commands import POWER_OFF_CODE, CommandDispatcher
from .config import ConsoleConfig, SessionOptions
from .connection import ConnectionCoordinator, SessionState
from .core import (
    ChannelName,
    CommandPayload,
    ConsoleTransport,
    DeviceInfo,
    FrameKind,
    InboundFrame,
    Outcome,
)
from .errors import (
    AuthenticationRejected,
    ChannelNotOpen,
    SessionLost,
    XboxTvError,
)
from .events import EventBus, EventName, Subscription
from .telemetry import PowerState, StateSnapshot, TelemetryDecoder

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[..., Union[None, Awaitable[None]]]

# Failures already reported through their own events.
_SILENT_FAILURES = (ChannelNotOpen, SessionLost, AuthenticationRejected)


class ConsoleSession:
    """Long-lived, multiplexed connection to a single console.

    The session wires the lifecycle coordinator, channel multiplexer, command
    dispatcher, telemetry decoder and event bus together. Public operations
    never raise session errors; they resolve to an ``Outcome``.

    Example::

        async with ConsoleSession(console) as session:
            events = session.subscribe()
            await session.power_on()
            await session.send_command("media-transport", "play")
    """

    def __init__(
        self,
        console: ConsoleConfig,
        *,
        options: Optional[SessionOptions] = None,
        transport: Optional[ConsoleTransport] = None,
    ) -> None:
        self._console = console
        self._options = options or SessionOptions()

        if transport is None:
            resilience = self._options.resilience
            transport = SmartGlassTransport(
                console.host,
                keepalive_interval=resilience.keepalive_interval_seconds,
                keepalive_timeout=resilience.keepalive_timeout_seconds,
            )
        self._transport = transport

        self._bus = EventBus()
        self._decoder = TelemetryDecoder(listener=self._publish_snapshot)
        self._coordinator = ConnectionCoordinator(
            transport=transport,
            console=console,
            power=self._options.power,
            resilience=self._options.resilience,
            notify=self._emit,
            send_power_off=self._send_power_off,
        )
        self._multiplexer = ChannelMultiplexer(
            transport,
            is_connected=lambda: self._coordinator.is_connected,
            open_timeout=self._options.commands.channel_open_timeout_seconds,
        )
        self._dispatcher = CommandDispatcher(
            self._multiplexer,
            is_connected=lambda: self._coordinator.is_connected,
            ack_timeout=self._options.commands.ack_timeout_seconds,
            max_retries=self._options.commands.max_retries,
        )

        self._multiplexer.set_consumer(FrameKind.ACK, self._dispatcher.handle_ack)
        self._multiplexer.set_consumer(FrameKind.TELEMETRY, self._handle_telemetry)
        transport.set_handlers(
            self._multiplexer.route, self._coordinator.handle_transport_closed
        )
        self._coordinator.register_connected_callback(self._handle_connected)
        self._coordinator.register_lost_callback(self._handle_lost)

        self._device_info: Optional[DeviceInfo] = None
        self._background: set[asyncio.Task[None]] = set()
        self._listeners: list[asyncio.Task[None]] = []
        self._closing = False
        self._closed = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def name(self) -> str:
        return self._console.name

    @property
    def host(self) -> str:
        return self._console.host

    @property
    def state(self) -> SessionState:
        return self._coordinator.state

    @property
    def snapshot(self) -> Optional[StateSnapshot]:
        """Last published snapshot; immutable, safe to hand out."""
        return self._decoder.snapshot

    @property
    def power_state(self) -> PowerState:
        return self._decoder.power_state

    @property
    def device_info(self) -> Optional[DeviceInfo]:
        return self._device_info

    @property
    def reconnect_attempts(self) -> int:
        return self._coordinator.reconnect_attempts

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def connect(self) -> Outcome:
        """Connect to a console that is already on."""
        return await self._run_lifecycle(self._coordinator.connect)

    async def power_on(self) -> Outcome:
        """Wake the console and connect. Succeeds at once when connected."""
        return await self._run_lifecycle(self._coordinator.power_on)

    async def power_off(self) -> Outcome:
        return await self._run_lifecycle(self._coordinator.power_off)

    async def send_command(
        self,
        channel: Union[ChannelName, str],
        code: str,
        argument: Optional[Any] = None,
    ) -> Outcome:
        """Queue a command on ``channel`` and wait for its acknowledgement."""

        if self._closing or self._coordinator.terminated:
            return Outcome.failure(SessionLost("Session is closed"))
        return await self._dispatcher.submit(channel, code, argument)

    async def request_special_action(
        self, code: str, argument: Optional[Any] = None
    ) -> Outcome:
        """Run a system action such as ``capture-clip``."""

        return await self.send_command(ChannelName.SYSTEM, code, argument)

    def subscribe(self) -> Subscription:
        """Return an ordered stream of every event this session emits."""
        return self._bus.subscribe()

    def on(self, name: Union[EventName, str], handler: EventHandler) -> asyncio.Task[None]:
        """Call ``handler`` for each ``name`` event, in emission order.

        ``telemetryRaw`` handlers receive ``(topic, payload)``; every other
        handler receives the event data. Coroutine handlers are awaited.
        """

        event_name = EventName(name)
        subscription = self._bus.subscribe()
        task = asyncio.create_task(self._listen(subscription, event_name, handler))
        self._listeners.append(task)
        return task

    def diagnostics(self) -> dict[str, Any]:
        snapshot = self._decoder.snapshot
        reason = self._coordinator.last_reconnect_reason
        info = self._device_info
        return {
            "name": self._console.name,
            "host": self._console.host,
            "state": self.state.value,
            "power_state": self._decoder.power_state.value,
            "snapshot": snapshot.as_dict() if snapshot is not None else None,
            "reconnect_attempts": self._coordinator.reconnect_attempts,
            "last_reconnect_reason": reason.value if reason is not None else None,
            "firmware_revision": info.firmware_revision if info is not None else None,
            "open_channels": [name.value for name in self._multiplexer.open_channels()],
            "pending_commands": self._dispatcher.pending_count,
            "commands": self._dispatcher.stats,
            "frames_decoded": self._decoder.frames_decoded,
            "dropped_frames": self._multiplexer.dropped_frames,
        }

    async def shutdown(self) -> None:
        """Cancel everything the session runs and close the transport.

        Returns once pending commands have failed, channels and transport are
        closed and every listener has drained its events.
        """

        if self._closing:
            return
        self._closing = True

        await self._cancel_background()
        await self._coordinator.shutdown()
        self._dispatcher.fail_pending("Session shut down")
        self._multiplexer.close_all()

        self._bus.close()
        if self._listeners:
            await asyncio.gather(*self._listeners, return_exceptions=True)
            self._listeners.clear()
        self._closed = True

    async def __aenter__(self) -> "ConsoleSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _run_lifecycle(self, operation: Callable[[], Awaitable[None]]) -> Outcome:
        if self._closing:
            return Outcome.failure(SessionLost("Session is closed"))
        try:
            await operation()
        except XboxTvError as exc:
            if not isinstance(exc, _SILENT_FAILURES):
                self._emit(EventName.ERROR, str(exc))
            return Outcome.failure(exc)
        return Outcome.success()

    def _emit(self, name: EventName, data: Any = None, *, topic: Optional[str] = None) -> None:
        if name is EventName.DEBUG and not self._console.enable_debug_mode:
            LOGGER.debug("%s: %s", self._console.name, data)
            return
        if name is EventName.MESSAGE and self._console.disable_log_info:
            return
        self._bus.publish(name, data, topic=topic)

    def _publish_snapshot(self, snapshot: StateSnapshot) -> None:
        self._bus.publish(EventName.STATE_CHANGED, snapshot)

    def _handle_telemetry(self, frame: InboundFrame) -> None:
        payload = dict(frame.payload)
        self._bus.publish(EventName.TELEMETRY_RAW, payload, topic=frame.topic)
        self._decoder.feed(payload)

    def _handle_connected(self) -> None:
        self._emit(EventName.CONNECTED, "Connected")
        self._spawn(self._fetch_device_info())
        self._spawn(self._open_telemetry_channel())

    def _handle_lost(self, reason: str) -> None:
        for task in list(self._background):
            task.cancel()
        self._dispatcher.fail_pending(reason)
        self._multiplexer.close_all()
        if not self._closing:
            self._decoder.mark_offline()

    async def _send_power_off(self) -> None:
        channel = await self._multiplexer.open(ChannelName.SYSTEM)
        await self._multiplexer.send(
            channel, CommandPayload(code=POWER_OFF_CODE, value=self._console.live_id)
        )

    async def _fetch_device_info(self) -> None:
        timeout = self._options.resilience.device_info_timeout_seconds
        try:
            info = await asyncio.wait_for(
                self._transport.request_device_info(timeout), timeout=timeout
            )
        except asyncio.TimeoutError:
            LOGGER.info("%s: device info request timed out", self._console.name)
            self._emit(EventName.DEBUG, "Device info request timed out")
            return
        except (XboxTvError, OSError) as exc:
            LOGGER.info("%s: device info request failed: %s", self._console.name, exc)
            self._emit(EventName.DEBUG, f"Device info request failed: {exc}")
            return

        self._device_info = info
        self._emit(EventName.DEVICE_INFO, info)

    async def _open_telemetry_channel(self) -> None:
        try:
            await self._multiplexer.open(ChannelName.MEDIA)
        except XboxTvError as exc:
            LOGGER.debug("Media channel unavailable: %s", exc)
            self._emit(EventName.DEBUG, f"Media channel unavailable: {exc}")

    def _spawn(self, coroutine: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cancel_background(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    async def _listen(
        self, subscription: Subscription, name: EventName, handler: EventHandler
    ) -> None:
        async for event in subscription:
            if event.name is not name:
                continue
            try:
                if name is EventName.TELEMETRY_RAW:
                    result = handler(event.topic, event.data)
                else:
                    result = handler(event.data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOGGER.exception("Handler for %s failed", name.value)
