"""SmartGlass UDP transport for a single console."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from .. import constants
from ..commands import POWER_OFF_CODE, SPECIAL_ACTION_VALUES, SpecialAction
from ..core import (
    ChannelName,
    ClosedHandler,
    CommandPayload,
    Credentials,
    DeviceInfo,
    FrameHandler,
    FrameKind,
    InboundFrame,
)
from ..errors import (
    AuthenticationRejected,
    ChannelNotOpen,
    ProtocolError,
    TransportUnreachable,
    UnknownCommand,
)
from ..protocol import packets
from ..protocol.constants import (
    ACK_CHANNEL_ID,
    AUTHENTICATION_FAILURES,
    CORE_CHANNEL_ID,
    SERVICE_SYSTEM_INPUT,
    SERVICE_SYSTEM_MEDIA,
    SERVICE_TV_REMOTE,
    ConnectionResult,
    DisconnectReason,
    MessageType,
    PacketType,
    PlaybackStatus,
    SoundLevel,
)
from ..protocol.crypto import SmartGlassCrypto

LOGGER = logging.getLogger(__name__)

SERVICE_BY_CHANNEL = {
    ChannelName.MEDIA: SERVICE_SYSTEM_MEDIA,
    ChannelName.INPUT: SERVICE_SYSTEM_INPUT,
    ChannelName.REMOTE: SERVICE_TV_REMOTE,
}

_MEDIA_STATE_BY_STATUS = {
    PlaybackStatus.STOPPED: "stopped",
    PlaybackStatus.PLAYING: "playing",
    PlaybackStatus.PAUSED: "paused",
}


def status_telemetry(status: packets.ConsoleStatus) -> dict[str, Any]:
    """Telemetry fields carried by a console status message."""

    payload: dict[str, Any] = {"power_state": "on"}
    title = status.focused_title
    if title is not None:
        payload["title_id"] = title.title_id
        if title.aum:
            payload["reference"] = title.aum
    return payload


def media_telemetry(media: packets.MediaStatus) -> dict[str, Any]:
    """Telemetry fields carried by a media state message."""

    try:
        status = PlaybackStatus(media.playback_status)
    except ValueError:
        status = None
    return {
        "media_state": _MEDIA_STATE_BY_STATUS.get(status, "unknown"),
        "mute": media.sound_level == SoundLevel.MUTED,
        "title_id": media.title_id,
        "asset_id": media.asset_id,
        "position": media.position,
        "metadata": dict(media.metadata),
    }


class _DatagramProtocol(asyncio.DatagramProtocol):
    def __init__(self, owner: "SmartGlassTransport") -> None:
        self._owner = owner

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self._owner._datagram_received(data, addr)

    def error_received(self, exc: Exception) -> None:
        self._owner._socket_error(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            self._owner._socket_error(exc)


class SmartGlassTransport:
    """Console transport speaking SmartGlass over UDP.

    One datagram endpoint carries discovery, wake packets and the encrypted
    session. The transport acknowledges console messages that request it,
    sends keepalives while connected and reports unexpected loss through the
    closed handler.
    """

    def __init__(
        self,
        host: str,
        *,
        port: int = constants.SMARTGLASS_PORT,
        keepalive_interval: float = 3.0,
        keepalive_timeout: float = 10.0,
        crypto_factory: Callable[[bytes], SmartGlassCrypto] = SmartGlassCrypto.from_certificate,
        device_id: Optional[uuid.UUID] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._keepalive_interval = keepalive_interval
        self._keepalive_timeout = keepalive_timeout
        self._crypto_factory = crypto_factory
        self._device_id = device_id or uuid.uuid4()

        self._on_frame: Optional[FrameHandler] = None
        self._on_closed: Optional[ClosedHandler] = None

        self._endpoint: Optional[asyncio.DatagramTransport] = None
        self._crypto: Optional[SmartGlassCrypto] = None
        self._discovery: Optional[packets.DiscoveryResponse] = None
        self._participant_id = 0
        self._connected = False
        self._sequence = itertools.count(1)
        self._request_ids = itertools.count(1)
        self._media_request_ids = itertools.count(1)
        self._json_ids = itertools.count(1)
        self._last_heard = 0.0
        self._keepalive_task: Optional[asyncio.Task[None]] = None

        self._discovery_waiters: list[asyncio.Future[packets.DiscoveryResponse]] = []
        self._connect_waiter: Optional[asyncio.Future[packets.ConnectResponse]] = None
        self._channel_waiters: Dict[int, asyncio.Future[int]] = {}
        self._status_waiters: list[asyncio.Future[packets.ConsoleStatus]] = []
        self._console_status: Optional[packets.ConsoleStatus] = None
        self._media_title_id = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def console_name(self) -> Optional[str]:
        return self._discovery.name if self._discovery is not None else None

    @property
    def connected(self) -> bool:
        return self._connected

    def set_handlers(self, on_frame: FrameHandler, on_closed: ClosedHandler) -> None:
        self._on_frame = on_frame
        self._on_closed = on_closed

    async def send_wake(self, live_id: str) -> None:
        endpoint = await self._ensure_endpoint()
        packet = packets.power_on_request(live_id)
        endpoint.sendto(packet, (self._host, self._port))
        endpoint.sendto(packet, (constants.BROADCAST_ADDRESS, self._port))

    async def probe(self, timeout: float) -> bool:
        endpoint = await self._ensure_endpoint()
        waiter: asyncio.Future[packets.DiscoveryResponse] = (
            asyncio.get_running_loop().create_future()
        )
        self._discovery_waiters.append(waiter)
        try:
            endpoint.sendto(packets.discovery_request(), (self._host, self._port))
            self._discovery = await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            with contextlib.suppress(ValueError):
                self._discovery_waiters.remove(waiter)
        LOGGER.debug("Console %s answered discovery", self._discovery.name)
        return True

    async def handshake(self, credentials: Optional[Credentials], timeout: float) -> None:
        if self._discovery is None and not await self.probe(timeout):
            raise TransportUnreachable(f"Console at {self._host} did not answer")
        if self._discovery is None:
            raise TransportUnreachable(f"No discovery response from {self._host}")

        self._crypto = self._crypto_factory(self._discovery.certificate)
        endpoint = await self._ensure_endpoint()
        loop = asyncio.get_running_loop()
        self._connect_waiter = loop.create_future()
        try:
            for packet in packets.connect_requests(
                self._crypto, self._device_id, credentials
            ):
                endpoint.sendto(packet, (self._host, self._port))
            response = await asyncio.wait_for(self._connect_waiter, timeout=timeout)
        except asyncio.TimeoutError:
            raise TransportUnreachable("Console did not answer the connect request") from None
        finally:
            self._connect_waiter = None

        if response.result != ConnectionResult.SUCCESS:
            try:
                label = ConnectionResult(response.result).name.lower()
            except ValueError:
                label = str(response.result)
            if response.result in AUTHENTICATION_FAILURES:
                raise AuthenticationRejected(
                    f"Console rejected the credentials ({label})"
                )
            raise TransportUnreachable(f"Console refused the connection ({label})")

        self._participant_id = response.participant_id
        self._sequence = itertools.count(1)
        self._connected = True
        self._last_heard = loop.time()
        self._send_message(MessageType.LOCAL_JOIN, packets.local_join_payload())
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        LOGGER.info(
            "Connected to %s (participant %d)", self._host, self._participant_id
        )

    async def open_channel(self, channel: ChannelName, timeout: float) -> int:
        service = SERVICE_BY_CHANNEL.get(channel)
        if service is None:
            raise ChannelNotOpen(f"No console service behind {channel.value}")
        self._require_connected()

        request_id = next(self._request_ids)
        waiter: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        self._channel_waiters[request_id] = waiter
        try:
            self._send_message(
                MessageType.START_CHANNEL_REQUEST,
                packets.start_channel_request(request_id, service),
            )
            return await asyncio.wait_for(waiter, timeout=timeout)
        finally:
            self._channel_waiters.pop(request_id, None)

    async def send(
        self, channel_id: int, channel: ChannelName, payload: CommandPayload
    ) -> int:
        self._require_connected()

        if channel is ChannelName.SYSTEM:
            return self._send_system(payload)
        if channel is ChannelName.MEDIA:
            body = packets.media_command_payload(
                next(self._media_request_ids),
                self._media_title_id,
                int(payload.value),
                payload.argument,
            )
            return self._send_message(
                MessageType.MEDIA_COMMAND, body, channel_id=channel_id, need_ack=True
            )
        if channel is ChannelName.INPUT:
            timestamp = time.time_ns() // 1000
            self._send_message(
                MessageType.GAMEPAD,
                packets.gamepad_payload(timestamp, int(payload.value)),
                channel_id=channel_id,
                need_ack=True,
            )
            return self._send_message(
                MessageType.GAMEPAD,
                packets.gamepad_payload(timestamp + 1, 0),
                channel_id=channel_id,
                need_ack=True,
            )
        if channel is ChannelName.REMOTE:
            document = {
                "msgid": f"{self._device_id.hex[:8]}.{next(self._json_ids)}",
                "request": "SendKey",
                "params": {"button_id": payload.value, "device_id": None},
            }
            return self._send_message(
                MessageType.JSON,
                packets.json_payload(document),
                channel_id=channel_id,
                need_ack=True,
            )
        raise UnknownCommand(f"Unsupported channel: {channel.value}")

    async def request_device_info(self, timeout: float) -> DeviceInfo:
        self._require_connected()
        status = self._console_status
        if status is None:
            waiter: asyncio.Future[packets.ConsoleStatus] = (
                asyncio.get_running_loop().create_future()
            )
            self._status_waiters.append(waiter)
            try:
                status = await asyncio.wait_for(waiter, timeout=timeout)
            finally:
                with contextlib.suppress(ValueError):
                    self._status_waiters.remove(waiter)

        return DeviceInfo(
            firmware_revision=status.firmware_revision,
            locale=status.locale or None,
            live_tv_provider=status.live_tv_provider,
        )

    async def close(self) -> None:
        if self._connected and self._endpoint is not None and self._crypto is not None:
            with contextlib.suppress(OSError):
                self._send_message(
                    MessageType.DISCONNECT,
                    packets.disconnect_payload(DisconnectReason.UNSPECIFIED),
                )
        self._teardown()
        if self._endpoint is not None:
            self._endpoint.close()
            self._endpoint = None
        self._discovery = None

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    async def _ensure_endpoint(self) -> asyncio.DatagramTransport:
        if self._endpoint is not None and not self._endpoint.is_closing():
            return self._endpoint
        loop = asyncio.get_running_loop()
        try:
            endpoint, _ = await loop.create_datagram_endpoint(
                lambda: _DatagramProtocol(self),
                local_addr=("0.0.0.0", 0),
                allow_broadcast=True,
            )
        except OSError as exc:
            raise TransportUnreachable(f"Cannot open UDP socket: {exc}") from exc
        self._endpoint = endpoint
        return endpoint

    def _require_connected(self) -> None:
        if not self._connected or self._endpoint is None or self._crypto is None:
            raise ChannelNotOpen("SmartGlass session is not connected")

    def _send_system(self, payload: CommandPayload) -> int:
        if payload.code == POWER_OFF_CODE:
            return self._send_message(
                MessageType.POWER_OFF, packets.power_off_payload(str(payload.value))
            )
        if payload.value == SPECIAL_ACTION_VALUES[SpecialAction.CAPTURE_CLIP]:
            return self._send_message(
                MessageType.GAME_DVR_RECORD,
                packets.game_dvr_record_payload(int(payload.argument)),
                need_ack=True,
            )
        raise UnknownCommand(f"Unsupported system action: {payload.code!r}")

    def _send_message(
        self,
        message_type: MessageType,
        payload: bytes,
        *,
        channel_id: int = CORE_CHANNEL_ID,
        need_ack: bool = False,
    ) -> int:
        if self._endpoint is None or self._crypto is None:
            raise ChannelNotOpen("SmartGlass session is not connected")
        sequence = next(self._sequence)
        datagram = packets.encode_message(
            self._crypto,
            message_type,
            payload,
            sequence=sequence,
            source_participant=self._participant_id,
            channel_id=channel_id,
            need_ack=need_ack,
        )
        self._endpoint.sendto(datagram, (self._host, self._port))
        LOGGER.debug(
            "Sent %s (sequence=%d, channel=%#x)",
            message_type.name,
            sequence,
            channel_id,
        )
        return sequence

    async def _keepalive_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while self._connected:
            await asyncio.sleep(self._keepalive_interval)
            if not self._connected:
                return
            if loop.time() - self._last_heard > self._keepalive_timeout:
                self._lost(TimeoutError("Console stopped answering keepalives"))
                return
            try:
                self._send_message(
                    MessageType.ACK,
                    packets.ack_payload(0),
                    channel_id=ACK_CHANNEL_ID,
                    need_ack=True,
                )
            except OSError as exc:
                self._lost(exc)
                return

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def _datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        if addr[0] != self._host:
            return
        try:
            kind = packets.packet_type(data)
            if kind == PacketType.DISCOVERY_RESPONSE:
                self._resolve_discovery(packets.parse_discovery_response(data))
            elif kind == PacketType.CONNECT_RESPONSE:
                self._resolve_connect(data)
            elif kind == PacketType.MESSAGE:
                self._handle_message(data)
            else:
                LOGGER.debug("Ignoring packet type %#06x", kind)
        except ProtocolError as exc:
            LOGGER.debug("Dropping datagram from %s: %s", addr[0], exc)

    def _resolve_discovery(self, response: packets.DiscoveryResponse) -> None:
        for waiter in self._discovery_waiters:
            if not waiter.done():
                waiter.set_result(response)

    def _resolve_connect(self, data: bytes) -> None:
        waiter = self._connect_waiter
        if waiter is None or waiter.done() or self._crypto is None:
            return
        waiter.set_result(packets.parse_connect_response(self._crypto, data))

    def _handle_message(self, data: bytes) -> None:
        if self._crypto is None or not self._connected:
            return
        header, payload = packets.decode_message(self._crypto, data)
        self._last_heard = asyncio.get_running_loop().time()

        if header.need_ack:
            self._send_message(
                MessageType.ACK,
                packets.ack_payload(header.sequence, [header.sequence]),
                channel_id=ACK_CHANNEL_ID,
            )
        if header.is_fragment:
            LOGGER.debug("Ignoring fragmented message %#x", header.message_type)
            return

        message_type = header.message_type
        if message_type == MessageType.ACK:
            ack = packets.parse_ack(payload)
            for sequence in ack.processed:
                self._emit(
                    InboundFrame(
                        kind=FrameKind.ACK, channel_id=ACK_CHANNEL_ID, sequence=sequence
                    )
                )
        elif message_type == MessageType.CONSOLE_STATUS:
            status = packets.parse_console_status(payload)
            self._console_status = status
            for waiter in self._status_waiters:
                if not waiter.done():
                    waiter.set_result(status)
            self._emit(
                InboundFrame(
                    kind=FrameKind.TELEMETRY,
                    channel_id=header.channel_id,
                    topic="Status",
                    payload=status_telemetry(status),
                )
            )
        elif message_type == MessageType.MEDIA_STATE:
            media = packets.parse_media_state(payload)
            self._media_title_id = media.title_id
            self._emit(
                InboundFrame(
                    kind=FrameKind.TELEMETRY,
                    channel_id=header.channel_id,
                    topic="MediaState",
                    payload=media_telemetry(media),
                )
            )
        elif message_type == MessageType.START_CHANNEL_RESPONSE:
            request_id, channel_id, result = packets.parse_start_channel_response(payload)
            waiter = self._channel_waiters.get(request_id)
            if waiter is not None and not waiter.done():
                if result == 0:
                    waiter.set_result(channel_id)
                else:
                    waiter.set_exception(
                        ChannelNotOpen(f"Console refused channel (result={result})")
                    )
        elif message_type == MessageType.DISCONNECT:
            reason, error_code = packets.parse_disconnect(payload)
            LOGGER.info(
                "Console closed the session (reason=%d, error=%d)", reason, error_code
            )
            self._lost(None)
        else:
            LOGGER.debug("Unhandled message type %#x", message_type)

    def _emit(self, frame: InboundFrame) -> None:
        if self._on_frame is not None:
            self._on_frame(frame)

    def _socket_error(self, exc: Exception) -> None:
        LOGGER.debug("Socket error: %s", exc)
        if self._connected:
            self._lost(exc)

    def _lost(self, exc: Optional[BaseException]) -> None:
        if not self._connected:
            return
        self._teardown()
        if self._on_closed is not None:
            self._on_closed(exc)

    def _teardown(self) -> None:
        self._connected = False
        task = self._keepalive_task
        self._keepalive_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        error = ChannelNotOpen("SmartGlass session closed")
        for waiter in list(self._channel_waiters.values()):
            if not waiter.done():
                waiter.set_exception(error)
                waiter.exception()
        self._channel_waiters.clear()
        self._console_status = None
        self._crypto = None
