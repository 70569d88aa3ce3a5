"""Binary codec for SmartGlass simple packets and encrypted messages.

All integers are big-endian. Strings are length-prefixed UTF-8 followed by a
terminating null byte.
"""

from __future__ import annotations

import json
import struct
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from ..core import Credentials
from ..errors import ProtocolError
from .constants import (
    BLOCK_SIZE,
    LOCAL_JOIN_CAPABILITIES,
    LOCAL_JOIN_CLIENT_VERSION,
    LOCAL_JOIN_DEVICE_TYPE,
    LOCAL_JOIN_DISPLAY_NAME,
    LOCAL_JOIN_DPI,
    LOCAL_JOIN_OS_VERSION,
    LOCAL_JOIN_RESOLUTION,
    MAX_TOKEN_FRAGMENT,
    MESSAGE_HEADER_SIZE,
    PROTOCOL_VERSION,
    SIGNATURE_SIZE,
    ClientType,
    MessageFlag,
    MessageType,
    PacketType,
    PublicKeyType,
)
from .crypto import SmartGlassCrypto

_MESSAGE_HEADER = struct.Struct(">HHIIIHQ")
_CONNECT_HEADER = struct.Struct(">HHHH")
_SIMPLE_HEADER = struct.Struct(">HHH")


# ----------------------------------------------------------------------
# Primitives
# ----------------------------------------------------------------------
def sgstring(text: str) -> bytes:
    encoded = text.encode("utf-8")
    return struct.pack(">H", len(encoded)) + encoded + b"\x00"


class PayloadReader:
    """Sequential reader over a decoded payload."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def _take(self, size: int) -> bytes:
        if size > self.remaining:
            raise ProtocolError(
                f"Payload truncated: wanted {size} bytes, {self.remaining} left"
            )
        chunk = self._data[self._offset : self._offset + size]
        self._offset += size
        return chunk

    def _unpack(self, fmt: str) -> Any:
        return struct.unpack(fmt, self._take(struct.calcsize(fmt)))[0]

    def uint16(self) -> int:
        return self._unpack(">H")

    def uint32(self) -> int:
        return self._unpack(">I")

    def int32(self) -> int:
        return self._unpack(">i")

    def uint64(self) -> int:
        return self._unpack(">Q")

    def float32(self) -> float:
        return self._unpack(">f")

    def raw(self, size: int) -> bytes:
        return self._take(size)

    def sgstring(self) -> str:
        length = self.uint16()
        text = self._take(length)
        self._take(1)
        try:
            return text.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"Invalid string in payload: {exc}") from exc


def packet_type(data: bytes) -> int:
    if len(data) < 2:
        raise ProtocolError("Datagram too short")
    return struct.unpack_from(">H", data)[0]


def _padded_length(length: int) -> int:
    remainder = length % BLOCK_SIZE
    return length if not remainder else length + BLOCK_SIZE - remainder


# ----------------------------------------------------------------------
# Simple packets
# ----------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class DiscoveryResponse:
    flags: int
    client_type: int
    name: str
    console_uuid: str
    last_error: int
    certificate: bytes


@dataclass(slots=True, frozen=True)
class ConnectResponse:
    result: int
    pairing_state: int
    participant_id: int


def discovery_request() -> bytes:
    payload = struct.pack(">IHHH", 0, ClientType.ANDROID, 0, PROTOCOL_VERSION)
    return _SIMPLE_HEADER.pack(PacketType.DISCOVERY_REQUEST, len(payload), 0) + payload


def parse_discovery_response(data: bytes) -> DiscoveryResponse:
    if len(data) < _SIMPLE_HEADER.size:
        raise ProtocolError("Discovery response too short")
    kind, length, _version = _SIMPLE_HEADER.unpack_from(data)
    if kind != PacketType.DISCOVERY_RESPONSE:
        raise ProtocolError(f"Not a discovery response: {kind:#06x}")

    reader = PayloadReader(data[_SIMPLE_HEADER.size : _SIMPLE_HEADER.size + length])
    flags = reader.uint32()
    client_type = reader.uint16()
    name = reader.sgstring()
    console_uuid = reader.sgstring()
    last_error = reader.uint32()
    certificate = reader.raw(reader.uint16())
    return DiscoveryResponse(
        flags=flags,
        client_type=client_type,
        name=name,
        console_uuid=console_uuid,
        last_error=last_error,
        certificate=certificate,
    )


def power_on_request(live_id: str) -> bytes:
    payload = sgstring(live_id)
    return _SIMPLE_HEADER.pack(PacketType.POWER_ON_REQUEST, len(payload), 0) + payload


def _token_fragments(token: str) -> List[str]:
    if len(token) <= MAX_TOKEN_FRAGMENT:
        return [token]
    return [
        token[index : index + MAX_TOKEN_FRAGMENT]
        for index in range(0, len(token), MAX_TOKEN_FRAGMENT)
    ]


def connect_requests(
    crypto: SmartGlassCrypto,
    device_id: uuid.UUID,
    credentials: Optional[Credentials],
    *,
    first_request: int = 0,
) -> List[bytes]:
    """Build the connect request group; long tokens span several requests."""

    user_hash = credentials.user_hash if credentials is not None else ""
    token = credentials.user_token if credentials is not None else ""
    fragments = _token_fragments(token)
    group_end = first_request + len(fragments)

    packets = []
    for offset, fragment in enumerate(fragments):
        iv = crypto.generate_iv()
        unprotected = (
            device_id.bytes
            + struct.pack(">H", PublicKeyType.EC_DH_P256)
            + crypto.public_key_bytes
            + iv
        )
        protected = (
            sgstring(user_hash)
            + sgstring(fragment)
            + struct.pack(">III", first_request + offset, first_request, group_end)
        )
        header = _CONNECT_HEADER.pack(
            PacketType.CONNECT_REQUEST,
            len(unprotected),
            len(protected),
            PROTOCOL_VERSION,
        )
        body = header + unprotected + crypto.encrypt(protected, iv)
        packets.append(body + crypto.sign(body))
    return packets


def parse_connect_response(crypto: SmartGlassCrypto, data: bytes) -> ConnectResponse:
    if len(data) < _CONNECT_HEADER.size + SIGNATURE_SIZE:
        raise ProtocolError("Connect response too short")
    kind, unprotected_length, protected_length, _version = _CONNECT_HEADER.unpack_from(
        data
    )
    if kind != PacketType.CONNECT_RESPONSE:
        raise ProtocolError(f"Not a connect response: {kind:#06x}")

    crypto.verify(data[:-SIGNATURE_SIZE], data[-SIGNATURE_SIZE:])
    start = _CONNECT_HEADER.size
    iv = data[start : start + unprotected_length][:BLOCK_SIZE]
    start += unprotected_length
    encrypted = data[start : start + _padded_length(protected_length)]
    plain = crypto.decrypt(encrypted, iv)[:protected_length]

    reader = PayloadReader(plain)
    return ConnectResponse(
        result=reader.uint16(),
        pairing_state=reader.uint16(),
        participant_id=reader.uint32(),
    )


# ----------------------------------------------------------------------
# Encrypted messages
# ----------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class MessageHeader:
    message_type: int
    sequence: int
    target_participant: int
    source_participant: int
    channel_id: int
    need_ack: bool = False
    is_fragment: bool = False
    protected_length: int = 0


def encode_message(
    crypto: SmartGlassCrypto,
    message_type: MessageType,
    payload: bytes,
    *,
    sequence: int,
    source_participant: int,
    channel_id: int,
    target_participant: int = 0,
    need_ack: bool = False,
) -> bytes:
    flags = MessageFlag.VERSION_2 | (int(message_type) & MessageFlag.TYPE_MASK)
    if need_ack:
        flags |= MessageFlag.NEED_ACK
    header = _MESSAGE_HEADER.pack(
        PacketType.MESSAGE,
        len(payload),
        sequence,
        target_participant,
        source_participant,
        flags,
        channel_id,
    )
    body = header + crypto.encrypt(payload, crypto.generate_iv(header))
    return body + crypto.sign(body)


def decode_message(crypto: SmartGlassCrypto, data: bytes) -> Tuple[MessageHeader, bytes]:
    """Verify and decrypt a message datagram.

    Raises:
        ProtocolError: If the datagram is malformed or its signature is invalid.
    """

    if len(data) < MESSAGE_HEADER_SIZE + SIGNATURE_SIZE:
        raise ProtocolError("Message datagram too short")

    (
        kind,
        protected_length,
        sequence,
        target,
        source,
        flags,
        channel_id,
    ) = _MESSAGE_HEADER.unpack_from(data)
    if kind != PacketType.MESSAGE:
        raise ProtocolError(f"Not a message: {kind:#06x}")

    crypto.verify(data[:-SIGNATURE_SIZE], data[-SIGNATURE_SIZE:])
    iv = crypto.generate_iv(data[:MESSAGE_HEADER_SIZE])
    payload = crypto.decrypt(data[MESSAGE_HEADER_SIZE:-SIGNATURE_SIZE], iv)

    header = MessageHeader(
        message_type=flags & MessageFlag.TYPE_MASK,
        sequence=sequence,
        target_participant=target,
        source_participant=source,
        channel_id=channel_id,
        need_ack=bool(flags & MessageFlag.NEED_ACK),
        is_fragment=bool(flags & MessageFlag.IS_FRAGMENT),
        protected_length=protected_length,
    )
    return header, payload[:protected_length]


# ----------------------------------------------------------------------
# Message payloads
# ----------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class Ack:
    low_watermark: int
    processed: Tuple[int, ...] = ()
    rejected: Tuple[int, ...] = ()


@dataclass(slots=True, frozen=True)
class ActiveTitle:
    title_id: int
    disposition: int
    product_id: bytes
    sandbox_id: bytes
    aum: str

    @property
    def has_focus(self) -> bool:
        return bool(self.disposition & 0x8000)


@dataclass(slots=True, frozen=True)
class ConsoleStatus:
    live_tv_provider: int
    major_version: int
    minor_version: int
    build_number: int
    locale: str
    active_titles: Tuple[ActiveTitle, ...] = ()

    @property
    def firmware_revision(self) -> str:
        return f"{self.major_version}.{self.minor_version}.{self.build_number}"

    @property
    def focused_title(self) -> Optional[ActiveTitle]:
        for title in self.active_titles:
            if title.has_focus:
                return title
        return self.active_titles[0] if self.active_titles else None


@dataclass(slots=True, frozen=True)
class MediaStatus:
    title_id: int
    aum: str
    asset_id: str
    media_type: int
    sound_level: int
    enabled_commands: int
    playback_status: int
    rate: float
    position: int
    media_start: int
    media_end: int
    min_seek: int
    max_seek: int
    metadata: dict = field(default_factory=dict)


def _uint32_list(values: Sequence[int]) -> bytes:
    return struct.pack(">I", len(values)) + b"".join(
        struct.pack(">I", value) for value in values
    )


def ack_payload(
    low_watermark: int,
    processed: Iterable[int] = (),
    rejected: Iterable[int] = (),
) -> bytes:
    return (
        struct.pack(">I", low_watermark)
        + _uint32_list(list(processed))
        + _uint32_list(list(rejected))
    )


def parse_ack(payload: bytes) -> Ack:
    reader = PayloadReader(payload)
    low_watermark = reader.uint32()
    processed = tuple(reader.uint32() for _ in range(reader.uint32()))
    rejected = tuple(reader.uint32() for _ in range(reader.uint32()))
    return Ack(low_watermark=low_watermark, processed=processed, rejected=rejected)


def local_join_payload(display_name: str = LOCAL_JOIN_DISPLAY_NAME) -> bytes:
    width, height = LOCAL_JOIN_RESOLUTION
    dpi_x, dpi_y = LOCAL_JOIN_DPI
    os_major, os_minor = LOCAL_JOIN_OS_VERSION
    return (
        struct.pack(
            ">HHHHHQIII",
            LOCAL_JOIN_DEVICE_TYPE,
            width,
            height,
            dpi_x,
            dpi_y,
            LOCAL_JOIN_CAPABILITIES,
            LOCAL_JOIN_CLIENT_VERSION,
            os_major,
            os_minor,
        )
        + sgstring(display_name)
    )


def start_channel_request(
    request_id: int, service: uuid.UUID, *, title_id: int = 0, activity_id: int = 0
) -> bytes:
    return (
        struct.pack(">II", request_id, title_id)
        + service.bytes
        + struct.pack(">I", activity_id)
    )


def parse_start_channel_response(payload: bytes) -> Tuple[int, int, int]:
    """Return ``(request_id, channel_id, result)``."""

    reader = PayloadReader(payload)
    return reader.uint32(), reader.uint64(), reader.uint32()


def parse_console_status(payload: bytes) -> ConsoleStatus:
    reader = PayloadReader(payload)
    live_tv_provider = reader.uint32()
    major = reader.uint32()
    minor = reader.uint32()
    build = reader.uint32()
    locale = reader.sgstring()

    titles = []
    for _ in range(reader.uint16()):
        titles.append(
            ActiveTitle(
                title_id=reader.uint32(),
                disposition=reader.uint16(),
                product_id=reader.raw(16),
                sandbox_id=reader.raw(16),
                aum=reader.sgstring(),
            )
        )

    return ConsoleStatus(
        live_tv_provider=live_tv_provider,
        major_version=major,
        minor_version=minor,
        build_number=build,
        locale=locale,
        active_titles=tuple(titles),
    )


def parse_media_state(payload: bytes) -> MediaStatus:
    reader = PayloadReader(payload)
    title_id = reader.uint32()
    aum = reader.sgstring()
    asset_id = reader.sgstring()
    media_type = reader.uint16()
    sound_level = reader.uint16()
    enabled_commands = reader.uint32()
    playback_status = reader.uint16()
    rate = reader.float32()
    position = reader.uint64()
    media_start = reader.uint64()
    media_end = reader.uint64()
    min_seek = reader.uint64()
    max_seek = reader.uint64()
    metadata = {}
    for _ in range(reader.uint16()):
        name = reader.sgstring()
        metadata[name] = reader.sgstring()

    return MediaStatus(
        title_id=title_id,
        aum=aum,
        asset_id=asset_id,
        media_type=media_type,
        sound_level=sound_level,
        enabled_commands=enabled_commands,
        playback_status=playback_status,
        rate=rate,
        position=position,
        media_start=media_start,
        media_end=media_end,
        min_seek=min_seek,
        max_seek=max_seek,
        metadata=metadata,
    )


def media_command_payload(
    request_id: int, title_id: int, command: int, seek_position: Optional[int] = None
) -> bytes:
    payload = struct.pack(">QII", request_id, title_id, command)
    if seek_position is not None:
        payload += struct.pack(">Q", seek_position)
    return payload


def gamepad_payload(timestamp: int, buttons: int) -> bytes:
    return struct.pack(">QH6f", timestamp, buttons, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)


def json_payload(document: dict) -> bytes:
    return sgstring(json.dumps(document, separators=(",", ":")))


def parse_json(payload: bytes) -> Any:
    text = PayloadReader(payload).sgstring()
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ProtocolError(f"Invalid JSON message: {exc}") from exc


def power_off_payload(live_id: str) -> bytes:
    return sgstring(live_id)


def game_dvr_record_payload(seconds: int) -> bytes:
    return struct.pack(">ii", -abs(seconds), 0)


def disconnect_payload(reason: int, error_code: int = 0) -> bytes:
    return struct.pack(">II", reason, error_code)


def parse_disconnect(payload: bytes) -> Tuple[int, int]:
    reader = PayloadReader(payload)
    return reader.uint32(), reader.uint32()
