"""SmartGlass protocol constants."""

from __future__ import annotations

import uuid
from enum import IntEnum

PROTOCOL_VERSION = 2
MESSAGE_HEADER_SIZE = 26
SIGNATURE_SIZE = 32
BLOCK_SIZE = 16
MAX_TOKEN_FRAGMENT = 1024

CORE_CHANNEL_ID = 0
ACK_CHANNEL_ID = 0x1000000000000000

KEY_PREPEND = bytes.fromhex("D637F1AAE2F0418C")
KEY_APPEND = bytes.fromhex("A8F81A574E228AB7")


class PacketType(IntEnum):
    CONNECT_REQUEST = 0xCC00
    CONNECT_RESPONSE = 0xCC01
    DISCOVERY_REQUEST = 0xDD00
    DISCOVERY_RESPONSE = 0xDD01
    POWER_ON_REQUEST = 0xDD02
    MESSAGE = 0xD00D


class MessageType(IntEnum):
    ACK = 0x1
    LOCAL_JOIN = 0x3
    JSON = 0x1C
    CONSOLE_STATUS = 0x1E
    START_CHANNEL_REQUEST = 0x26
    START_CHANNEL_RESPONSE = 0x27
    DISCONNECT = 0x2A
    GAME_DVR_RECORD = 0x38
    POWER_OFF = 0x39
    MEDIA_COMMAND = 0xF01
    MEDIA_STATE = 0xF03
    GAMEPAD = 0xF0A


class MessageFlag(IntEnum):
    VERSION_2 = 0x8000
    NEED_ACK = 0x2000
    IS_FRAGMENT = 0x1000
    TYPE_MASK = 0x0FFF


class ClientType(IntEnum):
    ANDROID = 8


class PublicKeyType(IntEnum):
    EC_DH_P256 = 0


class ConnectionResult(IntEnum):
    SUCCESS = 0
    PENDING = 1
    FAILURE_UNKNOWN = 2
    FAILURE_ANONYMOUS_DISALLOWED = 3
    FAILURE_DEVICE_LIMIT_EXCEEDED = 4
    FAILURE_SMARTGLASS_DISABLED = 5
    FAILURE_USER_AUTH_FAILED = 6
    FAILURE_USER_SIGNIN_FAILED = 7
    FAILURE_USER_SIGNIN_TIMEOUT = 8
    FAILURE_USER_SIGNIN_REQUIRED = 9


# Connect results that reject the credential exchange itself; every other
# refusal is transient.
AUTHENTICATION_FAILURES = frozenset(
    {
        ConnectionResult.FAILURE_ANONYMOUS_DISALLOWED,
        ConnectionResult.FAILURE_USER_AUTH_FAILED,
        ConnectionResult.FAILURE_USER_SIGNIN_FAILED,
        ConnectionResult.FAILURE_USER_SIGNIN_TIMEOUT,
        ConnectionResult.FAILURE_USER_SIGNIN_REQUIRED,
    }
)


class PlaybackStatus(IntEnum):
    CLOSED = 0
    CHANGING = 1
    STOPPED = 2
    PLAYING = 3
    PAUSED = 4


class SoundLevel(IntEnum):
    MUTED = 0
    LOW = 1
    FULL = 2


class DisconnectReason(IntEnum):
    UNSPECIFIED = 0
    ERROR = 1
    POWER_OFF = 2
    MAINTENANCE = 3
    APP_CLOSE = 4
    SIGNED_OUT = 5
    REBOOT = 6


# Title service endpoints opened with a start channel request.
SERVICE_SYSTEM_INPUT = uuid.UUID("fa20b8ca-66fb-46e0-adb6-0b978a59d35f")
SERVICE_TV_REMOTE = uuid.UUID("d451e3b3-60bb-4c71-b3db-f994b1aca3a7")
SERVICE_SYSTEM_MEDIA = uuid.UUID("48a9ca24-eb6d-4e12-8c43-d57469edd3cd")

# Display parameters announced in the local join message.
LOCAL_JOIN_DISPLAY_NAME = "xbox-tv"
LOCAL_JOIN_DEVICE_TYPE = ClientType.ANDROID
LOCAL_JOIN_RESOLUTION = (1080, 1920)
LOCAL_JOIN_DPI = (96, 96)
LOCAL_JOIN_CAPABILITIES = 0xFFFFFFFFFFFFFFFF
LOCAL_JOIN_CLIENT_VERSION = 15
LOCAL_JOIN_OS_VERSION = (6, 2)
