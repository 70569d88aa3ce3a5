"""SmartGlass wire protocol: packet codec and session cryptography."""

from .constants import MessageType, PacketType
from .crypto import SmartGlassCrypto
from .packets import (
    ConnectResponse,
    ConsoleStatus,
    DiscoveryResponse,
    MediaStatus,
    MessageHeader,
)

__all__ = [
    "ConnectResponse",
    "ConsoleStatus",
    "DiscoveryResponse",
    "MediaStatus",
    "MessageHeader",
    "MessageType",
    "PacketType",
    "SmartGlassCrypto",
]
