"""Value types shared between the session core and its transports."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from ..errors import XboxTvError


class ChannelName(str, Enum):
    """Logical command channels multiplexed over one console connection."""

    SYSTEM = "system"
    MEDIA = "media-transport"
    INPUT = "input-navigation"
    REMOTE = "remote-passthrough"


class FrameKind(str, Enum):
    """Kinds of inbound frames routed by the channel multiplexer."""

    ACK = "ack"
    TELEMETRY = "telemetry"


@dataclass(slots=True, frozen=True)
class Credentials:
    """Opaque account material presented during the handshake."""

    user_token: str
    user_hash: str


@dataclass(slots=True, frozen=True)
class DeviceInfo:
    firmware_revision: str
    locale: Optional[str] = None
    live_tv_provider: Optional[int] = None


@dataclass(slots=True, frozen=True)
class InboundFrame:
    """A decoded frame received from the console.

    ``channel_id`` is the transport-level channel tag. Acknowledgement frames
    carry the acknowledged ``sequence``; telemetry frames carry a ``topic`` and
    the decoded ``payload`` fields.
    """

    kind: FrameKind
    channel_id: int
    sequence: Optional[int] = None
    topic: str = ""
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class CommandPayload:
    """Wire-ready command: vocabulary code, protocol value, optional argument."""

    code: str
    value: Any
    argument: Optional[Any] = None


@dataclass(slots=True, frozen=True)
class Outcome:
    """Result of a session operation. Never carries transport detail."""

    ok: bool
    error: Optional[XboxTvError] = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: XboxTvError) -> "Outcome":
        return cls(ok=False, error=error)

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error is not None else None

    def __bool__(self) -> bool:
        return self.ok
