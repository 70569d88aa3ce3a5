"""Core primitives for xbox-tv."""

from .models import (
    ChannelName,
    CommandPayload,
    Credentials,
    DeviceInfo,
    FrameKind,
    InboundFrame,
    Outcome,
)
from .protocols import ClosedHandler, ConsoleTransport, FrameHandler, MessagePublisher

__all__ = [
    "ChannelName",
    "ClosedHandler",
    "CommandPayload",
    "ConsoleTransport",
    "Credentials",
    "DeviceInfo",
    "FrameHandler",
    "FrameKind",
    "InboundFrame",
    "MessagePublisher",
    "Outcome",
]
