"""Local network control of game consoles over SmartGlass."""

from .config import ConsoleConfig, SessionOptions
from .connection import SessionState
from .core import ChannelName, Outcome
from .events import EventName, SessionEvent
from .session import ConsoleSession
from .telemetry import MediaState, PowerState, StateSnapshot

__all__ = [
    "ChannelName",
    "ConsoleConfig",
    "ConsoleSession",
    "EventName",
    "MediaState",
    "Outcome",
    "PowerState",
    "SessionEvent",
    "SessionOptions",
    "SessionState",
    "StateSnapshot",
]

__version__ = "0.1.0"
