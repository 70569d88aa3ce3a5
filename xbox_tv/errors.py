"""Error taxonomy for console sessions."""

from __future__ import annotations

from typing import Optional


class XboxTvError(RuntimeError):
    """Base class for failures surfaced by a console session."""

    code = "error"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class TransportUnreachable(XboxTvError):
    """Raised when the console cannot be reached (connect or wake failed)."""

    code = "transport_unreachable"


class AuthenticationRejected(XboxTvError):
    """Raised when the console refuses the credential exchange.

    Fatal for the session: no retry is attempted.
    """

    code = "authentication_rejected"


class ChannelNotOpen(XboxTvError):
    """Raised when a channel is used while the session is not connected."""

    code = "channel_not_open"


class UnknownCommand(XboxTvError):
    """Raised for a command code outside the channel vocabulary."""

    code = "unknown_command"


class CommandTimeout(XboxTvError):
    """Raised when a command stays unacknowledged after its retry.

    The outcome is ambiguous: the console may or may not have acted.
    """

    code = "command_timeout"


class SessionLost(XboxTvError):
    """Raised for commands pending when the connection dropped."""

    code = "session_lost"


class PowerOnTimeout(XboxTvError):
    """Raised when a woken console never becomes reachable."""

    code = "power_on_timeout"


class ProtocolError(XboxTvError):
    """Raised when a datagram cannot be decoded or verified."""

    code = "protocol_error"
