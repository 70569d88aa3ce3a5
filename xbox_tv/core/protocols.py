"""Protocol definitions for console transports and callbacks."""

from __future__ import annotations

from typing import Callable, Optional, Protocol

from .models import ChannelName, CommandPayload, Credentials, DeviceInfo, InboundFrame

FrameHandler = Callable[[InboundFrame], None]
ClosedHandler = Callable[[Optional[BaseException]], None]


class ConsoleTransport(Protocol):
    """Minimal contract for the wire connection to one console."""

    def set_handlers(self, on_frame: FrameHandler, on_closed: ClosedHandler) -> None:
        """Route inbound frames and unexpected closure to the session."""
        ...

    async def send_wake(self, live_id: str) -> None:
        """Emit one connectionless wake packet addressed to the console."""
        ...

    async def probe(self, timeout: float) -> bool:
        """Return True when the console answers a discovery request."""
        ...

    async def handshake(
        self, credentials: Optional[Credentials], timeout: float
    ) -> None:
        """Establish the encrypted session.

        Raises:
            AuthenticationRejected: If the console refuses the credentials.
            TransportUnreachable: If the console does not answer.
        """
        ...

    async def open_channel(self, channel: ChannelName, timeout: float) -> int:
        """Open a service channel and return its transport channel id."""
        ...

    async def send(
        self, channel_id: int, channel: ChannelName, payload: CommandPayload
    ) -> int:
        """Send a command and return the sequence number awaiting acknowledgement."""
        ...

    async def request_device_info(self, timeout: float) -> DeviceInfo:
        """Return firmware metadata reported by the console."""
        ...

    async def close(self) -> None:
        """Close the connection. Must be safe to call repeatedly."""
        ...


class MessagePublisher(Protocol):
    """Publishing side of a message-bus client."""

    def publish(
        self, topic: str, payload: bytes, qos: int = 0, retain: bool = False
    ) -> None:
        ...
