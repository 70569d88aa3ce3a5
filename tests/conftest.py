import asyncio
from typing import Any, Callable, List, Optional, Tuple

import pytest

from xbox_tv.channels import ACK_CHANNEL_ID, SYSTEM_CHANNEL_ID
from xbox_tv.config import (
    CommandConfig,
    ConsoleConfig,
    PowerConfig,
    ResilienceConfig,
    SessionOptions,
)
from xbox_tv.core import ChannelName, CommandPayload, DeviceInfo, FrameKind, InboundFrame
from xbox_tv.errors import AuthenticationRejected
from xbox_tv.events import SessionEvent, Subscription


class FakeTransport:
    """In-memory console transport recording every I/O request."""

    def __init__(
        self,
        *,
        reachable: bool = True,
        reachable_after_wakes: Optional[int] = None,
        auto_ack: bool = True,
        reject_auth: bool = False,
        device_info: Optional[DeviceInfo] = None,
        device_info_error: Optional[BaseException] = None,
    ) -> None:
        self.reachable = reachable
        self.reachable_after_wakes = reachable_after_wakes
        self.auto_ack = auto_ack
        self.reject_auth = reject_auth
        self.device_info = device_info or DeviceInfo(firmware_revision="10.0.19041.4043")
        self.device_info_error = device_info_error

        self.calls: List[Tuple[str, Any]] = []
        self.wakes: List[str] = []
        self.handshakes: List[Any] = []
        self.opened: List[ChannelName] = []
        self.sends: List[Tuple[ChannelName, CommandPayload]] = []
        self.close_count = 0

        self._on_frame: Optional[Callable[[InboundFrame], None]] = None
        self._on_closed: Optional[Callable[[Optional[BaseException]], None]] = None
        self._sequence = 0
        self._next_channel_id = 100

    # transport interface ----------------------------------------------
    def set_handlers(self, on_frame, on_closed) -> None:
        self._on_frame = on_frame
        self._on_closed = on_closed

    async def send_wake(self, live_id: str) -> None:
        self.calls.append(("wake", live_id))
        self.wakes.append(live_id)

    async def probe(self, timeout: float) -> bool:
        self.calls.append(("probe", timeout))
        if self.reachable_after_wakes is not None:
            return len(self.wakes) >= self.reachable_after_wakes
        return self.reachable

    async def handshake(self, credentials, timeout: float) -> None:
        self.calls.append(("handshake", credentials))
        self.handshakes.append(credentials)
        if self.reject_auth:
            raise AuthenticationRejected("Console rejected user token")

    async def open_channel(self, channel: ChannelName, timeout: float) -> int:
        self.calls.append(("open_channel", channel))
        self.opened.append(channel)
        self._next_channel_id += 1
        return self._next_channel_id

    async def send(
        self, channel_id: int, channel: ChannelName, payload: CommandPayload
    ) -> int:
        self.calls.append(("send", (channel, payload.code)))
        self.sends.append((channel, payload))
        self._sequence += 1
        sequence = self._sequence
        if self.auto_ack:
            asyncio.get_running_loop().call_soon(self.ack, sequence)
        return sequence

    async def request_device_info(self, timeout: float) -> DeviceInfo:
        self.calls.append(("device_info", timeout))
        if self.device_info_error is not None:
            raise self.device_info_error
        return self.device_info

    async def close(self) -> None:
        self.close_count += 1

    # test helpers -------------------------------------------------------
    def ack(self, sequence: int) -> None:
        assert self._on_frame is not None
        self._on_frame(
            InboundFrame(kind=FrameKind.ACK, channel_id=ACK_CHANNEL_ID, sequence=sequence)
        )

    def telemetry(
        self,
        payload: dict,
        *,
        topic: str = "Status",
        channel_id: int = SYSTEM_CHANNEL_ID,
    ) -> None:
        assert self._on_frame is not None
        self._on_frame(
            InboundFrame(
                kind=FrameKind.TELEMETRY,
                channel_id=channel_id,
                topic=topic,
                payload=payload,
            )
        )

    def drop(self, exc: Optional[BaseException] = None) -> None:
        assert self._on_closed is not None
        self._on_closed(exc)

    def sent_codes(self, channel: Optional[ChannelName] = None) -> List[str]:
        return [
            payload.code
            for sent_channel, payload in self.sends
            if channel is None or sent_channel is channel
        ]


def fast_options(
    *,
    ack_timeout: float = 0.05,
    max_retries: int = 1,
    wake_attempts: int = 3,
    power_on_timeout: float = 0.2,
    reconnect_max_attempts: int = 2,
) -> SessionOptions:
    return SessionOptions(
        power=PowerConfig(
            wake_attempts=wake_attempts,
            wake_interval_seconds=0.0,
            power_on_timeout_seconds=power_on_timeout,
            probe_interval_seconds=0.01,
            probe_timeout_seconds=0.05,
        ),
        commands=CommandConfig(
            ack_timeout_seconds=ack_timeout,
            max_retries=max_retries,
            channel_open_timeout_seconds=0.2,
        ),
        resilience=ResilienceConfig(
            connect_timeout_seconds=0.2,
            reconnect_initial_seconds=0.01,
            reconnect_max_seconds=0.02,
            reconnect_max_attempts=reconnect_max_attempts,
            keepalive_interval_seconds=0.05,
            keepalive_timeout_seconds=0.2,
            device_info_timeout_seconds=0.1,
        ),
    )


def make_console(**overrides: Any) -> ConsoleConfig:
    values = {
        "host": "192.0.2.10",
        "live_id": "FD00112233445566",
        "name": "Living Room",
    }
    values.update(overrides)
    return ConsoleConfig(**values)


def drain(subscription: Subscription) -> List[SessionEvent]:
    events: List[SessionEvent] = []
    while True:
        try:
            events.append(subscription.get_nowait())
        except asyncio.QueueEmpty:
            return events


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def console() -> ConsoleConfig:
    return make_console()
