"""Named command channels multiplexed over one console connection."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .core import ChannelName, CommandPayload, ConsoleTransport, FrameKind, InboundFrame
from .errors import ChannelNotOpen, XboxTvError

LOGGER = logging.getLogger(__name__)

SYSTEM_CHANNEL_ID = 0
ACK_CHANNEL_ID = 0x1000000000000000

FrameConsumer = Callable[[InboundFrame], None]


@dataclass(slots=True)
class Channel:
    name: ChannelName
    channel_id: int
    is_open: bool = True


class ChannelMultiplexer:
    """Opens channels on demand and routes inbound frames by channel tag.

    The channel table only exists while the session is connected; it is
    dropped as a whole by ``close_all`` and channels are reopened lazily.
    """

    def __init__(
        self,
        transport: ConsoleTransport,
        *,
        is_connected: Callable[[], bool],
        open_timeout: float = 5.0,
    ) -> None:
        self._transport = transport
        self._is_connected = is_connected
        self._open_timeout = open_timeout
        self._channels: Dict[ChannelName, Channel] = {}
        self._opening: Dict[ChannelName, asyncio.Future[Channel]] = {}
        self._consumers: Dict[FrameKind, FrameConsumer] = {}
        self._dropped_frames = 0
        self._generation = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def set_consumer(self, kind: FrameKind, consumer: FrameConsumer) -> None:
        self._consumers[kind] = consumer

    def get(self, name: ChannelName) -> Optional[Channel]:
        return self._channels.get(name)

    def open_channels(self) -> list[ChannelName]:
        return [name for name, channel in self._channels.items() if channel.is_open]

    @property
    def dropped_frames(self) -> int:
        return self._dropped_frames

    async def open(self, name: ChannelName) -> Channel:
        """Return an open handle for ``name``, opening it if needed."""

        if not self._is_connected():
            raise ChannelNotOpen(f"Cannot open {name.value}: session not connected")

        existing = self._channels.get(name)
        if existing is not None and existing.is_open:
            return existing

        if name is ChannelName.SYSTEM:
            channel = Channel(name=name, channel_id=SYSTEM_CHANNEL_ID)
            self._channels[name] = channel
            return channel

        pending = self._opening.get(name)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[Channel] = asyncio.get_running_loop().create_future()
        self._opening[name] = future
        generation = self._generation
        try:
            channel_id = await asyncio.wait_for(
                self._transport.open_channel(name, self._open_timeout),
                timeout=self._open_timeout,
            )
        except asyncio.TimeoutError:
            error = ChannelNotOpen(
                f"Timed out opening {name.value} after {self._open_timeout:.1f}s"
            )
            self._fail_opening(name, future, error)
            raise error from None
        except XboxTvError as exc:
            error = ChannelNotOpen(f"Console refused {name.value}: {exc}")
            self._fail_opening(name, future, error)
            raise error from exc
        except BaseException as exc:
            self._fail_opening(name, future, exc)
            raise
        finally:
            if self._opening.get(name) is future:
                del self._opening[name]

        if generation != self._generation or not self._is_connected():
            error = ChannelNotOpen(f"Session lost while opening {name.value}")
            self._fail_opening(name, future, error)
            raise error

        channel = Channel(name=name, channel_id=channel_id)
        self._channels[name] = channel
        LOGGER.debug("Opened channel %s (id=%s)", name.value, channel_id)
        if not future.done():
            future.set_result(channel)
        return channel

    async def send(self, channel: Channel, payload: CommandPayload) -> int:
        """Send ``payload`` on an open channel and return its sequence number."""

        if not self._is_connected():
            raise ChannelNotOpen(
                f"Cannot send on {channel.name.value}: session not connected"
            )
        if not channel.is_open or self._channels.get(channel.name) is not channel:
            raise ChannelNotOpen(f"Channel {channel.name.value} is not open")

        return await self._transport.send(channel.channel_id, channel.name, payload)

    def route(self, frame: InboundFrame) -> None:
        """Deliver an inbound frame to the consumer registered for its kind."""

        if not self._is_known(frame.channel_id):
            self._dropped_frames += 1
            LOGGER.debug(
                "Dropping %s frame for unknown channel id %#x",
                frame.kind.value,
                frame.channel_id,
            )
            return

        consumer = self._consumers.get(frame.kind)
        if consumer is None:
            self._dropped_frames += 1
            LOGGER.debug("No consumer for %s frame", frame.kind.value)
            return

        consumer(frame)

    def close_all(self) -> None:
        """Tear down every channel; handles become unusable."""

        for channel in self._channels.values():
            channel.is_open = False
        if self._channels:
            LOGGER.debug(
                "Closed channels: %s",
                ", ".join(name.value for name in self._channels),
            )
        self._channels.clear()
        self._generation += 1

        for name, future in list(self._opening.items()):
            if not future.done():
                future.set_exception(
                    ChannelNotOpen(f"Session lost while opening {name.value}")
                )
                # Mark retrieved so an unawaited failure is not reported.
                future.exception()
        self._opening.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _is_known(self, channel_id: int) -> bool:
        if channel_id in (SYSTEM_CHANNEL_ID, ACK_CHANNEL_ID):
            return True
        return any(
            channel.channel_id == channel_id and channel.is_open
            for channel in self._channels.values()
        )

    @staticmethod
    def _fail_opening(
        name: ChannelName,
        future: asyncio.Future[Channel],
        error: BaseException,
    ) -> None:
        if future.done():
            return
        if isinstance(error, asyncio.CancelledError):
            future.cancel()
            return
        future.set_exception(error)
        future.exception()
