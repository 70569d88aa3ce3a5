"""Command vocabularies and the per-channel command dispatcher."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Mapping, Optional

from .channels import ChannelMultiplexer
from .core import ChannelName, CommandPayload, InboundFrame, Outcome
from .errors import (
    ChannelNotOpen,
    CommandTimeout,
    ProtocolError,
    SessionLost,
    UnknownCommand,
    XboxTvError,
)

LOGGER = logging.getLogger(__name__)


class MediaCommand(str, Enum):
    PLAY = "play"
    PAUSE = "pause"
    PLAY_PAUSE = "playpause"
    STOP = "stop"
    RECORD = "record"
    NEXT_TRACK = "nextTrack"
    PREV_TRACK = "prevTrack"
    FAST_FORWARD = "fastForward"
    REWIND = "rewind"
    CHANNEL_UP = "channelUp"
    CHANNEL_DOWN = "channelDown"
    BACK = "back"
    VIEW = "view"
    MENU = "menu"
    SEEK = "seek"


class InputCommand(str, Enum):
    NEXUS = "nexus"
    MENU = "menu"
    VIEW = "view"
    A = "a"
    B = "b"
    X = "x"
    Y = "y"
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"


class RemoteCommand(str, Enum):
    VOLUME_UP = "volUp"
    VOLUME_DOWN = "volDown"
    VOLUME_MUTE = "volMute"
    CHANNEL_UP = "chUp"
    CHANNEL_DOWN = "chDown"
    POWER = "power"


class SpecialAction(str, Enum):
    CAPTURE_CLIP = "capture-clip"


# Media control flags understood by the console media service.
MEDIA_COMMAND_VALUES: Mapping[MediaCommand, int] = {
    MediaCommand.PLAY: 2,
    MediaCommand.PAUSE: 4,
    MediaCommand.PLAY_PAUSE: 8,
    MediaCommand.STOP: 16,
    MediaCommand.RECORD: 32,
    MediaCommand.NEXT_TRACK: 64,
    MediaCommand.PREV_TRACK: 128,
    MediaCommand.FAST_FORWARD: 256,
    MediaCommand.REWIND: 512,
    MediaCommand.CHANNEL_UP: 1024,
    MediaCommand.CHANNEL_DOWN: 2048,
    MediaCommand.BACK: 4096,
    MediaCommand.VIEW: 8192,
    MediaCommand.MENU: 16384,
    MediaCommand.SEEK: 32768,
}

# Gamepad button flags.
INPUT_COMMAND_VALUES: Mapping[InputCommand, int] = {
    InputCommand.NEXUS: 2,
    InputCommand.MENU: 4,
    InputCommand.VIEW: 8,
    InputCommand.A: 16,
    InputCommand.B: 32,
    InputCommand.X: 64,
    InputCommand.Y: 128,
    InputCommand.UP: 256,
    InputCommand.DOWN: 512,
    InputCommand.LEFT: 1024,
    InputCommand.RIGHT: 2048,
}

# IR passthrough key names of the TV remote service.
REMOTE_COMMAND_VALUES: Mapping[RemoteCommand, str] = {
    RemoteCommand.VOLUME_UP: "btn.vol_up",
    RemoteCommand.VOLUME_DOWN: "btn.vol_down",
    RemoteCommand.VOLUME_MUTE: "btn.vol_mute",
    RemoteCommand.CHANNEL_UP: "btn.ch_up",
    RemoteCommand.CHANNEL_DOWN: "btn.ch_down",
    RemoteCommand.POWER: "btn.power",
}

SPECIAL_ACTION_VALUES: Mapping[SpecialAction, str] = {
    SpecialAction.CAPTURE_CLIP: "game_dvr_record",
}

DEFAULT_CLIP_SECONDS = 60

# Wire field limits: seek positions are uint64, clip lengths int32.
MAX_SEEK_POSITION = 2**64 - 1
MAX_CLIP_SECONDS = 2**31 - 1

POWER_OFF_CODE = "power-off"

_VOCABULARIES: Dict[ChannelName, tuple[type[Enum], Mapping[Any, Any]]] = {
    ChannelName.MEDIA: (MediaCommand, MEDIA_COMMAND_VALUES),
    ChannelName.INPUT: (InputCommand, INPUT_COMMAND_VALUES),
    ChannelName.REMOTE: (RemoteCommand, REMOTE_COMMAND_VALUES),
    ChannelName.SYSTEM: (SpecialAction, SPECIAL_ACTION_VALUES),
}


def parse_channel(channel: ChannelName | str) -> ChannelName:
    if isinstance(channel, ChannelName):
        return channel
    try:
        return ChannelName(channel)
    except ValueError:
        raise UnknownCommand(f"Unsupported channel: {channel!r}") from None


def resolve_command(
    channel: ChannelName | str, code: str, argument: Optional[Any] = None
) -> CommandPayload:
    """Validate ``code`` against the channel vocabulary and build its payload.

    Raises:
        UnknownCommand: If the channel or code is not supported, or a required
            argument is missing.
    """

    channel_name = parse_channel(channel)
    vocabulary, values = _VOCABULARIES[channel_name]
    try:
        member = vocabulary(code)
    except ValueError:
        raise UnknownCommand(
            f"Unknown command {code!r} for channel {channel_name.value}"
        ) from None

    if member is MediaCommand.SEEK:
        if not isinstance(argument, int) or isinstance(argument, bool) or argument < 0:
            raise UnknownCommand("seek requires a non-negative position argument")
        if argument > MAX_SEEK_POSITION:
            raise UnknownCommand(f"seek position {argument} is out of range")
    elif member is SpecialAction.CAPTURE_CLIP:
        seconds = DEFAULT_CLIP_SECONDS if argument is None else argument
        if not isinstance(seconds, int) or isinstance(seconds, bool) or seconds <= 0:
            raise UnknownCommand("capture-clip duration must be a positive integer")
        if seconds > MAX_CLIP_SECONDS:
            raise UnknownCommand(f"capture-clip duration {seconds} is out of range")
        argument = seconds

    return CommandPayload(code=member.value, value=values[member], argument=argument)


class CommandStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed-out"


@dataclass(slots=True, eq=False)
class Command:
    channel: ChannelName
    payload: CommandPayload
    issued_at: float
    future: asyncio.Future[None]
    attempts: int = 0
    retries: int = 0
    status: CommandStatus = CommandStatus.PENDING
    sequences: list[int] = field(default_factory=list)
    acked: asyncio.Event = field(default_factory=asyncio.Event)


class CommandDispatcher:
    """Queues, sends, retries and times out commands per channel.

    Commands on one channel are delivered strictly in submission order by a
    dedicated pump task. Each attempt waits ``ack_timeout`` for the console's
    acknowledgement; an unacknowledged command is retried ``max_retries`` times
    and then fails with ``CommandTimeout``.
    """

    def __init__(
        self,
        multiplexer: ChannelMultiplexer,
        *,
        is_connected: Callable[[], bool],
        ack_timeout: float = 2.0,
        max_retries: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._multiplexer = multiplexer
        self._is_connected = is_connected
        self._ack_timeout = ack_timeout
        self._max_retries = max(0, max_retries)
        self._clock = clock
        self._queues: Dict[ChannelName, Deque[Command]] = {}
        self._pumps: Dict[ChannelName, asyncio.Task[None]] = {}
        self._awaiting: Dict[int, Command] = {}
        self._early_acks: Deque[int] = deque(maxlen=64)
        self._stats = {"sent": 0, "retried": 0, "acked": 0, "timed_out": 0, "lost": 0}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def submit(
        self,
        channel: ChannelName | str,
        code: str,
        argument: Optional[Any] = None,
    ) -> Outcome:
        try:
            channel_name = parse_channel(channel)
            payload = resolve_command(channel_name, code, argument)
        except UnknownCommand as exc:
            LOGGER.warning("Rejected command: %s", exc)
            return Outcome.failure(exc)

        return await self.submit_payload(channel_name, payload)

    async def submit_payload(
        self, channel: ChannelName, payload: CommandPayload
    ) -> Outcome:
        """Queue an already validated payload and wait for its resolution."""

        if not self._is_connected():
            return Outcome.failure(
                ChannelNotOpen(
                    f"Cannot send {payload.code!r} on {channel.value}: session not connected"
                )
            )

        command = Command(
            channel=channel,
            payload=payload,
            issued_at=self._clock(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._queues.setdefault(channel, deque()).append(command)
        self._ensure_pump(channel)

        try:
            await asyncio.shield(command.future)
        except XboxTvError as exc:
            return Outcome.failure(exc)
        return Outcome.success()

    def handle_ack(self, frame: InboundFrame) -> None:
        """Consume an acknowledgement frame routed by the multiplexer."""

        sequence = frame.sequence
        if sequence is None:
            return
        command = self._awaiting.get(sequence)
        if command is None:
            self._early_acks.append(sequence)
            return
        command.acked.set()

    def fail_pending(self, reason: str = "Connection to console lost") -> int:
        """Fail every queued and in-flight command with ``SessionLost``."""

        failed = 0
        for queue in self._queues.values():
            while queue:
                command = queue.popleft()
                if self._resolve(command, CommandStatus.FAILED, SessionLost(reason)):
                    failed += 1

        for task in self._pumps.values():
            task.cancel()
        self._pumps.clear()
        self._awaiting.clear()
        self._early_acks.clear()

        if failed:
            self._stats["lost"] += failed
            LOGGER.info("Failed %d pending command(s): %s", failed, reason)
        return failed

    @property
    def pending_count(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ensure_pump(self, channel: ChannelName) -> None:
        task = self._pumps.get(channel)
        if task is not None and not task.done():
            return
        self._pumps[channel] = asyncio.create_task(self._pump(channel))

    async def _pump(self, channel: ChannelName) -> None:
        queue = self._queues[channel]
        try:
            while queue:
                command = queue[0]
                try:
                    if not command.future.done():
                        await self._execute(command)
                except asyncio.CancelledError:
                    self._resolve(
                        command,
                        CommandStatus.FAILED,
                        SessionLost("Command dispatch cancelled"),
                    )
                    raise
                finally:
                    if queue and queue[0] is command:
                        queue.popleft()
        finally:
            if self._pumps.get(channel) is asyncio.current_task():
                del self._pumps[channel]

    async def _execute(self, command: Command) -> None:
        try:
            handle = await self._multiplexer.open(command.channel)
            for attempt in range(self._max_retries + 1):
                if attempt:
                    command.retries += 1
                    self._stats["retried"] += 1
                    LOGGER.info(
                        "Retrying %s on %s (attempt %d)",
                        command.payload.code,
                        command.channel.value,
                        attempt + 1,
                    )
                command.attempts += 1
                sequence = await self._multiplexer.send(handle, command.payload)
                self._stats["sent"] += 1
                command.sequences.append(sequence)
                self._awaiting[sequence] = command
                if sequence in self._early_acks:
                    self._early_acks.remove(sequence)
                    command.acked.set()

                try:
                    await asyncio.wait_for(
                        command.acked.wait(), timeout=self._ack_timeout
                    )
                except asyncio.TimeoutError:
                    LOGGER.debug(
                        "No acknowledgement for %s (sequence=%d)",
                        command.payload.code,
                        sequence,
                    )
                    continue

                self._stats["acked"] += 1
                self._resolve(command, CommandStatus.SUCCEEDED)
                return

            self._stats["timed_out"] += 1
            self._resolve(
                command,
                CommandStatus.TIMED_OUT,
                CommandTimeout(
                    f"{command.payload.code!r} on {command.channel.value} "
                    f"unacknowledged after {command.attempts} attempt(s)"
                ),
            )
        except XboxTvError as exc:
            self._resolve(command, CommandStatus.FAILED, exc)
        except Exception as exc:
            LOGGER.exception(
                "Failed to send %s on %s", command.payload.code, command.channel.value
            )
            self._resolve(
                command,
                CommandStatus.FAILED,
                ProtocolError(f"Failed to send {command.payload.code!r}: {exc}"),
            )
        finally:
            for sequence in command.sequences:
                if self._awaiting.get(sequence) is command:
                    del self._awaiting[sequence]

    @staticmethod
    def _resolve(
        command: Command,
        status: CommandStatus,
        error: Optional[XboxTvError] = None,
    ) -> bool:
        if command.future.done():
            return False
        command.status = status
        if error is None:
            command.future.set_result(None)
        else:
            command.future.set_exception(error)
        return True
