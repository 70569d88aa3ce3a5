"""Tests for command vocabularies and the per-channel dispatcher."""

import asyncio
import struct

import pytest

from conftest import FakeTransport, wait_until
from xbox_tv.channels import ACK_CHANNEL_ID, ChannelMultiplexer
from xbox_tv.commands import (
    CommandDispatcher,
    MediaCommand,
    parse_channel,
    resolve_command,
)
from xbox_tv.core import ChannelName, FrameKind, InboundFrame
from xbox_tv.errors import UnknownCommand


def _build(transport, *, connected=True, ack_timeout=0.05, max_retries=1):
    state = {"connected": connected}
    multiplexer = ChannelMultiplexer(
        transport, is_connected=lambda: state["connected"], open_timeout=0.2
    )
    dispatcher = CommandDispatcher(
        multiplexer,
        is_connected=lambda: state["connected"],
        ack_timeout=ack_timeout,
        max_retries=max_retries,
    )
    multiplexer.set_consumer(FrameKind.ACK, dispatcher.handle_ack)
    transport.set_handlers(multiplexer.route, lambda exc: None)
    return dispatcher, multiplexer, state


# ----------------------------------------------------------------------
# Vocabulary
# ----------------------------------------------------------------------
def test_resolve_media_command_uses_control_flag():
    payload = resolve_command("media-transport", "play")

    assert payload.code == "play"
    assert payload.value == 2
    assert payload.argument is None


def test_resolve_seek_requires_position():
    with pytest.raises(UnknownCommand):
        resolve_command(ChannelName.MEDIA, "seek")

    payload = resolve_command(ChannelName.MEDIA, "seek", 1200)
    assert payload.value == 32768
    assert payload.argument == 1200


@pytest.mark.parametrize(
    "channel, code, value",
    [
        ("input-navigation", "up", 256),
        ("input-navigation", "nexus", 2),
        ("remote-passthrough", "volUp", "btn.vol_up"),
        ("remote-passthrough", "chDown", "btn.ch_down"),
        ("system", "capture-clip", "game_dvr_record"),
    ],
)
def test_resolve_command_maps_vocabulary(channel, code, value):
    assert resolve_command(channel, code).value == value


def test_capture_clip_defaults_to_one_minute():
    assert resolve_command("system", "capture-clip").argument == 60
    assert resolve_command("system", "capture-clip", 30).argument == 30

    with pytest.raises(UnknownCommand):
        resolve_command("system", "capture-clip", 0)


def test_codes_are_validated_per_channel():
    # "menu" exists on media and input, but not on the remote channel.
    assert resolve_command("input-navigation", "menu").value == 4
    with pytest.raises(UnknownCommand):
        resolve_command("remote-passthrough", "menu")


def test_unknown_channel_is_rejected():
    with pytest.raises(UnknownCommand):
        parse_channel("telepathy")


def test_media_command_values_are_unique():
    values = [resolve_command("media-transport", member.value, 0).value for member in MediaCommand]
    assert len(values) == len(set(values))


# ----------------------------------------------------------------------
# Dispatcher
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_submit_while_disconnected_fails_without_io():
    transport = FakeTransport()
    dispatcher, _, _ = _build(transport, connected=False)

    outcome = await dispatcher.submit("media-transport", "play")

    assert outcome.code == "channel_not_open"
    assert transport.calls == []


@pytest.mark.asyncio
async def test_unknown_code_fails_before_connection_check():
    transport = FakeTransport()
    dispatcher, _, _ = _build(transport, connected=False)

    outcome = await dispatcher.submit("media-transport", "eject")

    assert outcome.code == "unknown_command"
    assert transport.calls == []


@pytest.mark.asyncio
async def test_submit_opens_channel_lazily_once():
    transport = FakeTransport()
    dispatcher, multiplexer, _ = _build(transport)

    first = await dispatcher.submit("input-navigation", "a")
    second = await dispatcher.submit("input-navigation", "b")

    assert first.ok and second.ok
    assert transport.opened == [ChannelName.INPUT]
    assert multiplexer.open_channels() == [ChannelName.INPUT]
    assert dispatcher.stats["acked"] == 2


@pytest.mark.asyncio
async def test_late_acknowledgement_of_first_attempt_succeeds():
    transport = FakeTransport(auto_ack=False)
    dispatcher, _, _ = _build(transport, ack_timeout=0.1)

    task = asyncio.create_task(dispatcher.submit("media-transport", "pause"))
    await wait_until(lambda: len(transport.sends) == 2)
    transport.ack(1)

    outcome = await task
    assert outcome.ok
    assert dispatcher.stats["retried"] == 1


@pytest.mark.asyncio
async def test_acknowledgement_arriving_before_registration_is_kept():
    transport = FakeTransport(auto_ack=False)
    dispatcher, _, _ = _build(transport, ack_timeout=0.5)

    dispatcher.handle_ack(
        InboundFrame(kind=FrameKind.ACK, channel_id=ACK_CHANNEL_ID, sequence=1)
    )
    outcome = await dispatcher.submit("remote-passthrough", "volMute")

    assert outcome.ok
    assert transport.sent_codes() == ["volMute"]


@pytest.mark.asyncio
async def test_zero_retries_times_out_after_single_attempt():
    transport = FakeTransport(auto_ack=False)
    dispatcher, _, _ = _build(transport, max_retries=0)

    outcome = await dispatcher.submit("media-transport", "stop")

    assert outcome.code == "command_timeout"
    assert transport.sent_codes() == ["stop"]
    assert dispatcher.stats["timed_out"] == 1


@pytest.mark.asyncio
async def test_pending_command_does_not_block_other_channels():
    transport = FakeTransport(auto_ack=False)
    dispatcher, _, _ = _build(transport, ack_timeout=5.0)

    media = asyncio.create_task(dispatcher.submit("media-transport", "play"))
    await wait_until(lambda: len(transport.sends) == 1)

    transport.auto_ack = True
    remote = await dispatcher.submit("remote-passthrough", "volDown")

    assert remote.ok
    assert not media.done()

    assert dispatcher.fail_pending("test over") == 1
    assert (await media).code == "session_lost"


@pytest.mark.asyncio
async def test_fail_pending_resolves_queued_commands():
    transport = FakeTransport(auto_ack=False)
    dispatcher, _, _ = _build(transport, ack_timeout=5.0)

    tasks = [
        asyncio.create_task(dispatcher.submit("input-navigation", code))
        for code in ("left", "right", "a")
    ]
    await wait_until(lambda: len(transport.sends) == 1)
    assert dispatcher.pending_count == 3

    failed = dispatcher.fail_pending("Connection to console lost")

    assert failed == 3
    outcomes = await asyncio.gather(*tasks)
    assert all(outcome.code == "session_lost" for outcome in outcomes)
    assert str(outcomes[0].error) == "Connection to console lost"
    assert dispatcher.pending_count == 0
    assert dispatcher.stats["lost"] == 3
    assert transport.sent_codes() == ["left"]


class _EncodingFailureTransport(FakeTransport):
    """Raises a packing error for one command code, like an oversized field."""

    def __init__(self, failing_code, **kwargs):
        super().__init__(**kwargs)
        self.failing_code = failing_code

    async def send(self, channel_id, channel, payload):
        if payload.code == self.failing_code:
            self.calls.append(("send", (channel, payload.code)))
            raise struct.error("argument out of range")
        return await super().send(channel_id, channel, payload)


@pytest.mark.asyncio
async def test_unexpected_send_error_fails_command_and_frees_channel():
    transport = _EncodingFailureTransport("pause")
    dispatcher, _, _ = _build(transport)

    failed = await asyncio.wait_for(
        dispatcher.submit("media-transport", "pause"), timeout=1.0
    )
    following = await asyncio.wait_for(
        dispatcher.submit("media-transport", "play"), timeout=1.0
    )

    assert failed.code == "protocol_error"
    assert "argument out of range" in str(failed.error)
    assert following.ok
    assert transport.sent_codes() == ["play"]
    assert dispatcher.pending_count == 0


@pytest.mark.parametrize(
    "channel, code, argument",
    [
        ("media-transport", "seek", 2**64),
        ("system", "capture-clip", 2**31),
        ("system", "capture-clip", 2**40),
    ],
)
def test_out_of_range_arguments_are_rejected(channel, code, argument):
    with pytest.raises(UnknownCommand, match="out of range"):
        resolve_command(channel, code, argument)


def test_largest_wire_arguments_are_accepted():
    assert resolve_command("media-transport", "seek", 2**64 - 1).argument == 2**64 - 1
    assert resolve_command("system", "capture-clip", 2**31 - 1).argument == 2**31 - 1


@pytest.mark.asyncio
async def test_out_of_range_seek_fails_without_io():
    transport = FakeTransport()
    dispatcher, _, _ = _build(transport)

    outcome = await dispatcher.submit("media-transport", "seek", 2**64)

    assert outcome.code == "unknown_command"
    assert transport.calls == []
