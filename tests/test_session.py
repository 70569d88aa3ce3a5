"""Behavioural tests for ConsoleSession against an in-memory transport."""

import asyncio

import pytest

from conftest import FakeTransport, drain, fast_options, make_console, settle, wait_until
from xbox_tv.connection import ReconnectReason, SessionState
from xbox_tv.core import ChannelName, DeviceInfo
from xbox_tv.errors import ProtocolError
from xbox_tv.events import EventName
from xbox_tv.session import ConsoleSession
from xbox_tv.telemetry import PowerState


def _names(events):
    return [event.name for event in events]


async def _connected_session(transport: FakeTransport, **console_overrides):
    session = ConsoleSession(
        make_console(**console_overrides), options=fast_options(), transport=transport
    )
    outcome = await session.connect()
    assert outcome.ok
    await wait_until(
        lambda: ChannelName.MEDIA in transport.opened and session.device_info is not None
    )
    return session


@pytest.mark.asyncio
async def test_connect_reaches_connected_and_reports_device_info(transport):
    session = ConsoleSession(make_console(), options=fast_options(), transport=transport)
    events = session.subscribe()

    outcome = await session.connect()

    assert outcome.ok
    assert session.state is SessionState.CONNECTED
    await wait_until(lambda: session.device_info is not None)
    assert session.device_info == DeviceInfo(firmware_revision="10.0.19041.4043")

    received = drain(events)
    assert _names(received)[:2] == [EventName.CONNECTED, EventName.DEVICE_INFO]
    assert received[1].data.firmware_revision == "10.0.19041.4043"

    await session.shutdown()


@pytest.mark.asyncio
async def test_connect_without_credentials_skips_authenticating(transport):
    session = ConsoleSession(
        make_console(enable_debug_mode=True), options=fast_options(), transport=transport
    )
    events = session.subscribe()

    await session.connect()

    debug = [e.data for e in drain(events) if e.name is EventName.DEBUG]
    assert "State changed: disconnected -> connecting" in debug
    assert "State changed: connecting -> connected" in debug
    assert not any("authenticating" in line for line in debug)
    assert transport.handshakes == [None]

    await session.shutdown()


@pytest.mark.asyncio
async def test_connect_with_credentials_passes_through_authenticating(transport):
    session = ConsoleSession(
        make_console(user_token="token", user_hash="uhs", enable_debug_mode=True),
        options=fast_options(),
        transport=transport,
    )
    events = session.subscribe()

    await session.connect()

    debug = [e.data for e in drain(events) if e.name is EventName.DEBUG]
    assert "State changed: connecting -> authenticating" in debug
    assert "State changed: authenticating -> connected" in debug
    assert transport.handshakes[0].user_token == "token"

    await session.shutdown()


@pytest.mark.asyncio
async def test_connect_to_unreachable_console_fails_with_transport_unreachable():
    transport = FakeTransport(reachable=False)
    session = ConsoleSession(make_console(), options=fast_options(), transport=transport)
    events = session.subscribe()

    outcome = await session.connect()

    assert not outcome
    assert outcome.code == "transport_unreachable"
    assert session.state is SessionState.DISCONNECTED
    assert EventName.ERROR in _names(drain(events))

    await session.shutdown()


@pytest.mark.asyncio
async def test_device_info_failure_is_not_fatal():
    transport = FakeTransport(device_info_error=ProtocolError("bad status"))
    session = ConsoleSession(
        make_console(enable_debug_mode=True), options=fast_options(), transport=transport
    )
    events = session.subscribe()

    assert (await session.connect()).ok
    await wait_until(lambda: ("device_info", 0.1) in transport.calls)
    await settle()

    received = drain(events)
    assert EventName.DEVICE_INFO not in _names(received)
    assert any(
        e.name is EventName.DEBUG and "Device info request failed" in e.data
        for e in received
    )
    assert session.state is SessionState.CONNECTED
    assert session.device_info is None

    await session.shutdown()


# ----------------------------------------------------------------------
# Power
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_power_on_wakes_then_connects():
    transport = FakeTransport(reachable_after_wakes=3)
    session = ConsoleSession(make_console(), options=fast_options(), transport=transport)
    events = session.subscribe()

    outcome = await session.power_on()

    assert outcome.ok
    assert session.state is SessionState.CONNECTED
    assert transport.wakes == ["FD00112233445566"] * 3
    received = drain(events)
    assert received[0].name is EventName.MESSAGE
    assert received[0].data == "Sending power on request"
    assert EventName.CONNECTED in _names(received)

    await session.shutdown()


@pytest.mark.asyncio
async def test_power_on_while_connected_sends_no_wake(transport):
    session = await _connected_session(transport)
    events = session.subscribe()

    outcome = await session.power_on()

    assert outcome.ok
    assert transport.wakes == []
    assert session.state is SessionState.CONNECTED
    assert drain(events) == []

    await session.shutdown()


@pytest.mark.asyncio
async def test_power_on_times_out_when_console_never_answers():
    transport = FakeTransport(reachable=False)
    session = ConsoleSession(make_console(), options=fast_options(), transport=transport)
    events = session.subscribe()

    outcome = await session.power_on()

    assert not outcome
    assert outcome.code == "power_on_timeout"
    assert session.state is SessionState.DISCONNECTED
    assert len(transport.wakes) == 3
    assert EventName.ERROR in _names(drain(events))

    # A timed out power on leaves the session usable.
    transport.reachable = True
    assert (await session.power_on()).ok
    assert session.state is SessionState.CONNECTED

    await session.shutdown()


@pytest.mark.asyncio
async def test_power_off_sends_request_and_disconnects(transport):
    session = await _connected_session(transport)
    events = session.subscribe()

    outcome = await session.power_off()

    assert outcome.ok
    assert session.state is SessionState.DISCONNECTED
    channel, payload = transport.sends[-1]
    assert channel is ChannelName.SYSTEM
    assert payload.code == "power-off"
    assert payload.value == "FD00112233445566"
    assert transport.close_count >= 1

    received = drain(events)
    assert received[0].name is EventName.MESSAGE
    assert received[-1].name is EventName.DISCONNECTED
    assert received[-1].data == "Console powered off"

    # The session can be powered on again afterwards.
    assert (await session.power_on()).ok

    await session.shutdown()


@pytest.mark.asyncio
async def test_power_off_requires_connected_session(transport):
    session = ConsoleSession(make_console(), options=fast_options(), transport=transport)

    outcome = await session.power_off()

    assert outcome.code == "channel_not_open"
    assert transport.calls == []

    await session.shutdown()


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_send_command_while_disconnected_performs_no_io(transport):
    session = ConsoleSession(make_console(), options=fast_options(), transport=transport)

    outcome = await session.send_command("input-navigation", "up")

    assert not outcome
    assert outcome.code == "channel_not_open"
    assert transport.calls == []

    await session.shutdown()


@pytest.mark.asyncio
async def test_unknown_command_is_rejected_without_io(transport):
    session = await _connected_session(transport)
    calls_before = list(transport.calls)

    outcome = await session.send_command("media-transport", "eject")

    assert outcome.code == "unknown_command"
    assert transport.calls == calls_before

    await session.shutdown()


@pytest.mark.parametrize("count", [0, 1, 5])
@pytest.mark.asyncio
async def test_commands_on_one_channel_are_sent_in_submission_order(transport, count):
    session = await _connected_session(transport)
    codes = ["play", "pause", "stop", "nextTrack", "rewind"][:count]

    outcomes = await asyncio.gather(
        *(session.send_command("media-transport", code) for code in codes)
    )

    assert all(outcome.ok for outcome in outcomes)
    assert transport.sent_codes(ChannelName.MEDIA) == codes

    await session.shutdown()


@pytest.mark.asyncio
async def test_unacknowledged_command_retries_once_then_times_out():
    transport = FakeTransport(auto_ack=False)
    session = await _connected_session(transport)

    outcome = await session.send_command("media-transport", "play")

    assert not outcome
    assert outcome.code == "command_timeout"
    assert transport.sent_codes(ChannelName.MEDIA) == ["play", "play"]
    assert session.diagnostics()["commands"]["retried"] == 1

    await session.shutdown()


@pytest.mark.asyncio
async def test_transport_drop_fails_all_pending_commands():
    transport = FakeTransport(auto_ack=False)
    session = ConsoleSession(
        make_console(), options=fast_options(ack_timeout=5.0), transport=transport
    )
    assert (await session.connect()).ok
    await wait_until(lambda: ChannelName.MEDIA in transport.opened)

    pending = [
        asyncio.create_task(session.send_command("media-transport", code))
        for code in ("play", "pause", "stop")
    ]
    await wait_until(lambda: len(transport.sends) == 1)

    transport.drop(ConnectionResetError("socket closed"))
    outcomes = await asyncio.gather(*pending)

    assert [outcome.code for outcome in outcomes] == ["session_lost"] * 3
    await settle(20)
    assert transport.sent_codes() == ["play"]

    await session.shutdown()


@pytest.mark.asyncio
async def test_out_of_range_arguments_do_not_block_the_channel(transport):
    session = await _connected_session(transport)

    seek = await asyncio.wait_for(
        session.send_command("media-transport", "seek", 2**64), timeout=1.0
    )
    clip = await asyncio.wait_for(
        session.request_special_action("capture-clip", 2**40), timeout=1.0
    )
    play = await asyncio.wait_for(
        session.send_command("media-transport", "play"), timeout=1.0
    )

    assert seek.code == "unknown_command"
    assert clip.code == "unknown_command"
    assert play.ok
    assert transport.sent_codes() == ["play"]

    await session.shutdown()


@pytest.mark.asyncio
async def test_telemetry_flows_while_command_awaits_ack():
    transport = FakeTransport(auto_ack=False)
    session = ConsoleSession(
        make_console(), options=fast_options(ack_timeout=5.0), transport=transport
    )
    assert (await session.connect()).ok
    events = session.subscribe()

    command = asyncio.create_task(session.send_command("media-transport", "play"))
    await wait_until(lambda: len(transport.sends) == 1)

    transport.telemetry({"power_state": "on", "reference": "Dashboard"})
    received = []
    await wait_until(
        lambda: received.extend(drain(events))
        or EventName.STATE_CHANGED in _names(received)
    )

    assert not command.done()
    changed = [e.data for e in received if e.name is EventName.STATE_CHANGED]
    assert changed[-1].content == "Dashboard"

    transport.ack(transport._sequence)
    outcome = await asyncio.wait_for(command, timeout=1.0)
    assert outcome.ok

    await session.shutdown()


@pytest.mark.asyncio
async def test_request_special_action_records_clip(transport):
    session = await _connected_session(transport)

    outcome = await session.request_special_action("capture-clip")

    assert outcome.ok
    channel, payload = transport.sends[-1]
    assert channel is ChannelName.SYSTEM
    assert payload.code == "capture-clip"
    assert payload.argument == 60

    await session.shutdown()


# ----------------------------------------------------------------------
# Telemetry
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_dashboard_scenario_emits_two_state_changes(transport):
    session = ConsoleSession(make_console(), options=fast_options(), transport=transport)
    events = session.subscribe()

    transport.telemetry({"power_state": "off"})
    transport.telemetry({"power_state": "off"})
    transport.telemetry(
        {
            "power_state": "on",
            "reference": "Dashboard",
            "volume": 20,
            "mute": False,
            "media_state": "stopped",
        }
    )

    changes = [e.data for e in drain(events) if e.name is EventName.STATE_CHANGED]
    assert len(changes) == 2
    assert changes[0].power is False
    assert changes[1].as_dict() == {
        "power": True,
        "content": "Dashboard",
        "volume": 20,
        "mute": False,
        "media": "stopped",
    }
    assert session.snapshot == changes[1]
    assert session.power_state is PowerState.ON

    await session.shutdown()


@pytest.mark.asyncio
async def test_raw_telemetry_precedes_state_change(transport):
    session = ConsoleSession(make_console(), options=fast_options(), transport=transport)
    events = session.subscribe()

    transport.telemetry({"media_state": "playing"}, topic="MediaState")

    received = drain(events)
    assert _names(received) == [EventName.TELEMETRY_RAW, EventName.STATE_CHANGED]
    assert received[0].topic == "MediaState"
    assert received[0].data == {"media_state": "playing"}

    await session.shutdown()


@pytest.mark.asyncio
async def test_telemetry_for_unknown_channel_is_dropped(transport):
    session = ConsoleSession(make_console(), options=fast_options(), transport=transport)
    events = session.subscribe()

    transport.telemetry({"power_state": "on"}, channel_id=0x77)

    assert drain(events) == []
    assert session.diagnostics()["dropped_frames"] == 1

    await session.shutdown()


@pytest.mark.asyncio
async def test_on_handlers_receive_events_in_order(transport):
    session = ConsoleSession(make_console(), options=fast_options(), transport=transport)
    snapshots = []
    raw = []

    async def on_state(snapshot):
        snapshots.append(snapshot)

    session.on("stateChanged", on_state)
    session.on(EventName.TELEMETRY_RAW, lambda topic, payload: raw.append((topic, payload)))

    transport.telemetry({"power_state": "on", "title_id": 714681658})
    transport.telemetry({"volume": 35})

    await session.shutdown()

    assert [s.content for s in snapshots] == ["714681658", "714681658"]
    assert [s.volume for s in snapshots] == [0, 35]
    assert raw[0] == ("Status", {"power_state": "on", "title_id": 714681658})
    assert len(raw) == 2


# ----------------------------------------------------------------------
# Lifecycle failures
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_authentication_rejection_is_terminal():
    transport = FakeTransport(reject_auth=True)
    session = ConsoleSession(
        make_console(user_token="token", user_hash="uhs"),
        options=fast_options(),
        transport=transport,
    )
    events = session.subscribe()

    outcome = await session.connect()

    assert outcome.code == "authentication_rejected"
    assert session.state is SessionState.DISCONNECTED
    received = drain(events)
    assert _names(received) == [EventName.ERROR, EventName.DISCONNECTED]

    retry = await session.power_on()
    assert retry.code == "session_lost"
    assert transport.wakes == []
    assert len(transport.handshakes) == 1

    await session.shutdown()


@pytest.mark.asyncio
async def test_transport_drop_reconnects(transport):
    session = await _connected_session(transport)
    events = session.subscribe()

    transport.drop(ConnectionResetError("socket closed"))
    assert session.state is SessionState.RECONNECTING
    await wait_until(lambda: session.state is SessionState.CONNECTED)

    received = drain(events)
    assert received[0].name is EventName.ERROR
    assert "connection_lost" in received[0].data
    assert EventName.CONNECTED in _names(received)
    assert EventName.DISCONNECTED not in _names(received)
    assert len(transport.handshakes) == 2
    assert session.diagnostics()["last_reconnect_reason"] == "connection_lost"

    await session.shutdown()


@pytest.mark.asyncio
async def test_console_disconnect_marks_console_offline(transport):
    session = await _connected_session(transport)
    transport.telemetry({"power_state": "on", "reference": "Dashboard"})
    transport.reachable = False

    transport.drop()

    assert session.snapshot.power is False
    assert session.snapshot.content == "Dashboard"
    assert session.diagnostics()["last_reconnect_reason"] == (
        ReconnectReason.CONSOLE_DISCONNECT.value
    )

    await session.shutdown()


@pytest.mark.asyncio
async def test_reconnect_exhaustion_terminates_session(transport):
    session = await _connected_session(transport)
    events = session.subscribe()

    transport.reachable = False
    transport.drop(TimeoutError("keepalive"))
    await wait_until(lambda: session.diagnostics()["state"] == "disconnected")
    await settle()

    received = drain(events)
    errors = [e.data for e in received if e.name is EventName.ERROR]
    assert "keepalive_timeout" in errors[0]
    assert errors[1].startswith("Reconnect attempt 1 failed")
    assert errors[2].startswith("Reconnect attempt 2 failed")
    assert errors[3] == "Gave up reconnecting after 2 attempt(s)"
    assert received[-1].name is EventName.DISCONNECTED
    assert session.reconnect_attempts == 2

    outcome = await session.send_command("media-transport", "play")
    assert outcome.code == "session_lost"

    await session.shutdown()


@pytest.mark.asyncio
async def test_shutdown_fails_pending_and_closes_transport():
    transport = FakeTransport(auto_ack=False)
    session = ConsoleSession(
        make_console(), options=fast_options(ack_timeout=5.0), transport=transport
    )
    assert (await session.connect()).ok
    events = session.subscribe()
    pending = asyncio.create_task(session.send_command("remote-passthrough", "volUp"))
    await wait_until(lambda: len(transport.sends) == 1)

    await session.shutdown()

    assert (await pending).code == "session_lost"
    assert session.state is SessionState.DISCONNECTED
    assert transport.close_count >= 1
    received = drain(events)
    assert received[-1].name is EventName.DISCONNECTED
    assert received[-1].data == "Session shut down"

    sends_before = len(transport.sends)
    assert (await session.send_command("remote-passthrough", "volUp")).code == (
        "session_lost"
    )
    assert (await session.power_on()).code == "session_lost"
    assert len(transport.sends) == sends_before
    assert transport.wakes == []


@pytest.mark.asyncio
async def test_context_manager_shuts_down(transport):
    async with ConsoleSession(
        make_console(), options=fast_options(), transport=transport
    ) as session:
        assert (await session.connect()).ok

    assert session.state is SessionState.DISCONNECTED
    assert transport.close_count >= 1


# ----------------------------------------------------------------------
# Verbosity
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_debug_events_require_debug_mode(transport):
    session = ConsoleSession(make_console(), options=fast_options(), transport=transport)
    events = session.subscribe()

    await session.connect()

    assert EventName.DEBUG not in _names(drain(events))
    await session.shutdown()


@pytest.mark.asyncio
async def test_disable_log_info_suppresses_messages():
    transport = FakeTransport(reachable_after_wakes=1)
    session = ConsoleSession(
        make_console(disable_log_info=True), options=fast_options(), transport=transport
    )
    events = session.subscribe()

    assert (await session.power_on()).ok

    names = _names(drain(events))
    assert EventName.MESSAGE not in names
    assert EventName.CONNECTED in names
    await session.shutdown()


@pytest.mark.asyncio
async def test_diagnostics_expose_rich_power_state(transport):
    session = await _connected_session(transport)
    transport.telemetry({"power_state": "standby"})

    diagnostics = session.diagnostics()

    assert diagnostics["power_state"] == "standby"
    assert diagnostics["snapshot"]["power"] is False
    assert diagnostics["state"] == "connected"
    assert "media-transport" in diagnostics["open_channels"]
    assert diagnostics["name"] == "Living Room"

    await session.shutdown()
