"""Tests for the cast session state machine against an in-memory transport."""

import asyncio

import pytest

from roon_cast_bridge.cast.exceptions import (
    CastError,
    ChannelUnavailableError,
    LaunchError,
    LaunchTimeoutError,
)
from roon_cast_bridge.cast.models import CastStatus
from roon_cast_bridge.cast.transport import NS_CONNECTION, NS_HEARTBEAT, NS_RECEIVER

from conftest import APP_ID, NAMESPACE, FakeTransport, Recorder, announcement, make_session

# pylint: disable=redefined-outer-name

RUNNING_APP = {"appId": APP_ID, "transportId": "web-1"}


async def _app_ready(session, transports):
    """Select cc1, launch and confirm the app from the fake receiver."""
    session.select("cc1")
    launch = asyncio.ensure_future(session.ensure_launched())
    await asyncio.sleep(0.01)
    transports[0].receiver_status(RUNNING_APP)
    await launch
    return transports[0]


async def test_connect_opens_platform_channels(bus, registry) -> None:
    recorder = Recorder(bus, "cast_status")
    transports = []
    session = make_session(bus, registry, transports)

    session.select("cc1")
    await session.connect()

    transport = transports[0]
    assert transport.connected_to == ("10.0.0.5", 8009)
    assert transport.types(NS_CONNECTION) == ["CONNECT"]
    assert transport.types(NS_RECEIVER) == ["GET_STATUS"]
    assert recorder.statuses() == ["connecting", "connected"]
    assert session.status == CastStatus.CONNECTED

    await session.close()


async def test_connect_without_selection_fails(bus, registry) -> None:
    session = make_session(bus, registry, [])
    with pytest.raises(CastError):
        await session.connect()


async def test_concurrent_connects_share_one_transport(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    session.select("cc1")

    await asyncio.gather(session.connect(), session.connect())
    await session.connect()

    assert len(transports) == 1
    await session.close()


async def test_connect_failure_ends_disconnected(bus, registry) -> None:
    recorder = Recorder(bus, "cast_status")
    transports = []
    session = make_session(bus, registry, transports)
    failing = FakeTransport(connect_error=ConnectionRefusedError("refused"))
    session._transport_factory = lambda: failing  # pylint: disable=protected-access
    session.select("cc1")

    with pytest.raises(ConnectionRefusedError):
        await session.connect()

    assert recorder.statuses() == ["connecting", "disconnected"]
    assert not session.connected


async def test_receiver_status_binds_application(bus, registry) -> None:
    recorder = Recorder(bus, "cast_status")
    transports = []
    session = make_session(bus, registry, transports)

    session.select("cc1")
    launch = asyncio.ensure_future(session.ensure_launched())
    await asyncio.sleep(0.01)

    transport = transports[0]
    assert transport.types(NS_RECEIVER) == ["GET_STATUS", "LAUNCH"]
    assert session.launch_pending

    transport.receiver_status(RUNNING_APP)
    await launch

    assert session.status == CastStatus.APP_READY
    assert session.transport_id == "web-1"
    assert transport.sent_to("web-1") == [{"type": "CONNECT"}]
    assert recorder.statuses() == ["connecting", "connected", "app-ready"]
    assert not session.launch_pending

    await session.close()


async def test_concurrent_launches_share_one_request(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    session.select("cc1")

    first = asyncio.ensure_future(session.ensure_launched())
    second = asyncio.ensure_future(session.ensure_launched())
    await asyncio.sleep(0.01)

    transport = transports[0]
    assert transport.types(NS_RECEIVER).count("LAUNCH") == 1

    transport.receiver_status(RUNNING_APP)
    await asyncio.gather(first, second)

    assert session.app_ready
    await session.close()


async def test_launch_times_out(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports, launch_timeout_seconds=0.05)
    session.select("cc1")

    with pytest.raises(LaunchTimeoutError):
        await session.ensure_launched()

    assert not session.launch_pending
    await session.close()


async def test_launch_error_rejects_pending_launch(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    session.select("cc1")

    launch = asyncio.ensure_future(session.ensure_launched())
    await asyncio.sleep(0.01)
    transports[0].receive(NS_RECEIVER, {"type": "LAUNCH_ERROR", "reason": "NOT_FOUND"})

    with pytest.raises(LaunchError, match="NOT_FOUND"):
        await launch
    await session.close()


async def test_missing_application_rejects_pending_launch(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    session.select("cc1")

    launch = asyncio.ensure_future(session.ensure_launched())
    await asyncio.sleep(0.01)
    transports[0].receiver_status({"appId": "CC1AD845", "transportId": "other"})

    with pytest.raises(LaunchError, match="not running"):
        await launch
    await session.close()


async def test_disconnect_rejects_pending_launch(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    session.select("cc1")

    launch = asyncio.ensure_future(session.ensure_launched())
    await asyncio.sleep(0.01)
    session.disconnect()

    with pytest.raises(LaunchError, match="connection closed"):
        await launch
    assert session.status == CastStatus.DISCONNECTED


async def test_application_teardown_returns_to_connected(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    transport = await _app_ready(session, transports)

    transport.receiver_status()

    assert session.status == CastStatus.CONNECTED
    assert session.transport_id is None
    assert not session.app_ready
    await session.close()


async def test_new_transport_id_rebinds(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    transport = await _app_ready(session, transports)

    transport.receiver_status({"appId": APP_ID, "transportId": "web-2"})

    assert session.transport_id == "web-2"
    assert transport.sent_to("web-2") == [{"type": "CONNECT"}]
    await session.close()


async def test_heartbeat_ping_is_answered(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    session.select("cc1")
    await session.connect()

    transports[0].receive(NS_HEARTBEAT, {"type": "PING"})

    assert transports[0].types(NS_HEARTBEAT) == ["PONG"]
    await session.close()


async def test_custom_messages_are_published(bus, registry) -> None:
    recorder = Recorder(bus, "cast_message")
    transports = []
    session = make_session(bus, registry, transports)
    transport = await _app_ready(session, transports)

    transport.receive(NAMESPACE, {"type": "READY"}, source="web-1")

    assert recorder.of("cast_message")[0]["message"] == {"type": "READY"}
    await session.close()


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


async def test_send_requires_app_ready(bus, registry) -> None:
    session = make_session(bus, registry, [])
    with pytest.raises(ChannelUnavailableError):
        session.send("NOW_PLAYING", {"zone_id": "z1"})


async def test_prepared_message_is_flushed_once_on_bind(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    session.select("cc1")

    message = session.prepare("NOW_PLAYING", {"zone_id": "z1", "state": "playing"})
    launch = asyncio.ensure_future(session.ensure_launched())
    await asyncio.sleep(0.01)
    transports[0].receiver_status(RUNNING_APP)
    await launch
    session.transmit(message)

    assert transports[0].sent_to("web-1") == [
        {"type": "CONNECT"},
        {"type": "NOW_PLAYING", "payload": {"zone_id": "z1", "state": "playing"}},
    ]
    await session.close()


async def test_superseded_message_is_dropped(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    transport = await _app_ready(session, transports)

    older = session.prepare("STATE", {"state": "loading"})
    newer = session.prepare("STATE", {"state": "playing"})
    session.transmit(older)
    session.transmit(newer)

    assert transport.sent_to("web-1")[1:] == [{"type": "STATE", "payload": {"state": "playing"}}]
    await session.close()


async def test_send_sanitizes_to_ceiling(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports, max_message_bytes=200)
    await _app_ready(session, transports)

    message = session.send(
        "NOW_PLAYING",
        {"zone_id": "z1", "now_playing": {"three_line": {"line1": "a", "line2": "b" * 300, "line3": "c"}}},
    )

    assert message["payload"]["now_playing"]["three_line"] == {"line1": "a"}
    assert session.last_message is message
    await session.close()


async def test_stop_sequence(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    transport = await _app_ready(session, transports)
    session.send("STATE", {"state": "playing"})
    before = len(transport.sent)

    await session.stop()

    assert [(ns, message["type"]) for ns, _dest, message in transport.sent[before:]] == [
        (NAMESPACE, "PAUSE"),
        (NS_RECEIVER, "STOP"),
        (NS_CONNECTION, "CLOSE"),
    ]
    assert session.status == CastStatus.CONNECTED
    assert session.last_message is None
    assert not session.app_ready
    await session.close()


async def test_stop_tolerates_send_failures(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    transport = await _app_ready(session, transports)
    transport.send_error = BrokenPipeError("gone")

    await session.stop()

    assert session.status == CastStatus.CONNECTED
    await session.close()


async def test_now_playing_during_stop_relaunches_afterwards(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports, pause_settle_seconds=0.05)
    transport = await _app_ready(session, transports)
    session.send("STATE", {"state": "paused"})

    stopping = asyncio.ensure_future(session.stop())
    await asyncio.sleep(0.01)
    message = session.prepare("NOW_PLAYING", {"zone_id": "z1", "state": "playing"})
    launch = asyncio.ensure_future(session.ensure_launched())
    await stopping
    await asyncio.sleep(0.01)

    assert session.last_message is message
    assert transport.types(NS_RECEIVER)[-2:] == ["STOP", "LAUNCH"]

    transport.receiver_status({"appId": APP_ID, "transportId": "web-2"})
    await launch
    session.transmit(message)

    assert transport.sent_to("web-2") == [
        {"type": "CONNECT"},
        {"type": "NOW_PLAYING", "payload": {"zone_id": "z1", "state": "playing"}},
    ]
    await session.close()


async def test_stop_after_connection_loss_stays_disconnected(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    transport = await _app_ready(session, transports)
    transport.close()
    recorder = Recorder(bus, "cast_status")
    before = len(transport.sent)

    await session.stop()

    assert session.status == CastStatus.DISCONNECTED
    assert recorder.statuses() == []
    assert len(transport.sent) == before


# -----------------------------------------------------------------------------
# Selection and recovery
# -----------------------------------------------------------------------------


async def test_selecting_other_receiver_disconnects_first(bus, registry) -> None:
    registry.register(announcement("cc2", "Kitchen", "10.0.0.6"), now=1000.0)
    transports = []
    session = make_session(bus, registry, transports)
    session.select("cc1")
    await session.connect()

    session.select("cc2")

    assert transports[0].closed
    assert session.status == CastStatus.DISCONNECTED
    assert session.selected_device_id == "cc2"

    session.select(None)
    assert session.status == CastStatus.IDLE


class _HandshakeTransport(FakeTransport):
    """Stays in its TLS handshake until released; closing it beforehand is lost."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()
        self.open = False

    async def connect(self, host: str, port: int) -> None:
        await self.release.wait()
        self.connected_to = (host, port)
        self.open = True

    def close(self) -> None:
        self.open = False
        super().close()


async def test_superseded_connect_closes_its_transport(bus, registry) -> None:
    registry.register(announcement("cc2", "Kitchen", "10.0.0.6"), now=1000.0)
    transports = []

    def factory():
        transport = _HandshakeTransport()
        transports.append(transport)
        return transport

    session = make_session(bus, registry, transports, transport_factory=factory)
    session.select("cc1")
    first = asyncio.ensure_future(session.connect())
    await asyncio.sleep(0)

    session.select("cc2")
    transports[0].release.set()

    with pytest.raises(CastError, match="superseded"):
        await first
    assert transports[0].connected_to == ("10.0.0.5", 8009)
    assert not transports[0].open
    assert session.selected_device_id == "cc2"


async def test_remote_close_disconnects(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    session.select("cc1")
    await session.connect()

    transports[0].close()

    assert session.status == CastStatus.DISCONNECTED
    assert not session.connected


async def test_channel_unavailable_reconnects_and_relaunches(bus, registry) -> None:
    recorder = Recorder(bus, "cast_error")
    transports = []
    session = make_session(bus, registry, transports)
    await _app_ready(session, transports)

    session.handle_transport_error(ChannelUnavailableError("Custom channel unavailable"))

    assert transports[0].closed
    assert session.status == CastStatus.DISCONNECTED
    assert recorder.of("cast_error")[0]["message"] == "Custom channel unavailable"

    await asyncio.sleep(0.05)
    assert len(transports) == 2
    assert "LAUNCH" in transports[1].types(NS_RECEIVER)
    await session.close()


async def test_broken_pipe_reconnects_without_launch(bus, registry) -> None:
    transports = []
    session = make_session(bus, registry, transports)
    session.select("cc1")
    await session.connect()

    session.handle_transport_error(BrokenPipeError("EPIPE"))
    await asyncio.sleep(0.05)

    assert len(transports) == 2
    assert transports[1].types(NS_RECEIVER) == ["GET_STATUS"]
    assert session.status == CastStatus.CONNECTED
    await session.close()


async def test_other_errors_are_only_surfaced(bus, registry) -> None:
    recorder = Recorder(bus, "cast_error")
    transports = []
    session = make_session(bus, registry, transports)
    session.select("cc1")
    await session.connect()

    session.handle_transport_error(ValueError("boom"))
    await asyncio.sleep(0.05)

    assert len(transports) == 1
    assert not transports[0].closed
    assert recorder.of("cast_error")[0]["message"] == "boom"
    await session.close()
