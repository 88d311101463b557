"""Tests for the connection session state machine."""

import threading

import pytest

from conftest import FakeChannel
from water_meter_mcp.errors import (
    ConfigurationError,
    ProtocolMisuseError,
    TransportError,
)
from water_meter_mcp.session import ConnectionState

TELEMETRY = b"FlowRate:3.50/Lmin,Total:120.75L\n"
LOG_LINE = b'[LOG]{"datetime":"2024-01-01T00:00:00","flowRate":2.1}\n'


def test_connect_requests_log(transport, make_session):
    """A successful connect sends GET_LOG and notifies the user."""
    session = make_session()
    assert session.connect("AA:BB:CC:DD:EE:FF") is True
    assert session.state is ConnectionState.CONNECTED
    assert transport.targets == ["AA:BB:CC:DD:EE:FF"]
    assert transport.channels[0].writes == [b"GET_LOG\n"]
    assert "Connected to AA:BB:CC:DD:EE:FF" in session.notifications


def test_connect_without_log_request(transport, make_session):
    session = make_session(fetch_log_on_connect=False)
    session.connect("dev")
    assert transport.channels[0].writes == []


def test_state_change_events(make_session):
    session = make_session()
    changes = []
    session.on_state_change(lambda old, new: changes.append((old, new)))
    session.connect("dev")
    session.disconnect()
    assert changes == [
        (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
        (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
        (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED),
    ]


def test_inbound_lines_are_dispatched(transport, make_session):
    """Telemetry, log and ack lines split across chunks all land."""
    channel = FakeChannel([
        b"FlowRate:3.50/Lm",
        b"in,Total:120.75L\r\n" + LOG_LINE[:20],
        LOG_LINE[20:] + b"\n[CMD]Log sent\n",
    ])
    transport.next_channels.append(channel)
    session = make_session()
    entries = []
    session.on_log_entry(entries.append)

    session.connect("dev")
    assert channel.drained.wait(2)

    assert session.snapshot.flow_rate == 3.50
    assert session.snapshot.total_volume == 120.75
    assert len(session.log) == 1
    assert entries[0].datetime == "2024-01-01T00:00:00"
    assert entries[0].flow_rate == 2.1
    assert "[CMD]Log sent" in session.notifications


def test_malformed_lines_do_not_mutate_state(transport, make_session):
    channel = FakeChannel([
        TELEMETRY,
        b"FlowRate:bad,Total:1L\n",
        b'[LOG]{"flowRate":2.1}\n',
        b"[LOG]{broken\n",
        b"boot: wifi ok\n",
    ])
    transport.next_channels.append(channel)
    session = make_session()

    session.connect("dev")
    assert channel.drained.wait(2)

    assert session.snapshot.flow_rate == 3.50
    assert session.snapshot.total_volume == 120.75
    assert len(session.log) == 0
    assert session.state is ConnectionState.CONNECTED
    assert session.notifications == ["Connected to dev"]


def test_send_while_disconnected_is_rejected(transport, make_session):
    session = make_session()
    with pytest.raises(ProtocolMisuseError):
        session.reset_total()
    assert session.state is ConnectionState.DISCONNECTED
    assert transport.channels == []


def test_send_after_disconnect_writes_nothing(transport, make_session):
    session = make_session()
    session.connect("dev")
    session.disconnect()
    with pytest.raises(ProtocolMisuseError):
        session.fetch_log()
    assert transport.channels[0].writes == [b"GET_LOG\n"]


def test_empty_ssid_rejected_before_connection_check(transport, make_session):
    session = make_session()
    with pytest.raises(ConfigurationError):
        session.set_wifi("", "pw")


def test_set_wifi_writes_credentials(transport, make_session):
    session = make_session(fetch_log_on_connect=False)
    session.connect("dev")
    session.set_wifi("home", "pass123")
    assert transport.channels[0].writes == [b"SET_WIFI:home,pass123\n"]


def test_disconnect_while_connecting_cancels(transport, make_session):
    """A channel that opens after disconnect() is closed and never read."""
    transport.gate = threading.Event()
    channel = FakeChannel([TELEMETRY, LOG_LINE])
    transport.next_channels.append(channel)
    session = make_session()
    result = []

    worker = threading.Thread(target=lambda: result.append(session.connect("dev")))
    worker.start()
    assert transport.opening.wait(2)
    assert session.state is ConnectionState.CONNECTING

    session.disconnect()
    assert session.state is ConnectionState.DISCONNECTED

    transport.gate.set()
    worker.join(2)

    assert result == [False]
    assert session.state is ConnectionState.DISCONNECTED
    assert channel.closed.is_set()
    assert channel.writes == []
    assert not channel.drained.is_set()
    assert session.snapshot.updated_at is None
    assert len(session.log) == 0


def test_reconnect_starts_with_empty_buffer(transport, make_session):
    """A partial line from one session never completes in the next."""
    first = FakeChannel([b"FlowRate:9"])
    second = FakeChannel([b".0/Lmin,Total:1.0L\n"])
    transport.next_channels.extend([first, second])
    session = make_session(fetch_log_on_connect=False)

    session.connect("dev")
    assert first.drained.wait(2)
    assert session.pending_bytes == b"FlowRate:9"

    session.disconnect()
    assert session.pending_bytes == b""

    session.connect("dev")
    assert second.drained.wait(2)
    assert session.pending_bytes == b""
    assert session.snapshot.updated_at is None


def test_read_error_disconnects_and_notifies(transport, make_session, wait_for):
    channel = FakeChannel([TELEMETRY], fail_with=TransportError("link lost"))
    transport.next_channels.append(channel)
    session = make_session(fetch_log_on_connect=False)

    session.connect("dev")

    assert wait_for(lambda: session.state is ConnectionState.DISCONNECTED)
    assert wait_for(lambda: "Connection error: link lost" in session.notifications)
    assert channel.closed.is_set()
    assert session.snapshot.flow_rate == 3.50


def test_end_of_stream_disconnects_quietly(transport, make_session, wait_for):
    channel = FakeChannel([TELEMETRY], hold_open=False)
    transport.next_channels.append(channel)
    session = make_session(fetch_log_on_connect=False)

    session.connect("dev")

    assert wait_for(lambda: session.state is ConnectionState.DISCONNECTED)
    assert not any(n.startswith("Connection error") for n in session.notifications)


def test_connect_failure(transport, make_session):
    transport.open_error = TransportError("unreachable")
    session = make_session()
    with pytest.raises(TransportError):
        session.connect("dev")
    assert session.state is ConnectionState.DISCONNECTED
    assert "Failed to connect: unreachable" in session.notifications


def test_connect_failure_from_unexpected_error(transport, make_session):
    """A non-OS error from the transport still resets the session."""
    transport.open_error = RuntimeError("driver bug")
    session = make_session()
    with pytest.raises(TransportError) as excinfo:
        session.connect("dev")
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert session.state is ConnectionState.DISCONNECTED
    assert "Failed to connect: driver bug" in session.notifications

    transport.open_error = None
    assert session.connect("dev") is True


def test_connect_replaces_existing_session(transport, make_session):
    session = make_session()
    session.connect("first")
    session.connect("second")
    assert transport.channels[0].closed.is_set()
    assert not transport.channels[1].closed.is_set()
    assert session.state is ConnectionState.CONNECTED
    assert session.target == "second"


def test_reset_commands_clear_log(transport, make_session):
    channel = FakeChannel([LOG_LINE, LOG_LINE])
    transport.next_channels.append(channel)
    session = make_session()
    cleared = []
    session.on_log_cleared(lambda: cleared.append(True))

    session.connect("dev")
    assert channel.drained.wait(2)
    assert len(session.log) == 2

    session.reset_total()
    assert len(session.log) == 2

    session.reset_all()
    assert len(session.log) == 0
    assert cleared == [True]
    assert channel.writes == [b"GET_LOG\n", b"RESET_TOTAL\n", b"RESET_ALL\n"]


def test_write_failure_disconnects(transport, make_session):
    channel = FakeChannel(fail_write=TransportError("broken pipe"))
    transport.next_channels.append(channel)
    session = make_session(fetch_log_on_connect=False)
    session.connect("dev")

    with pytest.raises(TransportError):
        session.reset_log()

    assert session.state is ConnectionState.DISCONNECTED
    assert channel.closed.is_set()
    assert "Connection error: broken pipe" in session.notifications


def test_unexpected_write_error_disconnects(transport, make_session):
    channel = FakeChannel(fail_write=RuntimeError("driver bug"))
    transport.next_channels.append(channel)
    session = make_session(fetch_log_on_connect=False)
    session.connect("dev")

    with pytest.raises(TransportError) as excinfo:
        session.reset_total()

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert session.state is ConnectionState.DISCONNECTED
    assert channel.closed.is_set()
    assert "Connection error: driver bug" in session.notifications


class GatedWriteChannel(FakeChannel):
    """Writes block until ``write_gate`` is set; inbound data waits for a write to start."""

    def __init__(self, chunks):
        super().__init__(chunks)
        self.writing = threading.Event()
        self.write_gate = threading.Event()

    def chunks(self):
        self.writing.wait(5)
        yield from super().chunks()

    def write(self, data: bytes) -> None:
        self.writing.set()
        self.write_gate.wait(5)
        super().write(data)


def test_slow_write_does_not_block_inbound_lines(transport, make_session):
    channel = GatedWriteChannel([TELEMETRY, LOG_LINE])
    transport.next_channels.append(channel)
    session = make_session(fetch_log_on_connect=False)
    session.connect("dev")

    sender = threading.Thread(target=session.reset_total)
    sender.start()
    try:
        assert channel.drained.wait(2)
        assert session.snapshot.flow_rate == 3.50
        assert len(session.log) == 1
        assert channel.writes == []
    finally:
        channel.write_gate.set()
        sender.join(2)

    assert not sender.is_alive()
    assert channel.writes == [b"RESET_TOTAL\n"]
    assert session.state is ConnectionState.CONNECTED


def test_bad_log_records_do_not_stop_the_reader(transport, make_session):
    """Pathological records are discarded and the next good line still lands."""
    channel = FakeChannel([
        b"[LOG]" + b"[" * 100000 + b"]" * 100000 + b"\n",
        b'[LOG]{"datetime":"d","flowRate":' + b"9" * 5000 + b"}\n",
        b'[LOG]{"datetime":"d","flowRate":NaN}\n',
        b'[LOG]{"datetime":"d","flowRate":1e400}\n',
        LOG_LINE,
    ])
    transport.next_channels.append(channel)
    session = make_session(fetch_log_on_connect=False)

    session.connect("dev")
    assert channel.drained.wait(5)

    assert session.state is ConnectionState.CONNECTED
    assert len(session.log) == 1
    assert session.log.entries[0].flow_rate == 2.1
    assert not any(n.startswith("Connection error") for n in session.notifications)


def test_failing_handler_does_not_break_session(transport, make_session):
    channel = FakeChannel([TELEMETRY, LOG_LINE])
    transport.next_channels.append(channel)
    session = make_session()

    def explode(snapshot):
        raise RuntimeError("handler bug")

    session.on_telemetry(explode)
    session.connect("dev")
    assert channel.drained.wait(2)

    assert len(session.log) == 1
    assert session.state is ConnectionState.CONNECTED


def test_handler_may_disconnect_from_reader(transport, make_session, wait_for):
    """Disconnecting from inside a handler stops the rest of the chunk."""
    channel = FakeChannel([TELEMETRY + LOG_LINE])
    transport.next_channels.append(channel)
    session = make_session(fetch_log_on_connect=False)
    session.on_telemetry(lambda snapshot: session.disconnect())

    session.connect("dev")

    assert wait_for(lambda: session.state is ConnectionState.DISCONNECTED)
    assert len(session.log) == 0


def test_drain_notifications(make_session):
    session = make_session()
    session.connect("dev")
    assert session.drain_notifications() == ["Connected to dev"]
    assert session.notifications == []


def test_status(make_session):
    session = make_session()
    assert session.status()["state"] == "disconnected"
    session.connect("dev")
    status = session.status()
    assert status["state"] == "connected"
    assert status["target"] == "dev"
