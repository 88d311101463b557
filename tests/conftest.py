"""Shared fixtures: an in-memory transport standing in for the radio link."""

from __future__ import annotations

import threading
import time

import pytest

from water_meter_mcp.config import SessionConfig
from water_meter_mcp.errors import TransportError
from water_meter_mcp.session import ConnectionSession
from water_meter_mcp.transport.base import Channel, Transport


class FakeChannel(Channel):
    """Yields scripted chunks, then either stays open, ends, or fails."""

    def __init__(self, chunks=(), hold_open=True, fail_with=None, fail_write=None):
        self.incoming = list(chunks)
        self.hold_open = hold_open
        self.fail_with = fail_with
        self.fail_write = fail_write
        self.writes: list[bytes] = []
        self.close_count = 0
        self.closed = threading.Event()
        # Set once every scripted chunk has been handed out and processed
        self.drained = threading.Event()

    @property
    def is_open(self) -> bool:
        return not self.closed.is_set()

    def chunks(self):
        for chunk in self.incoming:
            if self.closed.is_set():
                return
            yield chunk
        self.drained.set()
        if self.fail_with is not None:
            raise self.fail_with
        if self.hold_open:
            self.closed.wait(5)

    def write(self, data: bytes) -> None:
        if self.closed.is_set():
            raise TransportError("Channel is closed")
        if self.fail_write is not None:
            raise self.fail_write
        self.writes.append(data)

    def close(self) -> None:
        self.close_count += 1
        self.closed.set()


class FakeTransport(Transport):
    """Hands out queued channels; can block or fail in ``open``."""

    def __init__(self):
        self.next_channels: list[FakeChannel] = []
        self.channels: list[FakeChannel] = []
        self.targets: list[str] = []
        self.open_error: Exception | None = None
        self.gate: threading.Event | None = None
        self.opening = threading.Event()

    def open(self, target: str) -> Channel:
        self.targets.append(target)
        self.opening.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.open_error is not None:
            raise self.open_error
        channel = self.next_channels.pop(0) if self.next_channels else FakeChannel()
        self.channels.append(channel)
        return channel


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_session(transport):
    """Build sessions on the fake transport and disconnect them afterwards."""
    sessions = []

    def factory(**config_overrides):
        session = ConnectionSession(transport, SessionConfig(**config_overrides))
        sessions.append(session)
        return session

    yield factory

    for session in sessions:
        session.disconnect()


@pytest.fixture
def wait_for():
    """Poll ``predicate`` until it is true or the timeout expires."""

    def _wait(predicate, timeout=2.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    return _wait
