"""Connection lifecycle for a single water meter.

The session owns the open channel, the line framer and the telemetry log.
A background reader thread feeds received chunks through the framer and
the message classifier; callers on other threads send commands and read
the current state.

All mutable state is guarded by one re-entrant lock. Every session gets a
generation number that teardown increments, so a reader thread or a slow
``open()`` left over from an earlier session can never touch the current
one. Event handlers run on whichever thread caused the event, with the
lock held, and should return quickly.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from enum import Enum
from typing import Callable

from .config import SessionConfig
from .errors import ParseError, ProtocolMisuseError, TransportError
from .models.telemetry import LogEntry, TelemetryLog, TelemetrySnapshot
from .protocol.commands import CommandRequest, encode
from .protocol.framing import LineFramer
from .protocol.parser import (
    CommandAck,
    LogMessage,
    TelemetryMessage,
    Unrecognized,
    classify,
)
from .transport.base import Channel, Transport

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionSession:
    """Drives one device connection at a time.

    Usage::

        session = ConnectionSession(SerialTransport())
        session.on_telemetry(lambda snap: print(snap.flow_rate))
        session.connect("/dev/rfcomm0")   # also requests the history log
        session.reset_total()
        session.disconnect()
    """

    def __init__(self, transport: Transport, config: SessionConfig | None = None) -> None:
        self._transport = transport
        self._config = config or SessionConfig()
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()

        self._state = ConnectionState.DISCONNECTED
        self._generation = 0
        self._target: str | None = None
        self._channel: Channel | None = None
        self._framer: LineFramer | None = None
        self._reader: threading.Thread | None = None

        self.log = TelemetryLog()
        self._notifications: deque[str] = deque(maxlen=self._config.max_notifications)

        self._state_handlers: list[Callable] = []
        self._telemetry_handlers: list[Callable] = []
        self._log_entry_handlers: list[Callable] = []
        self._log_cleared_handlers: list[Callable] = []
        self._notification_handlers: list[Callable] = []

        self._dispatch = {
            TelemetryMessage: self._handle_telemetry,
            LogMessage: self._handle_log,
            CommandAck: self._handle_ack,
            ParseError: self._handle_parse_error,
            Unrecognized: self._handle_unrecognized,
        }

    # ─── STATE ───────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def target(self) -> str | None:
        return self._target

    @property
    def snapshot(self) -> TelemetrySnapshot:
        return self.log.snapshot

    @property
    def pending_bytes(self) -> bytes:
        """Partial line held by the current session's framer."""
        with self._lock:
            return self._framer.pending if self._framer is not None else b""

    @property
    def notifications(self) -> list[str]:
        with self._lock:
            return list(self._notifications)

    def drain_notifications(self) -> list[str]:
        """Return buffered notifications, oldest first, and forget them."""
        with self._lock:
            items = list(self._notifications)
            self._notifications.clear()
            return items

    def status(self) -> dict:
        with self._lock:
            return {
                "state": self._state.value,
                "target": self._target,
                "pending_bytes": len(self._framer) if self._framer is not None else 0,
                "log_entries": len(self.log),
            }

    # ─── LIFECYCLE ───────────────────────────────────────────────────

    def connect(self, target: str) -> bool:
        """Open a channel to ``target`` and start listening.

        Any existing session is torn down first. Once connected the history
        log is requested automatically unless disabled in the config.

        Returns:
            True when connected. False if :meth:`disconnect` cancelled the
            attempt while the channel was being opened, or the device
            closed the link before the log request went out.

        Raises:
            TransportError: If the channel could not be opened, or the
                initial log request could not be written.
        """
        with self._lock:
            previous = None
            if self._state is not ConnectionState.DISCONNECTED:
                logger.info("Closing session to %s before connecting to %s", self._target, target)
                previous = self._teardown()
            self._generation += 1
            generation = self._generation
            self._target = target
            self._set_state(ConnectionState.CONNECTING)
        self._join(previous)

        logger.info("Connecting to %s", target)
        try:
            channel = self._transport.open(target)
        except Exception as e:
            with self._lock:
                current = generation == self._generation
                if current:
                    self._set_state(ConnectionState.DISCONNECTED)
            if not current:
                logger.info("Connect to %s cancelled", target)
                return False
            self._notify(f"Failed to connect: {e}")
            if isinstance(e, TransportError):
                raise
            raise TransportError(str(e)) from e

        with self._lock:
            cancelled = generation != self._generation
            if not cancelled:
                self._channel = channel
                self._framer = LineFramer()
                self._reader = threading.Thread(
                    target=self._read_loop,
                    args=(channel, generation),
                    name=f"water-meter-reader-{generation}",
                    daemon=True,
                )
                self._set_state(ConnectionState.CONNECTED)
                self._reader.start()

        if cancelled:
            logger.info("Connect to %s cancelled; closing late channel", target)
            self._close_channel(channel)
            return False

        self._notify(f"Connected to {target}")
        if self._config.fetch_log_on_connect:
            try:
                self.send_command(CommandRequest.fetch_log())
            except ProtocolMisuseError:
                logger.warning("Connection to %s closed before the log was requested", target)
                return False
        return True

    def disconnect(self) -> None:
        """Close the current session, or cancel one that is connecting."""
        with self._lock:
            if self._state is ConnectionState.DISCONNECTED:
                return
            logger.info("Disconnecting from %s", self._target)
            reader = self._teardown()
        self._join(reader)

    def _teardown(self) -> threading.Thread | None:
        """Release the channel and framer. Caller holds the lock.

        Returns the reader thread so the caller can join it once the lock
        is released.
        """
        self._generation += 1
        channel, self._channel = self._channel, None
        reader, self._reader = self._reader, None
        self._framer = None
        if channel is not None:
            self._close_channel(channel)
        self._set_state(ConnectionState.DISCONNECTED)
        return reader

    def _close_channel(self, channel: Channel) -> None:
        try:
            if channel.is_open:
                channel.close()
        except Exception as e:
            logger.warning("Error closing channel: %s", e)

    def _join(self, reader: threading.Thread | None) -> None:
        if reader is None or reader is threading.current_thread():
            return
        reader.join(self._config.reader_join_timeout)
        if reader.is_alive():
            logger.warning("Reader thread %s did not stop in time", reader.name)

    # ─── COMMANDS ────────────────────────────────────────────────────

    def send_command(self, request: CommandRequest) -> None:
        """Write a command and return once the transport has flushed it.

        Raises:
            ProtocolMisuseError: If no session is connected. Nothing is
                written.
            TransportError: If the write fails. The session is closed.
        """
        with self._lock:
            if self._state is not ConnectionState.CONNECTED or self._channel is None:
                raise ProtocolMisuseError("Not connected to device")
            channel = self._channel
            generation = self._generation

        data = encode(request)
        try:
            with self._write_lock:
                channel.write(data)
        except Exception as e:
            with self._lock:
                current = generation == self._generation
                reader = self._teardown() if current else None
            self._join(reader)
            if current:
                logger.warning("Write to %s failed: %s", self._target, e)
                self._notify(f"Connection error: {e}")
            if isinstance(e, TransportError):
                raise
            raise TransportError(str(e)) from e

        # Arguments may carry a Wi-Fi password, so only the keyword is logged
        logger.info("Sent %s", request.command.value)

        if request.clears_log:
            with self._lock:
                self.log.clear()
                self._emit(self._log_cleared_handlers)

    def fetch_log(self) -> None:
        self.send_command(CommandRequest.fetch_log())

    def reset_log(self) -> None:
        self.send_command(CommandRequest.reset_log())

    def reset_total(self) -> None:
        self.send_command(CommandRequest.reset_total())

    def reset_all(self) -> None:
        self.send_command(CommandRequest.reset_all())

    def set_wifi(self, ssid: str, password: str = "") -> None:
        """Send new Wi-Fi credentials to the meter.

        Raises:
            ConfigurationError: If ``ssid`` is empty. Checked before the
                connection state.
        """
        self.send_command(CommandRequest.set_wifi(ssid, password))

    # ─── RECEIVE PATH ────────────────────────────────────────────────

    def _read_loop(self, channel: Channel, generation: int) -> None:
        error: Exception | None = None
        try:
            for chunk in channel.chunks():
                with self._lock:
                    if generation != self._generation:
                        return
                    self._handle_chunk(chunk, generation)
        except OSError as e:
            error = e
        except Exception as e:
            logger.exception("Reader for %s failed", self._target)
            error = e

        with self._lock:
            if generation != self._generation:
                return
            if error is None:
                logger.info("Device %s closed the connection", self._target)
            else:
                logger.warning("Connection to %s lost: %s", self._target, error)
            self._teardown()

        if error is not None:
            self._notify(f"Connection error: {error}")

    def _handle_chunk(self, chunk: bytes, generation: int) -> None:
        """Frame a chunk and dispatch each complete line. Caller holds the lock."""
        for line in self._framer.feed(chunk):
            # A handler may have disconnected the session mid-chunk
            if generation != self._generation:
                return
            line = line.strip()
            if not line:
                continue
            message = classify(line)
            self._dispatch.get(type(message), self._handle_unrecognized)(message)

    def _handle_telemetry(self, message: TelemetryMessage) -> None:
        snapshot = self.log.update_snapshot(message.flow_rate, message.total_volume)
        self._emit(self._telemetry_handlers, snapshot)

    def _handle_log(self, message: LogMessage) -> None:
        self.log.append(message.entry)
        self._emit(self._log_entry_handlers, message.entry)

    def _handle_ack(self, message: CommandAck) -> None:
        self._notify(message.text)

    def _handle_parse_error(self, error: ParseError) -> None:
        logger.warning("Discarding malformed line %r: %s", error.line, error)

    def _handle_unrecognized(self, message: Unrecognized) -> None:
        logger.debug("Ignoring line %r", message.line)

    # ─── EVENTS ──────────────────────────────────────────────────────

    def _set_state(self, state: ConnectionState) -> None:
        old_state = self._state
        if old_state is state:
            return
        self._state = state
        logger.info("State: %s -> %s", old_state.value, state.value)
        self._emit(self._state_handlers, old_state, state)

    def _notify(self, text: str) -> None:
        with self._lock:
            self._notifications.append(text)
            logger.info("Notification: %s", text)
            self._emit(self._notification_handlers, text)

    def _emit(self, handlers: list[Callable], *args) -> None:
        for handler in list(handlers):
            try:
                handler(*args)
            except Exception:
                logger.exception("Event handler %r failed", handler)

    def on_state_change(self, handler: Callable[[ConnectionState, ConnectionState], None]) -> None:
        """Register ``handler(old_state, new_state)``."""
        self._state_handlers.append(handler)

    def on_telemetry(self, handler: Callable[[TelemetrySnapshot], None]) -> None:
        """Register ``handler(snapshot)``, called after each live reading."""
        self._telemetry_handlers.append(handler)

    def on_log_entry(self, handler: Callable[[LogEntry], None]) -> None:
        """Register ``handler(entry)``, called for each appended log entry."""
        self._log_entry_handlers.append(handler)

    def on_log_cleared(self, handler: Callable[[], None]) -> None:
        """Register ``handler()``, called when a reset empties the log."""
        self._log_cleared_handlers.append(handler)

    def on_notification(self, handler: Callable[[str], None]) -> None:
        """Register ``handler(text)`` for user-facing messages."""
        self._notification_handlers.append(handler)
