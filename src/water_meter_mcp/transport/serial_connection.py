"""Serial-over-Bluetooth link to the water meter.

The meter exposes a Bluetooth Serial Port Profile (RFCOMM) channel. Two
backends are supported:

- ``pyserial`` for a serial device node bound to the meter, such as
  ``/dev/rfcomm0`` on Linux or an outgoing ``COMx`` port on Windows.
- A native ``AF_BLUETOOTH`` RFCOMM socket when the target is a Bluetooth
  MAC address (Linux only).
"""

from __future__ import annotations

import logging
import re
import socket
from dataclasses import dataclass
from typing import Iterator

import serial

from ..config import SessionConfig
from ..errors import TransportError
from .base import Channel, Transport

logger = logging.getLogger(__name__)

MAC_ADDRESS_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


@dataclass
class ChannelInfo:
    """Where a channel is connected and through which backend."""

    target: str
    backend: str


class SerialChannel(Channel):
    """Channel over a pyserial port."""

    def __init__(self, port: serial.Serial, target: str, read_size: int) -> None:
        self._port = port
        self._read_size = read_size
        self._closed = False
        self.info = ChannelInfo(target=target, backend="pyserial")

    @property
    def is_open(self) -> bool:
        return not self._closed and self._port.is_open

    def chunks(self) -> Iterator[bytes]:
        while self.is_open:
            try:
                # Blocks for at most the port timeout; an empty result just loops
                data = self._port.read(min(self._port.in_waiting or 1, self._read_size))
            except (serial.SerialException, OSError, ValueError) as e:
                if self._closed:
                    return
                raise TransportError(f"Read from {self.info.target} failed: {e}") from e
            if data:
                logger.debug("RX %r", data)
                yield data

    def write(self, data: bytes) -> None:
        if not self.is_open:
            raise TransportError("Channel is closed")
        try:
            self._port.write(data)
            self._port.flush()
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Write to {self.info.target} failed: {e}") from e
        logger.debug("TX %r", data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._port.close()
        except Exception as e:
            logger.warning("Error closing %s: %s", self.info.target, e)


class RfcommChannel(Channel):
    """Channel over a native Bluetooth RFCOMM socket."""

    def __init__(self, sock: socket.socket, target: str, read_size: int) -> None:
        self._sock = sock
        self._read_size = read_size
        self._closed = False
        self.info = ChannelInfo(target=target, backend="rfcomm")

    @property
    def is_open(self) -> bool:
        return not self._closed

    def chunks(self) -> Iterator[bytes]:
        while not self._closed:
            try:
                data = self._sock.recv(self._read_size)
            except socket.timeout:
                continue
            except OSError as e:
                if self._closed:
                    return
                raise TransportError(f"Read from {self.info.target} failed: {e}") from e
            if not data:
                # Peer closed the link
                return
            logger.debug("RX %r", data)
            yield data

    def write(self, data: bytes) -> None:
        if self._closed:
            raise TransportError("Channel is closed")
        try:
            self._sock.sendall(data)
        except OSError as e:
            raise TransportError(f"Write to {self.info.target} failed: {e}") from e
        logger.debug("TX %r", data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already disconnected by the peer
            pass
        try:
            self._sock.close()
        except OSError as e:
            logger.warning("Error closing %s: %s", self.info.target, e)


class SerialTransport(Transport):
    """Opens channels to the meter, choosing the backend from the target.

    Usage::

        transport = SerialTransport()
        channel = transport.open("/dev/rfcomm0")
        channel.write(b"GET_LOG\\n")
        for chunk in channel.chunks():
            ...
        channel.close()
    """

    def __init__(self, config: SessionConfig | None = None) -> None:
        self._config = config or SessionConfig()

    def open(self, target: str) -> Channel:
        """Open a channel to a MAC address or a serial port path.

        Raises:
            TransportError: If the device cannot be opened.
        """
        if MAC_ADDRESS_RE.match(target):
            return self._open_rfcomm(target)
        return self._open_serial(target)

    def _open_serial(self, port: str) -> SerialChannel:
        try:
            handle = serial.Serial(
                port=port,
                baudrate=self._config.baudrate,
                timeout=self._config.read_timeout,
                write_timeout=self._config.write_timeout,
            )
        except (serial.SerialException, OSError, ValueError) as e:
            raise TransportError(f"Could not open {port}: {e}") from e

        logger.info("Opened %s at %d baud", port, self._config.baudrate)
        return SerialChannel(handle, port, self._config.read_size)

    def _open_rfcomm(self, address: str) -> RfcommChannel:
        family = getattr(socket, "AF_BLUETOOTH", None)
        proto = getattr(socket, "BTPROTO_RFCOMM", None)
        if family is None or proto is None:
            raise TransportError(
                "Bluetooth sockets are not available on this platform; "
                "bind the device to a serial port and connect to that instead"
            )

        sock = socket.socket(family, socket.SOCK_STREAM, proto)
        try:
            sock.connect((address, self._config.rfcomm_channel))
        except OSError as e:
            sock.close()
            raise TransportError(f"Could not connect to {address}: {e}") from e
        sock.settimeout(self._config.read_timeout)

        logger.info("Connected to %s on RFCOMM channel %d", address, self._config.rfcomm_channel)
        return RfcommChannel(sock, address, self._config.read_size)
