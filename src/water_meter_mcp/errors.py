"""Exception types raised by the water meter client."""

from __future__ import annotations


class WaterMeterError(Exception):
    """Base class for every error raised by this package."""


class TransportError(WaterMeterError, ConnectionError):
    """The radio link could not be opened, read or written."""


class ParseError(WaterMeterError, ValueError):
    """A line from the device did not match its expected shape.

    ``line`` holds the offending text so it can be logged.
    """

    def __init__(self, message: str, line: str = "") -> None:
        super().__init__(message)
        self.line = line


class ProtocolMisuseError(WaterMeterError, RuntimeError):
    """An operation was attempted in a connection state that forbids it."""


class ConfigurationError(WaterMeterError, ValueError):
    """A setting or command argument was rejected before use."""
