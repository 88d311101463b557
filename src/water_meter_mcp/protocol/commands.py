"""Command vocabulary and wire encoding for host-to-device requests.

Every command is a single UTF-8 text line terminated by ``\\n``, the same
delimiter the device uses for its own output.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from ..errors import ConfigurationError
from .framing import DELIMITER, ENCODING

logger = logging.getLogger(__name__)


class Command(str, Enum):
    """Command keywords understood by the meter firmware."""

    GET_LOG = "GET_LOG"
    RESET_LOG = "RESET_LOG"
    RESET_TOTAL = "RESET_TOTAL"
    RESET_ALL = "RESET_ALL"
    SET_WIFI = "SET_WIFI"


# Commands after which the device has emptied its history log
LOG_CLEARING_COMMANDS = frozenset({Command.RESET_LOG, Command.RESET_ALL})


@dataclass(frozen=True)
class CommandRequest:
    """A command plus its already-validated argument text."""

    command: Command
    argument: str = ""

    @property
    def clears_log(self) -> bool:
        return self.command in LOG_CLEARING_COMMANDS

    @classmethod
    def fetch_log(cls) -> CommandRequest:
        return cls(Command.GET_LOG)

    @classmethod
    def reset_log(cls) -> CommandRequest:
        return cls(Command.RESET_LOG)

    @classmethod
    def reset_total(cls) -> CommandRequest:
        return cls(Command.RESET_TOTAL)

    @classmethod
    def reset_all(cls) -> CommandRequest:
        return cls(Command.RESET_ALL)

    @classmethod
    def set_wifi(cls, ssid: str, password: str = "") -> CommandRequest:
        """Build a ``SET_WIFI`` request.

        The wire format has no escaping. An SSID or password containing
        ``,`` or a newline is sent unchanged and will be misread by the
        device; a warning is logged in that case.

        Raises:
            ConfigurationError: If ``ssid`` is empty.
        """
        if not ssid:
            raise ConfigurationError("Please enter SSID")
        if any(c in value for value in (ssid, password) for c in ",\n"):
            logger.warning("SSID or password contains ',' or newline; the device may misread it")
        return cls(Command.SET_WIFI, f"{ssid},{password}")

    def __str__(self) -> str:
        if self.argument:
            return f"{self.command.value}:{self.argument}"
        return self.command.value


def encode(request: CommandRequest) -> bytes:
    """Serialize a request into its newline-terminated wire form."""
    return str(request).encode(ENCODING) + DELIMITER
