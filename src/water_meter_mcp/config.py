"""Session and transport settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Callable, Mapping, get_type_hints

from .errors import ConfigurationError

ENV_PREFIX = "WATER_METER_"

DEFAULT_BAUDRATE = 115200
DEFAULT_RFCOMM_CHANNEL = 1
READ_TIMEOUT_S = 0.5
WRITE_TIMEOUT_S = 2.0
READ_SIZE = 1024

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class SessionConfig:
    """Tunables for the connection session and its transport.

    ``read_timeout`` bounds how long a blocking read waits before the
    reader re-checks whether the session is still live.
    """

    baudrate: int = DEFAULT_BAUDRATE
    rfcomm_channel: int = DEFAULT_RFCOMM_CHANNEL
    read_timeout: float = READ_TIMEOUT_S
    write_timeout: float = WRITE_TIMEOUT_S
    read_size: int = READ_SIZE
    fetch_log_on_connect: bool = True
    max_notifications: int = 50
    reader_join_timeout: float = 2.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.read_size < 1:
            raise ConfigurationError(f"read_size must be positive, got {self.read_size}")
        if self.max_notifications < 1:
            raise ConfigurationError(
                f"max_notifications must be positive, got {self.max_notifications}"
            )
        if not 1 <= self.rfcomm_channel <= 30:
            raise ConfigurationError(f"RFCOMM channel must be 1-30, got {self.rfcomm_channel}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SessionConfig:
        """Build a config from ``WATER_METER_<FIELD>`` environment variables.

        Unset variables keep their defaults.

        Raises:
            ConfigurationError: If a value cannot be converted, or a field
                has a type with no environment parser.
        """
        environ = os.environ if environ is None else environ
        hints = get_type_hints(cls)
        values = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, hints[f.name], raw)
        return cls(**values)


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(raw)


# Environment parsers by field type; a field of any other type cannot come from the environment
_PARSERS: dict[type, Callable[[str], object]] = {
    bool: _parse_bool,
    int: int,
    float: float,
    str: str,
}


def _coerce(name: str, field_type: type, raw: str):
    variable = ENV_PREFIX + name.upper()
    parser = _PARSERS.get(field_type)
    if parser is None:
        raise ConfigurationError(
            f"{variable} cannot be set from the environment: unsupported type {field_type!r}"
        )
    raw = raw.strip()
    try:
        return parser(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid value for {variable}: {raw!r}") from e
