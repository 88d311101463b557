"""Classification of device lines into typed messages.

Each line is matched against a prefix table; the first prefix that matches
decides the message kind. Malformed payloads never raise out of
:func:`classify`: the caller gets a :class:`ParseError` value back and
decides whether to log it.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Callable, Union

from ..errors import ParseError
from ..models.telemetry import LogEntry

FLOW_RATE_PREFIX = "FlowRate:"
TOTAL_PREFIX = "Total:"
LOG_PREFIX = "[LOG]"
CMD_PREFIX = "[CMD]"

_DECIMAL_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


@dataclass
class TelemetryMessage:
    """Live reading: ``FlowRate:<f>/Lmin,Total:<f>L``."""

    flow_rate: float
    total_volume: float


@dataclass
class LogMessage:
    """History record: ``[LOG]{"datetime": ..., "flowRate": ...}``."""

    entry: LogEntry


@dataclass
class CommandAck:
    """Free-text acknowledgement, shown to the user verbatim."""

    text: str


@dataclass
class Unrecognized:
    """A line with no known prefix, typically device diagnostics."""

    line: str


Message = Union[TelemetryMessage, LogMessage, CommandAck, Unrecognized]


def parse_decimal(token: str) -> float:
    """Parse a plain decimal number such as ``3.50``, ``-1`` or ``2e3``.

    Raises:
        ValueError: For anything else, including ``nan``, ``inf`` and
            digit-group underscores that :func:`float` would accept.
    """
    token = token.strip()
    if not _DECIMAL_RE.fullmatch(token):
        raise ValueError(f"not a decimal number: {token!r}")
    value = float(token)
    if not math.isfinite(value):
        raise ValueError(f"number out of range: {token!r}")
    return value


def parse_flow_rate(line: str) -> TelemetryMessage:
    """Parse a ``FlowRate:`` line.

    Raises:
        ParseError: If a field is missing or a value is not numeric.
    """
    parts = line.split(",")
    if len(parts) < 2:
        raise ParseError("flow rate line has no total field", line)

    flow_part = parts[0].strip().removeprefix(FLOW_RATE_PREFIX)
    flow_token = flow_part.split("/")[0]

    total_part = parts[1].strip().removeprefix(TOTAL_PREFIX).strip()
    total_token = total_part.removesuffix("L")

    try:
        flow_rate = parse_decimal(flow_token)
        total_volume = parse_decimal(total_token)
    except ValueError as e:
        raise ParseError(f"bad flow rate line: {e}", line) from e

    return TelemetryMessage(flow_rate=flow_rate, total_volume=total_volume)


def parse_log_record(line: str) -> LogMessage:
    """Parse a ``[LOG]`` line carrying a JSON object.

    The object must hold ``datetime`` and a numeric ``flowRate``. Any other
    keys are kept on the entry's ``extra`` mapping.

    Raises:
        ParseError: If the JSON is invalid or a required field is missing.
    """
    text = line[len(LOG_PREFIX):].strip()
    try:
        record = json.loads(text)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError is a ValueError; so is the int digit limit
        raise ParseError(f"log record is not valid JSON: {e}", line) from e

    if not isinstance(record, dict):
        raise ParseError("log record is not an object", line)
    if "datetime" not in record or "flowRate" not in record:
        raise ParseError("log record lacks datetime or flowRate", line)

    raw_rate = record["flowRate"]
    if isinstance(raw_rate, bool):
        raise ParseError("log flowRate is not numeric", line)
    if isinstance(raw_rate, (int, float)):
        try:
            flow_rate = float(raw_rate)
        except OverflowError as e:
            raise ParseError("log flowRate is out of range", line) from e
    elif isinstance(raw_rate, str):
        try:
            flow_rate = parse_decimal(raw_rate)
        except ValueError as e:
            raise ParseError(f"log flowRate is not numeric: {e}", line) from e
    else:
        raise ParseError("log flowRate is not numeric", line)
    if not math.isfinite(flow_rate):
        raise ParseError("log flowRate is not finite", line)

    extra = {k: v for k, v in record.items() if k not in ("datetime", "flowRate")}
    entry = LogEntry(datetime=str(record["datetime"]), flow_rate=flow_rate, extra=extra)
    return LogMessage(entry=entry)


def parse_command_ack(line: str) -> CommandAck:
    return CommandAck(text=line)


# Checked in order; the first matching prefix wins.
PREFIX_PARSERS: list[tuple[str, Callable[[str], Message]]] = [
    (FLOW_RATE_PREFIX, parse_flow_rate),
    (LOG_PREFIX, parse_log_record),
    (CMD_PREFIX, parse_command_ack),
]


def classify(line: str) -> Message | ParseError:
    """Turn one trimmed, non-empty line into a message.

    Returns a :class:`ParseError` instance (it is not raised) when the line
    has a known prefix but a malformed payload, and :class:`Unrecognized`
    when no prefix matches.
    """
    for prefix, parser in PREFIX_PARSERS:
        if line.startswith(prefix):
            try:
                return parser(line)
            except ParseError as e:
                return e
    return Unrecognized(line=line)
