"""MCP server entry point for the Bluetooth water meter.

Exposes the meter's intents as tools and its live state as resources,
using the official Python MCP SDK with stdio transport.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

from mcp.server.fastmcp import FastMCP

from .config import SessionConfig
from .errors import WaterMeterError
from .protocol.commands import CommandRequest
from .session import ConnectionSession
from .transport.serial_connection import SerialTransport

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "water-meter",
    instructions="MCP server for a Bluetooth serial IoT water meter",
)

# Global session state
_config: SessionConfig | None = None
_session: ConnectionSession | None = None


def _get_session() -> ConnectionSession:
    """Get the process-wide session, creating it on first use."""
    global _session, _config
    if _session is None:
        if _config is None:
            _config = SessionConfig.from_env()
        _session = ConnectionSession(SerialTransport(_config), _config)
    return _session


def _send(action: Callable[[], None], **result: Any) -> dict[str, Any]:
    """Run a command intent, turning rejections into an error dict."""
    try:
        action()
    except WaterMeterError as e:
        return {"error": str(e)}
    result["sent"] = True
    return result


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def connect(target: str) -> dict[str, Any]:
    """Connect to a paired water meter and request its history log.

    Any existing connection is closed first.

    Args:
        target: Bluetooth MAC address (AA:BB:CC:DD:EE:FF) or serial port
                bound to the meter (e.g. /dev/rfcomm0, COM5).
    """
    session = _get_session()
    try:
        connected = session.connect(target)
    except WaterMeterError as e:
        return {"connected": False, "error": str(e)}
    return {"connected": connected, "target": target, "state": session.state.value}


@mcp.tool()
def disconnect() -> dict[str, bool]:
    """Close the connection to the meter."""
    _get_session().disconnect()
    return {"disconnected": True}


@mcp.tool()
def get_status() -> dict[str, Any]:
    """Report the connection state and log size."""
    return _get_session().status()


# ─── TELEMETRY TOOLS ──────────────────────────────────────────────────

@mcp.tool()
def get_telemetry() -> dict[str, Any]:
    """Return the latest flow rate (L/min) and total volume (L)."""
    session = _get_session()
    result = session.snapshot.to_dict()
    result["state"] = session.state.value
    return result


@mcp.tool()
def get_log(limit: int = 50) -> dict[str, Any]:
    """Return history log entries received this session, newest first.

    Args:
        limit: Maximum number of entries to return (default 50).
    """
    if limit < 0:
        return {"error": "Limit must not be negative"}
    return _get_session().log.to_dict(limit)


@mcp.tool()
def get_notifications() -> dict[str, Any]:
    """Return and clear device acknowledgements and connection errors."""
    return {"notifications": _get_session().drain_notifications()}


# ─── COMMAND TOOLS ────────────────────────────────────────────────────

@mcp.tool()
def fetch_log() -> dict[str, Any]:
    """Ask the meter to resend its history log.

    Entries arrive asynchronously; read them with get_log.
    """
    session = _get_session()
    return _send(session.fetch_log, command=str(CommandRequest.fetch_log()))


@mcp.tool()
def reset_log() -> dict[str, Any]:
    """Erase the meter's history log and clear the local copy."""
    session = _get_session()
    return _send(session.reset_log, command=str(CommandRequest.reset_log()))


@mcp.tool()
def reset_total() -> dict[str, Any]:
    """Reset the meter's total volume counter."""
    session = _get_session()
    return _send(session.reset_total, command=str(CommandRequest.reset_total()))


@mcp.tool()
def reset_all() -> dict[str, Any]:
    """Reset both the history log and the total volume counter."""
    session = _get_session()
    return _send(session.reset_all, command=str(CommandRequest.reset_all()))


@mcp.tool()
def set_wifi(ssid: str, password: str = "") -> dict[str, Any]:
    """Send Wi-Fi credentials to the meter.

    The wire format cannot carry ',' or line breaks in either field.

    Args:
        ssid: Network name (required).
        password: Network password (may be empty for open networks).
    """
    session = _get_session()
    return _send(lambda: session.set_wifi(ssid, password), command="SET_WIFI", ssid=ssid)


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("watermeter://telemetry")
def resource_telemetry() -> str:
    """Latest live reading."""
    return json.dumps(_get_session().snapshot.to_dict())


@mcp.resource("watermeter://log")
def resource_log() -> str:
    """Full history log received this session, newest first."""
    return json.dumps(_get_session().log.to_dict())


@mcp.resource("watermeter://status")
def resource_status() -> str:
    """Connection state."""
    return json.dumps(_get_session().status())


# ─── MCP PROMPTS ─────────────────────────────────────────────────────

@mcp.prompt()
def usage_report(period: str = "the logged period") -> str:
    """Summarize water usage from the meter's history log.

    Args:
        period: Time span the summary should focus on.
    """
    return f"""Summarize water usage for {period}.
Steps:
- Call get_status and connect if the meter is not connected
- Call fetch_log, then get_log to read the history entries
- Call get_telemetry for the current flow rate and total volume

Report peak flow rates with their timestamps, periods with no flow,
and any sustained flow that could indicate a leak."""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    global _config
    _config = SessionConfig.from_env()
    logging.basicConfig(level=_config.log_level.upper())
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
