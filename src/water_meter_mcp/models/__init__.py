"""Data models for live telemetry and the device history log."""

from .telemetry import LogEntry, TelemetryLog, TelemetrySnapshot
