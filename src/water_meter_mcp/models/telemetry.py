"""Telemetry snapshot and history log kept for the current session."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Iterator


@dataclass
class TelemetrySnapshot:
    """Latest live reading pushed by the meter.

    Updated in place by every valid ``FlowRate:`` line. The total is taken
    as reported; the device may reset it, so it is not required to grow.
    """

    flow_rate: float = 0.0  # litres per minute
    total_volume: float = 0.0  # litres
    updated_at: float | None = None

    def update(self, flow_rate: float, total_volume: float) -> None:
        self.flow_rate = flow_rate
        self.total_volume = total_volume
        self.updated_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow_rate_l_min": self.flow_rate,
            "total_volume_l": self.total_volume,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class LogEntry:
    """One historical reading returned by ``GET_LOG``."""

    datetime: str
    flow_rate: float
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        result = dict(self.extra)
        result["datetime"] = self.datetime
        result["flowRate"] = self.flow_rate
        return result


class TelemetryLog:
    """Append-only history plus the live snapshot.

    Entries keep arrival order and duplicates are kept as-is. The log only
    lives as long as the process; nothing is written to disk.
    """

    def __init__(self) -> None:
        self._entries: list[LogEntry] = []
        self.snapshot = TelemetrySnapshot()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(tuple(self._entries))

    @property
    def entries(self) -> tuple[LogEntry, ...]:
        """All entries, oldest first."""
        return tuple(self._entries)

    def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)

    def clear(self) -> None:
        """Forget every entry. The snapshot is left untouched."""
        self._entries.clear()

    def update_snapshot(self, flow_rate: float, total_volume: float) -> TelemetrySnapshot:
        self.snapshot.update(flow_rate, total_volume)
        return self.snapshot

    def newest_first(self, limit: int | None = None) -> list[LogEntry]:
        """Entries in reverse arrival order, optionally capped at ``limit``."""
        entries = self._entries[::-1]
        if limit is not None:
            entries = entries[: max(limit, 0)]
        return entries

    def to_dict(self, limit: int | None = None) -> dict[str, Any]:
        return {
            "count": len(self._entries),
            "entries": [e.to_dict() for e in self.newest_first(limit)],
        }
