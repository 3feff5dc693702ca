"""Bounded in-memory log of the frames exchanged with one agent subprocess.

Each :class:`~acp_remote.runtime.AcpProcess` owns a :class:`LogBuffer`. Entries
are kept in a ``collections.deque`` ring; once ``maxlen`` entries are stored the
oldest is dropped. Entry ids come from a counter owned by the buffer, so two
processes never share an id sequence.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

LogDirection = Literal["outgoing", "incoming", "notification", "raw", "error"]

DEFAULT_CAPACITY = 500


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LogEntry:
    id: int
    direction: LogDirection
    payload: Any
    timestamp: str = field(default_factory=_now_iso)


class LogBuffer:
    """Ring buffer of :class:`LogEntry` records.

    Parameters
    ----------
    maxlen:
        Maximum number of entries to retain (default 500).
    """

    def __init__(self, maxlen: int = DEFAULT_CAPACITY) -> None:
        self._buffer: deque[LogEntry] = deque(maxlen=maxlen)
        self._counter = 0

    def push(self, direction: LogDirection, payload: Any) -> LogEntry:
        """Append an entry, evicting the oldest when full, and return it."""
        self._counter += 1
        entry = LogEntry(id=self._counter, direction=direction, payload=payload)
        self._buffer.append(entry)
        return entry

    def entries(self, direction: LogDirection | None = None) -> list[LogEntry]:
        """Snapshot of the retained entries, oldest first."""
        if direction is None:
            return list(self._buffer)
        return [entry for entry in self._buffer if entry.direction == direction]

    @property
    def size(self) -> int:
        return len(self._buffer)

    @property
    def maxlen(self) -> int:
        return self._buffer.maxlen or 0
