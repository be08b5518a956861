"""
Formation History

Linear undo/redo over full formation snapshots.

Entries live in a single list with a cursor pointing at the entry that
matches the current formation state:
- commit() drops everything after the cursor (the redo tail), appends and
  moves the cursor to the new entry
- undo()/redo() only move the cursor and return the snapshot to restore
- the oldest entry is evicted once max_depth is exceeded

Full snapshots are stored rather than diffs; formations have a few dozen
slots and entities at most.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..model.snapshot import FormationSnapshot

logger = logging.getLogger(__name__)


class HistoryState(Enum):
    IDLE = "idle"
    RECORDING = "recording"


@dataclass(frozen=True)
class HistoryEntry:
    """One committed edit."""
    snapshot: FormationSnapshot
    author: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    description: str = ""


class HistoryManager:
    """Bounded linear history with a cursor."""

    def __init__(self, max_depth: int = 50):
        if max_depth < 1:
            raise ValueError(f"max_depth must be at least 1, got {max_depth}")
        self.max_depth = max_depth
        self.state = HistoryState.IDLE
        self._entries: List[HistoryEntry] = []
        self._cursor = -1
        self._evicted = 0
        self._discarded = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def cursor(self) -> int:
        """Index of the entry matching the current state (-1 when empty)."""
        return self._cursor

    @property
    def entries(self) -> Tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    @property
    def current(self) -> Optional[HistoryEntry]:
        if self._cursor < 0:
            return None
        return self._entries[self._cursor]

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return self._cursor < len(self._entries) - 1

    def begin(self):
        """Mark that an accepted edit is being recorded."""
        self.state = HistoryState.RECORDING

    def commit(self, snapshot: FormationSnapshot, author: str = "local",
               description: str = "") -> HistoryEntry:
        """
        Record a new state at the cursor.

        Any redo tail is discarded before the entry is appended.
        """
        self.state = HistoryState.RECORDING
        tail = len(self._entries) - self._cursor - 1
        if tail > 0:
            del self._entries[self._cursor + 1:]
            self._discarded += tail
            logger.debug("Discarded %d redo entries", tail)

        entry = HistoryEntry(snapshot=snapshot, author=author, description=description)
        self._entries.append(entry)
        self._cursor = len(self._entries) - 1

        # Limit stack size
        while len(self._entries) > self.max_depth:
            self._entries.pop(0)
            self._cursor -= 1
            self._evicted += 1

        self.state = HistoryState.IDLE
        return entry

    def undo(self) -> Optional[FormationSnapshot]:
        """Step back one entry. Returns the snapshot to restore, or None."""
        if not self.can_undo:
            return None
        self._cursor -= 1
        return self._entries[self._cursor].snapshot

    def redo(self) -> Optional[FormationSnapshot]:
        """Step forward one entry. Returns the snapshot to restore, or None."""
        if not self.can_redo:
            return None
        self._cursor += 1
        return self._entries[self._cursor].snapshot

    def clear(self):
        self._entries.clear()
        self._cursor = -1
        self.state = HistoryState.IDLE

    def stats(self) -> Dict[str, Any]:
        """Get history statistics."""
        return {
            "depth": len(self._entries),
            "max_depth": self.max_depth,
            "cursor": self._cursor,
            "undo_available": self.can_undo,
            "redo_available": self.can_redo,
            "evicted": self._evicted,
            "discarded": self._discarded,
            "state": self.state.value,
        }
