"""Session-level API: history, editing session and atomic actions."""

from .history import HistoryEntry, HistoryManager, HistoryState
from .session import EditingSession, OptimizationHandle
from .actions import ActionResult, FormationActions

__all__ = [
    "HistoryEntry",
    "HistoryManager",
    "HistoryState",
    "EditingSession",
    "OptimizationHandle",
    "ActionResult",
    "FormationActions",
]
