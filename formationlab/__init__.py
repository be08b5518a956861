"""
FormationLab - Tactical Formation Editing Engine

Builds and edits team formations on a normalized field: collision-aware
placement, optimal auto-assignment, pairwise chemistry, local-search
optimization, undo/redo and multi-editor synchronization.
"""

__version__ = "0.1.0"
__author__ = "FormationLab Team"

from .model.abstraction import Entity, Formation, Position, Slot
from .model.templates import create_formation
from .api.session import EditingSession
from .config import EngineConfig, get_config

__all__ = [
    "Entity",
    "Formation",
    "Position",
    "Slot",
    "create_formation",
    "EditingSession",
    "EngineConfig",
    "get_config",
]
