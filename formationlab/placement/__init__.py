"""Placement engine: spatial hashing and collision-aware move resolution."""

from .spatial_grid import SpatialHashGrid
from .positioning import MoveMode, MoveResult, PositioningEngine

__all__ = [
    "SpatialHashGrid",
    "MoveMode",
    "MoveResult",
    "PositioningEngine",
]
