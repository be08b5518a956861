"""Spatial hash grid for O(~1) collision queries between placed entities.

Entities are points, so with cell_size = 2 * collision_radius any entity
closer than the radius to a query point lies in the query cell or one of
its 8 neighbors. Queries never scan the whole roster.
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple
import math

from ..model.abstraction import Formation


class SpatialHashGrid:
    """Uniform grid hashing entity ids by position."""

    def __init__(self, cell_size: float):
        """Initialize spatial grid.

        Args:
            cell_size: Size of each grid cell (2x the collision radius)
        """
        if cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {cell_size}")
        self.cell_size = cell_size
        self._cells: Dict[Tuple[int, int], Set[str]] = {}
        self._positions: Dict[str, Tuple[float, float]] = {}

    @classmethod
    def for_formation(cls, formation: Formation, radius: float,
                      exclude: Iterable[str] = ()) -> "SpatialHashGrid":
        """Index every placed entity of a formation."""
        grid = cls(2.0 * radius)
        skip = set(exclude)
        for eid, pos in formation.placed_positions().items():
            if eid not in skip:
                grid.insert(eid, pos.x, pos.y)
        return grid

    def _cell_key(self, x: float, y: float) -> Tuple[int, int]:
        """Convert field coordinates to cell key."""
        return (int(math.floor(x / self.cell_size)),
                int(math.floor(y / self.cell_size)))

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._positions

    def position(self, entity_id: str) -> Optional[Tuple[float, float]]:
        return self._positions.get(entity_id)

    def clear(self):
        self._cells.clear()
        self._positions.clear()

    def insert(self, entity_id: str, x: float, y: float):
        """Insert (or re-insert) an entity."""
        if entity_id in self._positions:
            self.remove(entity_id)
        self._cells.setdefault(self._cell_key(x, y), set()).add(entity_id)
        self._positions[entity_id] = (x, y)

    def remove(self, entity_id: str):
        pos = self._positions.pop(entity_id, None)
        if pos is None:
            return
        cell = self._cell_key(*pos)
        members = self._cells.get(cell)
        if members is not None:
            members.discard(entity_id)
            if not members:
                del self._cells[cell]

    def move(self, entity_id: str, x: float, y: float):
        self.insert(entity_id, x, y)

    def neighbors(self, x: float, y: float) -> List[str]:
        """All entity ids in the 3x3 cell neighborhood of a point."""
        cx, cy = self._cell_key(x, y)
        found: List[str] = []
        for dx in (-1, 0, 1):
            for dy in (-1, 0, 1):
                members = self._cells.get((cx + dx, cy + dy))
                if members:
                    found.extend(members)
        return found

    def within(self, x: float, y: float, radius: float,
               exclude: Optional[str] = None) -> List[Tuple[str, float]]:
        """
        Entities strictly closer than radius to a point.

        Returns:
            List of (entity_id, distance), sorted by entity id for determinism
        """
        # 3x3 cells cover at least one full cell width around any point
        if radius > self.cell_size:
            raise ValueError(f"radius {radius} exceeds cell size {self.cell_size}")
        hits = []
        for eid in self.neighbors(x, y):
            if eid == exclude:
                continue
            ox, oy = self._positions[eid]
            dist = math.hypot(x - ox, y - oy)
            if dist < radius:
                hits.append((eid, dist))
        hits.sort()
        return hits
