"""
Spatial Positioning Engine

Resolves a proposed entity move against field bounds, slot regions and
the collision radius.

Two-phase process:
1. Targeting - validate the request; in snap mode replace it with the
   nearest free template anchor (ties broken by slot line priority, then
   slot order)
2. Relaxation - push the candidate away from every neighbor closer than
   the collision radius along the separating vector, for a bounded number
   of passes

A move that still collides after the last pass is rejected with a
suggested alternative; the entity is never auto-placed there.
"""

import hashlib
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from ..config import PositioningConfig
from ..errors import CollisionUnresolved, ValidationError
from ..model.abstraction import Formation, Position, Region, Slot
from .spatial_grid import SpatialHashGrid

logger = logging.getLogger(__name__)

# Pushed candidates land this far beyond the radius to survive rounding
_SEPARATION_EPSILON = 1e-6

# Distances closer than this are considered coincident
_COINCIDENT = 1e-9


def _separation_direction(key: str) -> Tuple[float, float]:
    """Deterministic unit vector for separating coincident points.

    Uses an MD5 hash of the key so repeated calls with identical input
    resolve identically.
    """
    h = hashlib.md5(key.encode()).hexdigest()
    angle = int(h[:8], 16) / 0xFFFFFFFF * 2.0 * math.pi
    return (math.cos(angle), math.sin(angle))


class MoveMode(Enum):
    """How a requested target is interpreted."""
    SNAP = "snap"  # constrain to nearest valid template anchor
    FREE = "free"  # anywhere in bounds, subject to collision avoidance


@dataclass
class MoveResult:
    """Outcome of an accepted move."""
    accepted: bool
    entity_id: str
    requested: Position
    resolved: Position
    mode: MoveMode
    slot_id: Optional[str] = None  # slot the entity ends up in
    adjusted: bool = False  # resolved differs from requested
    passes: int = 0  # relaxation passes used
    revision: Optional[int] = None  # set once applied
    message: str = ""


class PositioningEngine:
    """Collision-aware placement of entities on a formation."""

    def __init__(self, formation: Formation, config: Optional[PositioningConfig] = None):
        self.formation = formation
        self.config = config or PositioningConfig()

    @property
    def radius(self) -> float:
        return self.config.collision_radius

    def propose_move(
        self,
        entity_id: str,
        target: Position,
        mode: MoveMode = MoveMode.FREE,
        override: bool = False,
    ) -> MoveResult:
        """
        Resolve and apply a move.

        Args:
            entity_id: Entity to move (from the formation squad)
            target: Requested position
            mode: SNAP or FREE
            override: Skip collision avoidance for this move

        Returns:
            Applied MoveResult carrying the new revision

        Raises:
            ValidationError: Unknown entity, out-of-bounds target, target
                outside the slot region, or nothing to snap to
            CollisionUnresolved: Relaxation did not find a free position
        """
        result = self.resolve_move(entity_id, target, mode, override)
        return self.apply_move(result)

    def resolve_move(
        self,
        entity_id: str,
        target: Position,
        mode: MoveMode = MoveMode.FREE,
        override: bool = False,
    ) -> MoveResult:
        """Compute where a move would land without touching the formation."""
        formation = self.formation
        formation.get_entity(entity_id)
        self._validate_target(target)

        slot: Optional[Slot]
        if mode == MoveMode.SNAP:
            slot = self.snap_target(entity_id, target)
            candidate = slot.anchor
        else:
            slot = formation.slot_of(entity_id)
            candidate = target
            if slot is not None and slot.region is not None:
                if not slot.region.contains(target.x, target.y):
                    raise ValidationError(
                        f"Target ({target.x:.2f}, {target.y:.2f}) outside region of slot {slot.id}",
                        field="target",
                    )

        allowed = slot.allowed_region(formation.bounds) if slot else formation.bounds

        if override or self.config.allow_overlap:
            resolved, passes = candidate, 0
        else:
            resolved, passes = self._relax(entity_id, candidate, allowed)

        adjusted = resolved != target
        if adjusted and logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Move %s adjusted: requested=(%.2f, %.2f) resolved=(%.2f, %.2f) mode=%s passes=%d",
                entity_id, target.x, target.y, resolved.x, resolved.y, mode.value, passes,
            )
        return MoveResult(
            accepted=True,
            entity_id=entity_id,
            requested=target,
            resolved=resolved,
            mode=mode,
            slot_id=slot.id if slot else None,
            adjusted=adjusted,
            passes=passes,
            message=(
                f"Moved {entity_id} to ({resolved.x:.2f}, {resolved.y:.2f})"
                + (" (adjusted)" if adjusted else "")
            ),
        )

    def apply_move(self, result: MoveResult) -> MoveResult:
        """Write a resolved move into the formation and bump the revision."""
        formation = self.formation
        entity = formation.get_entity(result.entity_id)

        if result.mode == MoveMode.SNAP and result.slot_id is not None:
            formation.set_assignment(result.slot_id, entity.id)
            anchor = formation.get_slot(result.slot_id).anchor
            entity.position = None if result.resolved == anchor else result.resolved
        else:
            entity.position = result.resolved

        result.revision = formation.bump_revision()
        logger.info("%s (revision %d)", result.message, result.revision)
        return result

    def snap_target(self, entity_id: str, target: Position) -> Slot:
        """
        Nearest anchor the entity may snap to.

        Candidates are empty slots and the entity's own slot. Exact
        distance ties go to the higher-priority line (goalkeeper, defense,
        midfield, attack), then to the earlier slot.
        """
        candidates = [
            (index, slot) for index, slot in enumerate(self.formation.slots)
            if slot.entity_id is None or slot.entity_id == entity_id
        ]
        if not candidates:
            raise ValidationError(f"No free anchor for {entity_id} to snap to", field="mode")

        def key(item):
            index, slot = item
            return (slot.anchor.distance_to(target), slot.line.value, index)

        return min(candidates, key=key)[1]

    def check_anchor(self, entity_id: str, slot: Slot, exclude: Iterable[str] = ()):
        """
        Make sure a slot anchor is free for an entity.

        Raises:
            CollisionUnresolved: Another placed entity is within the collision
                radius; the suggestion is the nearest free point around the anchor
        """
        radius = self.radius
        grid = SpatialHashGrid.for_formation(self.formation, radius, exclude=[entity_id, *exclude])
        anchor = slot.anchor
        if not grid.within(anchor.x, anchor.y, radius):
            return
        suggestion = self._suggest(grid, anchor, slot.allowed_region(self.formation.bounds))
        raise CollisionUnresolved(
            entity_id=entity_id,
            requested=anchor.as_tuple(),
            suggestion=suggestion,
            passes=0,
        )

    def find_collisions(self) -> List[Tuple[str, str, float]]:
        """Placed entity pairs closer than the collision radius."""
        grid = SpatialHashGrid.for_formation(self.formation, self.radius)
        pairs = []
        for eid, pos in sorted(self.formation.placed_positions().items()):
            for other, dist in grid.within(pos.x, pos.y, self.radius, exclude=eid):
                if eid < other:
                    pairs.append((eid, other, dist))
        return pairs

    def _validate_target(self, target: Position):
        if not (math.isfinite(target.x) and math.isfinite(target.y)):
            raise ValidationError(f"Non-finite target {target}", field="target")
        if not self.formation.bounds.contains(target.x, target.y):
            b = self.formation.bounds
            raise ValidationError(
                f"Target ({target.x:.2f}, {target.y:.2f}) outside field bounds "
                f"[{b.min_x}, {b.max_x}]x[{b.min_y}, {b.max_y}]",
                field="target",
            )

    def _relax(self, entity_id: str, candidate: Position,
               allowed: Region) -> Tuple[Position, int]:
        """
        Push a candidate out of every neighbor's collision radius.

        Returns:
            (resolved position, passes used)

        Raises:
            CollisionUnresolved: Still colliding after the final pass
        """
        radius = self.radius
        grid = SpatialHashGrid.for_formation(self.formation, radius, exclude=[entity_id])
        x, y = candidate.x, candidate.y

        for pass_index in range(self.config.relaxation_passes):
            hits = grid.within(x, y, radius)
            if not hits:
                return Position(x, y), pass_index

            push_x = push_y = 0.0
            for other_id, dist in hits:
                ox, oy = grid.position(other_id)
                if dist < _COINCIDENT:
                    ux, uy = _separation_direction(f"{entity_id}:{other_id}")
                else:
                    ux, uy = (x - ox) / dist, (y - oy) / dist
                needed = radius + _SEPARATION_EPSILON - dist
                push_x += ux * needed
                push_y += uy * needed

            x, y = allowed.clamp(x + push_x, y + push_y)
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "Relaxation pass %d for %s: neighbors=%d candidate=(%.3f, %.3f)",
                    pass_index + 1, entity_id, len(hits), x, y,
                )

        if not grid.within(x, y, radius):
            return Position(x, y), self.config.relaxation_passes

        suggestion = self._suggest(grid, candidate, allowed)
        logger.warning(
            "Move of %s unresolved after %d passes; suggestion=%s",
            entity_id, self.config.relaxation_passes, suggestion,
        )
        raise CollisionUnresolved(
            entity_id=entity_id,
            requested=candidate.as_tuple(),
            suggestion=suggestion,
            passes=self.config.relaxation_passes,
        )

    def _suggest(self, grid: SpatialHashGrid, around: Position,
                 allowed: Region) -> Optional[Tuple[float, float]]:
        """Nearest non-colliding point on rings around the request."""
        radius = self.radius
        directions = self.config.suggestion_directions
        for ring in range(1, self.config.suggestion_rings + 1):
            distance = ring * radius * 0.5
            for step in range(directions):
                angle = 2.0 * math.pi * step / directions
                x = around.x + distance * math.cos(angle)
                y = around.y + distance * math.sin(angle)
                if not allowed.contains(x, y):
                    continue
                if not grid.within(x, y, radius):
                    return (x, y)
        return None
