"""
Formation Snapshots

Immutable captures of a formation's editable state, used by the history
stack and for read-only work on a consistent copy.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from .abstraction import Formation, Position


@dataclass(frozen=True)
class SlotState:
    """Snapshot of one slot."""
    slot_id: str
    role: str
    anchor: Tuple[float, float]
    entity_id: Optional[str]


@dataclass(frozen=True)
class FormationSnapshot:
    """Complete snapshot of formation state for undo/redo."""
    formation_id: str
    name: str
    slots: Tuple[SlotState, ...]
    positions: Tuple[Tuple[str, Optional[Tuple[float, float]]], ...]
    revision: int = 0
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def capture(cls, formation: Formation) -> "FormationSnapshot":
        """Take a snapshot of the current formation state."""
        slots = tuple(
            SlotState(
                slot_id=slot.id,
                role=slot.role,
                anchor=slot.anchor.as_tuple(),
                entity_id=slot.entity_id,
            )
            for slot in formation.slots
        )
        positions = tuple(
            (eid, entity.position.as_tuple() if entity.position else None)
            for eid, entity in sorted(formation.entities.items())
        )
        return cls(
            formation_id=formation.id,
            name=formation.name,
            slots=slots,
            positions=positions,
            revision=formation.revision,
        )

    def same_state(self, other: "FormationSnapshot") -> bool:
        """Compare content, ignoring revision and capture time."""
        return (self.formation_id == other.formation_id
                and self.name == other.name
                and self.slots == other.slots
                and self.positions == other.positions)

    @property
    def assignments(self) -> Dict[str, Optional[str]]:
        return {s.slot_id: s.entity_id for s in self.slots}

    def restore_into(self, formation: Formation):
        """Write the snapshot content back into a formation (revision untouched)."""
        by_id = {slot.id: slot for slot in formation.slots}
        for state in self.slots:
            slot = by_id.get(state.slot_id)
            if slot is None:
                continue
            slot.role = state.role
            slot.anchor = Position(*state.anchor)
            slot.entity_id = state.entity_id
        for eid, pos in self.positions:
            entity = formation.entities.get(eid)
            if entity is not None:
                entity.position = Position(*pos) if pos is not None else None
        formation.name = self.name
