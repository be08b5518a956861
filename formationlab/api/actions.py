"""
Formation Edit Actions

High-level, atomic editing operations on top of an EditingSession. Each
action either fully applies (new revision, history entry, broadcast) or
reports why it was refused; failures come back as an ActionResult rather
than an exception so interactive front ends can show them directly.

Usage:
    from formationlab.api.actions import FormationActions
    actions = FormationActions(session)
    actions.move_relative("p7", dx=-4, dy=0)
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ..errors import CollisionUnresolved, FormationError
from ..placement.positioning import MoveMode
from .session import EditingSession


@dataclass
class ActionResult:
    """Result of an atomic action."""
    success: bool
    message: str
    modified_ids: List[str] = field(default_factory=list)
    revision: Optional[int] = None
    error: Optional[FormationError] = None

    @property
    def suggestion(self):
        """Alternative position offered by a collision rejection."""
        if isinstance(self.error, CollisionUnresolved):
            return self.error.suggestion
        return None


class FormationActions:
    """Editing vocabulary for one session."""

    def __init__(self, session: EditingSession):
        self.session = session

    def _failed(self, error: FormationError) -> ActionResult:
        return ActionResult(False, str(error), [], self.session.revision, error)

    def move_absolute(self, entity_id: str, x: float, y: float,
                      override: bool = False) -> ActionResult:
        """Move an entity to absolute field coordinates."""
        try:
            result = self.session.propose_move(entity_id, (x, y), MoveMode.FREE, override)
        except FormationError as e:
            return self._failed(e)
        return ActionResult(True, result.message, [entity_id], result.revision)

    def move_relative(self, entity_id: str, dx: float, dy: float) -> ActionResult:
        """Move an entity by a delta from its current position."""
        try:
            current = self.session.formation.effective_position(entity_id)
        except FormationError as e:
            return self._failed(e)
        if current is None:
            return ActionResult(False, f"Entity {entity_id} is not on the field", [],
                                self.session.revision)
        return self.move_absolute(entity_id, current.x + dx, current.y + dy)

    def snap(self, entity_id: str, x: float, y: float) -> ActionResult:
        """Drop an entity near (x, y) onto the nearest free template anchor."""
        try:
            result = self.session.propose_move(entity_id, (x, y), MoveMode.SNAP)
        except FormationError as e:
            return self._failed(e)
        return ActionResult(True, result.message, [entity_id], result.revision)

    def place_in_slot(self, entity_id: str, slot_id: str) -> ActionResult:
        """Assign an entity to a slot, benching the current occupant."""
        session = self.session
        try:
            occupant = session.formation.get_slot(slot_id).entity_id
            delta = session.assign(slot_id, entity_id)
        except FormationError as e:
            return self._failed(e)
        if delta is None:
            return ActionResult(True, f"{entity_id} already in {slot_id}", [], session.revision)
        modified = [entity_id] + ([occupant] if occupant and occupant != entity_id else [])
        return ActionResult(True, f"Placed {entity_id} in {slot_id}", modified, delta.revision)

    def bench(self, entity_id: str) -> ActionResult:
        """Take an entity off the field."""
        session = self.session
        try:
            session.formation.get_entity(entity_id)
        except FormationError as e:
            return self._failed(e)
        slot = session.formation.slot_of(entity_id)
        if slot is None:
            return ActionResult(False, f"Entity {entity_id} is not in a slot", [], session.revision)
        delta = session.unassign(slot.id)
        return ActionResult(True, f"Benched {entity_id}", [entity_id], delta.revision)

    def swap_slots(self, slot_a: str, slot_b: str) -> ActionResult:
        """Exchange the occupants of two slots."""
        session = self.session
        try:
            ids = [session.formation.get_slot(s).entity_id for s in (slot_a, slot_b)]
            delta = session.swap(slot_a, slot_b)
        except FormationError as e:
            return self._failed(e)
        if delta is None:
            return ActionResult(True, "Nothing to swap", [], session.revision)
        return ActionResult(True, f"Swapped {slot_a} and {slot_b}",
                            [eid for eid in ids if eid], delta.revision)

    def fill_empty_slots(self) -> ActionResult:
        """Auto-assign the squad into empty slots, keeping current occupants."""
        session = self.session
        keep = [s.id for s in session.formation.slots if s.entity_id is not None]
        try:
            result = session.auto_assign(keep=keep)
        except FormationError as e:
            return self._failed(e)
        filled = [result.assignments[s] for s in result.scores]
        return ActionResult(True, f"Filled {len(filled)} slot(s)", filled, session.revision)

    def undo(self) -> ActionResult:
        delta = self.session.undo()
        if delta is None:
            return ActionResult(False, "Nothing to undo", [], self.session.revision)
        return ActionResult(True, "Undone", [], delta.revision)

    def redo(self) -> ActionResult:
        delta = self.session.redo()
        if delta is None:
            return ActionResult(False, "Nothing to redo", [], self.session.revision)
        return ActionResult(True, "Redone", [], delta.revision)
