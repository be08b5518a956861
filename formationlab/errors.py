"""
Error taxonomy for formation editing.

Every failure surfaced by the engine is one of these types. None of them
leave the formation in a partially modified state: the engine raises
before mutating, or returns a result object flagged as partial.
"""

from typing import List, Optional, Tuple


class FormationError(Exception):
    """Base class for all formation engine errors."""
    pass


class ValidationError(FormationError, ValueError):
    """Malformed or out-of-bounds input. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class CollisionUnresolved(FormationError):
    """Relaxation passes exhausted without a collision-free position.

    Recoverable: ``suggestion`` holds the nearest non-colliding candidate
    found around the request, or None when the neighborhood is saturated.
    """

    def __init__(
        self,
        entity_id: str,
        requested: Tuple[float, float],
        suggestion: Optional[Tuple[float, float]],
        passes: int,
    ):
        self.entity_id = entity_id
        self.requested = requested
        self.suggestion = suggestion
        self.passes = passes
        if suggestion is not None:
            hint = f"try ({suggestion[0]:.2f}, {suggestion[1]:.2f})"
        else:
            hint = "no free position nearby"
        super().__init__(
            f"Could not place {entity_id} near ({requested[0]:.2f}, {requested[1]:.2f}) "
            f"after {passes} passes; {hint}"
        )


class AssignmentInfeasible(FormationError):
    """Not enough eligible entities to fill every open slot."""

    def __init__(self, unfilled_slots: List[str], available: int):
        self.unfilled_slots = list(unfilled_slots)
        self.available = available
        super().__init__(
            f"{len(self.unfilled_slots)} slot(s) cannot be filled with "
            f"{available} eligible entities: {', '.join(self.unfilled_slots)}"
        )


class OptimizationTimeout(FormationError):
    """Optimizer budget exhausted. Attached to partial results, not raised."""

    def __init__(self, iterations: int, elapsed: float, best_score: float):
        self.iterations = iterations
        self.elapsed = elapsed
        self.best_score = best_score
        super().__init__(
            f"Optimization stopped after {iterations} iterations ({elapsed:.2f}s); "
            f"best score {best_score:.4f} returned as partial result"
        )


class ConcurrencyConflict(FormationError):
    """A delta was based on a revision the formation has already moved past."""

    def __init__(
        self,
        formation_id: str,
        delta_revision: int,
        local_revision: int,
        author: Optional[str] = None,
        reason: str = "stale",
    ):
        self.formation_id = formation_id
        self.delta_revision = delta_revision
        self.local_revision = local_revision
        self.author = author
        self.reason = reason
        super().__init__(
            f"Delta revision {delta_revision} from {author or 'unknown'} rejected for "
            f"formation {formation_id} at revision {local_revision} ({reason}); "
            f"re-derive the change from the latest state"
        )


class LockUnavailable(FormationError):
    """Slot lock is held by another active participant."""

    def __init__(self, slot_id: str, holder: Optional[str], expires_at: Optional[float] = None):
        self.slot_id = slot_id
        self.holder = holder
        self.expires_at = expires_at
        super().__init__(f"Slot {slot_id} is locked by {holder}")
