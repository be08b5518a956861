"""
Formation Local Search

Hill-climbing refinement of a whole formation against the tactical
objective (see analysis.objective_score).

Each iteration proposes one perturbation:
- Nudge: move one placed entity by up to step_size inside its allowed
  region, rejected if it would violate the collision radius
- Swap: exchange the entities (and positions) of two occupied slots

A perturbation is kept only if it improves the objective by at least
min_improvement, so the returned score is never below the input score.

Termination, whichever comes first:
- patience iterations without improvement (converged)
- max_iterations (iteration-budget)
- time_budget_seconds (timeout, partial)
- cancel_event set by the caller (cancelled, partial)
"""

import copy
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..chemistry.scorer import ChemistryGraph
from ..config import EngineConfig
from ..errors import OptimizationTimeout
from ..model.abstraction import Formation, Position
from ..placement.spatial_grid import SpatialHashGrid
from .analysis import objective_score

logger = logging.getLogger(__name__)

REASON_CONVERGED = "converged"
REASON_BUDGET = "iteration-budget"
REASON_TIMEOUT = "timeout"
REASON_CANCELLED = "cancelled"


@dataclass
class OptimizationResult:
    """Refined formation copy plus how the search went."""
    formation: Formation
    initial_score: float
    final_score: float
    iterations: int
    reason: str
    base_revision: int  # revision of the input formation
    changes: List[str] = field(default_factory=list)
    timeout: Optional[OptimizationTimeout] = None
    elapsed: float = 0.0

    @property
    def delta(self) -> float:
        return self.final_score - self.initial_score

    @property
    def converged(self) -> bool:
        return self.reason == REASON_CONVERGED

    @property
    def partial(self) -> bool:
        """Search was cut short; the result is the best found so far."""
        return self.reason in (REASON_TIMEOUT, REASON_CANCELLED)

    @property
    def improved(self) -> bool:
        return bool(self.changes)


class FormationOptimizer:
    """
    Bounded hill-climbing over entity positions and slot assignments.

    The input formation is deep-copied; all search happens on the copy so
    callers may run this off-thread while the original keeps being edited.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def optimize(
        self,
        formation: Formation,
        cancel_event: Optional[threading.Event] = None,
        callback: Optional[Callable[[int, float], None]] = None,
        max_iterations: Optional[int] = None,
    ) -> OptimizationResult:
        """
        Optimize a formation.

        Args:
            formation: Formation to refine (not modified)
            cancel_event: Set to stop early with the best result so far
            callback: Called as callback(iteration, best_score) on every
                accepted improvement
            max_iterations: Override of the configured iteration budget

        Returns:
            OptimizationResult whose final_score >= initial_score
        """
        opt = self.config.optimizer
        budget = opt.max_iterations if max_iterations is None else max_iterations
        work = copy.deepcopy(formation)
        graph = ChemistryGraph(self.config.chemistry).rebuild(work)
        rng = random.Random(opt.seed)

        best = objective_score(work, graph, self.config)
        initial = best
        changes: List[str] = []
        stale = 0
        iterations = 0
        reason = REASON_BUDGET
        start = time.monotonic()

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Local search start: formation=%s placed=%d budget=%d patience=%d score=%.4f",
                work.id, len(work.placed_positions()), budget, opt.patience, initial,
            )

        for iteration in range(budget):
            if cancel_event is not None and cancel_event.is_set():
                reason = REASON_CANCELLED
                break
            if time.monotonic() - start > opt.time_budget_seconds:
                reason = REASON_TIMEOUT
                break
            if stale >= opt.patience:
                reason = REASON_CONVERGED
                break

            iterations = iteration + 1
            occupied = [s for s in work.slots if s.entity_id is not None]
            if len(occupied) >= 2 and rng.random() < opt.swap_probability:
                accepted, best, change = self._try_swap(work, graph, occupied, rng, best)
            else:
                accepted, best, change = self._try_nudge(work, graph, rng, best)

            if accepted:
                stale = 0
                changes.append(change)
                if callback:
                    callback(iterations, best)
            else:
                stale += 1
        else:
            # Budget used up; patience may have been reached on the last step
            if stale >= opt.patience:
                reason = REASON_CONVERGED

        elapsed = time.monotonic() - start
        timeout = None
        if reason == REASON_TIMEOUT:
            timeout = OptimizationTimeout(iterations, elapsed, best)
            logger.warning("%s", timeout)
        elif reason == REASON_CANCELLED:
            logger.warning(
                "Optimization of %s cancelled after %d iterations; returning best so far",
                formation.id, iterations,
            )

        result = OptimizationResult(
            formation=work,
            initial_score=initial,
            final_score=best,
            iterations=iterations,
            reason=reason,
            base_revision=formation.revision,
            changes=changes,
            timeout=timeout,
            elapsed=elapsed,
        )
        logger.info(
            "Optimization of %s finished (%s): %.4f -> %.4f in %d iterations",
            formation.id, reason, initial, best, iterations,
        )
        return result

    def _try_nudge(self, work: Formation, graph: ChemistryGraph,
                   rng: random.Random, best: float):
        placed = work.placed_positions()
        if not placed:
            return False, best, ""
        entity_id = rng.choice(sorted(placed))
        origin = placed[entity_id]
        step = self.config.optimizer.step_size
        slot = work.slot_of(entity_id)
        allowed = slot.allowed_region(work.bounds) if slot else work.bounds
        x, y = allowed.clamp(origin.x + rng.uniform(-step, step),
                             origin.y + rng.uniform(-step, step))
        if (x, y) == origin.as_tuple():
            return False, best, ""

        radius = self.config.positioning.collision_radius
        if not self.config.positioning.allow_overlap:
            grid = SpatialHashGrid.for_formation(work, radius, exclude=[entity_id])
            if grid.within(x, y, radius):
                return False, best, ""

        entity = work.entities[entity_id]
        previous = entity.position
        entity.position = Position(x, y)
        score = objective_score(work, graph, self.config)
        if score >= best + self.config.optimizer.min_improvement:
            return True, score, f"nudge {entity_id} to ({x:.2f}, {y:.2f})"
        entity.position = previous
        return False, best, ""

    def _try_swap(self, work: Formation, graph: ChemistryGraph,
                  occupied, rng: random.Random, best: float):
        first, second = rng.sample(occupied, 2)
        a, b = first.entity_id, second.entity_id
        self._exchange(work, graph, first, second)
        score = objective_score(work, graph, self.config)
        if score >= best + self.config.optimizer.min_improvement:
            return True, score, f"swap {a} ({first.id}) with {b} ({second.id})"
        self._exchange(work, graph, first, second)
        return False, best, ""

    @staticmethod
    def _exchange(work: Formation, graph: ChemistryGraph, first, second):
        """Swap occupants and free positions of two slots; positions on the field stay occupied."""
        a = work.entities[first.entity_id]
        b = work.entities[second.entity_id]
        first.entity_id, second.entity_id = b.id, a.id
        a.position, b.position = b.position, a.position
        graph.recompute_entity(work, a.id)
        graph.recompute_entity(work, b.id)


def optimize_formation(
    formation: Formation,
    config: Optional[EngineConfig] = None,
    cancel_event: Optional[threading.Event] = None,
    callback: Optional[Callable[[int, float], None]] = None,
) -> OptimizationResult:
    """Convenience wrapper around FormationOptimizer.optimize."""
    return FormationOptimizer(config).optimize(formation, cancel_event=cancel_event, callback=callback)
