"""
Auto-Assignment

Fills open slots with entities from an available pool by solving a
maximum-compatibility bipartite matching.

Compatibility of entity e for slot s:
    (role_fit_weight * fit(e, s) + chemistry_weight * adjacent_chemistry(e, s))
    * availability_factor(e) + rating(e) * 1e-6

Adjacent chemistry is the mean chemistry (rescaled to 0-100) with entities
in kept slots whose anchors lie within the adjacency radius. The rating term
breaks exact ties in favor of the higher-rated entity.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from ..config import AssignmentConfig, ChemistryConfig
from ..chemistry.scorer import compute_chemistry
from ..errors import AssignmentInfeasible
from ..model.abstraction import Entity, Formation, Slot
from .hungarian import maximize_assignment
from .role_fit import availability_factor, role_fit

logger = logging.getLogger(__name__)

TIE_BREAK_SCALE = 1e-6


@dataclass
class AssignmentResult:
    """Outcome of auto-assignment. Nothing is applied until apply_assignment()."""
    assignments: Dict[str, str]  # slot_id -> entity_id, kept slots included
    scores: Dict[str, float] = field(default_factory=dict)  # slot_id -> compatibility (new only)
    total_score: float = 0.0
    bench: List[str] = field(default_factory=list)  # eligible but unused
    excluded: List[str] = field(default_factory=list)  # unavailable, left out

    def entity_for(self, slot_id: str) -> Optional[str]:
        return self.assignments.get(slot_id)


@dataclass
class SwapRecommendation:
    """A suggested way to bring an entity into a slot."""
    action: str  # swap | bench | reassign
    description: str
    score: float  # estimated change in summed role fit
    target_slot_id: str
    entity_id: str
    other_entity_id: Optional[str] = None


def _adjacent_chemistry(
    candidate: Entity,
    slot: Slot,
    kept: Sequence[Slot],
    formation: Formation,
    assignment_config: AssignmentConfig,
    chemistry_config: ChemistryConfig,
) -> float:
    low, high = chemistry_config.score_range
    scores = []
    for other in kept:
        if other.anchor.distance_to(slot.anchor) > assignment_config.adjacency_radius:
            continue
        neighbor = formation.entities[other.entity_id]
        edge = compute_chemistry(candidate, neighbor, slot.role, other.role, chemistry_config)
        scores.append((edge.score - low) / (high - low) * 100.0)
    return sum(scores) / len(scores) if scores else 0.0


def compatibility(
    candidate: Entity,
    slot: Slot,
    kept: Sequence[Slot] = (),
    formation: Optional[Formation] = None,
    assignment_config: Optional[AssignmentConfig] = None,
    chemistry_config: Optional[ChemistryConfig] = None,
) -> float:
    """Compatibility of one entity for one slot."""
    assignment_config = assignment_config or AssignmentConfig()
    chemistry_config = chemistry_config or ChemistryConfig()
    fit = role_fit(candidate, slot.role)
    chemistry = 0.0
    if kept and formation is not None:
        chemistry = _adjacent_chemistry(
            candidate, slot, kept, formation, assignment_config, chemistry_config
        )
    blended = (assignment_config.role_fit_weight * fit
               + assignment_config.chemistry_weight * chemistry)
    return (blended * availability_factor(candidate, assignment_config)
            + candidate.rating * TIE_BREAK_SCALE)


def auto_assign(
    formation: Formation,
    pool: Optional[Iterable[Entity]] = None,
    keep: Iterable[str] = (),
    config: Optional[AssignmentConfig] = None,
    chemistry_config: Optional[ChemistryConfig] = None,
) -> AssignmentResult:
    """
    Compute the best assignment of pool entities to open slots.

    Args:
        formation: Formation to fill (not modified)
        pool: Candidate entities; defaults to the formation's squad
        keep: Slot ids whose current occupants stay in place
        config: Compatibility blend and availability handling
        chemistry_config: Chemistry weights for adjacency scoring

    Returns:
        AssignmentResult covering every slot

    Raises:
        AssignmentInfeasible: Fewer eligible entities than open slots
    """
    config = config or AssignmentConfig()
    chemistry_config = chemistry_config or ChemistryConfig()
    keep_ids = set(keep)
    for slot_id in keep_ids:
        formation.get_slot(slot_id)

    kept = [s for s in formation.slots if s.id in keep_ids and s.entity_id is not None]
    kept_slot_ids = {s.id for s in kept}
    open_slots = [s for s in formation.slots if s.id not in kept_slot_ids]
    kept_entities = {s.entity_id for s in kept}

    if pool is None:
        pool = formation.entities.values()
    unique: Dict[str, Entity] = {}
    for entity in pool:
        if entity.id not in kept_entities:
            unique.setdefault(entity.id, entity)

    excluded = sorted(
        eid for eid, e in unique.items() if config.exclude_unavailable and not e.is_available
    )
    candidates = sorted(
        (e for e in unique.values() if e.id not in excluded),
        key=lambda e: (-e.rating, e.id),
    )

    # Kept neighbors must be resolvable for chemistry lookups
    neighborhood = formation
    missing = [e for e in unique.values() if e.id not in formation.entities]
    if missing and kept:
        neighborhood = Formation(
            id=formation.id, slots=formation.slots,
            entities={**formation.entities, **{e.id: e for e in missing}},
            bounds=formation.bounds,
        )

    scores = [
        [compatibility(c, slot, kept, neighborhood, config, chemistry_config) for c in candidates]
        for slot in open_slots
    ]

    assignments = {s.id: s.entity_id for s in kept}
    if not open_slots:
        return AssignmentResult(
            assignments=assignments,
            bench=[c.id for c in candidates],
            excluded=excluded,
        )

    if not candidates:
        matching = [-1] * len(open_slots)
    else:
        matching = maximize_assignment(scores)

    if len(candidates) < len(open_slots):
        unfilled = [slot.id for slot, col in zip(open_slots, matching) if col < 0]
        logger.warning(
            "Auto-assign infeasible for %s: %d open slots, %d eligible entities",
            formation.id, len(open_slots), len(candidates),
        )
        raise AssignmentInfeasible(unfilled, available=len(candidates))

    slot_scores = {}
    for row, (slot, col) in enumerate(zip(open_slots, matching)):
        assignments[slot.id] = candidates[col].id
        slot_scores[slot.id] = scores[row][col]

    used = set(assignments.values())
    result = AssignmentResult(
        assignments={s.id: assignments[s.id] for s in formation.slots},
        scores=slot_scores,
        total_score=sum(slot_scores.values()),
        bench=[c.id for c in candidates if c.id not in used],
        excluded=excluded,
    )
    logger.debug(
        "Auto-assign %s: filled=%d total=%.3f bench=%d excluded=%d",
        formation.id, len(slot_scores), result.total_score, len(result.bench), len(excluded),
    )
    return result


def apply_assignment(formation: Formation, result: AssignmentResult,
                     pool: Iterable[Entity] = (), clearance: float = 0.0) -> List[str]:
    """
    Write an assignment into a formation.

    Entities from ``pool`` that are not yet in the squad are added. Newly
    assigned entities lose any free position so they sit on their anchors.
    With a positive ``clearance``, unassigned entities left within that
    distance of a newly filled anchor are taken off the field.

    Returns:
        Slot ids whose occupant changed
    """
    for entity in pool:
        formation.entities.setdefault(entity.id, entity)

    changed = []
    for slot in formation.slots:
        target = result.assignments.get(slot.id)
        if slot.entity_id != target:
            changed.append(slot.id)

    # Clear first so set_assignment never displaces a later target
    for slot_id in changed:
        formation.get_slot(slot_id).entity_id = None
    for slot_id in changed:
        entity_id = result.assignments.get(slot_id)
        if entity_id is None:
            continue
        formation.set_assignment(slot_id, entity_id)
        formation.entities[entity_id].position = None

    if clearance > 0:
        anchors = [formation.get_slot(s).anchor for s in changed if result.assignments.get(s)]
        for entity in formation.entities.values():
            if entity.position is None or formation.slot_of(entity.id) is not None:
                continue
            if any(entity.position.distance_to(a) < clearance for a in anchors):
                logger.debug("Benched %s off the field: blocks a new anchor", entity.id)
                entity.position = None
    return changed


def recommend_swaps(
    formation: Formation,
    entity_id: str,
    target_slot_id: str,
) -> List[SwapRecommendation]:
    """
    Ways to bring an entity into a target slot, best first.

    - swap: exchange slots with the current occupant
    - bench: replace the occupant, who leaves the field
    - reassign: take the slot; a displaced occupant moves to the best empty slot
    """
    entity = formation.get_entity(entity_id)
    target = formation.get_slot(target_slot_id)
    current = formation.slot_of(entity_id)
    if current is not None and current.id == target.id:
        return []

    gain_here = role_fit(entity, target.role)
    loss_there = role_fit(entity, current.role) if current else 0.0
    recommendations: List[SwapRecommendation] = []

    if target.entity_id is None:
        recommendations.append(SwapRecommendation(
            action="reassign",
            description=f"Move {entity.name} into empty slot {target.id}",
            score=gain_here - loss_there,
            target_slot_id=target.id,
            entity_id=entity.id,
        ))
        return recommendations

    occupant = formation.get_entity(target.entity_id)
    occupant_here = role_fit(occupant, target.role)

    if current is not None:
        recommendations.append(SwapRecommendation(
            action="swap",
            description=f"Swap {entity.name} ({current.id}) with {occupant.name} ({target.id})",
            score=gain_here + role_fit(occupant, current.role) - loss_there - occupant_here,
            target_slot_id=target.id,
            entity_id=entity.id,
            other_entity_id=occupant.id,
        ))
    else:
        recommendations.append(SwapRecommendation(
            action="bench",
            description=f"Bring on {entity.name} for {occupant.name} in {target.id}",
            score=gain_here - occupant_here,
            target_slot_id=target.id,
            entity_id=entity.id,
            other_entity_id=occupant.id,
        ))

    empty = [s for s in formation.empty_slots if s.id != target.id]
    if empty:
        best = max(empty, key=lambda s: (role_fit(occupant, s.role), -formation.slot_index(s.id)))
        recommendations.append(SwapRecommendation(
            action="reassign",
            description=f"Move {occupant.name} to {best.id} and put {entity.name} in {target.id}",
            score=gain_here - loss_there + role_fit(occupant, best.role) - occupant_here,
            target_slot_id=target.id,
            entity_id=entity.id,
            other_entity_id=occupant.id,
        ))

    recommendations.sort(key=lambda r: (-r.score, r.action))
    return recommendations
