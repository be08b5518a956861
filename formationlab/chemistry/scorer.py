"""
Chemistry Scorer

Pairwise compatibility between placed entities.

Factors (each normalized to [0, 1]):
- Shared tenure: time spent together at the same club
- Role adjacency: how well the two tactical lines combine
- Age gap: bucketed difference in age
- Shared origin: same nationality
- Form alignment: similar form and morale

The relationship graph is an adjacency map keyed by the unordered id
pair. Edits recompute only the edges touching the changed entity.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..config import ChemistryConfig
from ..model.abstraction import Entity, Formation, RoleLine, role_line

logger = logging.getLogger(__name__)

# Line pair -> synergy, keyed by (lower line value, higher line value)
LINE_SYNERGY: Dict[Tuple[int, int], float] = {
    (0, 0): 0.3,
    (0, 1): 0.9,
    (0, 2): 0.6,
    (0, 3): 0.3,
    (1, 1): 0.8,
    (1, 2): 0.7,
    (1, 3): 0.5,
    (2, 2): 0.9,
    (2, 3): 0.8,
    (3, 3): 0.7,
}

# Bonus for neighbors on the same line
SAME_LINE_BONUS = 0.1

# (max age gap, factor) buckets, checked in order
AGE_GAP_BUCKETS = ((3, 1.0), (6, 0.75), (10, 0.5))
AGE_GAP_FLOOR = 0.25


def pair_key(a: str, b: str) -> Tuple[str, str]:
    """Canonical key for an unordered entity pair."""
    return (a, b) if a <= b else (b, a)


@dataclass(frozen=True)
class ChemistryBreakdown:
    """Contributing factors of a chemistry score, each in [0, 1]."""
    shared_tenure: float
    role_adjacency: float
    age_gap: float
    shared_origin: float
    form_alignment: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "shared_tenure": self.shared_tenure,
            "role_adjacency": self.role_adjacency,
            "age_gap": self.age_gap,
            "shared_origin": self.shared_origin,
            "form_alignment": self.form_alignment,
        }


@dataclass(frozen=True)
class ChemistryEdge:
    """Symmetric chemistry between two entities."""
    pair: Tuple[str, str]
    score: float
    breakdown: ChemistryBreakdown

    def other(self, entity_id: str) -> str:
        return self.pair[1] if self.pair[0] == entity_id else self.pair[0]


def _role_adjacency(role_a: str, role_b: str) -> float:
    line_a: RoleLine = role_line(role_a)
    line_b: RoleLine = role_line(role_b)
    key = tuple(sorted((line_a.value, line_b.value)))
    synergy = LINE_SYNERGY.get(key, 0.5)
    if line_a == line_b:
        synergy += SAME_LINE_BONUS
    return min(synergy, 1.0)


def _age_gap(age_a: int, age_b: int) -> float:
    gap = abs(age_a - age_b)
    for limit, factor in AGE_GAP_BUCKETS:
        if gap <= limit:
            return factor
    return AGE_GAP_FLOOR


def compute_chemistry(
    entity_a: Entity,
    entity_b: Entity,
    role_a: Optional[str] = None,
    role_b: Optional[str] = None,
    config: Optional[ChemistryConfig] = None,
) -> ChemistryEdge:
    """
    Chemistry between two entities. Pure and symmetric.

    Args:
        entity_a, entity_b: The pair (order does not matter)
        role_a, role_b: Roles being played; default to primary roles
        config: Weights and score range

    Returns:
        ChemistryEdge with the scaled score and factor breakdown
    """
    config = config or ChemistryConfig()
    role_a = role_a or entity_a.role
    role_b = role_b or entity_b.role

    # Evaluate in canonical order so (A, B) and (B, A) are bit-identical
    if entity_b.id < entity_a.id:
        entity_a, entity_b = entity_b, entity_a
        role_a, role_b = role_b, role_a

    if entity_a.club and entity_a.club == entity_b.club:
        shared = min(entity_a.tenure_years, entity_b.tenure_years)
        tenure = min(shared / config.tenure_cap_years, 1.0) if config.tenure_cap_years > 0 else 1.0
    else:
        tenure = 0.0

    if entity_a.nationality and entity_a.nationality == entity_b.nationality:
        origin = 1.0
    else:
        origin = config.different_origin_value

    attrs_a, attrs_b = entity_a.attributes, entity_b.attributes
    form = 1.0 - (abs(attrs_a.form - attrs_b.form) + abs(attrs_a.morale - attrs_b.morale)) / 200.0

    breakdown = ChemistryBreakdown(
        shared_tenure=tenure,
        role_adjacency=_role_adjacency(role_a, role_b),
        age_gap=_age_gap(entity_a.age, entity_b.age),
        shared_origin=origin,
        form_alignment=form,
    )

    weights = config.weights
    factors = {
        "tenure": breakdown.shared_tenure,
        "role": breakdown.role_adjacency,
        "age": breakdown.age_gap,
        "origin": breakdown.shared_origin,
        "form": breakdown.form_alignment,
    }
    total_weight = sum(weights.get(name, 0.0) for name in factors)
    blended = sum(weights.get(name, 0.0) * value for name, value in factors.items()) / total_weight

    low, high = config.score_range
    score = low + (high - low) * blended
    return ChemistryEdge(pair=(entity_a.id, entity_b.id), score=score, breakdown=breakdown)


class ChemistryGraph:
    """
    Incrementally maintained chemistry between all placed entities.

    Edges are stored once per unordered pair; each entity keeps the set of
    partners it has edges with so recomputation touches O(k) edges.
    """

    def __init__(self, config: Optional[ChemistryConfig] = None):
        self.config = config or ChemistryConfig()
        self._edges: Dict[Tuple[str, str], ChemistryEdge] = {}
        self._adjacency: Dict[str, Set[str]] = {}
        self.recompute_count = 0  # edge evaluations since creation

    def __len__(self) -> int:
        return len(self._edges)

    def __contains__(self, pair) -> bool:
        return pair_key(*pair) in self._edges

    @property
    def entity_ids(self) -> Set[str]:
        return set(self._adjacency)

    def copy(self) -> "ChemistryGraph":
        clone = ChemistryGraph(self.config)
        clone._edges = dict(self._edges)
        clone._adjacency = {k: set(v) for k, v in self._adjacency.items()}
        return clone

    def rebuild(self, formation: Formation) -> "ChemistryGraph":
        """Full O(n^2) rebuild. Only used when a graph is first attached."""
        self._edges.clear()
        self._adjacency.clear()
        placed = sorted(formation.placed_positions())
        for eid in placed:
            self._adjacency[eid] = set()
        for i, a in enumerate(placed):
            for b in placed[i + 1:]:
                self._store(self._evaluate(formation, a, b))
        logger.debug("Chemistry graph rebuilt: entities=%d edges=%d", len(placed), len(self._edges))
        return self

    def recompute_affected(
        self,
        formation: Formation,
        changed_slot_id: str,
        previous_entity_id: Optional[str] = None,
    ) -> List[ChemistryEdge]:
        """
        Recompute only edges touching the entity in a changed slot.

        Args:
            formation: Formation after the change
            changed_slot_id: Slot whose occupant, role or position changed
            previous_entity_id: Former occupant, whose edges are refreshed
                (or dropped if it is no longer placed)

        Returns:
            Edges recomputed for the slot's current occupant
        """
        slot = formation.get_slot(changed_slot_id)
        if previous_entity_id is not None and previous_entity_id != slot.entity_id:
            self.recompute_entity(formation, previous_entity_id)
        if slot.entity_id is None:
            return []
        return self.recompute_entity(formation, slot.entity_id)

    def recompute_entity(self, formation: Formation, entity_id: str) -> List[ChemistryEdge]:
        """Refresh every edge of one entity against the current placed set."""
        placed = formation.placed_positions()
        if entity_id not in placed:
            self.remove_entity(entity_id)
            return []

        self._adjacency.setdefault(entity_id, set())
        updated = []
        for other in sorted(placed):
            if other == entity_id:
                continue
            self._adjacency.setdefault(other, set())
            edge = self._evaluate(formation, entity_id, other)
            self._store(edge)
            updated.append(edge)

        # Drop partners that are no longer placed
        for stale in [o for o in self._adjacency[entity_id] if o not in placed]:
            self.remove_entity(stale)
        return updated

    def remove_entity(self, entity_id: str):
        for other in self._adjacency.pop(entity_id, set()):
            self._edges.pop(pair_key(entity_id, other), None)
            partners = self._adjacency.get(other)
            if partners is not None:
                partners.discard(entity_id)

    def score(self, a: str, b: str) -> Optional[float]:
        edge = self._edges.get(pair_key(a, b))
        return edge.score if edge else None

    def edge(self, a: str, b: str) -> Optional[ChemistryEdge]:
        return self._edges.get(pair_key(a, b))

    def edges(self) -> List[ChemistryEdge]:
        return [self._edges[k] for k in sorted(self._edges)]

    def edges_for(self, entity_id: str) -> List[ChemistryEdge]:
        return [
            self._edges[pair_key(entity_id, other)]
            for other in sorted(self._adjacency.get(entity_id, ()))
        ]

    def average(self, entity_ids: Optional[Iterable[str]] = None) -> float:
        """Mean edge score, optionally restricted to edges among given entities."""
        if entity_ids is None:
            edges = self._edges.values()
        else:
            members = set(entity_ids)
            edges = [e for e in self._edges.values() if e.pair[0] in members and e.pair[1] in members]
        scores = [e.score for e in edges]
        return sum(scores) / len(scores) if scores else 0.0

    def _evaluate(self, formation: Formation, a: str, b: str) -> ChemistryEdge:
        self.recompute_count += 1
        return compute_chemistry(
            formation.entities[a],
            formation.entities[b],
            role_a=formation.role_of(a),
            role_b=formation.role_of(b),
            config=self.config,
        )

    def _store(self, edge: ChemistryEdge):
        a, b = edge.pair
        self._edges[edge.pair] = edge
        self._adjacency.setdefault(a, set()).add(b)
        self._adjacency.setdefault(b, set()).add(a)
