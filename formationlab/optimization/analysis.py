"""
Formation Analysis

Derived tactical metrics for a formation, and the aggregate objective the
local search optimizes.

Metrics:
- Coverage: outfield entities per field third, and how evenly they spread
- Chemistry: mean pairwise chemistry of placed entities
- Defensive line: height above the own goal and flatness
- Passing lanes: teammates within passing range of each outfield entity
- Width and compactness of the outfield block
"""

import copy
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..chemistry.scorer import ChemistryGraph
from ..config import EngineConfig
from ..model.abstraction import Formation, Position, RoleLine, role_line
from .role_fit import role_fit

logger = logging.getLogger(__name__)

# Field thirds by y (own goal at y=100)
DEFENSIVE_THIRD = 200.0 / 3.0
ATTACKING_THIRD = 100.0 / 3.0

THIRDS = ("defensive", "middle", "attacking")

# Slot fitness below this earns a recommendation
POOR_FIT_THRESHOLD = 50.0


def field_third(y: float) -> str:
    if y >= DEFENSIVE_THIRD:
        return "defensive"
    if y >= ATTACKING_THIRD:
        return "middle"
    return "attacking"


@dataclass(frozen=True)
class FormationAnalysis:
    """Read-only bundle of tactical metrics."""
    coverage: Dict[str, int]
    coverage_balance: float  # 0-1, 1 = evenly spread across thirds
    average_chemistry: float  # 0-100
    defensive_line_height: float  # distance of the back line from the own goal
    defensive_line_shape: float  # 0-1, 1 = perfectly flat
    passing_lane_quality: float  # 0-1
    width: float
    compactness: float  # 100 - vertical span of the outfield block
    objective: float  # weighted aggregate, 0-1
    slot_fitness: Dict[str, float] = field(default_factory=dict)
    strengths: Tuple[str, ...] = ()
    weaknesses: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()

    def to_dict(self) -> Dict:
        return {
            "coverage": dict(self.coverage),
            "coverage_balance": self.coverage_balance,
            "average_chemistry": self.average_chemistry,
            "defensive_line_height": self.defensive_line_height,
            "defensive_line_shape": self.defensive_line_shape,
            "passing_lane_quality": self.passing_lane_quality,
            "width": self.width,
            "compactness": self.compactness,
            "objective": self.objective,
            "slot_fitness": dict(self.slot_fitness),
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "recommendations": list(self.recommendations),
        }


def _outfield_positions(formation: Formation) -> Dict[str, Position]:
    return {
        eid: pos for eid, pos in formation.placed_positions().items()
        if role_line(formation.role_of(eid)) != RoleLine.GOALKEEPER
    }


def coverage_by_third(positions: Dict[str, Position]) -> Dict[str, int]:
    counts = {name: 0 for name in THIRDS}
    for pos in positions.values():
        counts[field_third(pos.y)] += 1
    return counts


def coverage_balance(coverage: Dict[str, int]) -> float:
    """1 - normalized L1 distance of the third shares from an even split."""
    total = sum(coverage.values())
    if total == 0:
        return 0.0
    deviation = sum(abs(count / total - 1.0 / 3.0) for count in coverage.values())
    # Everyone in one third gives the maximum deviation of 4/3
    return max(0.0, 1.0 - deviation / (4.0 / 3.0))


def defensive_line(formation: Formation, tolerance: float) -> Tuple[float, float]:
    """(height, flatness) of the defensive line."""
    ys = [
        pos.y for eid, pos in formation.placed_positions().items()
        if role_line(formation.role_of(eid)) == RoleLine.DEFENSE
    ]
    if not ys:
        return 0.0, 0.0
    mean_y = sum(ys) / len(ys)
    spread = math.sqrt(sum((y - mean_y) ** 2 for y in ys) / len(ys))
    flatness = 1.0 - min(spread / tolerance, 1.0) if tolerance > 0 else 1.0
    return 100.0 - mean_y, flatness


def passing_lane_quality(positions: Dict[str, Position],
                         pass_range: Tuple[float, float], target_lanes: int) -> float:
    """Mean share of target lanes available to each outfield entity."""
    if len(positions) < 2 or target_lanes <= 0:
        return 0.0
    short, long = pass_range
    ids = sorted(positions)
    total = 0.0
    for eid in ids:
        origin = positions[eid]
        lanes = sum(
            1 for other in ids
            if other != eid and short <= origin.distance_to(positions[other]) <= long
        )
        total += min(lanes / target_lanes, 1.0)
    return total / len(ids)


def _normalized_chemistry(graph: ChemistryGraph, config: EngineConfig) -> float:
    if not len(graph):
        return 0.0
    low, high = config.chemistry.score_range
    return (graph.average() - low) / (high - low) * 100.0


def objective_score(formation: Formation, graph: ChemistryGraph,
                    config: Optional[EngineConfig] = None) -> float:
    """
    Weighted tactical objective in [0, 1].

    Reads the formation in place; callers hold whatever lock or copy they
    need. The graph must be current for the formation.
    """
    config = config or EngineConfig()
    opt = config.optimizer
    outfield = _outfield_positions(formation)
    balance = coverage_balance(coverage_by_third(outfield))
    _, shape = defensive_line(formation, opt.line_tolerance)
    lanes = passing_lane_quality(outfield, opt.pass_range, opt.target_lanes)
    chemistry = _normalized_chemistry(graph, config) / 100.0

    terms = {"coverage": balance, "chemistry": chemistry, "shape": shape, "lanes": lanes}
    weights = opt.weights
    total_weight = sum(weights.get(name, 0.0) for name in terms)
    return sum(weights.get(name, 0.0) * value for name, value in terms.items()) / total_weight


def analyze_formation(
    formation: Formation,
    chemistry: Optional[ChemistryGraph] = None,
    config: Optional[EngineConfig] = None,
) -> FormationAnalysis:
    """
    Analyze a formation.

    Works on a copy taken at call time, so the argument is never mutated
    and concurrent edits cannot tear the result.

    Args:
        formation: Formation to analyze
        chemistry: Current chemistry graph; rebuilt from the copy if omitted
        config: Engine configuration (optimizer and chemistry sections used)

    Returns:
        FormationAnalysis
    """
    config = config or EngineConfig()
    opt = config.optimizer
    snapshot = copy.deepcopy(formation)
    graph = chemistry.copy() if chemistry is not None else ChemistryGraph(config.chemistry).rebuild(snapshot)

    outfield = _outfield_positions(snapshot)
    coverage = coverage_by_third(outfield)
    balance = coverage_balance(coverage)
    height, shape = defensive_line(snapshot, opt.line_tolerance)
    lanes = passing_lane_quality(outfield, opt.pass_range, opt.target_lanes)
    avg_chemistry = _normalized_chemistry(graph, config)

    if outfield:
        xs = [p.x for p in outfield.values()]
        ys = [p.y for p in outfield.values()]
        width = max(xs) - min(xs)
        compactness = 100.0 - (max(ys) - min(ys))
    else:
        width = 0.0
        compactness = 0.0

    slot_fitness = {
        slot.id: role_fit(entity, slot.role) for slot, entity in snapshot.iter_assigned()
    }

    strengths: List[str] = []
    weaknesses: List[str] = []
    if width >= 60.0:
        strengths.append("Good width stretches the opposition")
    elif outfield and width < 40.0:
        weaknesses.append("Narrow shape leaves the flanks exposed")
    if lanes >= 0.7:
        strengths.append("Plenty of passing options")
    elif outfield and lanes < 0.4:
        weaknesses.append("Few passing lanes between players")
    if len(graph) and avg_chemistry >= 70.0:
        strengths.append("Strong chemistry across the team")
    elif len(graph) and avg_chemistry < 50.0:
        weaknesses.append("Weak chemistry between players")
    if balance >= 0.8:
        strengths.append("Balanced coverage of all thirds")
    elif outfield and balance < 0.5:
        weaknesses.append("Coverage concentrated in one area of the field")
    if height and shape >= 0.8:
        strengths.append("Organized, flat defensive line")
    elif height and shape < 0.5:
        weaknesses.append("Uneven defensive line")

    recommendations: List[str] = []
    for slot in snapshot.slots:
        if slot.entity_id is None:
            recommendations.append(f"Fill empty slot {slot.id} ({slot.role})")
            continue
        entity = snapshot.entities[slot.entity_id]
        if not entity.is_available:
            recommendations.append(
                f"Replace {entity.availability.value} {entity.name} in slot {slot.id}"
            )
        elif slot_fitness[slot.id] < POOR_FIT_THRESHOLD:
            recommendations.append(
                f"Consider a better fit for slot {slot.id} "
                f"({entity.name} rates {slot_fitness[slot.id]:.0f})"
            )

    analysis = FormationAnalysis(
        coverage=coverage,
        coverage_balance=balance,
        average_chemistry=avg_chemistry,
        defensive_line_height=height,
        defensive_line_shape=shape,
        passing_lane_quality=lanes,
        width=width,
        compactness=compactness,
        objective=objective_score(snapshot, graph, config),
        slot_fitness=slot_fitness,
        strengths=tuple(strengths),
        weaknesses=tuple(weaknesses),
        recommendations=tuple(recommendations),
    )
    logger.debug("Analysis of %s: objective=%.4f", formation.id, analysis.objective)
    return analysis
