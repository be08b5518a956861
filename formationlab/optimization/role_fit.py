"""
Role Fit Scoring

How well an entity's attributes suit a slot role, on a 0-100 scale.

The base score is a line-specific blend of attributes. Role familiarity
adds or removes points, then form and morale scale the result.
"""

from typing import Dict, Optional

from ..config import AssignmentConfig
from ..model.abstraction import Availability, Entity, RoleLine, role_line

# Attribute blend per tactical line (weights sum to 1)
LINE_ATTRIBUTE_WEIGHTS: Dict[RoleLine, Dict[str, float]] = {
    RoleLine.GOALKEEPER: {"positioning": 0.6, "physical": 0.4},
    RoleLine.DEFENSE: {"defending": 0.4, "positioning": 0.3, "pace": 0.3},
    RoleLine.MIDFIELD: {"passing": 0.4, "stamina": 0.2, "positioning": 0.2, "dribbling": 0.2},
    RoleLine.ATTACK: {"shooting": 0.4, "pace": 0.3, "dribbling": 0.3},
}

# Familiarity adjustments
PREFERRED_ROLE_BONUS = 25.0
SAME_LINE_BONUS = 10.0
ADJACENT_LINE_BONUS = 0.0
OUT_OF_POSITION_PENALTY = -20.0


def familiarity_bonus(entity: Entity, role: str) -> float:
    """Points added for playing a known role or line."""
    if entity.plays(role):
        return PREFERRED_ROLE_BONUS
    target = role_line(role)
    own = entity.line
    if own == target:
        return SAME_LINE_BONUS
    # Goalkeepers have no neighbors outside their own line
    if RoleLine.GOALKEEPER not in (own, target) and abs(own.value - target.value) == 1:
        return ADJACENT_LINE_BONUS
    return OUT_OF_POSITION_PENALTY


def attribute_score(entity: Entity, role: str) -> float:
    """Line-weighted attribute blend (0-100) before any adjustments."""
    weights = LINE_ATTRIBUTE_WEIGHTS[role_line(role)]
    attrs = entity.attributes
    return sum(getattr(attrs, name) * weight for name, weight in weights.items())


def role_fit(entity: Entity, role: str) -> float:
    """
    Role fit score for an entity playing a role.

    Form scales the score by 0.8-1.2 and morale by 0.9-1.1.
    """
    base = attribute_score(entity, role) + familiarity_bonus(entity, role)
    base = min(max(base, 0.0), 100.0)
    form_multiplier = 0.8 + 0.4 * entity.attributes.form / 100.0
    morale_multiplier = 0.9 + 0.2 * entity.attributes.morale / 100.0
    return min(base * form_multiplier * morale_multiplier, 100.0)


def availability_factor(entity: Entity, config: Optional[AssignmentConfig] = None) -> float:
    """Multiplier applied to compatibility for doubtful or unavailable entities."""
    config = config or AssignmentConfig()
    if entity.availability == Availability.AVAILABLE:
        return 1.0
    if entity.availability == Availability.DOUBTFUL:
        return config.doubtful_factor
    return config.unavailable_factor
