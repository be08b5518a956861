"""Formation data model: entities, slots, formations, snapshots and templates."""

from .abstraction import (
    ATTRIBUTE_NAMES,
    DEFAULT_BOUNDS,
    ROLE_LINES,
    Attributes,
    Availability,
    Entity,
    Formation,
    Position,
    Region,
    RoleLine,
    Slot,
    role_line,
)
from .snapshot import FormationSnapshot, SlotState
from .templates import (
    FormationTemplate,
    blank_formation,
    create_formation,
    get_template,
    list_templates,
    load_templates,
)

__all__ = [
    "ATTRIBUTE_NAMES",
    "DEFAULT_BOUNDS",
    "ROLE_LINES",
    "Attributes",
    "Availability",
    "Entity",
    "Formation",
    "Position",
    "Region",
    "RoleLine",
    "Slot",
    "role_line",
    "FormationSnapshot",
    "SlotState",
    "FormationTemplate",
    "blank_formation",
    "create_formation",
    "get_template",
    "list_templates",
    "load_templates",
]
