"""
Formation Templates

Loads formation templates from ``formation_templates.yaml`` (or a user
file) and builds Formation instances from them.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import logging
import uuid

import yaml

from ..errors import ValidationError
from .abstraction import DEFAULT_BOUNDS, Entity, Formation, Position, Region, Slot, role_line

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_PATH = Path(__file__).resolve().parent.parent / "formation_templates.yaml"


@dataclass(frozen=True)
class SlotTemplate:
    id: str
    role: str
    anchor: Position
    region: Optional[Region] = None


@dataclass(frozen=True)
class FormationTemplate:
    """A named arrangement of role slots."""
    code: str
    name: str
    category: str
    slots: tuple

    def build_slots(self) -> List[Slot]:
        return [
            Slot(id=s.id, role=s.role, anchor=s.anchor, region=s.region)
            for s in self.slots
        ]


def _parse_template(code: str, data: Dict) -> FormationTemplate:
    slots = []
    for raw in data.get("slots") or []:
        try:
            role_line(raw["role"])
            anchor = Position(float(raw["anchor"][0]), float(raw["anchor"][1]))
            region = Region.from_sequence(raw["region"]) if raw.get("region") else None
            slots.append(SlotTemplate(id=str(raw["id"]), role=raw["role"],
                                      anchor=anchor, region=region))
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError(f"Malformed slot in template {code}: {raw!r}") from e
    if not slots:
        raise ValueError(f"Template {code} has no slots")
    return FormationTemplate(
        code=code,
        name=data.get("name", code),
        category=data.get("category", "balanced"),
        slots=tuple(slots),
    )


def load_templates(path: Optional[str] = None) -> Dict[str, FormationTemplate]:
    """
    Load formation templates from YAML.

    Args:
        path: Optional custom template file. Defaults to the bundled file.

    Returns:
        Dictionary mapping template code to FormationTemplate
    """
    template_path = Path(path) if path is not None else DEFAULT_TEMPLATES_PATH
    if not template_path.exists():
        raise FileNotFoundError(f"Template file not found: {template_path}")

    with open(template_path, "r") as f:
        raw = yaml.safe_load(f) or {}

    templates = {str(code): _parse_template(str(code), data) for code, data in raw.items()}
    logger.debug("Loaded %d formation templates from %s", len(templates), template_path)
    return templates


_templates: Optional[Dict[str, FormationTemplate]] = None


def get_template(code: str) -> FormationTemplate:
    """Get a bundled template by code (e.g. "4-3-3")."""
    global _templates
    if _templates is None:
        _templates = load_templates()
    try:
        return _templates[code]
    except KeyError:
        raise ValidationError(
            f"Unknown formation template: {code}. Available: {sorted(_templates)}",
            field="template",
        ) from None


def list_templates() -> List[FormationTemplate]:
    global _templates
    if _templates is None:
        _templates = load_templates()
    return list(_templates.values())


def create_formation(
    template: str,
    entities: Iterable[Entity] = (),
    formation_id: Optional[str] = None,
    name: Optional[str] = None,
    bounds: Region = DEFAULT_BOUNDS,
) -> Formation:
    """
    Create an empty formation from a template.

    Args:
        template: Template code
        entities: Squad of entities that may be placed
        formation_id: Identity; a random one is generated when omitted
        name: Display name; defaults to the template name
    """
    tmpl = get_template(template)
    formation = Formation(
        id=formation_id or uuid.uuid4().hex,
        name=name or tmpl.name,
        slots=tmpl.build_slots(),
        entities={e.id: e for e in entities},
        bounds=bounds,
    )
    formation.validate()
    return formation


def blank_formation(
    entities: Iterable[Entity] = (),
    formation_id: Optional[str] = None,
    name: str = "Blank",
    bounds: Region = DEFAULT_BOUNDS,
) -> Formation:
    """Create a formation without slots (free placement only)."""
    return Formation(
        id=formation_id or uuid.uuid4().hex,
        name=name,
        entities={e.id: e for e in entities},
        bounds=bounds,
    )
