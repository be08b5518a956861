"""
Formation Abstraction Layer

Entities (players), role slots and the formation that binds them on a
normalized field. Every other part of the engine reads and writes this
model; none of them keep their own copy of positions or assignments.

Coordinates are normalized to [0, 100] on both axes. The own goal sits at
y=100 and the opponent goal at y=0, so defenders have large y values and
attackers small ones.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple
import math

from ..errors import ConcurrencyConflict, ValidationError


class RoleLine(Enum):
    """Tactical line of a role. Value doubles as the slot priority."""
    GOALKEEPER = 0
    DEFENSE = 1
    MIDFIELD = 2
    ATTACK = 3


# Role label -> line
ROLE_LINES: Dict[str, RoleLine] = {
    "goalkeeper": RoleLine.GOALKEEPER,
    "sweeper-keeper": RoleLine.GOALKEEPER,
    "center-back": RoleLine.DEFENSE,
    "left-back": RoleLine.DEFENSE,
    "right-back": RoleLine.DEFENSE,
    "left-wing-back": RoleLine.DEFENSE,
    "right-wing-back": RoleLine.DEFENSE,
    "sweeper": RoleLine.DEFENSE,
    "defensive-midfielder": RoleLine.MIDFIELD,
    "central-midfielder": RoleLine.MIDFIELD,
    "left-midfielder": RoleLine.MIDFIELD,
    "right-midfielder": RoleLine.MIDFIELD,
    "attacking-midfielder": RoleLine.MIDFIELD,
    "left-winger": RoleLine.ATTACK,
    "right-winger": RoleLine.ATTACK,
    "second-striker": RoleLine.ATTACK,
    "striker": RoleLine.ATTACK,
}


def role_line(role: str) -> RoleLine:
    """Look up the tactical line of a role label."""
    try:
        return ROLE_LINES[role]
    except KeyError:
        raise ValidationError(f"Unknown role: {role}", field="role") from None


class Availability(Enum):
    """Selection status of an entity."""
    AVAILABLE = "available"
    DOUBTFUL = "doubtful"
    INJURED = "injured"
    SUSPENDED = "suspended"

    @property
    def is_available(self) -> bool:
        return self in (Availability.AVAILABLE, Availability.DOUBTFUL)


@dataclass(frozen=True)
class Position:
    """A point on the normalized field."""
    x: float
    y: float

    def distance_to(self, other: "Position") -> float:
        """Euclidean distance to another position."""
        dx = self.x - other.x
        dy = self.y - other.y
        return math.sqrt(dx * dx + dy * dy)

    def as_tuple(self) -> Tuple[float, float]:
        return (self.x, self.y)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        try:
            return cls(float(data["x"]), float(data["y"]))
        except (KeyError, TypeError, ValueError):
            raise ValidationError(f"Malformed position: {data!r}", field="position") from None


@dataclass(frozen=True)
class Region:
    """Axis-aligned rectangle (field bounds or a slot's allowed area)."""
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    def contains(self, x: float, y: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y

    def clamp(self, x: float, y: float) -> Tuple[float, float]:
        """Clamp a point into the rectangle."""
        return (min(max(x, self.min_x), self.max_x),
                min(max(y, self.min_y), self.max_y))

    def intersect(self, other: "Region") -> "Region":
        return Region(
            max(self.min_x, other.min_x), max(self.min_y, other.min_y),
            min(self.max_x, other.max_x), min(self.max_y, other.max_y),
        )

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    def to_list(self) -> List[float]:
        return [self.min_x, self.min_y, self.max_x, self.max_y]

    @classmethod
    def from_sequence(cls, values) -> "Region":
        if values is None or len(values) != 4:
            raise ValidationError(f"Region needs 4 values, got {values!r}", field="region")
        region = cls(*(float(v) for v in values))
        if region.min_x > region.max_x or region.min_y > region.max_y:
            raise ValidationError(f"Empty region: {values!r}", field="region")
        return region


DEFAULT_BOUNDS = Region(0.0, 0.0, 100.0, 100.0)

ATTRIBUTE_NAMES = (
    "pace", "passing", "shooting", "defending", "dribbling",
    "physical", "stamina", "positioning", "form", "morale",
)

# Skill attributes that feed the overall rating (form/morale excluded)
SKILL_ATTRIBUTES = ATTRIBUTE_NAMES[:8]


@dataclass(frozen=True)
class Attributes:
    """Fixed-size attribute vector, every value in [0, 100]."""
    pace: float = 50.0
    passing: float = 50.0
    shooting: float = 50.0
    defending: float = 50.0
    dribbling: float = 50.0
    physical: float = 50.0
    stamina: float = 50.0
    positioning: float = 50.0
    form: float = 50.0
    morale: float = 50.0

    def __post_init__(self):
        for name in ATTRIBUTE_NAMES:
            value = getattr(self, name)
            if not 0.0 <= value <= 100.0:
                raise ValidationError(
                    f"Attribute {name}={value} outside [0, 100]", field=name
                )

    def to_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in ATTRIBUTE_NAMES}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attributes":
        unknown = set(data) - set(ATTRIBUTE_NAMES)
        if unknown:
            raise ValidationError(f"Unknown attributes: {sorted(unknown)}", field="attributes")
        return cls(**{k: float(v) for k, v in data.items()})


@dataclass
class Entity:
    """A player that can be placed on the field."""
    id: str
    name: str = ""
    role: str = "central-midfielder"  # primary role
    attributes: Attributes = field(default_factory=Attributes)
    availability: Availability = Availability.AVAILABLE
    age: int = 25
    nationality: str = ""
    club: str = ""
    tenure_years: float = 0.0  # years at current club
    preferred_roles: Tuple[str, ...] = ()

    # Free position when placed outside a slot anchor
    position: Optional[Position] = None

    @property
    def rating(self) -> float:
        """Overall rating: mean of the skill attributes."""
        values = [getattr(self.attributes, name) for name in SKILL_ATTRIBUTES]
        return sum(values) / len(values)

    @property
    def is_available(self) -> bool:
        return self.availability.is_available

    @property
    def line(self) -> RoleLine:
        return role_line(self.role)

    def plays(self, role: str) -> bool:
        """Check if the entity lists the role as primary or preferred."""
        return role == self.role or role in self.preferred_roles

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "attributes": self.attributes.to_dict(),
            "availability": self.availability.value,
            "age": self.age,
            "nationality": self.nationality,
            "club": self.club,
            "tenure_years": self.tenure_years,
            "preferred_roles": list(self.preferred_roles),
        }
        if self.position is not None:
            data["position"] = self.position.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entity":
        """Build an entity from a roster record."""
        if "id" not in data:
            raise ValidationError("Entity record without id", field="id")
        role = data.get("role", "central-midfielder")
        role_line(role)
        try:
            availability = Availability(data.get("availability", "available"))
        except ValueError:
            raise ValidationError(
                f"Unknown availability: {data.get('availability')!r}", field="availability"
            ) from None
        position = data.get("position")
        return cls(
            id=str(data["id"]),
            name=data.get("name", str(data["id"])),
            role=role,
            attributes=Attributes.from_dict(data.get("attributes") or {}),
            availability=availability,
            age=int(data.get("age", 25)),
            nationality=data.get("nationality", ""),
            club=data.get("club", ""),
            tenure_years=float(data.get("tenure_years", 0.0)),
            preferred_roles=tuple(data.get("preferred_roles") or ()),
            position=Position.from_dict(position) if position else None,
        )


@dataclass
class Slot:
    """A role position in the formation, holding at most one entity."""
    id: str
    role: str
    anchor: Position
    entity_id: Optional[str] = None
    region: Optional[Region] = None  # allowed sub-region for the occupant

    @property
    def line(self) -> RoleLine:
        return role_line(self.role)

    @property
    def is_empty(self) -> bool:
        return self.entity_id is None

    def allowed_region(self, bounds: Region) -> Region:
        """Area the slot's occupant may stand in."""
        return self.region.intersect(bounds) if self.region else bounds

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "role": self.role,
            "position": self.anchor.to_dict(),
            "entityId": self.entity_id,
        }
        if self.region is not None:
            data["region"] = self.region.to_list()
        return data


@dataclass
class Formation:
    """
    A formation being edited.

    Holds the ordered slots, the squad of entities that may be placed and
    the revision counter. The revision strictly increases with every
    accepted mutation.
    """
    id: str
    name: str = ""
    slots: List[Slot] = field(default_factory=list)
    entities: Dict[str, Entity] = field(default_factory=dict)
    revision: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    bounds: Region = DEFAULT_BOUNDS

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_slot(self, slot_id: str) -> Slot:
        for slot in self.slots:
            if slot.id == slot_id:
                return slot
        raise ValidationError(f"Slot {slot_id} not found", field="slot_id")

    def get_entity(self, entity_id: str) -> Entity:
        entity = self.entities.get(entity_id)
        if entity is None:
            raise ValidationError(f"Entity {entity_id} not found", field="entity_id")
        return entity

    def slot_of(self, entity_id: str) -> Optional[Slot]:
        """Slot currently holding the entity, if any."""
        for slot in self.slots:
            if slot.entity_id == entity_id:
                return slot
        return None

    def slot_index(self, slot_id: str) -> int:
        for index, slot in enumerate(self.slots):
            if slot.id == slot_id:
                return index
        raise ValidationError(f"Slot {slot_id} not found", field="slot_id")

    def effective_position(self, entity_id: str) -> Optional[Position]:
        """Free position if set, else the anchor of the entity's slot."""
        entity = self.get_entity(entity_id)
        if entity.position is not None:
            return entity.position
        slot = self.slot_of(entity_id)
        return slot.anchor if slot else None

    def placed_positions(self) -> Dict[str, Position]:
        """Effective position of every placed entity, keyed by entity id."""
        positions: Dict[str, Position] = {}
        for slot in self.slots:
            if slot.entity_id is not None:
                entity = self.entities.get(slot.entity_id)
                if entity is not None:
                    positions[entity.id] = entity.position or slot.anchor
        for entity in self.entities.values():
            if entity.id not in positions and entity.position is not None:
                positions[entity.id] = entity.position
        return positions

    def role_of(self, entity_id: str) -> str:
        """Role the entity is currently playing (slot role or primary role)."""
        slot = self.slot_of(entity_id)
        return slot.role if slot else self.get_entity(entity_id).role

    def iter_assigned(self) -> Iterator[Tuple[Slot, Entity]]:
        for slot in self.slots:
            if slot.entity_id is not None and slot.entity_id in self.entities:
                yield slot, self.entities[slot.entity_id]

    @property
    def empty_slots(self) -> List[Slot]:
        return [s for s in self.slots if s.is_empty]

    # ------------------------------------------------------------------
    # Mutation primitives (callers serialize access)
    # ------------------------------------------------------------------

    def bump_revision(self) -> int:
        """Advance the revision by one for a local edit."""
        self.revision += 1
        self.updated_at = datetime.now(timezone.utc)
        return self.revision

    def advance_to(self, revision: int, author: Optional[str] = None) -> int:
        """Jump to a remote revision. Never moves backwards or repeats."""
        if revision <= self.revision:
            raise ConcurrencyConflict(self.id, revision, self.revision, author=author)
        self.revision = revision
        self.updated_at = datetime.now(timezone.utc)
        return self.revision

    def set_assignment(self, slot_id: str, entity_id: Optional[str]) -> Optional[str]:
        """
        Put an entity into a slot (or clear it with None).

        The entity is removed from any other slot first so an entity is
        never referenced twice. Returns the displaced occupant, if any.
        """
        slot = self.get_slot(slot_id)
        if entity_id is not None:
            self.get_entity(entity_id)
            current = self.slot_of(entity_id)
            if current is not None and current.id != slot_id:
                current.entity_id = None
        displaced = slot.entity_id if slot.entity_id != entity_id else None
        slot.entity_id = entity_id
        return displaced

    def validate(self):
        """Check structural invariants, raising ValidationError on breach."""
        seen_slots = set()
        seen_entities = set()
        for slot in self.slots:
            if slot.id in seen_slots:
                raise ValidationError(f"Duplicate slot id {slot.id}", field="slots")
            seen_slots.add(slot.id)
            role_line(slot.role)
            if not self.bounds.contains(slot.anchor.x, slot.anchor.y):
                raise ValidationError(f"Slot {slot.id} anchor out of bounds", field="slots")
            if slot.entity_id is None:
                continue
            if slot.entity_id not in self.entities:
                raise ValidationError(
                    f"Slot {slot.id} references unknown entity {slot.entity_id}", field="slots"
                )
            if slot.entity_id in seen_entities:
                raise ValidationError(
                    f"Entity {slot.entity_id} assigned to more than one slot", field="slots"
                )
            seen_entities.add(slot.entity_id)
        for entity in self.entities.values():
            pos = entity.position
            if pos is not None and not self.bounds.contains(pos.x, pos.y):
                raise ValidationError(f"Entity {entity.id} out of bounds", field="entities")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Structured record: id, name, revision, updatedAt, slots (+ free positions)."""
        return {
            "id": self.id,
            "name": self.name,
            "revision": self.revision,
            "updatedAt": self.updated_at.isoformat(),
            "slots": [slot.to_dict() for slot in self.slots],
            "entities": [
                {"id": e.id, "position": e.position.to_dict()}
                for e in sorted(self.entities.values(), key=lambda e: e.id)
                if e.position is not None
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  entities: Optional[Dict[str, Entity]] = None,
                  bounds: Region = DEFAULT_BOUNDS) -> "Formation":
        """Rebuild a formation from its record and a squad."""
        try:
            slots = [
                Slot(
                    id=s["id"],
                    role=s["role"],
                    anchor=Position.from_dict(s["position"]),
                    entity_id=s.get("entityId"),
                    region=Region.from_sequence(s["region"]) if s.get("region") else None,
                )
                for s in data.get("slots", [])
            ]
            updated = data.get("updatedAt")
            formation = cls(
                id=data["id"],
                name=data.get("name", ""),
                slots=slots,
                entities=dict(entities or {}),
                revision=int(data.get("revision", 0)),
                updated_at=datetime.fromisoformat(updated) if updated else datetime.now(timezone.utc),
                bounds=bounds,
            )
        except (KeyError, TypeError, ValueError) as e:
            if isinstance(e, ValidationError):
                raise
            raise ValidationError(f"Malformed formation record: {e}") from e

        for item in data.get("entities", []):
            entity = formation.get_entity(item["id"])
            entity.position = Position.from_dict(item["position"])
        formation.validate()
        return formation
