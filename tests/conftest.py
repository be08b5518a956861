"""
Shared test fixtures for FormationLab tests.

Provides a squad of entities, template formations and editing sessions
wired to in-memory collaborators.
"""

import copy
from typing import List

import pytest
import yaml

from formationlab.collab.collaborators import (
    InMemoryMessaging,
    InMemoryPersistence,
    RecordingNotifier,
)
from formationlab.config import EngineConfig
from formationlab.model.abstraction import Attributes, Availability, Entity, Formation
from formationlab.model.templates import create_formation
from formationlab.optimization.assignment import apply_assignment, auto_assign
from formationlab.api.session import EditingSession


def make_entity(
    entity_id: str,
    role: str,
    club: str = "Rovers",
    nationality: str = "ES",
    age: int = 25,
    tenure_years: float = 2.0,
    availability: Availability = Availability.AVAILABLE,
    **attributes,
) -> Entity:
    """Entity with neutral (50) attributes except the ones given."""
    return Entity(
        id=entity_id,
        name=entity_id.upper(),
        role=role,
        attributes=Attributes(**attributes),
        availability=availability,
        age=age,
        nationality=nationality,
        club=club,
        tenure_years=tenure_years,
    )


@pytest.fixture
def entity_factory():
    """Factory building entities with neutral attributes."""
    return make_entity


@pytest.fixture
def squad() -> List[Entity]:
    """Fourteen players: 13 available, one injured striker."""
    return [
        make_entity("gk1", "goalkeeper", positioning=85, physical=80, age=30),
        make_entity("gk2", "goalkeeper", positioning=70, physical=65, age=21),
        make_entity("d1", "left-back", defending=78, positioning=70, pace=80),
        make_entity("d2", "center-back", defending=85, positioning=80, pace=60, physical=82),
        make_entity("d3", "center-back", defending=82, positioning=78, pace=62, nationality="FR"),
        make_entity("d4", "right-back", defending=76, positioning=70, pace=82, club="United"),
        make_entity("d5", "center-back", defending=65, positioning=60, pace=55, age=34),
        make_entity("m1", "central-midfielder", passing=84, stamina=80, dribbling=75, positioning=72),
        make_entity("m2", "defensive-midfielder", passing=78, stamina=85, positioning=80, defending=75),
        make_entity("m3", "central-midfielder", passing=82, stamina=78, dribbling=80, positioning=70,
                    club="United"),
        make_entity("a1", "left-winger", shooting=75, pace=88, dribbling=85, age=22),
        make_entity("a2", "striker", shooting=88, pace=80, dribbling=76, physical=78),
        make_entity("a3", "right-winger", shooting=74, pace=86, dribbling=84, nationality="BR"),
        make_entity("inj", "striker", shooting=95, pace=90, dribbling=90,
                    availability=Availability.INJURED),
    ]


@pytest.fixture
def config() -> EngineConfig:
    """Default engine configuration (fresh per test)."""
    return EngineConfig()


@pytest.fixture
def formation(squad) -> Formation:
    """Empty 4-3-3 formation holding the squad."""
    return create_formation("4-3-3", squad, formation_id="f1", name="Test XI")


@pytest.fixture
def assigned_formation(formation) -> Formation:
    """4-3-3 formation with every slot auto-assigned."""
    result = auto_assign(formation)
    apply_assignment(formation, result)
    return formation


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def messaging() -> InMemoryMessaging:
    return InMemoryMessaging()


@pytest.fixture
def session(assigned_formation, config, persistence, notifier) -> EditingSession:
    """Editing session over an assigned formation."""
    return EditingSession(assigned_formation, config, persistence=persistence, notifier=notifier)


@pytest.fixture
def twin_session(assigned_formation, config) -> EditingSession:
    """A second, independent session over an identical copy of the formation."""
    return EditingSession(copy.deepcopy(assigned_formation), copy.deepcopy(config), author="remote")


@pytest.fixture
def roster_file(tmp_path, squad):
    """Roster YAML written from the squad."""
    path = tmp_path / "squad.yaml"
    with open(path, "w") as f:
        yaml.safe_dump({"players": [e.to_dict() for e in squad]}, f)
    return path
