"""
External Collaborators

Boundaries the engine consumes but does not implement: roster lookup,
persistence, messaging and user notifications. The base classes define
the contract; the in-memory versions back tests and the CLI.
"""

import copy
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..errors import ValidationError
from ..model.abstraction import Entity
from .protocol import Message


class RosterProvider:
    """Supplies entity records by identity. Read-only to the engine."""

    def get(self, entity_id: str) -> Entity:
        raise NotImplementedError

    def all(self) -> List[Entity]:
        raise NotImplementedError


class PersistenceCollaborator:
    """Loads formations eagerly and stores committed records."""

    def load(self, formation_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def save(self, formation_id: str, record: Dict[str, Any]):
        raise NotImplementedError


class MessagingCollaborator:
    """Delivers serialized messages between participants of a formation."""

    def broadcast(self, formation_id: str, message: Message, exclude: Optional[str] = None):
        raise NotImplementedError

    def send(self, participant_id: str, message: Message):
        raise NotImplementedError


class NotificationCollaborator:
    """Surfaces user-visible signals (conflicts, rejections, optimizer outcomes)."""

    def notify(self, event: str, message: str, details: Optional[Dict[str, Any]] = None):
        raise NotImplementedError


class InMemoryRoster(RosterProvider):
    def __init__(self, entities: Iterable[Entity] = ()):
        self._entities = {e.id: e for e in entities}

    def get(self, entity_id: str) -> Entity:
        try:
            return self._entities[entity_id]
        except KeyError:
            raise ValidationError(f"Entity {entity_id} not in roster", field="entity_id") from None

    def all(self) -> List[Entity]:
        return [self._entities[k] for k in sorted(self._entities)]

    def add(self, entity: Entity):
        self._entities[entity.id] = entity


class InMemoryPersistence(PersistenceCollaborator):
    """Keeps the latest record per formation plus a save log."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self.saves: List[Tuple[str, int]] = []  # (formation_id, revision)
        self._lock = threading.Lock()

    def load(self, formation_id: str) -> Dict[str, Any]:
        with self._lock:
            if formation_id not in self._records:
                raise ValidationError(f"Formation {formation_id} not stored", field="formation_id")
            return copy.deepcopy(self._records[formation_id])

    def save(self, formation_id: str, record: Dict[str, Any]):
        with self._lock:
            self._records[formation_id] = copy.deepcopy(record)
            self.saves.append((formation_id, record.get("revision", 0)))


class InMemoryMessaging(MessagingCollaborator):
    """Records broadcasts and per-participant deliveries."""

    def __init__(self):
        self.broadcasts: List[Tuple[str, Message, Optional[str]]] = []
        self.sent: Dict[str, List[Message]] = {}
        self._lock = threading.Lock()

    def broadcast(self, formation_id: str, message: Message, exclude: Optional[str] = None):
        with self._lock:
            self.broadcasts.append((formation_id, message, exclude))

    def send(self, participant_id: str, message: Message):
        with self._lock:
            self.sent.setdefault(participant_id, []).append(message)

    def inbox(self, participant_id: str) -> List[Message]:
        with self._lock:
            return list(self.sent.get(participant_id, []))


class RecordingNotifier(NotificationCollaborator):
    """Collects notifications for inspection."""

    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def notify(self, event: str, message: str, details: Optional[Dict[str, Any]] = None):
        with self._lock:
            self.events.append((event, message, dict(details or {})))

    def of_kind(self, event: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        with self._lock:
            return [e for e in self.events if e[0] == event]
