"""
Collaboration Protocol

Tagged message variants exchanged between editing participants. Every
message carries a ``kind`` tag; ``decode_message`` dispatches on it.

Inbound (participant -> synchronizer):
    join, leave, cursor, lock-request, lock-release, delta
Outbound (synchronizer -> participant):
    conflict, lock

Deltas carry {formationId, revision, op, payload, author}. Payloads use a
uniform shape so any op can be replayed by a remote session:
    assignments: {slot_id: entity_id | null}
    positions:   {entity_id: {x, y} | null}
    entities:    [entity records added to the squad]
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type, Union
import json

from ..errors import ValidationError


class DeltaOp(Enum):
    MOVE = "move"
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    OPTIMIZE_COMMIT = "optimize-commit"
    RESTORE = "restore"  # undo/redo broadcast as full state


@dataclass
class Delta:
    """One accepted mutation of a formation."""
    formation_id: str
    revision: int
    op: DeltaOp
    payload: Dict[str, Any] = field(default_factory=dict)
    author: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formationId": self.formation_id,
            "revision": self.revision,
            "op": self.op.value,
            "payload": self.payload,
            "author": self.author,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Delta":
        try:
            return cls(
                formation_id=data["formationId"],
                revision=int(data["revision"]),
                op=DeltaOp(data["op"]),
                payload=dict(data.get("payload") or {}),
                author=data.get("author", ""),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed delta: {e}", field="delta") from None

    @classmethod
    def from_json(cls, data: str) -> "Delta":
        return cls.from_dict(json.loads(data))


@dataclass
class Message:
    """Base for tagged protocol messages."""
    kind: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class Join(Message):
    kind: ClassVar[str] = "join"
    participant_id: str
    role: str = "editor"
    last_seen_revision: int = 0


@dataclass
class Leave(Message):
    kind: ClassVar[str] = "leave"
    participant_id: str


@dataclass
class CursorMove(Message):
    kind: ClassVar[str] = "cursor"
    participant_id: str
    x: float
    y: float


@dataclass
class LockRequest(Message):
    kind: ClassVar[str] = "lock-request"
    participant_id: str
    slot_id: str


@dataclass
class LockRelease(Message):
    kind: ClassVar[str] = "lock-release"
    participant_id: str
    slot_id: str


@dataclass
class DeltaMessage(Message):
    kind: ClassVar[str] = "delta"
    participant_id: str
    delta: Delta

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "participant_id": self.participant_id,
                "delta": self.delta.to_dict()}


@dataclass
class ConflictNotice(Message):
    """Sent to the author of a rejected delta with the state to re-derive from."""
    kind: ClassVar[str] = "conflict"
    participant_id: str
    formation_id: str
    delta_revision: int
    local_revision: int
    reason: str
    formation: Optional[Dict[str, Any]] = None


@dataclass
class LockNotice(Message):
    kind: ClassVar[str] = "lock"
    participant_id: str
    slot_id: str
    status: str
    holder: Optional[str] = None
    expires_at: Optional[float] = None
    position: Optional[int] = None  # place in the wait queue


MESSAGE_TYPES: Dict[str, Type[Message]] = {
    cls.kind: cls
    for cls in (Join, Leave, CursorMove, LockRequest, LockRelease,
                DeltaMessage, ConflictNotice, LockNotice)
}


def decode_message(data: Union[str, Dict[str, Any]]) -> Message:
    """
    Decode a message from JSON text or a dict.

    Raises:
        ValidationError: Unknown kind or malformed fields
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Message is not valid JSON: {e}", field="message") from None
    if not isinstance(data, dict):
        raise ValidationError("Message must be a mapping", field="message")

    fields_ = dict(data)
    kind = fields_.pop("kind", None)
    cls = MESSAGE_TYPES.get(kind)
    if cls is None:
        raise ValidationError(f"Unknown message kind: {kind!r}", field="kind")
    if cls is DeltaMessage and isinstance(fields_.get("delta"), dict):
        fields_["delta"] = Delta.from_dict(fields_["delta"])
    try:
        return cls(**fields_)
    except TypeError as e:
        raise ValidationError(f"Malformed {kind} message: {e}", field="message") from None
