"""Multi-editor collaboration: protocol, locks, collaborators and synchronizer."""

from .protocol import (
    ConflictNotice,
    CursorMove,
    Delta,
    DeltaMessage,
    DeltaOp,
    Join,
    Leave,
    LockNotice,
    LockRelease,
    LockRequest,
    Message,
    decode_message,
)
from .locks import LockDecision, LockStatus, LockTable
from .collaborators import (
    InMemoryMessaging,
    InMemoryPersistence,
    InMemoryRoster,
    MessagingCollaborator,
    NotificationCollaborator,
    PersistenceCollaborator,
    RecordingNotifier,
    RosterProvider,
)
from .synchronizer import CollaborationSynchronizer, ConflictRecord, Participant, ParticipantRole

__all__ = [
    "ConflictNotice",
    "CursorMove",
    "Delta",
    "DeltaMessage",
    "DeltaOp",
    "Join",
    "Leave",
    "LockNotice",
    "LockRelease",
    "LockRequest",
    "Message",
    "decode_message",
    "LockDecision",
    "LockStatus",
    "LockTable",
    "InMemoryMessaging",
    "InMemoryPersistence",
    "InMemoryRoster",
    "MessagingCollaborator",
    "NotificationCollaborator",
    "PersistenceCollaborator",
    "RecordingNotifier",
    "RosterProvider",
    "CollaborationSynchronizer",
    "ConflictRecord",
    "Participant",
    "ParticipantRole",
]
