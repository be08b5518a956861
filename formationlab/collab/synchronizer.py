"""
Collaboration Synchronizer

Multi-editor state for one editing session: participants with live
cursors, the slot lock table, and ordered application of remote deltas.

Ordering rule (the only thing correctness depends on):
- delta.revision == local + 1: apply, then apply any buffered successors
- delta.revision <= local: discard, record a conflict and send the author
  a ConflictNotice carrying the current formation record
- delta.revision > local + 1: buffer until the gap closes (bounded)

Inbound events are tagged messages handled one at a time, either by
calling process_pending() or by the background loop started with start().
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..config import CollaborationConfig
from ..errors import ConcurrencyConflict, FormationError, ValidationError
from ..model.abstraction import Position
from .locks import LockDecision, LockStatus, LockTable
from .protocol import (
    ConflictNotice,
    CursorMove,
    Delta,
    DeltaMessage,
    Join,
    Leave,
    LockNotice,
    LockRelease,
    LockRequest,
    Message,
)

if TYPE_CHECKING:
    from ..api.session import EditingSession

logger = logging.getLogger(__name__)


class ParticipantRole(Enum):
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"


@dataclass
class Participant:
    """One connected editor."""
    id: str
    role: ParticipantRole = ParticipantRole.EDITOR
    cursor: Optional[Position] = None
    last_seen_revision: int = 0
    joined_at: float = 0.0
    last_seen: float = 0.0

    @property
    def can_edit(self) -> bool:
        return self.role != ParticipantRole.VIEWER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "cursor": self.cursor.to_dict() if self.cursor else None,
            "last_seen_revision": self.last_seen_revision,
            "joined_at": self.joined_at,
            "last_seen": self.last_seen,
        }


@dataclass(frozen=True)
class ConflictRecord:
    participant_id: str
    delta_revision: int
    local_revision: int
    reason: str
    at: float = field(default=0.0)


class CollaborationSynchronizer:
    """
    Coordinates concurrent editors of one EditingSession.

    Args:
        session: The session owning the authoritative formation
        messaging: MessagingCollaborator used for broadcasts and direct sends
        notifier: NotificationCollaborator; defaults to the session's
        config: Collaboration settings; defaults to the session's
        clock: Time source for lock expiry and idle pruning
    """

    def __init__(
        self,
        session: "EditingSession",
        messaging=None,
        notifier=None,
        config: Optional[CollaborationConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.messaging = messaging
        self.notifier = notifier if notifier is not None else session.notifier
        self.config = config or session.config.collaboration
        self.clock = clock
        self.locks = LockTable(self.config.lock_ttl_seconds, self.config.max_lock_queue, clock)
        self.participants: Dict[str, Participant] = {}
        self.conflicts: List[ConflictRecord] = []

        self._pending: Dict[int, Delta] = {}
        self._inbox: "queue.Queue[Message]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._applied = 0

        session.add_listener(self._on_local_delta)

    @property
    def formation_id(self) -> str:
        return self.session.formation.id

    @property
    def active(self) -> bool:
        """True while at least one participant is connected."""
        return bool(self.participants)

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    def join(self, participant_id: str, role: str = "editor",
             last_seen_revision: int = 0) -> Participant:
        """Add (or refresh) a participant. The first editor to join owns the session."""
        try:
            role_value = ParticipantRole(role)
        except ValueError:
            raise ValidationError(f"Unknown participant role: {role!r}", field="role") from None

        with self.session.lock:
            now = self.clock()
            existing = self.participants.get(participant_id)
            if existing is not None:
                existing.last_seen = now
                existing.last_seen_revision = max(existing.last_seen_revision, last_seen_revision)
                return existing

            if role_value == ParticipantRole.EDITOR and not any(
                    p.role == ParticipantRole.OWNER for p in self.participants.values()):
                role_value = ParticipantRole.OWNER
            participant = Participant(
                id=participant_id,
                role=role_value,
                last_seen_revision=last_seen_revision,
                joined_at=now,
                last_seen=now,
            )
            self.participants[participant_id] = participant
            logger.info("%s joined %s as %s", participant_id, self.formation_id, role_value.value)
            self._broadcast(Join(participant_id, role_value.value, last_seen_revision),
                            exclude=participant_id)
            return participant

    def leave(self, participant_id: str) -> bool:
        """
        Remove a participant and release its locks.

        When the last participant leaves, the collaboration closes and the
        formation returns to single-writer mode.
        """
        with self.session.lock:
            if self.participants.pop(participant_id, None) is None:
                return False
            for promoted in self.locks.release_all(participant_id):
                self._send_lock_notice(promoted)
            logger.info("%s left %s", participant_id, self.formation_id)
            self._broadcast(Leave(participant_id), exclude=participant_id)

            if not self.participants:
                self.locks.clear()
                dropped = len(self._pending)
                self._pending.clear()
                logger.info(
                    "Collaboration on %s closed; single-writer mode (%d buffered deltas dropped)",
                    self.formation_id, dropped,
                )
            return True

    def prune_idle(self) -> List[str]:
        """Disconnect participants idle longer than idle_timeout_seconds."""
        with self.session.lock:
            cutoff = self.clock() - self.config.idle_timeout_seconds
            idle = sorted(pid for pid, p in self.participants.items() if p.last_seen < cutoff)
            for participant_id in idle:
                logger.info("Pruning idle participant %s", participant_id)
                self.leave(participant_id)
            return idle

    def update_cursor(self, participant_id: str, x: float, y: float) -> Participant:
        """Record a live cursor position and share it with the others."""
        with self.session.lock:
            participant = self._participant(participant_id)
            bounds = self.session.formation.bounds
            if not bounds.contains(x, y):
                raise ValidationError(f"Cursor ({x}, {y}) outside field bounds", field="cursor")
            participant.cursor = Position(x, y)
            self._broadcast(CursorMove(participant_id, x, y), exclude=participant_id)
            return participant

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def acquire_lock(self, participant_id: str, slot_id: str) -> LockDecision:
        """Request the lock on a slot: granted, queued or rejected."""
        with self.session.lock:
            participant = self._participant(participant_id)
            self.session.formation.get_slot(slot_id)
            if not participant.can_edit:
                return LockDecision(LockStatus.REJECTED, slot_id, participant_id,
                                    holder=self.locks.holder(slot_id), reason="viewer")
            decision = self.locks.acquire(participant_id, slot_id)
            if decision.granted:
                self._broadcast(self._lock_notice(decision), exclude=participant_id)
            return decision

    def release_lock(self, participant_id: str, slot_id: str) -> Optional[LockDecision]:
        """Release a slot lock; returns the grant for the next waiting participant."""
        with self.session.lock:
            self._participant(participant_id)
            promoted = self.locks.release(participant_id, slot_id)
            if promoted is not None:
                self._send_lock_notice(promoted)
            return promoted

    def purge_locks(self) -> List[LockDecision]:
        with self.session.lock:
            promotions = self.locks.purge_expired()
            for promoted in promotions:
                self._send_lock_notice(promoted)
            return promotions

    # ------------------------------------------------------------------
    # Deltas
    # ------------------------------------------------------------------

    def apply_remote_delta(self, delta: Delta, participant_id: Optional[str] = None) -> List[int]:
        """
        Apply a delta from another editor, enforcing revision order.

        Returns:
            Revisions applied (the delta and any drained successors); empty
            when the delta was buffered

        Raises:
            ConcurrencyConflict: Stale or duplicate revision, or the buffer
                is full; the author has been notified
            ValidationError: Unknown or read-only participant, or malformed delta
            LockUnavailable: With ``enforce_locks``, the delta changes a slot
                locked by another participant
        """
        author = participant_id or delta.author
        with self.session.lock:
            if author in self.participants:
                participant = self.participants[author]
                if not participant.can_edit:
                    raise ValidationError(f"Participant {author} is read-only", field="participant")
                participant.last_seen = self.clock()
            if not delta.author:
                delta.author = author
            if self.config.enforce_locks:
                self._require_locks(delta, author)

            local = self.session.revision
            if delta.revision <= local:
                reason = "duplicate" if delta.revision == local else "stale"
                raise self._conflict(delta, author, reason)

            if delta.revision > local + 1:
                if delta.revision in self._pending:
                    raise self._conflict(delta, author, "duplicate")
                if len(self._pending) >= self.config.max_pending_deltas:
                    raise self._conflict(delta, author, "gap-overflow")
                self._pending[delta.revision] = delta
                logger.debug(
                    "Buffered delta %d for %s (local revision %d)",
                    delta.revision, self.formation_id, local,
                )
                return []

            applied = [self._apply(delta)]
            while self.session.revision + 1 in self._pending:
                successor = self._pending.pop(self.session.revision + 1)
                try:
                    applied.append(self._apply(successor))
                except FormationError as e:
                    logger.warning("Buffered delta %d rejected: %s", successor.revision, e)
                    self._notify("rejection", str(e), {"revision": successor.revision})
                    break
            # Anything at or below the new revision can never apply
            for revision in [r for r in self._pending if r <= self.session.revision]:
                stale = self._pending.pop(revision)
                self._record_conflict(stale, stale.author, "stale")
            return applied

    def submit(self, message: Message):
        """Queue an inbound message for the processing loop."""
        self._inbox.put(message)

    def process_pending(self, max_messages: Optional[int] = None) -> int:
        """Handle queued messages in arrival order. Returns the number handled."""
        handled = 0
        while max_messages is None or handled < max_messages:
            try:
                message = self._inbox.get_nowait()
            except queue.Empty:
                break
            self._dispatch(message)
            handled += 1
        return handled

    def start(self, poll_interval: float = 0.1):
        """Run the processing loop on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, args=(poll_interval,),
            name=f"collab-{self.formation_id}", daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        """Stop the background loop after the message in hand is handled."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def stats(self) -> Dict[str, Any]:
        """Get collaboration statistics."""
        with self.session.lock:
            return {
                "formation": self.formation_id,
                "revision": self.session.revision,
                "active": self.active,
                "participants": {pid: p.to_dict() for pid, p in sorted(self.participants.items())},
                "locks": self.locks.snapshot(),
                "pending_deltas": sorted(self._pending),
                "applied_deltas": self._applied,
                "conflicts": len(self.conflicts),
                "inbox": self._inbox.qsize(),
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run(self, poll_interval: float):
        while not self._stop_event.is_set():
            try:
                message = self._inbox.get(timeout=poll_interval)
            except queue.Empty:
                self.purge_locks()
                self.prune_idle()
                continue
            self._dispatch(message)

    def _dispatch(self, message: Message):
        try:
            if isinstance(message, Join):
                self.join(message.participant_id, message.role, message.last_seen_revision)
            elif isinstance(message, Leave):
                self.leave(message.participant_id)
            elif isinstance(message, CursorMove):
                self.update_cursor(message.participant_id, message.x, message.y)
            elif isinstance(message, LockRequest):
                decision = self.acquire_lock(message.participant_id, message.slot_id)
                self._send(message.participant_id, self._lock_notice(decision))
            elif isinstance(message, LockRelease):
                self.release_lock(message.participant_id, message.slot_id)
            elif isinstance(message, DeltaMessage):
                self.apply_remote_delta(message.delta, message.participant_id)
            else:
                raise ValidationError(f"Unexpected inbound message: {message.kind}", field="kind")
        except ConcurrencyConflict as e:
            # Already recorded and sent to the author
            logger.debug("Conflict while handling %s: %s", message.kind, e)
        except FormationError as e:
            logger.warning("Rejected %s message: %s", message.kind, e)
            self._notify("rejection", str(e), {"kind": message.kind})

    def _apply(self, delta: Delta) -> int:
        revision = self.session.apply_delta(delta)
        self._applied += 1
        participant = self.participants.get(delta.author)
        if participant is not None:
            participant.last_seen_revision = revision
        self._broadcast(DeltaMessage(delta.author, delta), exclude=delta.author)
        return revision

    def _require_locks(self, delta: Delta, author: str):
        assignments = delta.payload.get("assignments") or {}
        for slot in self.session.formation.slots:
            if slot.id in assignments and assignments[slot.id] != slot.entity_id:
                self.locks.require(author, slot.id)

    def _conflict(self, delta: Delta, author: str, reason: str) -> ConcurrencyConflict:
        conflict = self._record_conflict(delta, author, reason)
        logger.warning("%s", conflict)
        self._notify("conflict", str(conflict), {
            "delta_revision": conflict.delta_revision,
            "local_revision": conflict.local_revision,
            "reason": reason,
            "author": author,
        })
        return conflict

    def _record_conflict(self, delta: Delta, author: str, reason: str) -> ConcurrencyConflict:
        local = self.session.revision
        conflict = ConcurrencyConflict(self.formation_id, delta.revision, local,
                                       author=author, reason=reason)
        self.conflicts.append(ConflictRecord(author, delta.revision, local, reason, self.clock()))
        if author:
            self._send(author, ConflictNotice(
                participant_id=author,
                formation_id=self.formation_id,
                delta_revision=delta.revision,
                local_revision=local,
                reason=reason,
                formation=self.session.to_dict(),
            ))
        return conflict

    def _on_local_delta(self, delta: Delta):
        if self.participants:
            self._broadcast(DeltaMessage(delta.author, delta), exclude=delta.author)

    def _participant(self, participant_id: str) -> Participant:
        participant = self.participants.get(participant_id)
        if participant is None:
            raise ValidationError(f"Unknown participant {participant_id}", field="participant")
        participant.last_seen = self.clock()
        return participant

    def _lock_notice(self, decision: LockDecision) -> LockNotice:
        return LockNotice(
            participant_id=decision.participant_id,
            slot_id=decision.slot_id,
            status=decision.status.value,
            holder=decision.holder,
            expires_at=decision.expires_at,
            position=decision.position,
        )

    def _send_lock_notice(self, decision: LockDecision):
        self._send(decision.participant_id, self._lock_notice(decision))

    def _broadcast(self, message: Message, exclude: Optional[str] = None):
        if self.messaging is None:
            return
        try:
            self.messaging.broadcast(self.formation_id, message, exclude=exclude)
        except Exception:
            logger.exception("Broadcast of %s failed", message.kind)

    def _send(self, participant_id: str, message: Message):
        if self.messaging is None:
            return
        try:
            self.messaging.send(participant_id, message)
        except Exception:
            logger.exception("Sending %s to %s failed", message.kind, participant_id)

    def _notify(self, event: str, message: str, details: Optional[Dict[str, Any]] = None):
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event, message, details)
        except Exception:
            logger.exception("Notification %s failed", event)
