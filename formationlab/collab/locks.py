"""
Slot Lock Table

Advisory per-slot locks for collaborative editing. A lock has one owner
and an expiry; an expired lock counts as released, so a participant that
disconnects without releasing never blocks a slot for longer than the TTL.

Requests for a slot held by someone else wait in a bounded FIFO queue and
are promoted when the holder releases or the lock expires.

Locks are advisory unless the synchronizer runs with ``enforce_locks``.
Correctness of concurrent edits rests on the revision ordering it enforces.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..errors import LockUnavailable

logger = logging.getLogger(__name__)


class LockStatus(Enum):
    GRANTED = "granted"
    QUEUED = "queued"
    REJECTED = "rejected"


@dataclass(frozen=True)
class LockDecision:
    """Answer to a lock request."""
    status: LockStatus
    slot_id: str
    participant_id: str
    holder: Optional[str] = None
    expires_at: Optional[float] = None
    position: Optional[int] = None  # 1-based place in the wait queue
    reason: str = ""

    @property
    def granted(self) -> bool:
        return self.status == LockStatus.GRANTED


@dataclass
class SlotLock:
    slot_id: str
    owner: str
    acquired_at: float
    expires_at: float
    queue: List[str] = field(default_factory=list)

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class LockTable:
    """Lock state for the slots of one formation."""

    def __init__(self, ttl: float = 30.0, max_queue: int = 4,
                 clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        self.ttl = ttl
        self.max_queue = max_queue
        self.clock = clock
        self._locks: Dict[str, SlotLock] = {}

    def __len__(self) -> int:
        now = self.clock()
        return sum(1 for lock in self._locks.values() if not lock.expired(now))

    def acquire(self, participant_id: str, slot_id: str) -> LockDecision:
        """
        Request a slot lock.

        - free: granted
        - expired: released first, so the head of its queue (if any) takes it
        - already owned by the requester: granted, TTL refreshed
        - held by another participant: queued, or rejected if the queue is full
        """
        now = self.clock()
        lock = self._locks.get(slot_id)

        if lock is not None and lock.expired(now):
            logger.debug("Lock on %s held by %s expired", slot_id, lock.owner)
            # Waiting participants keep their turn over a fresh request
            self._promote(slot_id, now)
            lock = self._locks.get(slot_id)

        if lock is None:
            return self._grant(participant_id, slot_id, now, [])

        if lock.owner == participant_id:
            lock.expires_at = now + self.ttl
            return LockDecision(LockStatus.GRANTED, slot_id, participant_id,
                                holder=participant_id, expires_at=lock.expires_at)

        if participant_id in lock.queue:
            return LockDecision(LockStatus.QUEUED, slot_id, participant_id, holder=lock.owner,
                                expires_at=lock.expires_at,
                                position=lock.queue.index(participant_id) + 1)

        if len(lock.queue) >= self.max_queue:
            return LockDecision(LockStatus.REJECTED, slot_id, participant_id, holder=lock.owner,
                                expires_at=lock.expires_at, reason="queue full")

        lock.queue.append(participant_id)
        return LockDecision(LockStatus.QUEUED, slot_id, participant_id, holder=lock.owner,
                            expires_at=lock.expires_at, position=len(lock.queue))

    def release(self, participant_id: str, slot_id: str) -> Optional[LockDecision]:
        """
        Release a lock (or leave its queue).

        Returns:
            The grant for the promoted queue head, if any
        """
        lock = self._locks.get(slot_id)
        if lock is None:
            return None
        if lock.owner != participant_id:
            if participant_id in lock.queue:
                lock.queue.remove(participant_id)
            return None
        return self._promote(slot_id, self.clock())

    def release_all(self, participant_id: str) -> List[LockDecision]:
        """Release every lock and queue place of a participant."""
        promotions = []
        for slot_id in sorted(self._locks):
            lock = self._locks.get(slot_id)
            if lock is None:
                continue
            if participant_id in lock.queue:
                lock.queue.remove(participant_id)
            if lock.owner == participant_id:
                promoted = self._promote(slot_id, self.clock())
                if promoted is not None:
                    promotions.append(promoted)
        return promotions

    def purge_expired(self) -> List[LockDecision]:
        """Drop expired locks, promoting waiting participants."""
        now = self.clock()
        promotions = []
        for slot_id in sorted(self._locks):
            lock = self._locks[slot_id]
            if lock.expired(now):
                logger.debug("Lock on %s held by %s expired", slot_id, lock.owner)
                promoted = self._promote(slot_id, now)
                if promoted is not None:
                    promotions.append(promoted)
        return promotions

    def holder(self, slot_id: str) -> Optional[str]:
        """Current active owner of a slot lock."""
        lock = self._locks.get(slot_id)
        if lock is None or lock.expired(self.clock()):
            return None
        return lock.owner

    def require(self, participant_id: str, slot_id: str):
        """Raise LockUnavailable if another participant actively holds the slot."""
        lock = self._locks.get(slot_id)
        if lock is not None and not lock.expired(self.clock()) and lock.owner != participant_id:
            raise LockUnavailable(slot_id, lock.owner, lock.expires_at)

    def held_by(self, participant_id: str) -> List[str]:
        now = self.clock()
        return sorted(s for s, lock in self._locks.items()
                      if lock.owner == participant_id and not lock.expired(now))

    def clear(self):
        self._locks.clear()

    def snapshot(self) -> Dict[str, Dict]:
        """Active locks as plain data."""
        now = self.clock()
        return {
            slot_id: {
                "owner": lock.owner,
                "acquired_at": lock.acquired_at,
                "expires_at": lock.expires_at,
                "queue": list(lock.queue),
            }
            for slot_id, lock in sorted(self._locks.items())
            if not lock.expired(now)
        }

    def _grant(self, participant_id: str, slot_id: str, now: float,
               queue: List[str]) -> LockDecision:
        self._locks[slot_id] = SlotLock(slot_id, participant_id, now, now + self.ttl, queue)
        logger.debug("Lock on %s granted to %s", slot_id, participant_id)
        return LockDecision(LockStatus.GRANTED, slot_id, participant_id,
                            holder=participant_id, expires_at=now + self.ttl)

    def _promote(self, slot_id: str, now: float) -> Optional[LockDecision]:
        lock = self._locks.pop(slot_id)
        if not lock.queue:
            return None
        head, rest = lock.queue[0], lock.queue[1:]
        return self._grant(head, slot_id, now, rest)
