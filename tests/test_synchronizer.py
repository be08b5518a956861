"""
Tests for multi-editor synchronization: revision ordering, locks and
participant lifecycle.
"""

import time

import pytest

from formationlab.collab.locks import LockStatus
from formationlab.collab.protocol import (
    ConflictNotice,
    CursorMove,
    DeltaMessage,
    Join,
    Leave,
    LockNotice,
    LockRequest,
)
from formationlab.collab.synchronizer import CollaborationSynchronizer, ParticipantRole
from formationlab.config import CollaborationConfig
from formationlab.errors import ConcurrencyConflict, LockUnavailable, ValidationError


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sync(session, messaging, clock):
    return CollaborationSynchronizer(session, messaging, clock=clock)


@pytest.fixture
def remote_deltas(twin_session):
    """Five consecutive deltas (revisions 1-5) produced by the remote editor."""
    deltas = []
    twin_session.add_listener(deltas.append)
    twin_session.assign("lb", "d5")
    twin_session.swap("lw", "rw")
    twin_session.unassign("st")
    twin_session.assign("st", "a2")
    twin_session.propose_move("a2", (50.0, 30.0))
    assert [d.revision for d in deltas] == [1, 2, 3, 4, 5]
    return deltas


class TestRevisionOrdering:
    """Apply, buffer or reject by revision."""

    def test_in_order_deltas_converge(self, sync, session, twin_session, remote_deltas):
        sync.join("remote")

        applied = []
        for delta in remote_deltas:
            applied.extend(sync.apply_remote_delta(delta))

        assert applied == [1, 2, 3, 4, 5]
        assert session.revision == 5
        assert session.snapshot().same_state(twin_session.snapshot())
        assert sync.participants["remote"].last_seen_revision == 5

    def test_stale_delta_conflicts(self, sync, session, messaging, remote_deltas):
        """At revision 5 a delta for revision 4 is refused and its author told why."""
        sync.join("remote")
        for delta in remote_deltas:
            sync.apply_remote_delta(delta)
        before = session.snapshot()

        with pytest.raises(ConcurrencyConflict) as exc_info:
            sync.apply_remote_delta(remote_deltas[3])

        assert exc_info.value.reason == "stale"
        assert exc_info.value.local_revision == 5
        assert session.revision == 5
        assert session.snapshot().same_state(before)
        notice = messaging.inbox("remote")[-1]
        assert isinstance(notice, ConflictNotice)
        assert (notice.delta_revision, notice.local_revision) == (4, 5)
        assert notice.formation["revision"] == 5
        assert sync.stats()["conflicts"] == 1

    def test_duplicate_delta_conflicts(self, sync, remote_deltas):
        sync.apply_remote_delta(remote_deltas[0])

        with pytest.raises(ConcurrencyConflict) as exc_info:
            sync.apply_remote_delta(remote_deltas[0])
        assert exc_info.value.reason == "duplicate"

    def test_concurrent_same_base_revision(self, sync, session, twin_session, messaging):
        """Two editors both at revision N: the first N+1 wins, the second must rebase."""
        sync.join("remote")
        sync.join("alice")
        mine = session.assign("lb", "d5")
        theirs = twin_session.unassign("st")
        assert mine.revision == theirs.revision == 1

        with pytest.raises(ConcurrencyConflict):
            sync.apply_remote_delta(theirs)

        assert session.formation.get_slot("st").entity_id == "a2"
        assert isinstance(messaging.inbox("remote")[-1], ConflictNotice)

    def test_gap_is_buffered_then_drained(self, sync, session, remote_deltas):
        assert sync.apply_remote_delta(remote_deltas[2]) == []
        assert sync.apply_remote_delta(remote_deltas[1]) == []
        assert session.revision == 0
        assert sync.stats()["pending_deltas"] == [2, 3]

        applied = sync.apply_remote_delta(remote_deltas[0])

        assert applied == [1, 2, 3]
        assert session.revision == 3
        assert sync.stats()["pending_deltas"] == []

    def test_buffer_overflow(self, session, messaging, remote_deltas):
        sync = CollaborationSynchronizer(session, messaging,
                                         config=CollaborationConfig(max_pending_deltas=1))
        sync.apply_remote_delta(remote_deltas[2])

        with pytest.raises(ConcurrencyConflict) as exc_info:
            sync.apply_remote_delta(remote_deltas[3])
        assert exc_info.value.reason == "gap-overflow"

    def test_applied_delta_rebroadcast(self, sync, messaging, remote_deltas):
        sync.join("remote")
        sync.apply_remote_delta(remote_deltas[0])

        formation_id, message, exclude = messaging.broadcasts[-1]
        assert formation_id == "f1"
        assert isinstance(message, DeltaMessage)
        assert message.delta.revision == 1
        assert exclude == "remote"

    def test_local_edits_broadcast_only_when_shared(self, sync, session, messaging):
        session.unassign("st")
        assert messaging.broadcasts == []

        sync.join("alice")
        delta = session.assign("st", "a2")

        _, message, exclude = messaging.broadcasts[-1]
        assert message.delta == delta
        assert exclude == "local"


class TestLockEnforcement:
    """Slot locks gate remote deltas only when enforce_locks is on."""

    def test_locks_advisory_by_default(self, sync, session, remote_deltas):
        sync.join("alice")
        sync.acquire_lock("alice", "lb")

        assert sync.apply_remote_delta(remote_deltas[0]) == [1]
        assert session.formation.get_slot("lb").entity_id == "d5"

    def test_locked_slot_refuses_delta(self, session, messaging, clock, remote_deltas):
        sync = CollaborationSynchronizer(session, messaging, clock=clock,
                                         config=CollaborationConfig(enforce_locks=True))
        sync.join("alice")
        sync.join("remote")
        sync.acquire_lock("alice", "lb")

        with pytest.raises(LockUnavailable) as exc_info:
            sync.apply_remote_delta(remote_deltas[0])

        assert exc_info.value.slot_id == "lb"
        assert exc_info.value.holder == "alice"
        assert session.revision == 0
        assert sync.stats()["pending_deltas"] == []

        clock.now = 31.0
        assert sync.apply_remote_delta(remote_deltas[0]) == [1]

    def test_own_lock_and_untouched_slots_pass(self, session, messaging, clock, remote_deltas):
        sync = CollaborationSynchronizer(session, messaging, clock=clock,
                                         config=CollaborationConfig(enforce_locks=True))
        sync.join("remote")
        sync.join("alice")
        sync.acquire_lock("remote", "lb")
        sync.acquire_lock("alice", "st")

        assert sync.apply_remote_delta(remote_deltas[0]) == [1]

    def test_refusal_through_message_loop(self, session, messaging, notifier, remote_deltas):
        sync = CollaborationSynchronizer(session, messaging, notifier=notifier,
                                         config=CollaborationConfig(enforce_locks=True))
        sync.join("alice")
        sync.acquire_lock("alice", "lb")
        sync.submit(DeltaMessage("remote", remote_deltas[0]))

        assert sync.process_pending() == 1

        assert session.revision == 0
        assert "locked by alice" in notifier.of_kind("rejection")[-1][1]


class TestParticipants:
    """Join, leave, cursors and idle pruning."""

    def test_first_editor_owns(self, sync):
        viewer = sync.join("vic", role="viewer")
        owner = sync.join("alice")
        editor = sync.join("bob")

        assert viewer.role == ParticipantRole.VIEWER
        assert owner.role == ParticipantRole.OWNER
        assert editor.role == ParticipantRole.EDITOR

    def test_rejoin_refreshes(self, sync, clock):
        sync.join("alice", last_seen_revision=2)
        clock.now = 10.0
        participant = sync.join("alice", last_seen_revision=1)

        assert participant.last_seen == 10.0
        assert participant.last_seen_revision == 2
        assert len(sync.participants) == 1

    def test_unknown_role(self, sync):
        with pytest.raises(ValidationError):
            sync.join("alice", role="coach")

    def test_viewer_cannot_edit(self, sync, remote_deltas):
        sync.join("vic", role="viewer")

        decision = sync.acquire_lock("vic", "st")
        assert decision.status == LockStatus.REJECTED
        assert decision.reason == "viewer"
        with pytest.raises(ValidationError):
            sync.apply_remote_delta(remote_deltas[0], participant_id="vic")

    def test_leave_releases_locks(self, sync, messaging):
        sync.join("alice")
        sync.join("bob")
        sync.acquire_lock("alice", "st")
        assert sync.acquire_lock("bob", "st").status == LockStatus.QUEUED

        assert sync.leave("alice")

        assert sync.locks.holder("st") == "bob"
        notice = messaging.inbox("bob")[-1]
        assert isinstance(notice, LockNotice)
        assert notice.status == "granted"
        assert not sync.leave("alice")

    def test_last_leave_closes_collaboration(self, sync, remote_deltas):
        sync.join("alice")
        sync.acquire_lock("alice", "gk")
        sync.apply_remote_delta(remote_deltas[2], participant_id="alice")

        sync.leave("alice")

        stats = sync.stats()
        assert not sync.active
        assert stats["locks"] == {}
        assert stats["pending_deltas"] == []

    def test_prune_idle(self, sync, clock):
        sync.join("alice")
        clock.now = 200.0
        sync.join("bob")
        clock.now = 301.0

        assert sync.prune_idle() == ["alice"]
        assert list(sync.participants) == ["bob"]

    def test_cursor(self, sync, session, messaging):
        sync.join("alice")

        participant = sync.update_cursor("alice", 40.0, 60.0)

        assert participant.cursor.as_tuple() == (40.0, 60.0)
        assert messaging.broadcasts[-1][1] == CursorMove("alice", 40.0, 60.0)
        with pytest.raises(ValidationError):
            sync.update_cursor("alice", 140.0, 60.0)
        with pytest.raises(ValidationError):
            sync.update_cursor("ghost", 40.0, 60.0)


class TestMessageLoop:
    """Inbound messages handled one at a time."""

    def test_process_pending(self, sync, session, messaging, remote_deltas):
        sync.submit(Join("alice"))
        sync.submit(DeltaMessage("alice", remote_deltas[0]))
        sync.submit(LockRequest("alice", "st"))
        sync.submit(DeltaMessage("alice", remote_deltas[0]))
        sync.submit(CursorMove("ghost", 1.0, 1.0))

        assert sync.process_pending() == 5

        assert session.revision == 1
        kinds = [m.kind for m in messaging.inbox("alice")]
        assert kinds == ["lock", "conflict"]
        assert sync.stats()["conflicts"] == 1
        assert sync.stats()["inbox"] == 0

    def test_process_pending_limit(self, sync):
        sync.submit(Join("alice"))
        sync.submit(Join("bob"))

        assert sync.process_pending(max_messages=1) == 1
        assert list(sync.participants) == ["alice"]

    def test_background_loop(self, session, messaging):
        sync = CollaborationSynchronizer(session, messaging)
        sync.start(poll_interval=0.01)
        try:
            sync.submit(Join("alice"))
            sync.submit(Leave("alice"))
            sync.submit(Join("bob"))
            deadline = time.monotonic() + 5.0
            while "bob" not in sync.participants and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            sync.stop()

        assert list(sync.participants) == ["bob"]
