"""
Tests for the editing session mutation pipeline.
"""

from concurrent.futures import Future

import pytest

from formationlab.api.session import EditingSession
from formationlab.collab.collaborators import InMemoryRoster
from formationlab.collab.protocol import Delta, DeltaOp
from formationlab.errors import (
    AssignmentInfeasible,
    CollisionUnresolved,
    ConcurrencyConflict,
    ValidationError,
)
from formationlab.model.abstraction import Position


class DeferredExecutor:
    """Executor that runs submitted work only when asked to."""

    def __init__(self):
        self._work = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self._work.append((future, fn, args, kwargs))
        return future

    def run_all(self):
        for future, fn, args, kwargs in self._work:
            future.set_result(fn(*args, **kwargs))
        self._work.clear()


@pytest.fixture
def deltas(session):
    """Deltas emitted to listeners, in order."""
    received = []
    session.add_listener(received.append)
    return received


@pytest.fixture
def quick(config):
    config.optimizer.max_iterations = 120
    config.optimizer.patience = 40
    return config


class TestMutationPipeline:
    """Revision, history, persistence and listeners for every accepted edit."""

    def test_assign_runs_pipeline(self, session, deltas, persistence):
        """An accepted edit bumps the revision, saves and emits exactly one delta."""
        start = session.revision

        delta = session.assign("lb", "d5")

        assert delta.revision == start + 1 == session.revision
        assert delta.op == DeltaOp.ASSIGN
        assert delta.author == "local"
        assert delta.payload["assignments"] == {"lb": "d5"}
        assert delta.payload["positions"] == {"d5": None, "d1": None}
        assert deltas == [delta]
        assert persistence.saves[-1] == ("f1", session.revision)
        assert persistence.load("f1")["revision"] == session.revision
        assert len(session.history) == 2

    def test_revisions_strictly_increase(self, session, deltas):
        session.assign("lb", "d5")
        session.swap("lw", "rw")
        session.unassign("st")
        session.propose_move("a1", (75.0, 30.0))

        revisions = [d.revision for d in deltas]
        assert revisions == sorted(set(revisions))
        assert revisions == list(range(revisions[0], revisions[0] + 4))

    def test_assign_noop(self, session, deltas):
        """Re-assigning the current occupant changes nothing."""
        start = session.revision

        assert session.assign("st", "a2") is None
        assert session.revision == start
        assert deltas == []

    def test_assign_moves_entity_between_slots(self, session):
        """The old slot is cleared in the same delta."""
        delta = session.assign("rw", "a1")

        assert delta.payload["assignments"] == {"rw": "a1", "lw": None}
        assert session.formation.get_slot("lw").is_empty
        assert session.formation.slot_of("a3") is None

    def test_assign_blocked_anchor(self, session, notifier):
        """A freely placed entity on the anchor blocks the assignment unless overridden."""
        session.formation.entities["d5"].position = Position(52.0, 21.0)
        start = session.revision

        with pytest.raises(CollisionUnresolved) as exc_info:
            session.assign("st", "gk2")
        assert session.revision == start
        assert session.formation.get_slot("st").entity_id == "a2"
        suggestion = exc_info.value.suggestion
        assert suggestion is not None
        assert Position(*suggestion).distance_to(Position(52.0, 21.0)) >= 5.0
        assert notifier.of_kind("rejection")[-1][2]["suggestion"] == suggestion

        assert session.assign("st", "gk2", override=True) is not None

    def test_unassign(self, session):
        delta = session.unassign("st")

        assert delta.op == DeltaOp.UNASSIGN
        assert session.formation.get_slot("st").is_empty
        assert session.unassign("st") is None

    def test_swap(self, session):
        """Occupants trade slots and field positions."""
        session.formation.entities["a1"].position = Position(22.0, 30.0)

        delta = session.swap("lw", "rw")

        formation = session.formation
        assert delta.payload["assignments"] == {"lw": "a3", "rw": "a1"}
        assert formation.entities["a3"].position == Position(22.0, 30.0)
        assert formation.entities["a1"].position is None
        assert session.swap("lw", "lw") is None

    def test_move_advances_one_revision(self, session, deltas):
        start = session.revision

        result = session.propose_move("a2", (50.0, 30.0))

        assert result.resolved == Position(50.0, 30.0)
        assert result.revision == start + 1 == session.revision
        assert deltas[-1].op == DeltaOp.MOVE
        assert deltas[-1].payload["positions"] == {"a2": {"x": 50.0, "y": 30.0}}
        assert session.formation.effective_position("a2") == Position(50.0, 30.0)

    def test_rejected_move_leaves_state(self, session, notifier, deltas):
        """A goalkeeper outside its region is refused and reported."""
        start = session.revision

        with pytest.raises(ValidationError):
            session.propose_move("gk1", (50.0, 50.0))

        assert session.revision == start
        assert deltas == []
        assert session.stats()["rejections"] == 1
        event, _, details = notifier.of_kind("rejection")[0]
        assert details["error"] == "ValidationError"

    def test_listener_failure_is_contained(self, session, deltas):
        def broken(delta):
            raise RuntimeError("listener down")

        session.add_listener(broken)
        delta = session.unassign("st")

        assert deltas == [delta]

    def test_removed_listener_not_called(self, session, deltas):
        session.remove_listener(deltas.append)
        session.unassign("st")

        assert deltas == []
        assert session.stats()["listeners"] == 0

    def test_persistence_failure_does_not_block(self, assigned_formation, config):
        class FailingPersistence:
            def save(self, formation_id, record):
                raise IOError("disk full")

        session = EditingSession(assigned_formation, config, persistence=FailingPersistence())

        assert session.unassign("st") is not None
        assert session.revision == 1

    def test_chemistry_follows_edits(self, session):
        """Benching a player removes its chemistry edges."""
        before = len(session.chemistry)

        session.unassign("st")

        assert len(session.chemistry) < before
        assert "a2" not in session.chemistry.entity_ids
        assert session.chemistry.edges_for("a2") == []


class TestOpen:
    """Loading a stored formation through the collaborators."""

    def test_reopens_saved_state(self, session, persistence, squad, config):
        session.assign("lb", "d5")
        session.propose_move("a2", (50.0, 30.0))

        reopened = EditingSession.open("f1", persistence, InMemoryRoster(squad), config)

        assert reopened.revision == session.revision
        assert reopened.snapshot().same_state(session.snapshot())
        assert reopened.formation.entities["a2"].position == Position(50.0, 30.0)
        assert reopened.persistence is persistence

    def test_roster_entities_are_copied(self, session, persistence, squad):
        session.unassign("st")
        roster = InMemoryRoster(squad)
        reopened = EditingSession.open("f1", persistence, roster)

        reopened.propose_move("a2", (50.0, 30.0))

        assert roster.get("a2").position is None

    def test_squad_subset_still_resolves_placed_entities(self, session, persistence, squad):
        session.unassign("st")

        reopened = EditingSession.open("f1", persistence, InMemoryRoster(squad), squad=["a2"])

        assert "a2" in reopened.formation.entities
        assert "gk1" in reopened.formation.entities
        assert "gk2" not in reopened.formation.entities

    def test_unknown_formation(self, persistence, squad):
        with pytest.raises(ValidationError):
            EditingSession.open("f9", persistence, InMemoryRoster(squad))

    def test_entity_missing_from_roster(self, session, persistence, squad):
        session.unassign("st")
        roster = InMemoryRoster(e for e in squad if e.id != "gk1")

        with pytest.raises(ValidationError):
            EditingSession.open("f1", persistence, roster)


class TestAutoAssign:
    """Bulk assignment through the session."""

    def test_fills_every_slot(self, formation, config):
        session = EditingSession(formation, config)

        result = session.auto_assign()

        assert session.revision == 1
        assert session.stats()["filled"] == 11
        assert result.excluded == ["inj"]

    def test_benched_entity_on_anchor_leaves_field(self, formation, config):
        """Nobody is left standing on an anchor that auto-assign fills."""
        session = EditingSession(formation, config)
        keeper_anchor = formation.get_slot("gk").anchor
        session.propose_move("gk2", keeper_anchor.as_tuple())
        emitted = []
        session.add_listener(emitted.append)

        session.auto_assign()

        assert session.engine.find_collisions() == []
        assert formation.entities["gk2"].position is None
        assert emitted[-1].payload["positions"]["gk2"] is None

    def test_anchor_blocked_by_staying_entity(self, session, notifier):
        """An occupant kept in place but standing on a new anchor blocks the fill."""
        session.unassign("st")
        session.formation.entities["d2"].position = Position(52.0, 21.0)
        start = session.revision
        keep = [s.id for s in session.formation.slots if s.id != "st"]

        with pytest.raises(CollisionUnresolved) as exc_info:
            session.auto_assign(keep=keep)

        assert exc_info.value.suggestion is not None
        assert session.revision == start
        assert session.formation.get_slot("st").is_empty
        assert notifier.of_kind("rejection")

    def test_infeasible_applies_nothing(self, formation, squad, config, notifier):
        session = EditingSession(formation, config, notifier=notifier)

        with pytest.raises(AssignmentInfeasible):
            session.auto_assign(pool=squad[:3])
        assert session.revision == 0
        assert all(s.is_empty for s in session.formation.slots)
        assert notifier.of_kind("rejection")


class TestUndoRedo:
    """History through the session."""

    def test_undo_redo_restore(self, session, deltas):
        session.assign("lb", "d5")
        assigned = session.revision

        undo = session.undo()

        assert undo.op == DeltaOp.RESTORE
        assert undo.revision == assigned + 1
        assert session.formation.get_slot("lb").entity_id == "d1"
        assert undo.payload["assignments"]["lb"] == "d1"

        redo = session.redo()

        assert redo.revision == assigned + 2
        assert session.formation.get_slot("lb").entity_id == "d5"
        assert [d.op for d in deltas] == [DeltaOp.ASSIGN, DeltaOp.RESTORE, DeltaOp.RESTORE]

    def test_nothing_to_undo(self, session):
        assert session.undo() is None
        assert session.redo() is None

    def test_edit_after_undo_drops_redo(self, session):
        session.assign("lb", "d5")
        session.undo()
        session.unassign("st")

        assert session.redo() is None


class TestRemoteDeltas:
    """apply_delta on a second session."""

    def test_replica_converges(self, session, twin_session, deltas):
        """Replaying every emitted delta in order yields the same state."""
        session.assign("lb", "d5")
        session.swap("lw", "rw")
        session.propose_move("a2", (50.0, 30.0))
        session.unassign("cm2")
        session.undo()

        for delta in deltas:
            twin_session.apply_delta(delta)

        assert twin_session.revision == session.revision
        assert twin_session.snapshot().same_state(session.snapshot())
        assert twin_session.formation.get_slot("cm2").entity_id is not None

    def test_apply_records_history_without_emitting(self, session, twin_session):
        delta = session.assign("lb", "d5")
        emitted = []
        twin_session.add_listener(emitted.append)

        revision = twin_session.apply_delta(delta)

        assert revision == delta.revision == twin_session.revision
        assert twin_session.formation.get_slot("lb").entity_id == "d5"
        assert twin_session.history.current.author == "local"
        assert emitted == []
        assert twin_session.stats()["remote_deltas"] == 1

    def test_duplicate_and_stale_rejected(self, session, twin_session):
        first = session.assign("lb", "d5")
        twin_session.apply_delta(first)
        second = session.unassign("st")
        twin_session.apply_delta(second)

        with pytest.raises(ConcurrencyConflict) as exc_info:
            twin_session.apply_delta(second)
        assert exc_info.value.reason == "duplicate"
        with pytest.raises(ConcurrencyConflict) as exc_info:
            twin_session.apply_delta(first)
        assert exc_info.value.reason == "stale"

    def test_wrong_formation(self, twin_session):
        with pytest.raises(ValidationError):
            twin_session.apply_delta(Delta("other", 1, DeltaOp.UNASSIGN, {"assignments": {"st": None}}))

    def test_malformed_payload_rolls_back(self, twin_session):
        """A payload naming an unknown slot leaves the formation untouched."""
        before = twin_session.snapshot()
        bad = Delta("f1", 1, DeltaOp.ASSIGN, {
            "entities": [{"id": "new9", "role": "striker"}],
            "assignments": {"st": None, "libero": "a2"},
        })

        with pytest.raises(ValidationError):
            twin_session.apply_delta(bad)

        assert twin_session.revision == 0
        assert twin_session.snapshot().same_state(before)
        assert "new9" not in twin_session.formation.entities


class TestOptimization:
    """Synchronous and background optimization."""

    def test_optimize_commits_improvement(self, session, quick, notifier, deltas):
        start = session.revision

        result = session.optimize()

        assert result.final_score >= result.initial_score
        assert notifier.of_kind("optimizer-complete") or notifier.of_kind("optimizer-timeout")
        if result.improved:
            assert session.revision == start + 1
            assert deltas[-1].op == DeltaOp.OPTIMIZE_COMMIT
        else:
            assert session.revision == start

    def test_commit_refused_after_edit(self, session, quick, notifier):
        """A result based on an older revision is not committed."""
        result = session.optimize(commit=False)
        session.unassign("st")

        with pytest.raises(ConcurrencyConflict) as exc_info:
            session.commit_optimization(result)

        assert exc_info.value.reason == "revision-moved"
        assert session.formation.get_slot("st").is_empty
        assert session.stats()["conflicts"] == 1
        assert notifier.of_kind("conflict")

    def test_async_result(self, session, quick):
        handle = session.optimize_async(commit=True)
        result = handle.result(timeout=30)

        assert handle.done()
        assert handle.conflict is None
        if result.improved:
            assert handle.delta.revision == session.revision

    def test_async_commit_conflict(self, session, quick):
        """Edits during a background search turn its commit into a conflict."""
        executor = DeferredExecutor()
        handle = session.optimize_async(executor=executor, commit=True)
        session.unassign("st")

        executor.run_all()
        handle.result()

        assert isinstance(handle.conflict, ConcurrencyConflict)
        assert handle.delta is None
        assert session.formation.get_slot("st").is_empty

    def test_cancelled_handle(self, session, quick):
        executor = DeferredExecutor()
        handle = session.optimize_async(executor=executor)
        handle.cancel()
        executor.run_all()

        result = handle.result()

        assert handle.cancelled
        assert result.reason == "cancelled"
        assert result.partial


class TestReadOnly:
    """Analysis and chemistry never mutate."""

    def test_analyze(self, session):
        start = session.revision
        snapshot = session.snapshot()

        analysis = session.analyze()

        assert analysis.coverage == {"defensive": 4, "middle": 3, "attacking": 3}
        assert session.revision == start
        assert session.snapshot().same_state(snapshot)

    def test_compute_chemistry_symmetric(self, session):
        forward = session.compute_chemistry("d2", "d3")
        backward = session.compute_chemistry("d3", "d2")

        assert forward.score == pytest.approx(backward.score)

    def test_stats(self, session):
        session.unassign("st")
        stats = session.stats()

        assert stats["formation"] == "f1"
        assert stats["filled"] == 10
        assert stats["mutations"] == 1
        assert stats["history"]["depth"] == 2
