"""
Formation Editing Session

Owns one formation and everything derived from it: the chemistry graph,
the undo/redo history and the positioning engine. All mutations go through
the session and are serialized by a re-entrant lock, so at most one
mutation is in flight per formation. Nothing here is global; any number of
sessions can coexist in a process.

Every accepted mutation runs the same pipeline:
    new revision -> history commit -> chemistry update ->
    persistence save (fire-and-forget) -> Delta to listeners

Read-only operations (analyze, compute_chemistry) copy what they need under
the lock and compute outside it.
"""

import copy
import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..chemistry.scorer import ChemistryEdge, ChemistryGraph, compute_chemistry
from ..collab.protocol import Delta, DeltaOp
from ..config import EngineConfig
from ..errors import (
    CollisionUnresolved,
    ConcurrencyConflict,
    FormationError,
    ValidationError,
)
from ..model.abstraction import Entity, Formation, Position, Region, Slot
from ..model.snapshot import FormationSnapshot
from ..optimization.analysis import FormationAnalysis, analyze_formation
from ..optimization.assignment import AssignmentResult, apply_assignment, auto_assign
from ..optimization.local_search import FormationOptimizer, OptimizationResult
from ..placement.positioning import MoveMode, MoveResult, PositioningEngine
from .history import HistoryManager

logger = logging.getLogger(__name__)

DeltaListener = Callable[[Delta], None]


def _position_record(position: Optional[Position]) -> Optional[Dict[str, float]]:
    return position.to_dict() if position is not None else None


class OptimizationHandle:
    """Handle on a background optimization."""

    def __init__(self, future: Optional[Future], cancel_event: threading.Event):
        self._future = future
        self._cancel_event = cancel_event
        self.conflict: Optional[ConcurrencyConflict] = None  # set if auto-commit lost a race
        self.delta: Optional[Delta] = None  # set if auto-commit applied the result

    def cancel(self):
        """Stop searching; the best candidate so far becomes the (partial) result."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> OptimizationResult:
        return self._future.result(timeout)


class EditingSession:
    """
    Explicit editing context for one formation.

    Args:
        formation: The authoritative formation state
        config: Engine configuration (defaults when omitted)
        persistence: Optional PersistenceCollaborator receiving committed records
        notifier: Optional NotificationCollaborator for user-visible signals
        author: Identity recorded on local edits
    """

    def __init__(
        self,
        formation: Formation,
        config: Optional[EngineConfig] = None,
        persistence=None,
        notifier=None,
        author: str = "local",
    ):
        formation.validate()
        self.formation = formation
        self.config = config or EngineConfig()
        self.persistence = persistence
        self.notifier = notifier
        self.author = author

        self._lock = threading.RLock()
        self._listeners: List[DeltaListener] = []
        self.chemistry = ChemistryGraph(self.config.chemistry).rebuild(formation)
        self.engine = PositioningEngine(formation, self.config.positioning)
        self.optimizer = FormationOptimizer(self.config)
        self.history = HistoryManager(self.config.history.max_depth)
        self.history.commit(FormationSnapshot.capture(formation), author, "Initial state")

        self._counters = {
            "mutations": 0,
            "remote_deltas": 0,
            "rejections": 0,
            "conflicts": 0,
        }
        logger.info("Editing session opened for %s at revision %d", formation.id, formation.revision)

    @classmethod
    def open(
        cls,
        formation_id: str,
        persistence,
        roster,
        config: Optional[EngineConfig] = None,
        squad: Optional[Iterable[str]] = None,
        notifier=None,
        author: str = "local",
    ) -> "EditingSession":
        """
        Load a stored formation and open a session on it.

        The record comes from ``persistence``; entity records come from
        ``roster`` (every roster entity unless ``squad`` names a subset).
        Entities are copied, so the roster is never modified.

        Raises:
            ValidationError: Unknown formation, an entity the roster does not
                know, or a malformed record
        """
        config = config or EngineConfig()
        record = persistence.load(formation_id)
        if not isinstance(record, dict) or record.get("id", formation_id) != formation_id:
            raise ValidationError(f"Stored record for {formation_id} is malformed",
                                  field="formation_id")

        if squad is None:
            members = {e.id: e for e in roster.all()}
        else:
            members = {entity_id: roster.get(entity_id) for entity_id in squad}
        referenced = [s.get("entityId") for s in record.get("slots", [])]
        referenced += [item.get("id") for item in record.get("entities", [])]
        for entity_id in referenced:
            if entity_id and entity_id not in members:
                members[entity_id] = roster.get(entity_id)

        formation = Formation.from_dict(
            record,
            entities={eid: copy.deepcopy(e) for eid, e in members.items()},
            bounds=Region.from_sequence(config.positioning.field_bounds),
        )
        logger.debug("Loaded %s at revision %d with %d entities",
                     formation_id, formation.revision, len(formation.entities))
        return cls(formation, config, persistence=persistence, notifier=notifier, author=author)

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def revision(self) -> int:
        return self.formation.revision

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: DeltaListener):
        """Register a callable receiving every locally produced Delta."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: DeltaListener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def propose_move(
        self,
        entity_id: str,
        target,
        mode: MoveMode = MoveMode.FREE,
        override: bool = False,
    ) -> MoveResult:
        """
        Move an entity, resolving collisions.

        Raises:
            ValidationError: Bad entity, out-of-bounds or out-of-region target
            CollisionUnresolved: No free position found (carries a suggestion)
        """
        if not isinstance(target, Position):
            target = Position(*target)
        if isinstance(mode, str):
            mode = MoveMode(mode)

        with self._lock:
            before = self.formation.slot_of(entity_id) if entity_id in self.formation.entities else None
            try:
                result = self.engine.propose_move(entity_id, target, mode, override)
            except (ValidationError, CollisionUnresolved) as e:
                self._reject(e)
                raise

            entity = self.formation.entities[entity_id]
            assignments = {}
            if result.slot_id is not None and (before is None or before.id != result.slot_id):
                assignments[result.slot_id] = entity_id
                if before is not None:
                    assignments[before.id] = None
            payload = {
                "entityId": entity_id,
                "x": result.resolved.x,
                "y": result.resolved.y,
                "mode": mode.value,
                "override": override,
                "assignments": assignments,
                "positions": {entity_id: _position_record(entity.position)},
            }
            # apply_move already advanced the revision
            self._finish(DeltaOp.MOVE, payload, result.message, touched=[entity_id], bump=False)
            return result

    def assign(self, slot_id: str, entity_id: str, override: bool = False) -> Optional[Delta]:
        """
        Put an entity into a slot, on the slot's anchor.

        The previous occupant (if any) goes to the bench. Returns None when
        the entity already holds the slot on its anchor.

        Raises:
            ValidationError: Unknown slot or entity
            CollisionUnresolved: The anchor is blocked by a freely placed entity
        """
        with self._lock:
            formation = self.formation
            slot = formation.get_slot(slot_id)
            entity = formation.get_entity(entity_id)
            if slot.entity_id == entity_id and entity.position is None:
                return None

            previous_slot = formation.slot_of(entity_id)
            displaced = slot.entity_id if slot.entity_id != entity_id else None
            if not override and not self.config.positioning.allow_overlap:
                self._require_clear(entity_id, slot, exclude=[displaced] if displaced else [])

            formation.set_assignment(slot_id, entity_id)
            entity.position = None
            positions: Dict[str, Any] = {entity_id: None}
            if displaced is not None:
                formation.entities[displaced].position = None
                positions[displaced] = None

            assignments: Dict[str, Optional[str]] = {slot_id: entity_id}
            if previous_slot is not None and previous_slot.id != slot_id:
                assignments[previous_slot.id] = None
            payload = {"assignments": assignments, "positions": positions}
            message = f"Assigned {entity_id} to {slot_id}"
            if displaced:
                message += f" (benched {displaced})"
            touched = [entity_id] + ([displaced] if displaced else [])
            return self._finish(DeltaOp.ASSIGN, payload, message, touched=touched)

    def unassign(self, slot_id: str) -> Optional[Delta]:
        """Clear a slot; its occupant leaves the field. None if already empty."""
        with self._lock:
            slot = self.formation.get_slot(slot_id)
            entity_id = slot.entity_id
            if entity_id is None:
                return None
            slot.entity_id = None
            self.formation.entities[entity_id].position = None
            payload = {
                "slotId": slot_id,
                "assignments": {slot_id: None},
                "positions": {entity_id: None},
            }
            return self._finish(DeltaOp.UNASSIGN, payload, f"Unassigned {entity_id} from {slot_id}",
                                touched=[entity_id])

    def swap(self, slot_a: str, slot_b: str) -> Optional[Delta]:
        """
        Exchange the occupants of two slots.

        Entities trade field positions as well, so no new collisions arise.
        """
        with self._lock:
            formation = self.formation
            first = formation.get_slot(slot_a)
            second = formation.get_slot(slot_b)
            if first.id == second.id or first.entity_id == second.entity_id:
                return None

            a, b = first.entity_id, second.entity_id
            pos_a = formation.entities[a].position if a else None
            pos_b = formation.entities[b].position if b else None
            first.entity_id, second.entity_id = b, a
            if a:
                formation.entities[a].position = pos_b
            if b:
                formation.entities[b].position = pos_a

            touched = [eid for eid in (a, b) if eid]
            payload = {
                "assignments": {first.id: b, second.id: a},
                "positions": {eid: _position_record(formation.entities[eid].position) for eid in touched},
            }
            return self._finish(DeltaOp.ASSIGN, payload, f"Swapped {first.id} and {second.id}",
                                touched=touched)

    def auto_assign(
        self,
        pool: Optional[Iterable[Entity]] = None,
        keep: Iterable[str] = (),
        apply: bool = True,
    ) -> AssignmentResult:
        """
        Fill open slots from a pool (default: the squad).

        Newcomers sit on their anchors. Benched entities standing within the
        collision radius of a newly filled anchor leave the field.

        Raises:
            AssignmentInfeasible: Pool smaller than the open slot count;
                nothing is applied
            CollisionUnresolved: A new anchor is blocked by an entity that
                stays on the field; nothing is applied
        """
        pool = list(pool) if pool is not None else None
        with self._lock:
            try:
                result = auto_assign(
                    self.formation, pool, keep,
                    config=self.config.assignment,
                    chemistry_config=self.config.chemistry,
                )
            except FormationError as e:
                self._reject(e)
                raise
            if not apply:
                return result

            formation = self.formation
            before = {s.id: s.entity_id for s in formation.slots}
            positions_before = {eid: e.position for eid, e in formation.entities.items()}
            positioning = self.config.positioning
            if not positioning.allow_overlap:
                # Only occupants of untouched slots stay where they are
                staying = {s.entity_id for s in formation.slots
                           if s.entity_id and s.entity_id == result.assignments.get(s.id)}
                leaving = set(formation.entities) - staying
                for slot in formation.slots:
                    newcomer = result.assignments.get(slot.id)
                    if newcomer and newcomer != slot.entity_id:
                        self._require_clear(newcomer, slot, exclude=leaving)

            new_entities = [e for e in (pool or []) if e.id not in formation.entities]
            clearance = 0.0 if positioning.allow_overlap else positioning.collision_radius
            changed = apply_assignment(formation, result, new_entities, clearance=clearance)
            if not changed and not new_entities:
                return result

            touched: Set[str] = set()
            for slot_id in changed:
                if before[slot_id]:
                    touched.add(before[slot_id])
                if result.assignments.get(slot_id):
                    touched.add(result.assignments[slot_id])
            touched.update(eid for eid, pos in positions_before.items()
                           if formation.entities[eid].position != pos)
            payload = {
                "entities": [e.to_dict() for e in new_entities],
                "assignments": {slot_id: result.assignments.get(slot_id) for slot_id in changed},
                "positions": {eid: _position_record(formation.entities[eid].position)
                              for eid in sorted(touched)},
            }
            self._finish(DeltaOp.ASSIGN, payload,
                         f"Auto-assigned {len(changed)} slot(s), score {result.total_score:.2f}",
                         touched=sorted(touched))
            return result

    def optimize(
        self,
        cancel_event: Optional[threading.Event] = None,
        callback: Optional[Callable[[int, float], None]] = None,
        commit: bool = True,
    ) -> OptimizationResult:
        """Run the local search on a copy and (optionally) commit the result."""
        with self._lock:
            work = copy.deepcopy(self.formation)
        result = self.optimizer.optimize(work, cancel_event=cancel_event, callback=callback)
        self._report_optimization(result)
        if commit:
            self.commit_optimization(result)
        return result

    def optimize_async(
        self,
        executor: Optional[Executor] = None,
        commit: bool = False,
        callback: Optional[Callable[[int, float], None]] = None,
    ) -> OptimizationHandle:
        """
        Run the local search in the background.

        The formation keeps accepting edits meanwhile. With ``commit=True``
        the result is committed when the search ends; if the formation moved
        in the meantime the commit is refused and ``handle.conflict`` is set.
        """
        cancel_event = threading.Event()
        with self._lock:
            work = copy.deepcopy(self.formation)

        own_executor = executor is None
        if own_executor:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="formation-optimizer")

        handle = OptimizationHandle(None, cancel_event)

        def run() -> OptimizationResult:
            result = self.optimizer.optimize(work, cancel_event=cancel_event, callback=callback)
            self._report_optimization(result)
            if commit:
                try:
                    handle.delta = self.commit_optimization(result)
                except ConcurrencyConflict as e:
                    handle.conflict = e
            return result

        handle._future = executor.submit(run)
        if own_executor:
            executor.shutdown(wait=False)
        return handle

    def commit_optimization(self, result: OptimizationResult) -> Optional[Delta]:
        """
        Apply an optimization result atomically.

        Returns None when the search found nothing better.

        Raises:
            ConcurrencyConflict: The formation changed since the search started
        """
        with self._lock:
            formation = self.formation
            if formation.revision != result.base_revision:
                conflict = ConcurrencyConflict(
                    formation.id, result.base_revision, formation.revision,
                    author=self.author, reason="revision-moved",
                )
                self._conflict(conflict)
                raise conflict
            if not result.improved:
                return None

            before = FormationSnapshot.capture(formation)
            FormationSnapshot.capture(result.formation).restore_into(formation)
            touched = self._changed_entities(before, FormationSnapshot.capture(formation))
            payload = self._state_payload()
            payload["initialScore"] = result.initial_score
            payload["finalScore"] = result.final_score
            return self._finish(
                DeltaOp.OPTIMIZE_COMMIT, payload,
                f"Committed optimization ({result.initial_score:.4f} -> {result.final_score:.4f})",
                touched=touched,
            )

    def undo(self) -> Optional[Delta]:
        """Restore the previous history entry. None when there is nothing to undo."""
        with self._lock:
            snapshot = self.history.undo()
            if snapshot is None:
                return None
            return self._restore(snapshot, "Undo")

    def redo(self) -> Optional[Delta]:
        """Re-apply the next history entry. None when there is nothing to redo."""
        with self._lock:
            snapshot = self.history.redo()
            if snapshot is None:
                return None
            return self._restore(snapshot, "Redo")

    def apply_delta(self, delta: Delta) -> int:
        """
        Apply a remote delta whose revision is ahead of the local one.

        The delta's revision becomes the formation revision. It is recorded
        in history under its author but not re-emitted to listeners.

        Raises:
            ValidationError: Wrong formation or malformed payload (state untouched)
            ConcurrencyConflict: delta.revision <= local revision
        """
        with self._lock:
            formation = self.formation
            if delta.formation_id != formation.id:
                raise ValidationError(
                    f"Delta for {delta.formation_id} sent to formation {formation.id}",
                    field="formation_id",
                )
            if delta.revision <= formation.revision:
                raise ConcurrencyConflict(
                    formation.id, delta.revision, formation.revision,
                    author=delta.author,
                    reason="duplicate" if delta.revision == formation.revision else "stale",
                )

            before = FormationSnapshot.capture(formation)
            known = set(formation.entities)
            try:
                self._apply_payload(delta.payload)
                formation.validate()
            except (FormationError, KeyError, TypeError, ValueError) as e:
                before.restore_into(formation)
                for entity_id in set(formation.entities) - known:
                    del formation.entities[entity_id]
                if isinstance(e, ValidationError):
                    raise
                raise ValidationError(f"Malformed {delta.op.value} payload: {e}", field="payload") from e

            formation.advance_to(delta.revision, delta.author)
            after = FormationSnapshot.capture(formation)
            touched = self._changed_entities(before, after)
            self._counters["remote_deltas"] += 1
            self._finish(delta.op, delta.payload, f"Applied remote {delta.op.value}",
                         touched=touched, author=delta.author or "remote", emit=False,
                         bump=False, snapshot=after)
            return formation.revision

    # ------------------------------------------------------------------
    # Read-only operations
    # ------------------------------------------------------------------

    def analyze(self) -> FormationAnalysis:
        with self._lock:
            formation = copy.deepcopy(self.formation)
            graph = self.chemistry.copy()
        return analyze_formation(formation, graph, self.config)

    def compute_chemistry(self, entity_a: str, entity_b: str) -> ChemistryEdge:
        """Chemistry between two squad entities in their current roles."""
        with self._lock:
            a = copy.deepcopy(self.formation.get_entity(entity_a))
            b = copy.deepcopy(self.formation.get_entity(entity_b))
            role_a = self.formation.role_of(entity_a)
            role_b = self.formation.role_of(entity_b)
        return compute_chemistry(a, b, role_a, role_b, self.config.chemistry)

    def snapshot(self) -> FormationSnapshot:
        with self._lock:
            return FormationSnapshot.capture(self.formation)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return self.formation.to_dict()

    def stats(self) -> Dict[str, Any]:
        """Get session statistics."""
        with self._lock:
            return {
                "formation": self.formation.id,
                "revision": self.formation.revision,
                "slots": len(self.formation.slots),
                "filled": sum(1 for s in self.formation.slots if s.entity_id),
                "placed": len(self.formation.placed_positions()),
                "chemistry_edges": len(self.chemistry),
                "average_chemistry": self.chemistry.average(),
                "history": self.history.stats(),
                "listeners": len(self._listeners),
                **self._counters,
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finish(
        self,
        op: DeltaOp,
        payload: Dict[str, Any],
        description: str,
        touched: Iterable[str] = (),
        author: Optional[str] = None,
        emit: bool = True,
        bump: bool = True,
        snapshot: Optional[FormationSnapshot] = None,
    ) -> Delta:
        """Run the post-mutation pipeline. Caller holds the lock."""
        formation = self.formation
        author = author or self.author
        self.history.begin()
        if bump:
            formation.bump_revision()
        snapshot = snapshot or FormationSnapshot.capture(formation)
        self.history.commit(snapshot, author, description)

        for entity_id in touched:
            self.chemistry.recompute_entity(formation, entity_id)

        self._counters["mutations"] += 1
        self._save()

        delta = Delta(formation.id, formation.revision, op, payload, author)
        logger.info("%s (revision %d)", description, formation.revision)
        if emit:
            self._emit(delta)
        return delta

    def _restore(self, snapshot: FormationSnapshot, label: str) -> Delta:
        formation = self.formation
        before = FormationSnapshot.capture(formation)
        snapshot.restore_into(formation)
        formation.bump_revision()
        touched = self._changed_entities(before, FormationSnapshot.capture(formation))
        for entity_id in touched:
            self.chemistry.recompute_entity(formation, entity_id)

        self._counters["mutations"] += 1
        self._save()
        delta = Delta(formation.id, formation.revision, DeltaOp.RESTORE, self._state_payload(), self.author)
        logger.info("%s to history entry %d (revision %d)", label, self.history.cursor, formation.revision)
        self._emit(delta)
        return delta

    def _state_payload(self) -> Dict[str, Any]:
        formation = self.formation
        return {
            "assignments": {s.id: s.entity_id for s in formation.slots},
            "positions": {eid: _position_record(e.position)
                          for eid, e in sorted(formation.entities.items())},
        }

    def _apply_payload(self, payload: Dict[str, Any]):
        """Replay a delta payload onto the formation (no revision change)."""
        formation = self.formation
        for record in payload.get("entities", []):
            entity = Entity.from_dict(record)
            formation.entities.setdefault(entity.id, entity)

        assignments = payload.get("assignments") or {}
        for slot_id in assignments:
            formation.get_slot(slot_id).entity_id = None
        for slot_id, entity_id in assignments.items():
            if entity_id is not None:
                formation.set_assignment(slot_id, entity_id)

        for entity_id, position in (payload.get("positions") or {}).items():
            entity = formation.get_entity(entity_id)
            entity.position = Position.from_dict(position) if position is not None else None

    @staticmethod
    def _changed_entities(before: FormationSnapshot, after: FormationSnapshot) -> List[str]:
        changed: Set[str] = set()
        for old, new in zip(before.slots, after.slots):
            if old.entity_id != new.entity_id or old.role != new.role:
                changed.update(eid for eid in (old.entity_id, new.entity_id) if eid)
        old_positions = dict(before.positions)
        for eid, pos in after.positions:
            if old_positions.get(eid, pos) != pos or eid not in old_positions:
                changed.add(eid)
        return sorted(changed)

    def _require_clear(self, entity_id: str, slot: Slot, exclude: Iterable[str]):
        try:
            self.engine.check_anchor(entity_id, slot, exclude)
        except CollisionUnresolved as e:
            self._reject(e)
            raise

    def _emit(self, delta: Delta):
        for listener in list(self._listeners):
            try:
                listener(delta)
            except Exception:
                logger.exception("Delta listener failed for revision %d", delta.revision)

    def _save(self):
        if self.persistence is None:
            return
        try:
            self.persistence.save(self.formation.id, self.formation.to_dict())
        except Exception:
            logger.exception("Persisting %s at revision %d failed",
                             self.formation.id, self.formation.revision)

    def _notify(self, event: str, message: str, details: Optional[Dict[str, Any]] = None):
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event, message, details)
        except Exception:
            logger.exception("Notification %s failed", event)

    def _reject(self, error: FormationError):
        self._counters["rejections"] += 1
        logger.warning("Rejected edit on %s: %s", self.formation.id, error)
        details: Dict[str, Any] = {"error": type(error).__name__}
        if isinstance(error, CollisionUnresolved):
            details["suggestion"] = error.suggestion
        self._notify("rejection", str(error), details)

    def _conflict(self, conflict: ConcurrencyConflict):
        self._counters["conflicts"] += 1
        logger.warning("%s", conflict)
        self._notify("conflict", str(conflict), {
            "delta_revision": conflict.delta_revision,
            "local_revision": conflict.local_revision,
            "reason": conflict.reason,
            "author": conflict.author,
        })

    def _report_optimization(self, result: OptimizationResult):
        details = {
            "reason": result.reason,
            "delta": result.delta,
            "iterations": result.iterations,
            "partial": result.partial,
        }
        if result.timeout is not None:
            self._notify("optimizer-timeout", str(result.timeout), details)
        else:
            self._notify(
                "optimizer-complete",
                f"Optimization finished ({result.reason}), objective {result.delta:+.4f}",
                details,
            )
