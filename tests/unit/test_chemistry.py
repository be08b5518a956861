"""
Tests for pairwise chemistry and the incremental chemistry graph.
"""

import pytest

from formationlab.chemistry.scorer import ChemistryGraph, compute_chemistry, pair_key
from formationlab.config import ChemistryConfig


class TestComputeChemistry:
    """The pure pairwise function."""

    def test_symmetric(self, squad):
        """score(A, B) equals score(B, A) for every pair in the squad."""
        for a in squad:
            for b in squad:
                if a.id == b.id:
                    continue
                forward = compute_chemistry(a, b)
                backward = compute_chemistry(b, a)
                assert forward.score == backward.score
                assert forward.breakdown == backward.breakdown
                assert forward.pair == backward.pair == pair_key(a.id, b.id)

    def test_symmetric_with_explicit_roles(self, squad):
        """Swapping the arguments swaps the roles with them."""
        a, b = squad[2], squad[10]
        forward = compute_chemistry(a, b, "striker", "goalkeeper")
        backward = compute_chemistry(b, a, "goalkeeper", "striker")

        assert forward.score == backward.score

    def test_breakdown_factors(self, entity_factory):
        """Each factor follows its rule."""
        a = entity_factory("a", "center-back", club="Rovers", tenure_years=2.5, age=24,
                           nationality="ES", form=60, morale=70)
        b = entity_factory("b", "center-back", club="Rovers", tenure_years=4.0, age=29,
                           nationality="ES", form=40, morale=50)
        edge = compute_chemistry(a, b)
        breakdown = edge.breakdown

        assert breakdown.shared_tenure == pytest.approx(0.5)
        # Defense pair synergy 0.8 plus the same-line bonus
        assert breakdown.role_adjacency == pytest.approx(0.9)
        assert breakdown.age_gap == 0.75
        assert breakdown.shared_origin == 1.0
        assert breakdown.form_alignment == pytest.approx(0.8)

    def test_different_clubs_and_nations(self, entity_factory):
        """No shared tenure across clubs; different origin uses the configured value."""
        a = entity_factory("a", "striker", club="Rovers", nationality="ES", age=20)
        b = entity_factory("b", "goalkeeper", club="United", nationality="FR", age=35)
        breakdown = compute_chemistry(a, b).breakdown

        assert breakdown.shared_tenure == 0.0
        assert breakdown.shared_origin == 0.4
        assert breakdown.age_gap == 0.25
        assert breakdown.role_adjacency == pytest.approx(0.3)

    def test_score_scaled_to_range(self, entity_factory):
        """Scores respect the configured output range."""
        config = ChemistryConfig(score_range=(0.0, 10.0))
        a = entity_factory("a", "central-midfielder")
        b = entity_factory("b", "central-midfielder")
        edge = compute_chemistry(a, b, config=config)

        assert 0.0 <= edge.score <= 10.0
        assert edge.score == pytest.approx(compute_chemistry(a, b).score / 10.0)

    def test_roles_change_the_score(self, entity_factory):
        """Role adjacency depends on the roles being played."""
        a = entity_factory("a", "center-back")
        b = entity_factory("b", "goalkeeper")

        natural = compute_chemistry(a, b).score
        displaced = compute_chemistry(a, b, "striker", "goalkeeper").score

        assert natural > displaced


class TestChemistryGraph:
    """Incremental maintenance of the relationship graph."""

    def test_rebuild_covers_all_placed_pairs(self, assigned_formation):
        """Eleven placed entities give 55 edges."""
        graph = ChemistryGraph().rebuild(assigned_formation)

        assert len(graph) == 55
        assert graph.entity_ids == set(assigned_formation.placed_positions())
        assert ("gk1", "a2") in graph
        assert graph.score("a2", "gk1") == graph.score("gk1", "a2")

    def test_recompute_touches_only_affected_edges(self, assigned_formation):
        """Replacing one occupant re-evaluates O(k) edges, not the whole graph."""
        graph = ChemistryGraph().rebuild(assigned_formation)
        before = graph.recompute_count

        slot = assigned_formation.get_slot("cb1")
        previous = slot.entity_id
        assigned_formation.set_assignment("cb1", "gk2")
        updated = graph.recompute_affected(assigned_formation, "cb1", previous)

        assert len(updated) == 10
        assert graph.recompute_count - before == 10
        assert previous not in graph.entity_ids
        assert len(graph) == 55
        assert all(previous not in edge.pair for edge in graph.edges())

    def test_incremental_matches_full_rebuild(self, assigned_formation):
        """Incremental updates agree with a from-scratch rebuild."""
        graph = ChemistryGraph().rebuild(assigned_formation)

        previous = assigned_formation.get_slot("st").entity_id
        assigned_formation.set_assignment("st", "gk2")
        graph.recompute_affected(assigned_formation, "st", previous)

        fresh = ChemistryGraph().rebuild(assigned_formation)
        assert {e.pair: e.score for e in graph.edges()} == {e.pair: e.score for e in fresh.edges()}

    def test_cleared_slot_drops_edges(self, assigned_formation):
        """Emptying a slot removes the former occupant's edges."""
        graph = ChemistryGraph().rebuild(assigned_formation)
        previous = assigned_formation.get_slot("lw").entity_id
        assigned_formation.set_assignment("lw", None)

        assert graph.recompute_affected(assigned_formation, "lw", previous) == []
        assert len(graph) == 45
        assert graph.edges_for(previous) == []

    def test_average_restricted_to_members(self, assigned_formation):
        """average() can be limited to edges among a subset."""
        graph = ChemistryGraph().rebuild(assigned_formation)
        pair_only = graph.average(["gk1", "a2"])

        assert pair_only == graph.score("gk1", "a2")
        assert ChemistryGraph().average() == 0.0

    def test_copy_is_independent(self, assigned_formation):
        """Mutating a copy leaves the original untouched."""
        graph = ChemistryGraph().rebuild(assigned_formation)
        clone = graph.copy()
        clone.remove_entity("gk1")

        assert len(graph) == 55
        assert len(clone) == 45
