"""Pairwise chemistry scoring and the incremental relationship graph."""

from .scorer import (
    ChemistryBreakdown,
    ChemistryEdge,
    ChemistryGraph,
    LINE_SYNERGY,
    compute_chemistry,
    pair_key,
)

__all__ = [
    "ChemistryBreakdown",
    "ChemistryEdge",
    "ChemistryGraph",
    "LINE_SYNERGY",
    "compute_chemistry",
    "pair_key",
]
