"""Assignment, analysis and local search over formations."""

from .analysis import FormationAnalysis, analyze_formation, objective_score
from .assignment import (
    AssignmentResult,
    SwapRecommendation,
    apply_assignment,
    auto_assign,
    compatibility,
    recommend_swaps,
)
from .hungarian import maximize_assignment, solve_assignment
from .local_search import FormationOptimizer, OptimizationResult, optimize_formation
from .role_fit import availability_factor, role_fit

__all__ = [
    "FormationAnalysis",
    "analyze_formation",
    "objective_score",
    "AssignmentResult",
    "SwapRecommendation",
    "apply_assignment",
    "auto_assign",
    "compatibility",
    "recommend_swaps",
    "maximize_assignment",
    "solve_assignment",
    "FormationOptimizer",
    "OptimizationResult",
    "optimize_formation",
    "availability_factor",
    "role_fit",
]
