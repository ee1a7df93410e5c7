"""
Marxan Portfolio

Replicate portfolios of spatial prioritization solutions around a
Marxan-compatible solver, with cached preprocessing, incremental
re-parametrization and portfolio analytics.
"""

from Marxan_Portfolio.config import CONFIG
from Marxan_Portfolio.exceptions import (
    CacheClosedError,
    CacheComputationError,
    DegenerateInputError,
    InsufficientSolutionsError,
    MarxanPortfolioError,
    RunCancelledError,
    SolverAttemptError,
    ValidationError,
)
from Marxan_Portfolio.problem_assembler import assemble
from Marxan_Portfolio.update_engine import OverlayBuilder, ParameterOverlay, compose, derive
from Marxan_Portfolio.solvers.solver_invoker import run
from Marxan_Portfolio.parallel.scenario_orchestrator import run_scenarios
from Marxan_Portfolio.models.portfolio import (
    cost,
    score,
    selection_frequency,
    shortfall,
    targets_met,
)
from Marxan_Portfolio.analytics import cluster, distance, ordinate
from Marxan_Portfolio.main import run_portfolio_analysis

__all__ = [
    "CONFIG",
    # Pipeline
    "assemble",
    "derive",
    "run",
    "run_scenarios",
    "run_portfolio_analysis",
    # Overlays
    "OverlayBuilder",
    "ParameterOverlay",
    "compose",
    # Portfolio metrics
    "targets_met",
    "cost",
    "shortfall",
    "score",
    "selection_frequency",
    # Analytics
    "distance",
    "cluster",
    "ordinate",
    # Errors
    "MarxanPortfolioError",
    "ValidationError",
    "CacheComputationError",
    "CacheClosedError",
    "SolverAttemptError",
    "InsufficientSolutionsError",
    "RunCancelledError",
    "DegenerateInputError",
]
