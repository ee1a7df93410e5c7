"""
Portfolio result model.

Architectural Overview:
=======================
A Solution is one replicate's selection vector plus metrics evaluated once at
construction. A Portfolio is the ordered, immutable batch of Solutions from a
single run() call, together with the replicate slots that failed or were
cancelled.

Metrics (x = selection vector in unit-id order):
- cost        = Σ cost_i · x_i
- achieved_j  = Σ amount_ij · x_i
- shortfall_j = max(target_j − achieved_j, 0)
- boundary    = Σ x_i · external_i + Σ_{i selected, k not selected} length_ik
- score       = cost_weight·cost + boundary_weight·BLM·boundary
                + shortfall_weight·Σ spf_j·shortfall_j
- targets_met = achieved_j >= target_j

Key Interactions:
-----------------
- Input: solver_invoker.run() evaluates each successful replicate via
  Solution.evaluate() and wraps them in Portfolio
- Output: analytics/ reads selection_matrix() / amount_held_matrix()
- Navigation: Use VS Code outline (Ctrl+Shift+O) for quick navigation
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from Marxan_Portfolio.config_types import ScoreWeightsConfig

logger = logging.getLogger("MXP.Portfolio")

# Absolute slack when comparing achieved amounts against targets
TARGET_TOLERANCE = 1e-9


def _readonly(values: Any, dtype: Any) -> np.ndarray:
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


# ═══════════════════════════════════════════════════════════════════════════
# 🧩 SOLUTION
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, eq=False)
class Solution:
    """One replicate's selection with memoized metrics.

    Arrays are read-only. selection follows the problem's unit-id order,
    achieved/shortfall/targets_met follow its feature-id order.
    """

    replicate: int
    selection: np.ndarray
    cost: float
    achieved: np.ndarray
    shortfall: np.ndarray
    boundary: float
    score: float
    targets_met: np.ndarray
    seed: Optional[int] = None
    attempts: int = 1

    @classmethod
    def evaluate(
        cls,
        selection: Sequence[int],
        replicate: int,
        solver_input: Any,
        weights: Optional[ScoreWeightsConfig] = None,
        seed: Optional[int] = None,
        attempts: int = 1,
    ) -> "Solution":
        """
        Evaluate all metrics for a selection vector.

        Args:
            selection: 0/1 per unit in unit-id order.
            replicate: Submission slot that produced the selection.
            solver_input: SolverInput bundle (unit/feature tables, matrices, BLM).
            weights: Score weights (defaults 1/1/1).
        """
        weights = weights or ScoreWeightsConfig()
        x = np.asarray(selection, dtype=float)

        costs = solver_input.unit_table["cost"].to_numpy(dtype=float)
        targets = solver_input.feature_table["target_amount"].to_numpy(dtype=float)
        spf = solver_input.feature_table["spf"].to_numpy(dtype=float)

        total_cost = float(costs @ x)
        achieved = np.asarray(solver_input.incidence.T @ x, dtype=float).ravel()
        shortfall = np.maximum(targets - achieved, 0.0)
        shortfall[shortfall <= TARGET_TOLERANCE] = 0.0
        met = achieved + TARGET_TOLERANCE >= targets

        boundary_matrix = solver_input.boundary
        external = boundary_matrix.diagonal()
        off_diagonal = boundary_matrix - sparse.diags(external)
        exposed = np.asarray(off_diagonal @ (1.0 - x), dtype=float).ravel()
        boundary = float(external @ x + x @ exposed)

        score = (
            weights.cost_weight * total_cost
            + weights.boundary_weight * solver_input.blm * boundary
            + weights.shortfall_weight * float(spf @ shortfall)
        )
        return cls(
            replicate=int(replicate),
            selection=_readonly(np.rint(x), np.int8),
            cost=total_cost,
            achieved=_readonly(achieved, float),
            shortfall=_readonly(shortfall, float),
            boundary=boundary,
            score=float(score),
            targets_met=_readonly(met, bool),
            seed=seed,
            attempts=attempts,
        )

    @property
    def n_selected(self) -> int:
        return int(self.selection.sum())

    @property
    def all_targets_met(self) -> bool:
        return bool(self.targets_met.all())


# ═══════════════════════════════════════════════════════════════════════════
# 📦 PORTFOLIO
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Portfolio:
    """Ordered, immutable batch of Solutions from one run() call.

    Attributes:
        solutions: Successful solutions ordered by submission slot.
        unit_ids: Unit ids in selection-vector order.
        feature_ids: Feature ids in metric-vector order.
        replicate_count: Number of slots submitted.
        failed_replicates: Slots that failed every attempt.
        cancelled_replicates: Slots dropped or terminated by cancellation.
        problem_name: Name of the ProblemDefinition that was run.
        lineage: Overlay lineage of that ProblemDefinition.
    """

    solutions: Tuple[Solution, ...]
    unit_ids: Tuple[int, ...]
    feature_ids: Tuple[int, ...]
    replicate_count: int
    failed_replicates: Tuple[int, ...] = ()
    cancelled_replicates: Tuple[int, ...] = ()
    problem_name: str = "scenario"
    lineage: Tuple[str, ...] = ()
    feature_names: Tuple[str, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        slots = [s.replicate for s in self.solutions]
        if slots != sorted(slots) or len(set(slots)) != len(slots):
            raise ValueError(f"Solutions must be in strictly increasing slot order, got {slots}")
        object.__setattr__(self, "_slot_index", {r: i for i, r in enumerate(slots)})

    # ── Sequence protocol ────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self.solutions)

    def __getitem__(self, i: int) -> Solution:
        return self.solutions[i]

    def __iter__(self) -> Iterator[Solution]:
        return iter(self.solutions)

    @property
    def replicates(self) -> Tuple[int, ...]:
        """Replicate index of each solution, in portfolio order."""
        return tuple(s.replicate for s in self.solutions)

    @property
    def is_complete(self) -> bool:
        return len(self.solutions) == self.replicate_count

    def by_replicate(self, replicate: int) -> Solution:
        """Solution produced by a given submission slot."""
        try:
            return self.solutions[self._slot_index[replicate]]
        except KeyError:
            raise KeyError(
                f"Replicate {replicate} has no solution "
                f"(failed={list(self.failed_replicates)}, "
                f"cancelled={list(self.cancelled_replicates)})"
            ) from None

    def solution_vector(self, i: int) -> pd.Series:
        """Selection of the i-th solution indexed by unit id."""
        return pd.Series(
            np.asarray(self.solutions[i].selection, dtype=np.int8),
            index=pd.Index(self.unit_ids, name="unit_id"),
            name=self.solutions[i].replicate,
        )

    # ── Matrices ─────────────────────────────────────────────────────────

    def _replicate_index(self) -> pd.Index:
        return pd.Index(self.replicates, name="replicate")

    def selection_matrix(self) -> pd.DataFrame:
        """Solutions x units matrix of 0/1 selections."""
        data = (
            np.vstack([s.selection for s in self.solutions])
            if self.solutions
            else np.zeros((0, len(self.unit_ids)), dtype=np.int8)
        )
        return pd.DataFrame(
            data.astype(np.int8),
            index=self._replicate_index(),
            columns=pd.Index(self.unit_ids, name="unit_id"),
        )

    def amount_held_matrix(self) -> pd.DataFrame:
        """Solutions x features matrix of achieved amounts."""
        data = (
            np.vstack([s.achieved for s in self.solutions])
            if self.solutions
            else np.zeros((0, len(self.feature_ids)))
        )
        return pd.DataFrame(
            data,
            index=self._replicate_index(),
            columns=pd.Index(self.feature_ids, name="feature_id"),
        )

    def summary(self) -> pd.DataFrame:
        """One row per solution: cost, boundary, score, shortfall and targets."""
        rows = [
            {
                "replicate": s.replicate,
                "cost": s.cost,
                "boundary": s.boundary,
                "score": s.score,
                "total_shortfall": float(s.shortfall.sum()),
                "targets_met": int(s.targets_met.sum()),
                "all_targets_met": s.all_targets_met,
                "n_selected": s.n_selected,
                "attempts": s.attempts,
                "seed": s.seed,
            }
            for s in self.solutions
        ]
        columns = [
            "replicate", "cost", "boundary", "score", "total_shortfall",
            "targets_met", "all_targets_met", "n_selected", "attempts", "seed",
        ]
        return pd.DataFrame(rows, columns=columns).set_index("replicate")

    def __repr__(self) -> str:
        return (
            f"Portfolio(problem={self.problem_name!r}, solutions={len(self)}/"
            f"{self.replicate_count}, failed={list(self.failed_replicates)}, "
            f"cancelled={list(self.cancelled_replicates)})"
        )


# ═══════════════════════════════════════════════════════════════════════════
# 📊 PORTFOLIO METRICS
# ═══════════════════════════════════════════════════════════════════════════


def targets_met(portfolio: Portfolio) -> pd.DataFrame:
    """Solutions x features boolean matrix (achieved >= target)."""
    data = (
        np.vstack([s.targets_met for s in portfolio.solutions])
        if portfolio.solutions
        else np.zeros((0, len(portfolio.feature_ids)), dtype=bool)
    )
    return pd.DataFrame(
        data.astype(bool),
        index=portfolio._replicate_index(),
        columns=pd.Index(portfolio.feature_ids, name="feature_id"),
    )


def cost(portfolio: Portfolio, i: Optional[int] = None):
    """Cost per solution as a Series, or of the i-th solution."""
    if i is not None:
        return portfolio[i].cost
    return pd.Series(
        [s.cost for s in portfolio], index=portfolio._replicate_index(), name="cost", dtype=float
    )


def boundary(portfolio: Portfolio, i: Optional[int] = None):
    """Boundary length per solution as a Series, or of the i-th solution."""
    if i is not None:
        return portfolio[i].boundary
    return pd.Series(
        [s.boundary for s in portfolio],
        index=portfolio._replicate_index(),
        name="boundary",
        dtype=float,
    )


def score(portfolio: Portfolio, i: Optional[int] = None):
    """Score per solution as a Series, or of the i-th solution."""
    if i is not None:
        return portfolio[i].score
    return pd.Series(
        [s.score for s in portfolio], index=portfolio._replicate_index(), name="score", dtype=float
    )


def shortfall(portfolio: Portfolio, i: Optional[int] = None):
    """Solutions x features shortfall DataFrame, or the i-th solution's vector."""
    if i is not None:
        return pd.Series(
            np.asarray(portfolio[i].shortfall),
            index=pd.Index(portfolio.feature_ids, name="feature_id"),
            name="shortfall",
        )
    data = (
        np.vstack([s.shortfall for s in portfolio.solutions])
        if portfolio.solutions
        else np.zeros((0, len(portfolio.feature_ids)))
    )
    return pd.DataFrame(
        data,
        index=portfolio._replicate_index(),
        columns=pd.Index(portfolio.feature_ids, name="feature_id"),
    )


def selection_frequency(portfolio: Portfolio) -> pd.Series:
    """Fraction of solutions selecting each unit (zeros for an empty portfolio)."""
    if not portfolio.solutions:
        values = np.zeros(len(portfolio.unit_ids))
    else:
        values = np.vstack([s.selection for s in portfolio.solutions]).mean(axis=0)
    return pd.Series(
        values.astype(float),
        index=pd.Index(portfolio.unit_ids, name="unit_id"),
        name="selection_frequency",
    )


def build_portfolio(
    solutions: Sequence[Solution],
    problem: Any,
    replicate_count: int,
    failed_replicates: Sequence[int] = (),
    cancelled_replicates: Sequence[int] = (),
) -> Portfolio:
    """Assemble a Portfolio for a ProblemDefinition, ordering solutions by slot."""
    ordered = tuple(sorted(solutions, key=lambda s: s.replicate))
    portfolio = Portfolio(
        solutions=ordered,
        unit_ids=tuple(problem.unit_ids),
        feature_ids=tuple(problem.feature_ids),
        replicate_count=int(replicate_count),
        failed_replicates=tuple(sorted(failed_replicates)),
        cancelled_replicates=tuple(sorted(cancelled_replicates)),
        problem_name=problem.name,
        lineage=tuple(problem.lineage),
        feature_names=tuple(f.name for f in problem.features),
    )
    logger.debug(f"   {portfolio!r}")
    return portfolio


def portfolio_metrics(portfolio: Portfolio) -> Dict[str, Any]:
    """Aggregate statistics for logging."""
    if not portfolio.solutions:
        return {"solutions": 0}
    scores = np.array([s.score for s in portfolio])
    costs = np.array([s.cost for s in portfolio])
    return {
        "solutions": len(portfolio),
        "best_replicate": portfolio[int(np.argmin(scores))].replicate,
        "best_score": float(scores.min()),
        "mean_cost": float(costs.mean()),
        "all_targets_met": sum(s.all_targets_met for s in portfolio),
    }
