"""
Preprocessing Artifact Builders

ARCHITECTURAL OVERVIEW:
=======================
Responsibility: Build the expensive derived artifacts of a ProblemDefinition
and fetch them through the ArtifactCache keyed by their fingerprints.

Artifacts (rows always follow problem.unit_ids, columns problem.feature_ids):
- boundary_matrix: scipy.sparse CSR (n_units x n_units). Off-diagonal entries
  are shared boundary lengths (symmetric); the diagonal holds each unit's
  external boundary.
- incidence_matrix: scipy.sparse CSR (n_units x n_features) of amounts.
- unit_table: DataFrame [id, cost, status] with Marxan status codes.
- feature_table: DataFrame [id, name, target_type, target, total_amount,
  target_amount, spf].

Key Functions:
- ARTIFACT_BUILDERS: ArtifactKind -> builder(problem)
- get_artifact(): Cached access for one artifact kind
- load_solver_input(): All four artifacts bundled as a SolverInput

Artifacts are shared between problems with equal fingerprints and must be
treated as read-only by every consumer.

For Navigation: Use VS Code outline (Ctrl+Shift+O)
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import numpy as np
import pandas as pd
from scipy import sparse

from Marxan_Portfolio.models.data_models import ArtifactKind, ProblemDefinition
from Marxan_Portfolio.parallel.artifact_cache import ArtifactCache, get_default_cache

logger = logging.getLogger("MXP.Cache")


# ═══════════════════════════════════════════════════════════════════════════
# 🏗️ ARTIFACT BUILDERS
# ═══════════════════════════════════════════════════════════════════════════


def build_boundary_matrix(problem: ProblemDefinition) -> sparse.csr_matrix:
    """Symmetric boundary-length matrix with external boundary on the diagonal."""
    index = problem.unit_index
    rows, cols, data = [], [], []
    for unit in problem.units:
        i = index[unit.id]
        for other_id, length in unit.neighbours:
            rows.append(i)
            cols.append(index[other_id])
            data.append(float(length))
    n = problem.n_units
    matrix = sparse.coo_matrix(
        (np.asarray(data, dtype=float), (np.asarray(rows, dtype=np.int64), np.asarray(cols, dtype=np.int64))),
        shape=(n, n),
    ).tocsr()
    logger.debug(f"   Boundary matrix: {n}x{n}, {matrix.nnz} non-zeros")
    return matrix


def build_incidence_matrix(problem: ProblemDefinition) -> sparse.csr_matrix:
    """Units x features matrix of feature amounts held by each unit."""
    unit_index = problem.unit_index
    rows, cols, data = [], [], []
    for j, feature in enumerate(problem.features):
        for unit_id, amount in feature.amounts:
            rows.append(unit_index[unit_id])
            cols.append(j)
            data.append(float(amount))
    matrix = sparse.coo_matrix(
        (np.asarray(data, dtype=float), (np.asarray(rows, dtype=np.int64), np.asarray(cols, dtype=np.int64))),
        shape=(problem.n_units, problem.n_features),
    ).tocsr()
    logger.debug(
        f"   Incidence matrix: {problem.n_units}x{problem.n_features}, {matrix.nnz} non-zeros"
    )
    return matrix


def build_unit_table(problem: ProblemDefinition) -> pd.DataFrame:
    """Unit table in pu.dat layout."""
    table = pd.DataFrame(
        {
            "id": np.asarray(problem.unit_ids, dtype=np.int64),
            "cost": np.asarray([u.cost for u in problem.units], dtype=float),
            "status": np.asarray([u.status.marxan_code for u in problem.units], dtype=np.int64),
        }
    )
    return table


def build_feature_table(problem: ProblemDefinition) -> pd.DataFrame:
    """Feature table with targets resolved to absolute amounts."""
    table = pd.DataFrame(
        {
            "id": np.asarray(problem.feature_ids, dtype=np.int64),
            "name": [f.name for f in problem.features],
            "target_type": [f.target.kind.value for f in problem.features],
            "target": np.asarray([f.target.value for f in problem.features], dtype=float),
            "total_amount": np.asarray([f.total_amount for f in problem.features], dtype=float),
            "target_amount": np.asarray([f.target_amount for f in problem.features], dtype=float),
            "spf": np.asarray([f.spf for f in problem.features], dtype=float),
        }
    )
    return table


ARTIFACT_BUILDERS: Dict[ArtifactKind, Callable[[ProblemDefinition], Any]] = {
    ArtifactKind.BOUNDARY_MATRIX: build_boundary_matrix,
    ArtifactKind.INCIDENCE_MATRIX: build_incidence_matrix,
    ArtifactKind.UNIT_TABLE: build_unit_table,
    ArtifactKind.FEATURE_TABLE: build_feature_table,
}


# ═══════════════════════════════════════════════════════════════════════════
# 📦 CACHED ACCESS
# ═══════════════════════════════════════════════════════════════════════════


def get_artifact(
    problem: ProblemDefinition,
    kind: ArtifactKind,
    cache: Optional[ArtifactCache] = None,
) -> Any:
    """
    Return one artifact of a problem, computing it at most once per fingerprint.

    The problem is attached to the cache. Entries referenced by a live
    ProblemDefinition are evicted only after every unreferenced entry.
    """
    cache = cache if cache is not None else get_default_cache()
    cache.attach(problem)
    builder = ARTIFACT_BUILDERS[kind]
    return cache.get_or_compute(
        problem.fingerprint(kind), lambda: builder(problem), kind=kind.value
    )


@dataclass(frozen=True)
class SolverInput:
    """Input bundle handed to a solver backend for one replicate attempt."""

    problem: ProblemDefinition
    unit_table: pd.DataFrame
    feature_table: pd.DataFrame
    incidence: sparse.csr_matrix
    boundary: sparse.csr_matrix

    @property
    def blm(self) -> float:
        return float(self.problem.options.blm)


def load_solver_input(
    problem: ProblemDefinition, cache: Optional[ArtifactCache] = None
) -> SolverInput:
    """Fetch all four artifacts through the cache."""
    cache = cache if cache is not None else get_default_cache()
    return SolverInput(
        problem=problem,
        unit_table=get_artifact(problem, ArtifactKind.UNIT_TABLE, cache),
        feature_table=get_artifact(problem, ArtifactKind.FEATURE_TABLE, cache),
        incidence=get_artifact(problem, ArtifactKind.INCIDENCE_MATRIX, cache),
        boundary=get_artifact(problem, ArtifactKind.BOUNDARY_MATRIX, cache),
    )
