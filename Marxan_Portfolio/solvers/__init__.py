"""
Solver package: replicate execution against the external optimizer.

- cancellation.py: CancellationToken + CancelMode
- solver_backends.py: MarxanSolver (external process), CallableSolver
- solver_invoker.py: run() - bounded pool, retries, failure policy
"""

from Marxan_Portfolio.solvers.cancellation import CancellationToken, CancelMode
from Marxan_Portfolio.solvers.solver_backends import (
    AttemptContext,
    CallableSolver,
    MarxanSolver,
    SolverBackend,
    SolverProcess,
)
from Marxan_Portfolio.solvers.solver_invoker import attempt_seed, run

__all__ = [
    "CancellationToken",
    "CancelMode",
    "AttemptContext",
    "CallableSolver",
    "MarxanSolver",
    "SolverBackend",
    "SolverProcess",
    "attempt_seed",
    "run",
]
