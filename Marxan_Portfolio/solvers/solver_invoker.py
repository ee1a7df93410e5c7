"""
═══════════════════════════════════════════════════════════════════════════════
🚀 SOLVER INVOKER MODULE
═══════════════════════════════════════════════════════════════════════════════

ARCHITECTURAL OVERVIEW
----------------------
Purpose: Run replicate_count independent solver attempts on a bounded worker
         pool and collect them into a Portfolio ordered by submission slot.

Execution Flow:
1. Pin the problem's fingerprints and fetch its SolverInput through the cache
2. Submit one job per slot to ThreadPoolExecutor(concurrency)
3. Each job retries failed attempts (SolverAttemptError) up to max_attempts,
   deriving a fresh seed per attempt from SeedSequence([base, slot, attempt])
4. Results are stored by slot index, never by completion order
5. Failure policy: failed fraction > max_failure_fraction (or no success)
   raises InsufficientSolutionsError; otherwise failed slots are recorded
6. Cancellation: queued jobs are dropped, running processes are terminated;
   CancelMode.PARTIAL returns completed slots, CancelMode.FAIL raises

Key Interactions:
- preprocessing.load_solver_input(): cached artifact bundle
- solver_backends: MarxanSolver (default) or CallableSolver
- models/portfolio.py: Solution.evaluate() + build_portfolio()

═══════════════════════════════════════════════════════════════════════════════
"""

import hashlib
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import numpy as np

from Marxan_Portfolio.config_types import AppConfig, normalize_config
from Marxan_Portfolio.exceptions import (
    AttemptCancelledError,
    InsufficientSolutionsError,
    RunCancelledError,
    SolverAttemptError,
    ValidationError,
)
from Marxan_Portfolio.models.data_models import ProblemDefinition
from Marxan_Portfolio.models.portfolio import Portfolio, Solution, build_portfolio, portfolio_metrics
from Marxan_Portfolio.parallel.artifact_cache import ArtifactCache, get_default_cache
from Marxan_Portfolio.preprocessing import SolverInput, load_solver_input
from Marxan_Portfolio.solvers.cancellation import CancellationToken, CancelMode
from Marxan_Portfolio.solvers.solver_backends import (
    AttemptContext,
    MarxanSolver,
    SolverBackend,
    check_lock_status,
    coerce_selection,
)

logger = logging.getLogger("MXP.Solver.Invoker")


# ═══════════════════════════════════════════════════════════════════════════════
# 📋 SLOT OUTCOMES
# ═══════════════════════════════════════════════════════════════════════════════


class SlotStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SlotOutcome:
    """Result of all attempts for one submission slot."""

    slot: int
    status: SlotStatus
    selection: Optional[np.ndarray] = None
    attempts: int = 0
    seed: Optional[int] = None
    errors: List[str] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# 🎲 SEEDS
# ═══════════════════════════════════════════════════════════════════════════════


def resolve_base_seed(problem: ProblemDefinition, app_config: AppConfig) -> int:
    """
    Base seed for a run: problem option, then config, then content-derived.

    The content-derived seed makes repeated runs of equal problems reproducible.
    """
    if problem.options.seed is not None:
        return int(problem.options.seed)
    if app_config.solver.base_seed is not None:
        return int(app_config.solver.base_seed)
    combined = "|".join(
        f"{c.value}={fp}" for c, fp in sorted(problem.component_fingerprints.items(), key=lambda kv: kv[0].value)
    )
    return int(hashlib.sha256(combined.encode("utf-8")).hexdigest()[:8], 16)


def attempt_seed(base_seed: int, slot: int, attempt: int) -> int:
    """Independent 32-bit seed for one (slot, attempt) pair."""
    state = np.random.SeedSequence([base_seed, slot, attempt]).generate_state(1)
    return int(state[0])


# ═══════════════════════════════════════════════════════════════════════════════
# 🔁 PER-SLOT RETRY LOOP
# ═══════════════════════════════════════════════════════════════════════════════


def _run_slot(
    slot: int,
    solver: SolverBackend,
    solver_input: SolverInput,
    base_seed: int,
    max_attempts: int,
    cancel_token: CancellationToken,
) -> SlotOutcome:
    """Run attempts for one slot until success, exhaustion or cancellation."""
    outcome = SlotOutcome(slot=slot, status=SlotStatus.FAILED)
    unit_ids = solver_input.problem.unit_ids

    for attempt in range(1, max_attempts + 1):
        if cancel_token.is_cancelled:
            outcome.status = SlotStatus.CANCELLED
            return outcome
        seed = attempt_seed(base_seed, slot, attempt)
        context = AttemptContext(slot=slot, attempt=attempt, seed=seed, cancel_token=cancel_token)
        outcome.attempts = attempt
        try:
            raw = solver.solve(solver_input, context)
            selection = coerce_selection(raw, unit_ids)
            check_lock_status(selection, solver_input.problem.units)
        except AttemptCancelledError:
            outcome.status = SlotStatus.CANCELLED
            return outcome
        except SolverAttemptError as e:
            error = e
        except Exception as e:
            # Backend bugs are attempt failures, subject to the same retry policy
            error = SolverAttemptError(f"{type(e).__name__}: {e}", slot=slot, attempt=attempt)
        else:
            outcome.status = SlotStatus.SUCCEEDED
            outcome.selection = selection
            outcome.seed = seed
            if attempt > 1:
                logger.info(f"   ✅ Slot {slot} succeeded on attempt {attempt}")
            return outcome

        if cancel_token.is_cancelled:
            outcome.status = SlotStatus.CANCELLED
            return outcome
        outcome.errors.append(str(error))
        remaining = max_attempts - attempt
        if remaining:
            logger.warning(f"⚠️ Slot {slot} attempt {attempt} failed ({error}), retrying")
        else:
            logger.warning(f"❌ Slot {slot} failed after {attempt} attempts: {error}")
    return outcome


def _collect_outcomes(
    futures: Dict[Future, int],
    replicate_count: int,
    cancel_token: CancellationToken,
    poll_interval_s: float,
) -> List[SlotOutcome]:
    """Wait for all slot futures, dropping queued ones once cancelled."""
    outcomes: List[Optional[SlotOutcome]] = [None] * replicate_count
    pending = set(futures)
    cancel_propagated = False
    while pending:
        done, pending = wait(pending, timeout=poll_interval_s, return_when=FIRST_COMPLETED)
        for future in done:
            slot = futures[future]
            if future.cancelled():
                outcomes[slot] = SlotOutcome(slot=slot, status=SlotStatus.CANCELLED)
            else:
                outcomes[slot] = future.result()
        if cancel_token.is_cancelled and not cancel_propagated:
            cancel_propagated = True
            dropped = sum(1 for f in pending if f.cancel())
            logger.info(f"🛑 Cancellation requested: dropped {dropped} queued slot(s)")
    return [o for o in outcomes if o is not None]


# ═══════════════════════════════════════════════════════════════════════════════
# 🚀 MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════


def run(
    problem: ProblemDefinition,
    replicate_count: Optional[int] = None,
    concurrency: Optional[int] = None,
    solver: Optional[SolverBackend] = None,
    cache: Optional[ArtifactCache] = None,
    config: Union[Dict[str, Any], AppConfig, None] = None,
    cancel_token: Optional[CancellationToken] = None,
    cancel_mode: CancelMode = CancelMode.FAIL,
) -> Portfolio:
    """
    Run replicate_count independent solver attempts and build a Portfolio.

    Args:
        problem: ProblemDefinition to solve.
        replicate_count: Number of slots (default problem.options.replicates).
        concurrency: Worker pool size (default problem.options.concurrency).
        solver: Backend (default MarxanSolver from config).
        cache: ArtifactCache (default process-wide cache).
        config: CONFIG dict or AppConfig.
        cancel_token: Token the caller may cancel from another thread.
        cancel_mode: FAIL raises RunCancelledError, PARTIAL returns the
            completed slots.

    Returns:
        Portfolio with solutions ordered by slot and failed slots recorded.

    Raises:
        ValidationError: replicate_count or concurrency < 1.
        InsufficientSolutionsError: Too many slots failed permanently.
        RunCancelledError: Cancelled in FAIL mode.
    """
    app_config = normalize_config(config)
    solver_config = app_config.solver
    replicate_count = problem.options.replicates if replicate_count is None else replicate_count
    concurrency = problem.options.concurrency if concurrency is None else concurrency
    if isinstance(replicate_count, bool) or not isinstance(replicate_count, (int, np.integer)) or replicate_count < 1:
        raise ValidationError(f"replicate_count must be an integer >= 1, got {replicate_count!r}")
    if isinstance(concurrency, bool) or not isinstance(concurrency, (int, np.integer)) or concurrency < 1:
        raise ValidationError(f"concurrency must be an integer >= 1, got {concurrency!r}")
    replicate_count = int(replicate_count)
    concurrency = min(int(concurrency), replicate_count)

    solver = solver if solver is not None else MarxanSolver.from_config(app_config)
    cache = cache if cache is not None else get_default_cache(app_config)
    cancel_token = cancel_token if cancel_token is not None else CancellationToken()
    base_seed = resolve_base_seed(problem, app_config)

    logger.info(
        f"🚀 Running {replicate_count} replicate(s) of '{problem.name}' "
        f"[{solver.name}] with concurrency {concurrency} (base seed {base_seed})"
    )
    start = time.perf_counter()

    with cache.pinned(problem):
        solver_input = load_solver_input(problem, cache)
        with ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix="mxp-replicate"
        ) as pool:
            futures = {
                pool.submit(
                    _run_slot,
                    slot,
                    solver,
                    solver_input,
                    base_seed,
                    solver_config.max_attempts,
                    cancel_token,
                ): slot
                for slot in range(replicate_count)
            }
            outcomes = _collect_outcomes(
                futures, replicate_count, cancel_token, solver_config.poll_interval_s
            )

        succeeded = [o for o in outcomes if o.status is SlotStatus.SUCCEEDED]
        failed = [o.slot for o in outcomes if o.status is SlotStatus.FAILED]
        cancelled = [o.slot for o in outcomes if o.status is SlotStatus.CANCELLED]

        if cancel_token.is_cancelled and cancelled:
            if cancel_mode is CancelMode.FAIL:
                logger.warning(
                    f"🛑 Run of '{problem.name}' cancelled: "
                    f"{len(succeeded)} slot(s) completed, no portfolio produced"
                )
                raise RunCancelledError([o.slot for o in succeeded])
            logger.warning(
                f"🛑 Run of '{problem.name}' cancelled: returning "
                f"{len(succeeded)}/{replicate_count} completed slot(s)"
            )

        failed_fraction = len(failed) / replicate_count
        if failed_fraction > solver_config.max_failure_fraction or (
            not succeeded and not cancelled
        ):
            logger.error(
                f"❌ {len(failed)}/{replicate_count} slots failed "
                f"(threshold {solver_config.max_failure_fraction:.0%})"
            )
            raise InsufficientSolutionsError(
                failed, replicate_count, solver_config.max_failure_fraction
            )

        solutions = [
            Solution.evaluate(
                o.selection,
                o.slot,
                solver_input,
                weights=app_config.score,
                seed=o.seed,
                attempts=o.attempts,
            )
            for o in succeeded
        ]

    portfolio = build_portfolio(
        solutions,
        problem,
        replicate_count=replicate_count,
        failed_replicates=failed,
        cancelled_replicates=cancelled,
    )
    elapsed = time.perf_counter() - start
    logger.info(
        f"✅ Portfolio '{problem.name}': {len(solutions)}/{replicate_count} solutions "
        f"in {elapsed:.2f}s (failed={failed}, cancelled={cancelled})"
    )
    logger.debug(f"   Metrics: {portfolio_metrics(portfolio)}")
    return portfolio
