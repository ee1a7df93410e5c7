"""
Scenario Orchestrator

ARCHITECTURAL OVERVIEW:
=======================
Responsibility: Derive several parametrized scenarios from one base problem
and run their portfolios concurrently, all sharing one ArtifactCache.

Key Insight: Scenarios that share fingerprints (e.g. BLM sweeps share every
artifact) request the same cache keys concurrently; single-flight computation
in the cache guarantees each artifact is built once.

Execution Model:
- joblib.Parallel with the threading backend (the cache lives in memory, so
  workers must share the process)
- Each scenario's run() gets its own worker pool for replicates
- A failing scenario does not abort the others; errors are collected

For Navigation: Use VS Code outline (Ctrl+Shift+O)
"""

import logging
import os
import time
from typing import Any, Dict, List, Optional, Sequence, Union

from joblib import Parallel, delayed

from Marxan_Portfolio.config_types import AppConfig, normalize_config
from Marxan_Portfolio.exceptions import MarxanPortfolioError
from Marxan_Portfolio.models.data_models import ProblemDefinition
from Marxan_Portfolio.models.portfolio import Portfolio
from Marxan_Portfolio.parallel.artifact_cache import ArtifactCache, get_default_cache
from Marxan_Portfolio.solvers.cancellation import CancellationToken, CancelMode
from Marxan_Portfolio.solvers.solver_backends import SolverBackend
from Marxan_Portfolio.solvers.solver_invoker import run
from Marxan_Portfolio.update_engine import ParameterOverlay, derive

logger = logging.getLogger("MXP.Scenarios")


# ═══════════════════════════════════════════════════════════════════════════
# ⚙️ WORKER COUNT
# ═══════════════════════════════════════════════════════════════════════════


def get_effective_worker_count(
    n_scenarios: int,
    config: Union[Dict[str, Any], AppConfig, None] = None,
) -> int:
    """
    Calculate worker count based on scenario count and config.

    Args:
        n_scenarios: Number of scenarios to run.
        config: Main CONFIG dictionary or AppConfig object.

    Returns:
        Number of workers to use (at least 1).
    """
    parallel_config = normalize_config(config).parallel
    max_workers = parallel_config.max_workers

    if max_workers == -1:
        # Auto-detect based on CPU cores
        cpu_count = os.cpu_count() or 4
        max_workers = min(cpu_count, parallel_config.optimal_workers_default)

    # Don't use more workers than scenarios
    return max(1, min(max_workers, n_scenarios))


# ═══════════════════════════════════════════════════════════════════════════
# 🔧 WORKER
# ═══════════════════════════════════════════════════════════════════════════


def _run_scenario(
    base: ProblemDefinition,
    overlay: ParameterOverlay,
    replicate_count: Optional[int],
    concurrency: Optional[int],
    solver: Optional[SolverBackend],
    cache: ArtifactCache,
    app_config: AppConfig,
    cancel_token: Optional[CancellationToken],
    cancel_mode: CancelMode,
) -> Dict[str, Any]:
    """Derive and run one scenario; never raises package errors."""
    start = time.perf_counter()
    try:
        problem = derive(base, overlay, app_config)
        portfolio = run(
            problem,
            replicate_count=replicate_count,
            concurrency=concurrency,
            solver=solver,
            cache=cache,
            config=app_config,
            cancel_token=cancel_token,
            cancel_mode=cancel_mode,
        )
        return {
            "key": overlay.name,
            "success": True,
            "problem": problem,
            "portfolio": portfolio,
            "elapsed_s": time.perf_counter() - start,
        }
    except MarxanPortfolioError as e:
        return {
            "key": overlay.name,
            "success": False,
            "error": e,
            "elapsed_s": time.perf_counter() - start,
        }


def _collect_results(results_list: List[Optional[Dict[str, Any]]]) -> Dict[str, Dict[str, Any]]:
    """
    Aggregate worker results into final dict keyed by scenario name.

    Args:
        results_list: List of result dicts from workers

    Returns:
        Dict mapping scenario name -> result dict (input order preserved)
    """
    output = {}
    success_count = 0
    error_count = 0

    for result in results_list:
        if result is None:
            continue
        key = result.get("key", "unknown")
        output[key] = result

        if result.get("success"):
            success_count += 1
        else:
            error_count += 1
            logger.warning(f"⚠️ {key}: {result.get('error', 'Unknown error')}")

    logger.info(f"📦 Collected {success_count} successes, {error_count} errors")
    return output


# ═══════════════════════════════════════════════════════════════════════════
# 🚀 MAIN ORCHESTRATOR FUNCTION
# ═══════════════════════════════════════════════════════════════════════════


def run_scenarios(
    base: ProblemDefinition,
    overlays: Sequence[ParameterOverlay],
    replicate_count: Optional[int] = None,
    concurrency: Optional[int] = None,
    solver: Optional[SolverBackend] = None,
    cache: Optional[ArtifactCache] = None,
    config: Union[Dict[str, Any], AppConfig, None] = None,
    cancel_token: Optional[CancellationToken] = None,
    cancel_mode: CancelMode = CancelMode.FAIL,
    raise_on_error: bool = False,
) -> Dict[str, Dict[str, Any]]:
    """
    Derive one problem per overlay and run all portfolios concurrently.

    Args:
        base: Base ProblemDefinition shared by all scenarios.
        overlays: Overlays with unique names (scenario keys).
        replicate_count / concurrency / solver / cancel_token / cancel_mode:
            Passed to run() for every scenario.
        cache: Shared ArtifactCache (default process-wide cache).
        config: CONFIG dict or AppConfig.
        raise_on_error: Re-raise the first scenario error after all finish.

    Returns:
        Dict mapping overlay name -> {"success", "problem", "portfolio",
        "elapsed_s"} or {"success": False, "error", "elapsed_s"}.
    """
    app_config = normalize_config(config)
    names = [o.name for o in overlays]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Scenario overlay names must be unique, duplicates: {duplicates}")
    if not overlays:
        return {}

    cache = cache if cache is not None else get_default_cache(app_config)
    n_workers = get_effective_worker_count(len(overlays), app_config)
    parallel_config = app_config.parallel

    logger.info(f"🚀 Running {len(overlays)} scenario(s) with {n_workers} worker(s)")
    dispatch_start = time.time()
    results_list = list(
        Parallel(
            n_jobs=n_workers,
            backend=parallel_config.backend,
            verbose=parallel_config.verbose,
        )(
            delayed(_run_scenario)(
                base,
                overlay,
                replicate_count,
                concurrency,
                solver,
                cache,
                app_config,
                cancel_token,
                cancel_mode,
            )
            for overlay in overlays
        )
    )
    logger.info(f"⏱️ Scenarios finished in {time.time() - dispatch_start:.1f}s")
    cache.log_summary()

    results = _collect_results(results_list)
    if raise_on_error:
        for result in results.values():
            if not result["success"]:
                raise result["error"]
    return results


def scenario_portfolios(results: Dict[str, Dict[str, Any]]) -> Dict[str, Portfolio]:
    """Successful portfolios from run_scenarios() output, keyed by scenario."""
    return {k: r["portfolio"] for k, r in results.items() if r.get("success")}
