"""
Marxan Portfolio - Pipeline Entry Point

Library-level pipeline wiring every stage together:
assemble -> run (cached preprocessing) -> analytics, plus optional scenario
overlays run concurrently against the same cache.

Usage:
    from Marxan_Portfolio.main import setup_logging, run_portfolio_analysis

    logger, run_folder = setup_logging()
    results = run_portfolio_analysis(units, features, incidence=puvspr, boundaries=bound)
"""

import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import psutil

from Marxan_Portfolio.analytics import cluster, distance, ordinate
from Marxan_Portfolio.config_types import AppConfig, normalize_config
from Marxan_Portfolio.exceptions import DegenerateInputError
from Marxan_Portfolio.models.portfolio import portfolio_metrics
from Marxan_Portfolio.parallel.artifact_cache import ArtifactCache, get_default_cache
from Marxan_Portfolio.parallel.scenario_orchestrator import run_scenarios
from Marxan_Portfolio.problem_assembler import assemble
from Marxan_Portfolio.solvers.solver_backends import SolverBackend
from Marxan_Portfolio.solvers.solver_invoker import run
from Marxan_Portfolio.update_engine import ParameterOverlay

PACKAGE_LOGGER = "MXP"


# ═══════════════════════════════════════════════════════════════════════════
# 📋 LOGGING SETUP
# ═══════════════════════════════════════════════════════════════════════════


def setup_logging(
    config: Union[Dict[str, Any], AppConfig, None] = None,
    run_name: str = "portfolio",
) -> Tuple[logging.Logger, Path]:
    """Configure logging with file and console handlers.

    Returns:
        Tuple of (logger, run_log_folder) where run_log_folder holds main.log
        for this run. Solver working directories kept for debugging are
        written under the system temp directory.

    Folder naming convention:
        {run_name}_{MMDD}_{HHMM}, e.g. portfolio_0129_1028
    """
    logging_config = normalize_config(config).logging
    log_dir = logging_config.log_path
    log_dir.mkdir(parents=True, exist_ok=True)

    # Compact timestamp: MMDD_HHMM
    timestamp = datetime.now().strftime("%m%d_%H%M")
    run_log_folder = log_dir / f"{run_name}_{timestamp}"
    run_log_folder.mkdir(parents=True, exist_ok=True)
    log_path = run_log_folder / "main.log"

    level = getattr(logging, str(logging_config.level).upper(), logging.INFO)
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    # File handler
    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    # Console handler
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(logging.Formatter("%(message)s"))

    logger.addHandler(fh)
    logger.addHandler(ch)

    return logger, run_log_folder


def _log_resource_usage(stage: str) -> None:
    """Log memory and CPU usage at key stages."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    try:
        process = psutil.Process()
        mem_mb = process.memory_info().rss / (1024 * 1024)
        cpu_pct = process.cpu_percent()
        logger.debug(f"[{stage}] Memory: {mem_mb:.0f}MB, CPU: {cpu_pct:.1f}%")
    except psutil.Error as e:
        logger.debug(f"[{stage}] Resource monitoring failed: {e}")


# ═══════════════════════════════════════════════════════════════════════════
# 🚀 PIPELINE
# ═══════════════════════════════════════════════════════════════════════════


def _analyse(portfolio: Any, app_config: AppConfig) -> Dict[str, Any]:
    """Distance, clustering and ordination; degenerate portfolios skip analytics."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    results: Dict[str, Any] = {"distance": None, "dendrogram": None, "ordination": None}
    try:
        results["distance"] = distance(portfolio, config=app_config)
        results["dendrogram"] = cluster(results["distance"], config=app_config)
        results["ordination"] = ordinate(results["distance"], method="mds", config=app_config)
    except DegenerateInputError as e:
        logger.warning(f"⚠️ Analytics skipped for '{portfolio.problem_name}': {e}")
    return results


def run_portfolio_analysis(
    units: Any,
    features: Any,
    incidence: Any = None,
    boundaries: Any = None,
    options: Optional[Dict[str, Any]] = None,
    overlays: Sequence[ParameterOverlay] = (),
    solver: Optional[SolverBackend] = None,
    cache: Optional[ArtifactCache] = None,
    config: Union[Dict[str, Any], AppConfig, None] = None,
) -> Dict[str, Any]:
    """
    Assemble a problem, run its portfolio, analyse it and run any scenarios.

    Returns:
        Dict with keys: problem, portfolio, summary, distance, dendrogram,
        ordination, scenarios (overlay name -> result dict with the same
        analytics keys added), cache_stats, elapsed_s.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    app_config = normalize_config(config)
    cache = cache if cache is not None else get_default_cache(app_config)
    start = time.perf_counter()
    _log_resource_usage("start")

    problem = assemble(
        units, features, options=options, incidence=incidence,
        boundaries=boundaries, config=app_config,
    )
    portfolio = run(problem, solver=solver, cache=cache, config=app_config)
    logger.info(f"📊 Base portfolio metrics: {portfolio_metrics(portfolio)}")
    results: Dict[str, Any] = {
        "problem": problem,
        "portfolio": portfolio,
        "summary": portfolio.summary(),
    }
    results.update(_analyse(portfolio, app_config))
    _log_resource_usage("after_base_run")

    scenarios: Dict[str, Dict[str, Any]] = {}
    if overlays:
        scenarios = run_scenarios(problem, overlays, solver=solver, cache=cache, config=app_config)
        for result in scenarios.values():
            if result.get("success"):
                result.update(_analyse(result["portfolio"], app_config))
        _log_resource_usage("after_scenarios")
    results["scenarios"] = scenarios

    cache.log_summary()
    results["cache_stats"] = cache.get_stats()
    results["elapsed_s"] = time.perf_counter() - start
    logger.info(f"✅ Portfolio analysis complete in {results['elapsed_s']:.1f}s")
    return results
