#!/usr/bin/env python3
"""
Marxan Portfolio - Configuration

ARCHITECTURAL OVERVIEW:
=======================
Responsibility: Centralized configuration for portfolio runs.
Single source of truth for fingerprinting, caching, solver invocation,
scoring weights and analytics defaults.

Configuration Sections (ordered by importance for day-to-day tuning):
1. problem_defaults: BLM, replicate count, concurrency
2. solver: External solver executable, retry bound, failure threshold
3. score: Weights combining cost, boundary and shortfall
4. analytics: Distance, linkage and ordination defaults
5. cache: Preprocessing cache budget and optional disk layer
6. parallel: Scenario-level parallelism
7. fingerprint: Canonical encoding precision
8. logging: Log folder and level (bottom - rarely changed)

Navigation Guide:
- Use VS Code outline (Ctrl+Shift+O) to jump between sections
"""

import os
from typing import Dict, Any, TypeVar, Callable, Optional

T = TypeVar("T")


def _env_or_default(
    key: str, default: T, type_fn: Optional[Callable[[str], T]] = None
) -> T:
    """
    Get value from environment variable or use default.

    Args:
        key: Environment variable name (e.g., "MXP_SOLVER_EXE")
        default: Default value if env var not set
        type_fn: Optional type conversion function (e.g., float, int)

    Returns:
        Value from environment (converted) or default

    Example:
        >>> _env_or_default("MXP_MAX_ATTEMPTS", 3, int)
        3  # If env var not set
    """
    val = os.getenv(key)
    if val is not None:
        if type_fn is not None:
            return type_fn(val)
        return val  # type: ignore
    return default


def _env_bool(key: str, default: bool) -> bool:
    """
    Get boolean value from environment variable.

    Treats "true", "1", "yes" as True (case-insensitive).
    Any other value or unset returns default.
    """
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")


# ═══════════════════════════════════════════════════════════════════════════
# 🔧 ENVIRONMENT VARIABLE OVERRIDES
# ═══════════════════════════════════════════════════════════════════════════
# MXP_SOLVER_EXE             - path to the Marxan executable (default: "marxan")
# MXP_SOLVER_TIMEOUT_S       - float, per-attempt timeout (default: 600)
# MXP_MAX_ATTEMPTS           - int, attempts per replicate slot (default: 3)
# MXP_MAX_FAILURE_FRACTION   - float, tolerated failed-slot fraction (default: 0.5)
# MXP_KEEP_WORKDIRS          - "true" keeps solver working directories
# MXP_CACHE_DIR              - directory for the persistent cache layer
# MXP_LINKAGE                - default clustering linkage (default: "average")
# MXP_LOG_DIR                - log folder (default: "logs")
#
# Example usage:
#   export MXP_SOLVER_EXE=/opt/marxan/Marxan_x64
#   export MXP_MAX_ATTEMPTS=5
# ═══════════════════════════════════════════════════════════════════════════

# ═══════════════════════════════════════════════════════════════════════════
# ⚙️ MASTER CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════

CONFIG: Dict[str, Any] = {
    # ═══════════════════════════════════════════════════════════════════════
    # 🗺️ PROBLEM DEFAULTS
    # ═══════════════════════════════════════════════════════════════════════
    # Used by assemble() when ProblemOptions are not supplied.
    "problem_defaults": {
        "blm": 0.0,
        "replicates": 10,
        "concurrency": 1,
        "seed": None,  # None = derive seeds from fingerprints
        "name": "scenario",
    },
    # ═══════════════════════════════════════════════════════════════════════
    # 🧮 SOLVER INVOCATION
    # ═══════════════════════════════════════════════════════════════════════
    "solver": {
        # ENV OVERRIDE: MXP_SOLVER_EXE
        "executable": _env_or_default("MXP_SOLVER_EXE", "marxan"),
        # Per-attempt wall clock limit; a timed-out attempt counts as a failure
        # ENV OVERRIDE: MXP_SOLVER_TIMEOUT_S
        "timeout_s": _env_or_default("MXP_SOLVER_TIMEOUT_S", 600.0, float),
        # Total attempts per replicate slot (first try + retries)
        # ENV OVERRIDE: MXP_MAX_ATTEMPTS
        "max_attempts": _env_or_default("MXP_MAX_ATTEMPTS", 3, int),
        # run() fails when failed slots / replicate count exceeds this
        # ENV OVERRIDE: MXP_MAX_FAILURE_FRACTION
        "max_failure_fraction": _env_or_default(
            "MXP_MAX_FAILURE_FRACTION", 0.5, float
        ),
        # How often running processes are checked for completion/cancellation
        "poll_interval_s": 0.05,
        # Base seed for per-attempt seeds (None = derived from fingerprints)
        "base_seed": None,
        # Marxan annealing settings written to input.dat
        "num_iterations": 1000000,
        "num_temp": 10000,
        "run_mode": 1,  # 1 = annealing + iterative improvement
        "prop_adjust": 0.5,  # PROP: initial reserve proportion
        # ENV OVERRIDE: MXP_KEEP_WORKDIRS
        "keep_workdirs": _env_bool("MXP_KEEP_WORKDIRS", False),
    },
    # ═══════════════════════════════════════════════════════════════════════
    # 🎯 SCORE WEIGHTS
    # ═══════════════════════════════════════════════════════════════════════
    # score = cost_weight * cost
    #       + boundary_weight * BLM * boundary
    #       + shortfall_weight * sum(spf * shortfall)
    "score": {
        "cost_weight": 1.0,
        "boundary_weight": 1.0,
        "shortfall_weight": 1.0,
    },
    # ═══════════════════════════════════════════════════════════════════════
    # 📊 ANALYTICS
    # ═══════════════════════════════════════════════════════════════════════
    "analytics": {
        "distance_method": "braycurtis",
        "distance_subject": "selection",  # "selection" | "amount"
        # ENV OVERRIDE: MXP_LINKAGE
        "linkage": _env_or_default("MXP_LINKAGE", "average"),
        # Merge heights closer than this are treated as ties
        "tie_tolerance": 1e-12,
        "n_components": 2,
        "mds_seed": 0,
        "mds_max_iter": 300,
        "mds_eps": 1e-6,
    },
    # ═══════════════════════════════════════════════════════════════════════
    # 💾 PREPROCESSING CACHE
    # ═══════════════════════════════════════════════════════════════════════
    "cache": {
        "max_entries": 256,
        "max_bytes": 512 * 1024 * 1024,
        # Persistent pickle layer shared between processes (None = memory only)
        # ENV OVERRIDE: MXP_CACHE_DIR
        "cache_dir": _env_or_default("MXP_CACHE_DIR", None),
        "lock_timeout_s": 600.0,
        "log_cache_hits": True,
    },
    # ═══════════════════════════════════════════════════════════════════════
    # ⚡ SCENARIO PARALLELISM
    # ═══════════════════════════════════════════════════════════════════════
    "parallel": {
        "max_workers": -1,  # Auto-detect from CPU
        "optimal_workers_default": 4,
        "backend": "threading",
        "verbose": 0,
    },
    # ═══════════════════════════════════════════════════════════════════════
    # 🔑 FINGERPRINTING
    # ═══════════════════════════════════════════════════════════════════════
    "fingerprint": {
        "float_precision": 6,
        "hash_length": 16,
    },
    # ═══════════════════════════════════════════════════════════════════════
    # 📝 LOGGING
    # ═══════════════════════════════════════════════════════════════════════
    "logging": {
        # ENV OVERRIDE: MXP_LOG_DIR
        "log_dir": _env_or_default("MXP_LOG_DIR", "logs"),
        "level": "INFO",
    },
}
