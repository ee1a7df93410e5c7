"""
═══════════════════════════════════════════════════════════════════════════════
📋 UNIFIED CONFIGURATION TYPES
═══════════════════════════════════════════════════════════════════════════════

ARCHITECTURAL OVERVIEW
----------------------
Responsibility: Define all configuration dataclasses for portfolio runs.
Replaces scattered CONFIG dictionary access with typed, validated config objects.

Usage:
    from Marxan_Portfolio.config import CONFIG
    from Marxan_Portfolio.config_types import AppConfig

    # Create once at application startup
    app_config = AppConfig.from_dict(CONFIG)

    # Use throughout the application
    portfolio = run(problem, config=app_config)

For Navigation: Use VS Code outline (Ctrl+Shift+O)

NAVIGATION GUIDE
----------------
# ═════ 1. FINGERPRINT CONFIGURATION
# ═════ 2. CACHE CONFIGURATION
# ═════ 3. SOLVER CONFIGURATION
# ═════ 4. PARALLEL PROCESSING CONFIGURATION
# ═════ 5. SCORE WEIGHTS CONFIGURATION
# ═════ 6. ANALYTICS CONFIGURATION
# ═════ 7. PROBLEM DEFAULTS + LOGGING
# ═════ 8. APP CONFIG (MASTER FACADE)

═══════════════════════════════════════════════════════════════════════════════
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, Union


# ═══════════════════════════════════════════════════════════════════════════════
# 🔑 1. FINGERPRINT CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class FingerprintConfig:
    """
    Canonical encoding settings for content fingerprints.

    Attributes:
        float_precision: Decimal places floats are rounded to before hashing.
        hash_length: Number of hex characters kept from the SHA256 digest.
    """

    float_precision: int = 6
    hash_length: int = 16

    def __post_init__(self) -> None:
        if self.float_precision < 0:
            raise ValueError(
                f"float_precision must be >= 0, got {self.float_precision}"
            )
        if not 8 <= self.hash_length <= 64:
            raise ValueError(f"hash_length must be in [8, 64], got {self.hash_length}")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FingerprintConfig":
        """Create FingerprintConfig from CONFIG['fingerprint'] dictionary."""
        return cls(
            float_precision=d.get("float_precision", 6),
            hash_length=d.get("hash_length", 16),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# 💾 2. CACHE CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class CacheConfig:
    """
    Configuration for the preprocessing artifact cache.

    Attributes:
        max_entries: Entry budget enforced by LRU eviction after each insert.
        max_bytes: Estimated memory budget enforced by LRU eviction.
        cache_dir: Optional directory for the persistent pickle layer.
        lock_timeout_s: Seconds to wait for a per-fingerprint file lock.
        log_cache_hits: Log hits at INFO (otherwise DEBUG).
    """

    max_entries: int = 256
    max_bytes: int = 512 * 1024 * 1024
    cache_dir: Optional[str] = None
    lock_timeout_s: float = 600.0
    log_cache_hits: bool = True

    def __post_init__(self) -> None:
        if self.max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {self.max_entries}")
        if self.max_bytes < 1:
            raise ValueError(f"max_bytes must be >= 1, got {self.max_bytes}")
        if self.lock_timeout_s <= 0:
            raise ValueError(f"lock_timeout_s must be > 0, got {self.lock_timeout_s}")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CacheConfig":
        """Create CacheConfig from CONFIG['cache'] dictionary."""
        return cls(
            max_entries=d.get("max_entries", 256),
            max_bytes=d.get("max_bytes", 512 * 1024 * 1024),
            cache_dir=d.get("cache_dir"),
            lock_timeout_s=d.get("lock_timeout_s", 600.0),
            log_cache_hits=d.get("log_cache_hits", True),
        )

    @property
    def cache_path(self) -> Optional[Path]:
        """Get cache directory as Path object (None = memory only)."""
        return Path(self.cache_dir) if self.cache_dir else None


# ═══════════════════════════════════════════════════════════════════════════════
# 🧮 3. SOLVER CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class SolverConfig:
    """
    Configuration for replicate solver attempts.

    Attributes:
        executable: Marxan executable name or path.
        timeout_s: Wall clock limit per attempt (seconds).
        max_attempts: Attempts per replicate slot before it is marked failed.
        max_failure_fraction: run() raises InsufficientSolutionsError when the
            fraction of failed slots exceeds this value.
        poll_interval_s: Process polling interval for completion/cancellation.
        base_seed: Base seed for per-attempt seeds (None = from fingerprints).
        num_iterations: Marxan NUMITNS.
        num_temp: Marxan NUMTEMP.
        run_mode: Marxan RUNMODE.
        prop_adjust: Marxan PROP (proportion of units in the initial reserve).
        keep_workdirs: Keep solver working directories for debugging.
    """

    executable: str = "marxan"
    timeout_s: float = 600.0
    max_attempts: int = 3
    max_failure_fraction: float = 0.5
    poll_interval_s: float = 0.05
    base_seed: Optional[int] = None
    num_iterations: int = 1000000
    num_temp: int = 10000
    run_mode: int = 1
    prop_adjust: float = 0.5
    keep_workdirs: bool = False

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if not 0 <= self.max_failure_fraction <= 1:
            raise ValueError(
                f"max_failure_fraction must be in [0, 1], got {self.max_failure_fraction}"
            )
        if self.poll_interval_s <= 0:
            raise ValueError(
                f"poll_interval_s must be > 0, got {self.poll_interval_s}"
            )

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SolverConfig":
        """Create SolverConfig from CONFIG['solver'] dictionary."""
        return cls(
            executable=d.get("executable", "marxan"),
            timeout_s=d.get("timeout_s", 600.0),
            max_attempts=d.get("max_attempts", 3),
            max_failure_fraction=d.get("max_failure_fraction", 0.5),
            poll_interval_s=d.get("poll_interval_s", 0.05),
            base_seed=d.get("base_seed"),
            num_iterations=d.get("num_iterations", 1000000),
            num_temp=d.get("num_temp", 10000),
            run_mode=d.get("run_mode", 1),
            prop_adjust=d.get("prop_adjust", 0.5),
            keep_workdirs=d.get("keep_workdirs", False),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# ⚡ 4. PARALLEL PROCESSING CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ParallelConfig:
    """
    Configuration for scenario-level parallelism (run_scenarios).

    Attributes:
        max_workers: Number of concurrent scenarios (-1 = auto).
        optimal_workers_default: Default worker count when auto-detecting.
        backend: Joblib backend ("threading" shares the in-memory cache).
        verbose: Joblib verbosity level (0-10).
    """

    max_workers: int = -1
    optimal_workers_default: int = 4
    backend: str = "threading"
    verbose: int = 0

    def __post_init__(self) -> None:
        # Process backends would give each worker its own copy of the cache
        if self.backend not in ("threading", "sequential"):
            raise ValueError(
                f"backend must be 'threading' or 'sequential', got {self.backend}"
            )
        if self.max_workers == 0 or self.max_workers < -1:
            raise ValueError(f"max_workers must be -1 or >= 1, got {self.max_workers}")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ParallelConfig":
        """Create ParallelConfig from CONFIG['parallel'] dictionary."""
        return cls(
            max_workers=d.get("max_workers", -1),
            optimal_workers_default=d.get("optimal_workers_default", 4),
            backend=d.get("backend", "threading"),
            verbose=d.get("verbose", 0),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# 🎯 5. SCORE WEIGHTS CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ScoreWeightsConfig:
    """
    Weights combining solution metrics into a single score.

    score = cost_weight * cost
          + boundary_weight * BLM * boundary
          + shortfall_weight * sum(spf_j * shortfall_j)
    """

    cost_weight: float = 1.0
    boundary_weight: float = 1.0
    shortfall_weight: float = 1.0

    def __post_init__(self) -> None:
        for name in ("cost_weight", "boundary_weight", "shortfall_weight"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ScoreWeightsConfig":
        """Create ScoreWeightsConfig from CONFIG['score'] dictionary."""
        return cls(
            cost_weight=d.get("cost_weight", 1.0),
            boundary_weight=d.get("boundary_weight", 1.0),
            shortfall_weight=d.get("shortfall_weight", 1.0),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# 📊 6. ANALYTICS CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

LINKAGE_METHODS = ("single", "complete", "average", "weighted", "ward")
DISTANCE_SUBJECTS = ("selection", "amount")


@dataclass(frozen=True)
class AnalyticsConfig:
    """
    Defaults for portfolio distance, clustering and ordination.

    Attributes:
        distance_method: scipy.spatial.distance metric name.
        distance_subject: "selection" (unit vectors) or "amount" (feature amounts).
        linkage: Default agglomerative linkage method.
        tie_tolerance: Merge heights within this tolerance are ties.
        n_components: Default ordination dimensionality.
        mds_seed: Seed for SMACOF stress minimisation.
        mds_max_iter: SMACOF iteration limit.
        mds_eps: SMACOF convergence tolerance.
    """

    distance_method: str = "braycurtis"
    distance_subject: str = "selection"
    linkage: str = "average"
    tie_tolerance: float = 1e-12
    n_components: int = 2
    mds_seed: int = 0
    mds_max_iter: int = 300
    mds_eps: float = 1e-6

    def __post_init__(self) -> None:
        if self.linkage not in LINKAGE_METHODS:
            raise ValueError(
                f"linkage must be one of {LINKAGE_METHODS}, got {self.linkage}"
            )
        if self.distance_subject not in DISTANCE_SUBJECTS:
            raise ValueError(
                f"distance_subject must be one of {DISTANCE_SUBJECTS}, "
                f"got {self.distance_subject}"
            )
        if self.n_components < 1:
            raise ValueError(f"n_components must be >= 1, got {self.n_components}")
        if self.tie_tolerance < 0:
            raise ValueError(f"tie_tolerance must be >= 0, got {self.tie_tolerance}")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AnalyticsConfig":
        """Create AnalyticsConfig from CONFIG['analytics'] dictionary."""
        return cls(
            distance_method=d.get("distance_method", "braycurtis"),
            distance_subject=d.get("distance_subject", "selection"),
            linkage=d.get("linkage", "average"),
            tie_tolerance=d.get("tie_tolerance", 1e-12),
            n_components=d.get("n_components", 2),
            mds_seed=d.get("mds_seed", 0),
            mds_max_iter=d.get("mds_max_iter", 300),
            mds_eps=d.get("mds_eps", 1e-6),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# 🗺️ 7. PROBLEM DEFAULTS + LOGGING
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ProblemDefaultsConfig:
    """Defaults for ProblemOptions when assemble() receives none."""

    blm: float = 0.0
    replicates: int = 10
    concurrency: int = 1
    seed: Optional[int] = None
    name: str = "scenario"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ProblemDefaultsConfig":
        """Create ProblemDefaultsConfig from CONFIG['problem_defaults']."""
        return cls(
            blm=d.get("blm", 0.0),
            replicates=d.get("replicates", 10),
            concurrency=d.get("concurrency", 1),
            seed=d.get("seed"),
            name=d.get("name", "scenario"),
        )


@dataclass(frozen=True)
class LoggingConfig:
    """Log folder and level."""

    log_dir: str = "logs"
    level: str = "INFO"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LoggingConfig":
        """Create LoggingConfig from CONFIG['logging'] dictionary."""
        return cls(log_dir=d.get("log_dir", "logs"), level=d.get("level", "INFO"))

    @property
    def log_path(self) -> Path:
        """Get log directory as relative Path object."""
        return Path(self.log_dir)


# ═══════════════════════════════════════════════════════════════════════════════
# 🎯 8. APP CONFIG (MASTER FACADE)
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class AppConfig:
    """
    Master configuration object for portfolio runs.

    Create it once at application startup using AppConfig.from_dict(CONFIG)
    and pass it to the functions that need settings. Every public entry point
    also accepts the raw dictionary.

    Example:
        from Marxan_Portfolio.config import CONFIG
        from Marxan_Portfolio.config_types import AppConfig

        app_config = AppConfig.from_dict(CONFIG)
    """

    fingerprint: FingerprintConfig = field(default_factory=FingerprintConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    score: ScoreWeightsConfig = field(default_factory=ScoreWeightsConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    problem_defaults: ProblemDefaultsConfig = field(
        default_factory=ProblemDefaultsConfig
    )
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    _raw_config: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "AppConfig":
        """
        Create AppConfig from the CONFIG dictionary.

        Missing sections fall back to dataclass defaults, so partial
        dictionaries (e.g. {"solver": {"max_attempts": 5}}) are accepted.
        """
        return cls(
            fingerprint=FingerprintConfig.from_dict(config_dict.get("fingerprint", {})),
            cache=CacheConfig.from_dict(config_dict.get("cache", {})),
            solver=SolverConfig.from_dict(config_dict.get("solver", {})),
            parallel=ParallelConfig.from_dict(config_dict.get("parallel", {})),
            score=ScoreWeightsConfig.from_dict(config_dict.get("score", {})),
            analytics=AnalyticsConfig.from_dict(config_dict.get("analytics", {})),
            problem_defaults=ProblemDefaultsConfig.from_dict(
                config_dict.get("problem_defaults", {})
            ),
            logging=LoggingConfig.from_dict(config_dict.get("logging", {})),
            _raw_config=config_dict,
        )

    def get_raw(self, key: str, default: Any = None) -> Any:
        """Get a value from the raw CONFIG dictionary."""
        return self._raw_config.get(key, default)


def normalize_config(
    config: Union[Dict[str, Any], AppConfig, None] = None,
) -> AppConfig:
    """
    Normalize config to AppConfig for internal use.

    Accepts a raw CONFIG dictionary, an AppConfig object, or None (the
    module-level CONFIG from config.py).
    """
    if isinstance(config, AppConfig):
        return config
    if config is None:
        from Marxan_Portfolio.config import CONFIG

        return AppConfig.from_dict(CONFIG)
    return AppConfig.from_dict(config)
