"""
Marxan Portfolio Parallel Processing Module

Shared preprocessing cache and concurrent scenario execution:
- artifact_cache.py: Content-addressed artifact cache (single-flight, LRU,
  reference counting, optional filelock disk layer)
- scenario_orchestrator.py: joblib-driven concurrent scenario runs
  (import from the module directly: it depends on the solver invoker)
"""

from Marxan_Portfolio.parallel.artifact_cache import (
    ArtifactCache,
    CacheEntry,
    CacheStats,
    EvictionPolicy,
    configure_default_cache,
    estimate_nbytes,
    get_default_cache,
    shutdown_default_cache,
)

__all__ = [
    "ArtifactCache",
    "CacheEntry",
    "CacheStats",
    "EvictionPolicy",
    "configure_default_cache",
    "estimate_nbytes",
    "get_default_cache",
    "shutdown_default_cache",
]
