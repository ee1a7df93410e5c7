"""
Preprocessing Artifact Cache Module

ARCHITECTURAL OVERVIEW:
=======================
Responsibility: Content-addressed store of expensive derived artifacts
(boundary-length matrix, incidence matrix, unit/feature tables) shared across
runs and across derived ProblemDefinitions.

Key Insight: An artifact fingerprint only covers the components the artifact
depends on. Derived problems whose overlays leave those components untouched
carry the same fingerprint and therefore hit the same entry.

Key Functions:
- ArtifactCache.get_or_compute(): Single-flight check→compute→store
- ArtifactCache.evict(): LRU eviction under an EvictionPolicy (never pinned)
- ArtifactCache.attach(): Reference-count fingerprints of a live problem
- ArtifactCache.pinned(): Pin a problem's fingerprints during a run
- get_default_cache() / shutdown_default_cache(): Process-wide instance

Concurrency Model:
- One registry lock guards entries, in-flight futures, refcounts and pins
- The first caller for a fingerprint computes OUTSIDE the registry lock;
  concurrent callers for the same fingerprint wait on its Future and receive
  the same artifact (or the same CacheComputationError)
- Unrelated fingerprints compute fully in parallel
- Optional disk layer: per-fingerprint filelock makes computation at-most-once
  across processes sharing cache_dir (pickle files {fingerprint}.pkl)

For Navigation: Use VS Code outline (Ctrl+Shift+O)
"""

import logging
import os
import pickle
import sys
import threading
import time
import weakref
from collections import OrderedDict, deque
from concurrent.futures import Future, wait
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import filelock
import numpy as np
import pandas as pd
from scipy import sparse

from Marxan_Portfolio.config_types import AppConfig, normalize_config
from Marxan_Portfolio.exceptions import CacheClosedError, CacheComputationError
from Marxan_Portfolio.models.data_models import ProblemDefinition

logger = logging.getLogger("MXP.Cache")


# ═══════════════════════════════════════════════════════════════════════════
# 📊 CACHE STATISTICS
# ═══════════════════════════════════════════════════════════════════════════


@dataclass
class CacheStats:
    """Statistics for cache performance tracking."""

    hits: int = 0
    misses: int = 0
    shared_waits: int = 0
    disk_hits: int = 0
    failures: int = 0
    evictions: int = 0
    released: int = 0
    lock_timeouts: int = 0
    corrupted_entries: int = 0
    total_compute_time_s: float = 0.0
    total_wait_time_s: float = 0.0

    def hit_rate(self) -> float:
        """Calculate cache hit rate as percentage."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary for logging."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "shared_waits": self.shared_waits,
            "disk_hits": self.disk_hits,
            "failures": self.failures,
            "evictions": self.evictions,
            "released": self.released,
            "lock_timeouts": self.lock_timeouts,
            "corrupted_entries": self.corrupted_entries,
            "hit_rate_pct": round(self.hit_rate(), 1),
            "total_compute_time_s": round(self.total_compute_time_s, 2),
            "total_wait_time_s": round(self.total_wait_time_s, 2),
        }


# ═══════════════════════════════════════════════════════════════════════════
# 📦 ENTRIES + POLICY
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class CacheEntry:
    """Immutable cached artifact plus provenance."""

    fingerprint: str
    artifact: Any
    kind: Optional[str]
    nbytes: int
    compute_time_s: float
    created_at: float
    source: str  # "computed" | "disk"


@dataclass(frozen=True)
class EvictionPolicy:
    """
    Bounded-memory eviction policy.

    Attributes:
        max_entries: Keep at most this many entries (None = no entry bound).
        max_bytes: Keep the estimated size at or below this (None = no bound).
        drop_unreferenced: Also drop every entry no live problem references.
    """

    max_entries: Optional[int] = None
    max_bytes: Optional[int] = None
    drop_unreferenced: bool = False


def estimate_nbytes(artifact: Any) -> int:
    """Rough in-memory size of an artifact for the byte budget."""
    if isinstance(artifact, np.ndarray):
        return int(artifact.nbytes)
    if sparse.issparse(artifact):
        csr = artifact.tocsr()
        return int(csr.data.nbytes + csr.indices.nbytes + csr.indptr.nbytes)
    if isinstance(artifact, (pd.DataFrame, pd.Series)):
        usage = artifact.memory_usage(deep=True)
        return int(usage.sum() if hasattr(usage, "sum") else usage)
    if isinstance(artifact, (tuple, list)):
        return sum(estimate_nbytes(a) for a in artifact) + sys.getsizeof(artifact)
    return int(sys.getsizeof(artifact))


# ═══════════════════════════════════════════════════════════════════════════
# 🏗️ ARTIFACT CACHE
# ═══════════════════════════════════════════════════════════════════════════


class ArtifactCache:
    """
    Content-addressed artifact cache with single-flight computation.

    Example:
        cache = ArtifactCache(max_entries=64)
        matrix = cache.get_or_compute(
            problem.fingerprint(ArtifactKind.BOUNDARY_MATRIX),
            lambda: build_boundary_matrix(problem),
            kind="boundary_matrix",
        )
    """

    def __init__(
        self,
        max_entries: int = 256,
        max_bytes: int = 512 * 1024 * 1024,
        cache_dir: Optional[Union[str, Path]] = None,
        lock_timeout_s: float = 600.0,
        log_cache_hits: bool = True,
    ):
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.lock_timeout_s = lock_timeout_s
        self.log_cache_hits = log_cache_hits
        self.stats = CacheStats()

        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, Future] = {}
        self._refcounts: Dict[str, int] = {}
        self._pins: Dict[str, int] = {}
        self._attached: "weakref.WeakSet[ProblemDefinition]" = weakref.WeakSet()
        # Filled by weakref finalizers; drained under the registry lock
        self._pending_releases: deque = deque()
        self._closed = False

        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

        logger.debug(
            f"ArtifactCache initialized: max_entries={max_entries}, "
            f"max_bytes={max_bytes}, cache_dir={self.cache_dir}"
        )

    @classmethod
    def from_config(
        cls, config: Union[Dict[str, Any], AppConfig, None] = None
    ) -> "ArtifactCache":
        """Create a cache from CONFIG['cache'] settings."""
        cache_config = normalize_config(config).cache
        return cls(
            max_entries=cache_config.max_entries,
            max_bytes=cache_config.max_bytes,
            cache_dir=cache_config.cache_dir,
            lock_timeout_s=cache_config.lock_timeout_s,
            log_cache_hits=cache_config.log_cache_hits,
        )

    # ───────────────────────────────────────────────────────────────────
    # Core access
    # ───────────────────────────────────────────────────────────────────

    def get_or_compute(
        self,
        fingerprint: str,
        compute_fn: Callable[[], Any],
        kind: Optional[str] = None,
    ) -> Any:
        """
        Return the artifact for a fingerprint, computing it at most once.

        The first caller for an absent fingerprint runs compute_fn while other
        callers for the same fingerprint block and receive the same object.
        If compute_fn raises, nothing is stored and every waiter receives the
        same CacheComputationError; the next caller retries from scratch.

        Args:
            fingerprint: Content fingerprint identifying the artifact.
            compute_fn: Zero-argument callable producing the artifact.
            kind: Optional artifact kind label for provenance and logging.

        Returns:
            The cached or freshly computed artifact.

        Raises:
            CacheComputationError: compute_fn (or the disk layer) failed.
            CacheClosedError: The cache has been shut down.
        """
        label = kind or "artifact"
        wait_start = time.perf_counter()
        with self._lock:
            if self._closed:
                raise CacheClosedError("ArtifactCache has been shut down")
            self._drain_releases_locked()
            entry = self._entries.get(fingerprint)
            if entry is not None:
                self._entries.move_to_end(fingerprint)
                self.stats.hits += 1
                self._log_hit(f"   ♻️ REUSING cached {label} ({fingerprint})")
                return entry.artifact
            future = self._inflight.get(fingerprint)
            is_leader = future is None
            if is_leader:
                future = Future()
                self._inflight[fingerprint] = future
                self.stats.misses += 1

        if is_leader:
            return self._compute_as_leader(fingerprint, compute_fn, kind, future)

        # Another caller is computing this fingerprint: wait for its outcome
        try:
            artifact = future.result()
        finally:
            waited = time.perf_counter() - wait_start
            with self._lock:
                self.stats.total_wait_time_s += waited
        with self._lock:
            self.stats.hits += 1
            self.stats.shared_waits += 1
        self._log_hit(f"   ♻️ Shared in-flight {label} ({fingerprint}), waited {waited:.2f}s")
        return artifact

    def _compute_as_leader(
        self,
        fingerprint: str,
        compute_fn: Callable[[], Any],
        kind: Optional[str],
        future: Future,
    ) -> Any:
        label = kind or "artifact"
        logger.debug(f"   📊 Computing {label} ({fingerprint})...")
        try:
            artifact, source, compute_time = self._load_or_compute(fingerprint, compute_fn)
        except BaseException as exc:
            if isinstance(exc, CacheComputationError):
                error = exc
            else:
                error = CacheComputationError(fingerprint, exc)
            with self._lock:
                self._inflight.pop(fingerprint, None)
                self.stats.failures += 1
            future.set_exception(error)
            logger.warning(f"⚠️ Computation of {label} ({fingerprint}) failed: {exc}")
            if error is exc or not isinstance(exc, Exception):
                raise
            raise error from exc

        entry = CacheEntry(
            fingerprint=fingerprint,
            artifact=artifact,
            kind=kind,
            nbytes=estimate_nbytes(artifact),
            compute_time_s=compute_time,
            created_at=time.time(),
            source=source,
        )
        with self._lock:
            self._entries[fingerprint] = entry
            self._inflight.pop(fingerprint, None)
            self.stats.total_compute_time_s += compute_time
            if source == "disk":
                self.stats.disk_hits += 1
            self._enforce_budget_locked(keep=fingerprint)
        future.set_result(artifact)
        logger.debug(
            f"   💾 Cached {label} ({fingerprint}) from {source} in {compute_time:.3f}s"
        )
        return artifact

    def _load_or_compute(
        self, fingerprint: str, compute_fn: Callable[[], Any]
    ) -> Tuple[Any, str, float]:
        """Compute directly, or through the disk layer when cache_dir is set."""
        if self.cache_dir is None:
            start = time.perf_counter()
            artifact = compute_fn()
            return artifact, "computed", time.perf_counter() - start

        cache_file = self.cache_dir / f"{fingerprint}.pkl"
        lock_file = self.cache_dir / f"{fingerprint}.lock"
        lock = filelock.FileLock(str(lock_file), timeout=self.lock_timeout_s)
        try:
            with lock:
                if cache_file.exists():
                    try:
                        with open(cache_file, "rb") as f:
                            artifact = pickle.load(f)
                        return artifact, "disk", 0.0
                    except Exception as e:
                        logger.warning(f"⚠️ Corrupted cache file for {fingerprint}: {e}")
                        with self._lock:
                            self.stats.corrupted_entries += 1
                        cache_file.unlink(missing_ok=True)

                start = time.perf_counter()
                artifact = compute_fn()
                compute_time = time.perf_counter() - start

                try:
                    tmp_file = cache_file.with_suffix(f".{os.getpid()}.tmp")
                    with open(tmp_file, "wb") as f:
                        pickle.dump(artifact, f, protocol=pickle.HIGHEST_PROTOCOL)
                    os.replace(tmp_file, cache_file)
                except Exception as e:
                    # Disk write failure is non-fatal - memory entry still stored
                    logger.warning(f"⚠️ Failed to persist {fingerprint}: {e}")
                return artifact, "computed", compute_time
        except filelock.Timeout:
            logger.warning(
                f"⏱️ Lock timeout for {fingerprint} after {self.lock_timeout_s}s "
                f"- computing without disk cache"
            )
            with self._lock:
                self.stats.lock_timeouts += 1
            start = time.perf_counter()
            artifact = compute_fn()
            return artifact, "computed", time.perf_counter() - start

    def _log_hit(self, message: str) -> None:
        if self.log_cache_hits:
            logger.info(message)
        else:
            logger.debug(message)

    # ───────────────────────────────────────────────────────────────────
    # References, pins, eviction
    # ───────────────────────────────────────────────────────────────────

    def attach(self, problem: ProblemDefinition) -> None:
        """
        Reference-count the fingerprints of a live ProblemDefinition.

        When the problem is garbage collected its references are released;
        entries whose count drops to zero become the first candidates for
        budget eviction and for EvictionPolicy(drop_unreferenced=True).
        Attaching the same problem twice has no effect.
        """
        fingerprints = tuple(problem.fingerprints.values())
        with self._lock:
            if problem in self._attached:
                return
            self._attached.add(problem)
            for fp in fingerprints:
                self._refcounts[fp] = self._refcounts.get(fp, 0) + 1
        weakref.finalize(problem, self._pending_releases.append, fingerprints)

    def refcount(self, fingerprint: str) -> int:
        with self._lock:
            self._drain_releases_locked()
            return self._refcounts.get(fingerprint, 0)

    @contextmanager
    def pinned(self, problem: ProblemDefinition) -> Iterator[None]:
        """Pin a problem's fingerprints for the duration of an operation."""
        fingerprints = tuple(problem.fingerprints.values())
        with self._lock:
            for fp in fingerprints:
                self._pins[fp] = self._pins.get(fp, 0) + 1
        try:
            yield
        finally:
            with self._lock:
                for fp in fingerprints:
                    remaining = self._pins.get(fp, 0) - 1
                    if remaining > 0:
                        self._pins[fp] = remaining
                    else:
                        self._pins.pop(fp, None)

    def is_pinned(self, fingerprint: str) -> bool:
        with self._lock:
            return self._pins.get(fingerprint, 0) > 0

    def evict(self, policy: Optional[EvictionPolicy] = None) -> List[str]:
        """
        Evict least-recently-used entries until the policy is satisfied.

        Pinned entries are never evicted. With no policy, the cache's own
        max_entries/max_bytes budget is applied.

        Returns:
            Fingerprints that were evicted, oldest first.
        """
        policy = policy or EvictionPolicy(self.max_entries, self.max_bytes)
        with self._lock:
            self._drain_releases_locked()
            evicted: List[str] = []
            if policy.drop_unreferenced:
                for fp in list(self._entries):
                    if self._refcounts.get(fp, 0) == 0 and not self._pins.get(fp):
                        del self._entries[fp]
                        evicted.append(fp)
            evicted.extend(
                self._evict_lru_locked(policy.max_entries, policy.max_bytes, keep=None)
            )
            self.stats.evictions += len(evicted)
        if evicted:
            logger.info(f"🧹 Evicted {len(evicted)} cache entries")
        return evicted

    def _enforce_budget_locked(self, keep: Optional[str]) -> None:
        self._drain_releases_locked()
        evicted = self._evict_lru_locked(self.max_entries, self.max_bytes, keep=keep)
        self.stats.evictions += len(evicted)
        if evicted:
            logger.debug(f"   🧹 Budget eviction: {evicted}")

    def _evict_lru_locked(
        self, max_entries: Optional[int], max_bytes: Optional[int], keep: Optional[str]
    ) -> List[str]:
        def over_budget() -> bool:
            if max_entries is not None and len(self._entries) > max_entries:
                return True
            if max_bytes is not None and self._total_bytes_locked() > max_bytes:
                return True
            return False

        # Unreferenced entries go first, each group oldest access first
        candidates = sorted(
            self._entries, key=lambda fp: self._refcounts.get(fp, 0) > 0
        )
        evicted: List[str] = []
        for fp in candidates:
            if not over_budget():
                break
            if fp == keep or self._pins.get(fp, 0) > 0:
                continue
            del self._entries[fp]
            evicted.append(fp)
        return evicted

    def _drain_releases_locked(self) -> None:
        while self._pending_releases:
            fingerprints = self._pending_releases.popleft()
            for fp in fingerprints:
                remaining = self._refcounts.get(fp, 0) - 1
                if remaining > 0:
                    self._refcounts[fp] = remaining
                    continue
                self._refcounts.pop(fp, None)
                if fp in self._entries:
                    # Kept until the budget or drop_unreferenced evicts it
                    self.stats.released += 1
                    logger.debug(f"   🗑️ Entry {fp} is no longer referenced")

    def _total_bytes_locked(self) -> int:
        return sum(e.nbytes for e in self._entries.values())

    # ───────────────────────────────────────────────────────────────────
    # Introspection + lifecycle
    # ───────────────────────────────────────────────────────────────────

    def __contains__(self, fingerprint: str) -> bool:
        with self._lock:
            self._drain_releases_locked()
            return fingerprint in self._entries

    def __len__(self) -> int:
        with self._lock:
            self._drain_releases_locked()
            return len(self._entries)

    def entry(self, fingerprint: str) -> Optional[CacheEntry]:
        """Entry with provenance, without touching LRU order."""
        with self._lock:
            return self._entries.get(fingerprint)

    def fingerprints(self) -> List[str]:
        """Cached fingerprints, least recently used first."""
        with self._lock:
            self._drain_releases_locked()
            return list(self._entries)

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return self._total_bytes_locked()

    @property
    def closed(self) -> bool:
        return self._closed

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics as dictionary."""
        return self.stats.to_dict()

    def log_summary(self, level: int = logging.INFO) -> None:
        """Log cache statistics summary."""
        stats = self.stats
        logger.log(
            level,
            f"Artifact Cache Summary: {stats.hits} hits, {stats.misses} misses "
            f"({stats.hit_rate():.1f}% hit rate), {stats.disk_hits} disk hits, "
            f"{stats.failures} failures, {stats.evictions} evictions, "
            f"compute={stats.total_compute_time_s:.1f}s, "
            f"wait={stats.total_wait_time_s:.1f}s",
        )

    def shutdown(self, wait_for_inflight: bool = True) -> None:
        """
        Stop accepting requests, drain in-flight computations, clear entries.

        The disk layer (if any) is left in place for other processes.
        """
        with self._lock:
            self._closed = True
            pending = list(self._inflight.values())
        if wait_for_inflight and pending:
            logger.info(f"⏳ Draining {len(pending)} in-flight computation(s)...")
            wait(pending)
        self.log_summary(level=logging.DEBUG)
        with self._lock:
            self._entries.clear()
            self._refcounts.clear()
            self._pending_releases.clear()
        logger.debug("ArtifactCache shut down")


# ═══════════════════════════════════════════════════════════════════════════
# 🏭 PROCESS-WIDE INSTANCE
# ═══════════════════════════════════════════════════════════════════════════

_DEFAULT_CACHE: Optional[ArtifactCache] = None
_DEFAULT_CACHE_LOCK = threading.Lock()


def get_default_cache(
    config: Union[Dict[str, Any], AppConfig, None] = None,
) -> ArtifactCache:
    """Process-wide cache, created from config on first use."""
    global _DEFAULT_CACHE
    with _DEFAULT_CACHE_LOCK:
        if _DEFAULT_CACHE is None or _DEFAULT_CACHE.closed:
            _DEFAULT_CACHE = ArtifactCache.from_config(config)
            logger.info("🗂️ Created process-wide artifact cache")
        return _DEFAULT_CACHE


def configure_default_cache(
    config: Union[Dict[str, Any], AppConfig, None] = None,
) -> ArtifactCache:
    """Replace the process-wide cache (the previous one is shut down)."""
    global _DEFAULT_CACHE
    with _DEFAULT_CACHE_LOCK:
        previous = _DEFAULT_CACHE
        _DEFAULT_CACHE = ArtifactCache.from_config(config)
    if previous is not None:
        previous.shutdown()
    return _DEFAULT_CACHE


def shutdown_default_cache() -> None:
    """Drain and discard the process-wide cache."""
    global _DEFAULT_CACHE
    with _DEFAULT_CACHE_LOCK:
        previous, _DEFAULT_CACHE = _DEFAULT_CACHE, None
    if previous is not None:
        previous.shutdown()
