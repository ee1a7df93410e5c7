"""
Exception hierarchy for portfolio runs.

Every error raised by the package derives from MarxanPortfolioError so that
callers can catch the whole family at one seam.
"""

from typing import Optional, Sequence, Tuple


class MarxanPortfolioError(Exception):
    """Base class for all package errors."""


class ValidationError(MarxanPortfolioError, ValueError):
    """Malformed assembly or overlay input. Never retried."""

    def __init__(self, message: str, problems: Optional[Sequence[str]] = None):
        self.problems: Tuple[str, ...] = tuple(problems or (message,))
        super().__init__(message)


class CacheComputationError(MarxanPortfolioError):
    """The function computing a cached artifact failed.

    The same instance is delivered to every concurrent waiter for the
    fingerprint. Nothing is stored, so the next caller recomputes.
    """

    def __init__(self, fingerprint: str, cause: BaseException):
        self.fingerprint = fingerprint
        self.cause = cause
        super().__init__(
            f"Computation for fingerprint {fingerprint} failed: "
            f"{type(cause).__name__}: {cause}"
        )


class CacheClosedError(MarxanPortfolioError):
    """The cache was shut down and no longer accepts requests."""


class SolverAttemptError(MarxanPortfolioError):
    """A single replicate attempt failed (exit code, malformed output, timeout)."""

    def __init__(self, message: str, slot: Optional[int] = None, attempt: Optional[int] = None):
        self.slot = slot
        self.attempt = attempt
        super().__init__(message)


class InsufficientSolutionsError(MarxanPortfolioError):
    """Too many replicate slots failed permanently; no Portfolio is produced."""

    def __init__(self, failed_replicates: Sequence[int], replicate_count: int, threshold: float):
        self.failed_replicates = tuple(failed_replicates)
        self.replicate_count = replicate_count
        self.threshold = threshold
        super().__init__(
            f"{len(self.failed_replicates)}/{replicate_count} replicate slots failed "
            f"(threshold {threshold:.0%}): {list(self.failed_replicates)}"
        )


class RunCancelledError(MarxanPortfolioError):
    """A run was cancelled in FAIL mode; no Portfolio is produced."""

    def __init__(self, completed_replicates: Sequence[int]):
        self.completed_replicates = tuple(completed_replicates)
        super().__init__(
            f"Run cancelled after {len(self.completed_replicates)} completed slots"
        )


class DegenerateInputError(MarxanPortfolioError):
    """Analytics input makes clustering or ordination mathematically undefined."""


class AttemptCancelledError(MarxanPortfolioError):
    """A running attempt observed cancellation and stopped. Never retried."""
