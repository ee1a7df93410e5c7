"""
Cooperative cancellation for solver runs.

A CancellationToken is shared by the caller, the invoker's worker threads and
every SolverProcess handle. cancel() is idempotent and thread-safe.
"""

import threading
from enum import Enum
from typing import Optional


class CancelMode(Enum):
    """What run() does once its token is cancelled."""

    FAIL = "fail"  # Raise RunCancelledError, no Portfolio
    PARTIAL = "partial"  # Return a Portfolio of the slots that completed


class CancellationToken:
    """Thread-safe cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to timeout seconds; True once cancelled."""
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"
