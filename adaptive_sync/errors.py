"""
Error taxonomy for the adaptive sync engine.

Control-surface misuse (AlreadyRunningError, NoRunInProgressError) is a normal outcome,
not a failure of the search algorithm. Search failures are split into transient ones,
which are retried per cell, and fatal ones, which end the whole run.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by adaptive_sync."""


class ValidationError(SyncError):
    """Bad region, mode or budget. Raised before a run starts."""


class AlreadyRunningError(SyncError):
    def __init__(self, mode: Optional[str] = None):
        self.mode = mode
        super().__init__("sync already in progress" + (f" (mode={mode})" if mode else ""))


class NoRunInProgressError(SyncError):
    def __init__(self):
        super().__init__("no run in progress")


class SearchError(SyncError):
    """Failure reported by the place search client."""

    def __init__(self, message: str, status_code: Optional[int] = None, api_calls: int = 1):
        super().__init__(message)
        self.status_code = status_code
        self.api_calls = api_calls


class TransientSearchError(SearchError):
    """Network, timeout or upstream rate limiting. Safe to retry."""


class FatalSearchError(SearchError):
    """Authentication or configuration failure. Aborts the run."""


class UpsertError(SyncError):
    """The shop store could not persist a batch."""


class RunCancelled(SyncError):
    """Raised at a suspension point once the run's cancellation token fires."""

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)


class HistoryError(SyncError):
    """The sync history store could not be read."""
