"""
Error taxonomy for the sync engine.

Transient fetch errors are retried with backoff, permanent fetch errors fail
the run immediately. Review errors are reported back to the operator without
mutating any state.
"""

from typing import Any, Dict, Optional


class EventSyncError(Exception):
    """Base class for sync engine errors."""

    pass


class FetchError(EventSyncError):
    """
    A fetch attempt did not produce usable content.

    Attributes:
        status_code: HTTP-like status when the remote answered, else None
        transient: Whether retrying the same request may succeed
    """

    transient = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Timeout, transport failure or 5xx-equivalent. Retried up to retry_max."""

    transient = True


class PermanentFetchError(FetchError):
    """Malformed URL, unsupported scheme or 4xx-equivalent. Never retried."""

    transient = False


class StrategyConfigError(EventSyncError):
    """A source's strategy configuration does not match its versioned schema."""

    def __init__(self, message: str, errors: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}


class CandidateValidationError(EventSyncError):
    """An extractor candidate names an unknown field or carries an unusable value."""

    pass


class ReviewError(EventSyncError):
    """Base class for review queue errors."""

    pass


class ReviewValidationError(ReviewError):
    """Manually supplied values were rejected. Nothing was changed."""

    def __init__(self, message: str, errors: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}


class InvalidReviewTransition(ReviewError):
    """The requested status change is not allowed from the entry's current status."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move raw crawl entry from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested
