"""
Scheduling utilities for binding checks and retry backoff.

Provides the exponential backoff used between fetch attempts inside one
sync run, the next-check calculation applied after every run and the
time budget a single run must fit in.
"""

from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone

# Fallback cap when settings do not define SYNC_MAX_BACKOFF_SECONDS (10 minutes)
MAX_BACKOFF_SECONDS = 600


def calculate_backoff_seconds(
    base_seconds: float,
    attempt: int,
    max_seconds: Optional[float] = None,
) -> float:
    """
    Calculate the wait before retrying after a failed attempt.

    Applies exponential backoff on the source's base delay:
    - attempt 1: base
    - attempt 2: 2x base
    - attempt n: 2^(n-1) x base (capped at max_seconds)

    Args:
        base_seconds: Source's retry_backoff_seconds
        attempt: The attempt number that just failed (1-based)
        max_seconds: Cap for a single wait (defaults to SYNC_MAX_BACKOFF_SECONDS)

    Returns:
        Seconds to sleep before the next attempt
    """
    if max_seconds is None:
        max_seconds = getattr(settings, "SYNC_MAX_BACKOFF_SECONDS", MAX_BACKOFF_SECONDS)

    if base_seconds <= 0 or attempt < 1:
        return 0

    delay = base_seconds * (2 ** (attempt - 1))
    return min(delay, max_seconds)


def calculate_next_check(min_interval_seconds: int, from_time=None):
    """
    Calculate when a binding becomes due again after a run.

    Args:
        min_interval_seconds: Source's minimum re-check interval
        from_time: Base time to calculate from (defaults to now)

    Returns:
        datetime of the next due check
    """
    if from_time is None:
        from_time = timezone.now()

    return from_time + timedelta(seconds=max(min_interval_seconds or 0, 0))


def run_time_budget_seconds() -> float:
    """
    Longest a single sync run may take.

    Stays below both the stale-claim window (after which another worker may
    take the binding over) and the Celery soft time limit, minus
    SYNC_RUN_DEADLINE_MARGIN_SECONDS.
    """
    limits = [settings.SYNC_LOCK_STALE_SECONDS]
    soft_limit = getattr(settings, "CELERY_TASK_SOFT_TIME_LIMIT", None)
    if soft_limit:
        limits.append(soft_limit)
    margin = getattr(settings, "SYNC_RUN_DEADLINE_MARGIN_SECONDS", 60)
    return max(min(limits) - margin, 0)


def worst_case_run_seconds(
    retry_max: int,
    retry_backoff_seconds: float,
    request_timeout_ms: int,
    max_backoff_seconds: Optional[float] = None,
    timeout_grace_seconds: Optional[float] = None,
) -> float:
    """
    Upper bound on the fetch phase of one run.

    Every attempt uses its full timeout plus grace, and every retry waits its
    full (capped) backoff.
    """
    if timeout_grace_seconds is None:
        timeout_grace_seconds = getattr(settings, "SYNC_FETCH_TIMEOUT_GRACE_SECONDS", 0)
    waits = sum(
        calculate_backoff_seconds(retry_backoff_seconds, attempt, max_backoff_seconds)
        for attempt in range(1, max(retry_max, 1))
    )
    per_attempt = request_timeout_ms / 1000.0 + timeout_grace_seconds
    return waits + max(retry_max, 1) * per_attempt
