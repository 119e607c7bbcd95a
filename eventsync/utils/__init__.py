"""
Utility helpers for the eventsync app.
"""

from eventsync.utils.normalization import (
    canonicalize_name,
    find_first_date,
    normalize_registration_status,
    parse_race_date,
)
from eventsync.utils.scheduling import calculate_backoff_seconds, calculate_next_check

__all__ = [
    "canonicalize_name",
    "find_first_date",
    "normalize_registration_status",
    "parse_race_date",
    "calculate_backoff_seconds",
    "calculate_next_check",
]
