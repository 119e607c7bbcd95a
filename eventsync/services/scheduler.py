"""
Scheduler: decides which bindings are due for a sync run.

A binding is due when its source is active and next_check_at is unset or
not in the future. Due bindings are ordered by source priority (highest
first), then staleness (never checked first, then oldest last_checked_at),
then primary flag and creation time.
"""

from typing import List, Optional

from django.db.models import F, Q
from django.utils import timezone

from eventsync.models import SourceBinding

BINDING_ORDERING = [
    F("source__priority").desc(),
    F("last_checked_at").asc(nulls_first=True),
    F("is_primary").desc(),
    "created_at",
    "id",
]


def due_bindings(now=None, limit: Optional[int] = None) -> List[SourceBinding]:
    """
    Return bindings due for sync, most important first.

    Args:
        now: Reference time (default: timezone.now())
        limit: Optional cap on the number of bindings returned
    """
    now = now or timezone.now()
    queryset = (
        SourceBinding.objects.select_related("source", "event")
        .filter(source__is_active=True)
        .filter(Q(next_check_at__isnull=True) | Q(next_check_at__lte=now))
        .order_by(*BINDING_ORDERING)
    )
    if limit:
        queryset = queryset[:limit]
    return list(queryset)


def active_bindings() -> List[SourceBinding]:
    """Return every binding of an active source, ignoring next_check_at."""
    return list(
        SourceBinding.objects.select_related("source", "event")
        .filter(source__is_active=True)
        .order_by(*BINDING_ORDERING)
    )
