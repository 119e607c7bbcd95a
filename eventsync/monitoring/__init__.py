"""
Monitoring and alerting for the sync engine.

- Sentry error tracking with binding context
- Consecutive failure tracking via Redis

Thresholds (configurable):
- Consecutive failures: SYNC_FAILURE_THRESHOLD per binding
"""

from .failure_tracker import FailureTracker, build_failure_tracker
from .sentry_integration import add_sync_breadcrumb, capture_alert, capture_sync_error

__all__ = [
    "add_sync_breadcrumb",
    "capture_alert",
    "capture_sync_error",
    "FailureTracker",
    "build_failure_tracker",
]
