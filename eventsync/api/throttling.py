"""
API Throttling Classes

Custom throttle classes for operator API rate limiting.
"""

from rest_framework.throttling import UserRateThrottle


class SyncTriggerThrottle(UserRateThrottle):
    """
    Throttle for sync trigger endpoints.

    Rate: 30 requests per hour per user.
    Applied to: /api/v1/admin/sync/run-all/, /api/v1/admin/bindings/<id>/sync/
    """

    rate = '30/hour'
    scope = 'sync_trigger'
