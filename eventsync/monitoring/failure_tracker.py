"""
Consecutive failure tracking for source bindings.

- Counts failed runs per binding in Redis
- Alerts through Sentry once SYNC_FAILURE_THRESHOLD is reached
- Resets on the next successful run

Usage:
    tracker = build_failure_tracker()
    orchestrator = SyncOrchestrator(..., failure_tracker=tracker)
"""

import logging
from typing import Optional

import redis
from django.conf import settings

from .sentry_integration import capture_alert

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5

# TTL for failure counters in Redis (24 hours)
FAILURE_COUNTER_TTL = 86400


class FailureTracker:
    """
    Tracks consecutive failures per binding using Redis.

    Without a Redis client every method is a no-op returning zero.
    """

    def __init__(
        self,
        redis_client=None,
        threshold: int = DEFAULT_FAILURE_THRESHOLD,
        key_prefix: str = "eventsync:failures:",
    ):
        self.redis_client = redis_client
        self.threshold = threshold
        self.key_prefix = key_prefix

    def _get_key(self, binding_id: str) -> str:
        return f"{self.key_prefix}{binding_id}"

    def record_failure(self, binding_id: str, label: Optional[str] = None) -> int:
        """
        Increment the binding's failure counter, alerting at the threshold.

        Returns:
            Current failure count after increment
        """
        if self.redis_client is None:
            return 0

        key = self._get_key(binding_id)
        try:
            count = self.redis_client.incr(key)
            if count == 1:
                self.redis_client.expire(key, FAILURE_COUNTER_TTL)
        except redis.RedisError as e:
            logger.warning(f"Failed to record failure in Redis: {e}")
            return 0

        logger.debug(f"Recorded failure for binding {binding_id}: count={count}, threshold={self.threshold}")

        if count >= self.threshold:
            message = (
                f"Consecutive failure threshold breached for binding {label or binding_id}: "
                f"{count} consecutive failures"
            )
            logger.warning(message)
            capture_alert(
                message=message,
                binding_id=binding_id,
                label=label,
                extra_data={"failure_count": count, "threshold": self.threshold},
            )
        return count

    def record_success(self, binding_id: str) -> None:
        """Reset the binding's failure counter."""
        if self.redis_client is None:
            return
        try:
            self.redis_client.delete(self._get_key(binding_id))
        except redis.RedisError as e:
            logger.warning(f"Failed to reset failure counter in Redis: {e}")

    def get_failure_count(self, binding_id: str) -> int:
        if self.redis_client is None:
            return 0
        try:
            count = self.redis_client.get(self._get_key(binding_id))
        except redis.RedisError as e:
            logger.warning(f"Failed to get failure count from Redis: {e}")
            return 0
        return int(count) if count else 0


def build_failure_tracker() -> FailureTracker:
    """
    Create a tracker connected to the Celery broker's Redis.

    Returns a tracker without a client when tracking is disabled or Redis
    cannot be reached.
    """
    threshold = getattr(settings, "SYNC_FAILURE_THRESHOLD", DEFAULT_FAILURE_THRESHOLD)
    if not getattr(settings, "SYNC_FAILURE_TRACKING_ENABLED", True):
        return FailureTracker(redis_client=None, threshold=threshold)

    broker_url = getattr(settings, "CELERY_BROKER_URL", "redis://localhost:6379/1")
    try:
        client = redis.from_url(broker_url)
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"Failed to connect to Redis for failure tracking: {e}")
        client = None

    return FailureTracker(redis_client=client, threshold=threshold)
