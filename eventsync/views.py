"""
Sync engine views.

Includes the health check endpoint for monitoring and load balancer checks.
"""

import logging

import redis
from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse

from eventsync.models import RawCrawlEntry, RawCrawlStatus, SyncRun

logger = logging.getLogger(__name__)


def get_redis_connection():
    """
    Get a Redis client for the Celery broker.

    Returns:
        Redis client, or None when the broker is not Redis
    """
    broker_url = getattr(settings, "CELERY_BROKER_URL", "")
    if not broker_url.startswith(("redis://", "rediss://")):
        return None
    return redis.from_url(broker_url, socket_connect_timeout=2, socket_timeout=2)


def get_celery_worker_count() -> int:
    """
    Get the count of active Celery workers.

    Returns:
        int: Number of workers answering a ping, 0 if none answer
    """
    from config.celery import app as celery_app

    replies = celery_app.control.inspect(timeout=1.0).ping()
    return len(replies) if replies else 0


def health_check(request):
    """
    Health check endpoint for the sync service.

    Endpoint: GET /api/health/
    No authentication required (for load balancer checks).

    Response fields:
        - status: "healthy" or "unhealthy"
        - database: "connected" or "error"
        - redis: "connected", "not_configured" or "error"
        - celery_workers: integer count of responding workers
        - last_sync_run: ISO timestamp of the latest sync run start
        - review_backlog: raw crawl entries waiting for review

    Returns:
        JsonResponse: HTTP 200 for healthy, HTTP 503 for unhealthy
    """
    status = "healthy"
    http_status = 200

    database_status = "connected"
    try:
        connection.ensure_connection()
    except DatabaseError as e:
        logger.error(f"Health check database error: {e}")
        database_status = "error"
        status = "unhealthy"
        http_status = 503

    # Redis and Celery degrade gracefully; only the database makes us unhealthy
    redis_status = "not_configured"
    try:
        redis_client = get_redis_connection()
        if redis_client is not None:
            redis_status = "connected" if redis_client.ping() else "error"
    except redis.RedisError as e:
        logger.warning(f"Health check Redis error: {e}")
        redis_status = "error"

    try:
        celery_workers = get_celery_worker_count()
    except Exception as e:
        logger.warning(f"Health check could not reach Celery: {e}")
        celery_workers = 0

    last_sync_run = None
    review_backlog = None
    if database_status == "connected":
        latest = SyncRun.objects.order_by("-started_at").values_list("started_at", flat=True).first()
        last_sync_run = latest.isoformat() if latest else None
        review_backlog = RawCrawlEntry.objects.filter(status=RawCrawlStatus.NEEDS_REVIEW).count()

    return JsonResponse(
        {
            "status": status,
            "database": database_status,
            "redis": redis_status,
            "celery_workers": celery_workers,
            "last_sync_run": last_sync_run,
            "review_backlog": review_backlog,
        },
        status=http_status,
    )
