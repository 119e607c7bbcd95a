"""
Celery configuration for the Marathon Event Sync service.

This module configures Celery for periodic due-binding checks and
per-binding sync work on a dedicated, concurrency-bounded queue.
"""

import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("marathon_sync")

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Sync workers consume "sync"; beat-triggered selection runs on "default".
# Start sync workers with: celery -A config worker -Q sync
# (worker concurrency comes from CELERY_WORKER_CONCURRENCY = SYNC_MAX_WORKERS)
app.conf.task_queues = {
    "sync": {
        "exchange": "sync",
        "routing_key": "sync",
    },
    "default": {
        "exchange": "default",
        "routing_key": "default",
    },
}

# Default task routing
app.conf.task_default_queue = "default"
app.conf.task_default_exchange = "default"
app.conf.task_default_routing_key = "default"

app.conf.task_routes = {
    "eventsync.tasks.sync_binding": {"queue": "sync"},
    "eventsync.tasks.check_due_bindings": {"queue": "default"},
    "eventsync.tasks.sync_all_bindings": {"queue": "default"},
}

# Configure Celery Beat schedule for periodic tasks
app.conf.beat_schedule = {
    "check-due-bindings-every-5-minutes": {
        "task": "eventsync.tasks.check_due_bindings",
        "schedule": crontab(minute="*/5"),  # Every 5 minutes
    },
}
