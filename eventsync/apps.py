"""
Event sync application configuration.
"""

from django.apps import AppConfig


class EventSyncConfig(AppConfig):
    """Configuration for the eventsync Django application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "eventsync"
    verbose_name = "Marathon Event Sync"
