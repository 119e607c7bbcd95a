"""
Pytest configuration and fixtures for the Marathon Event Sync test suite.
"""

import pytest


@pytest.fixture(scope="session")
def django_db_setup(django_db_blocker):
    """Configure the test database and run migrations."""
    from django.core.management import call_command

    with django_db_blocker.unblock():
        call_command("migrate", "--run-syncdb", verbosity=0)


@pytest.fixture(autouse=True)
def clear_cache():
    """Throttle counters live in the cache; start every test clean."""
    from django.core.cache import cache

    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def api_client():
    """Create a test API client."""
    from rest_framework.test import APIClient

    return APIClient()


@pytest.fixture
def staff_user(db):
    """Create a staff user for operator endpoints."""
    from django.contrib.auth import get_user_model

    return get_user_model().objects.create_user(
        username="operator",
        email="operator@test.com",
        password="testpass123",
        is_staff=True,
    )


@pytest.fixture
def staff_client(api_client, staff_user):
    """API client authenticated as a staff user."""
    api_client.force_authenticate(user=staff_user)
    return api_client


@pytest.fixture
def event(db):
    """Create a test Event."""
    from eventsync.models import Event

    return Event.objects.create(
        name="Shanghai Marathon",
        city="Shanghai",
        country="China",
        website_url="https://www.shmarathon.com",
    )


@pytest.fixture
def html_source(db):
    """Create an active HTML source with a race date selector rule."""
    from eventsync.models import Source

    return Source.objects.create(
        name="Official Site",
        source_type="official",
        base_url="https://www.shmarathon.com",
        strategy="html",
        strategy_config={
            "version": 1,
            "extract": {
                "race_date": {"selector": ".race-date"},
                "registration_status": {"selector": ".reg-status"},
            },
        },
        priority=10,
        retry_max=3,
        retry_backoff_seconds=1,
        request_timeout_ms=5000,
    )


@pytest.fixture
def api_source(db):
    """Create an active JSON API source with a lower priority."""
    from eventsync.models import Source

    return Source.objects.create(
        name="Race Platform API",
        source_type="platform",
        base_url="https://api.racehub.example",
        strategy="api",
        strategy_config={
            "version": 1,
            "fields": {
                "race_date": "data.startDate",
                "registration_status": "data.status",
                "registration_url": "data.signupUrl",
            },
        },
        priority=5,
        retry_max=2,
        retry_backoff_seconds=1,
        request_timeout_ms=5000,
    )


@pytest.fixture
def html_binding(event, html_source):
    """Bind the test event to the HTML source."""
    from eventsync.models import SourceBinding

    return SourceBinding.objects.create(
        event=event,
        source=html_source,
        source_url="https://www.shmarathon.com/race",
        is_primary=True,
    )


@pytest.fixture
def api_binding(event, api_source):
    """Bind the test event to the API source."""
    from eventsync.models import SourceBinding

    return SourceBinding.objects.create(
        event=event,
        source=api_source,
        source_url="https://api.racehub.example/events/42",
    )
