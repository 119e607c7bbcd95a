"""
Tests for the operator API endpoints.

Sync triggers patch the Celery tasks so nothing runs; everything else hits
the database through the real services.
"""

import uuid
from unittest.mock import MagicMock, patch

import pytest
from django.urls import reverse

from eventsync.models import Edition, RawCrawlEntry, RawCrawlStatus, Source, SourceBinding
from eventsync.schemas import ProvenanceStamp
from eventsync.services.reconciliation import FieldReconciler


@pytest.fixture
def review_entry(html_binding):
    content = "<html><body>" + ("<p>Maybe 2025-11-30?</p>" * 50) + "</body></html>"
    return RawCrawlEntry.objects.create(
        event=html_binding.event,
        source=html_binding.source,
        binding=html_binding,
        source_url=html_binding.effective_url,
        content_type="text/html",
        http_status=200,
        raw_content=content,
        content_hash=RawCrawlEntry.generate_content_hash(content),
        status=RawCrawlStatus.NEEDS_REVIEW,
    )


@pytest.mark.django_db
class TestPermissions:
    def test_anonymous_requests_are_rejected(self, api_client):
        response = api_client.get(reverse("eventsync_api:list_sources"))

        assert response.status_code in (401, 403)

    def test_non_staff_users_are_rejected(self, api_client, django_user_model):
        user = django_user_model.objects.create_user(username="runner", password="testpass123")
        api_client.force_authenticate(user=user)

        response = api_client.get(reverse("eventsync_api:list_sources"))

        assert response.status_code == 403


@pytest.mark.django_db
class TestSourceEndpoints:
    def test_list_sources(self, staff_client, html_source, api_source):
        api_source.is_active = False
        api_source.save()

        response = staff_client.get(reverse("eventsync_api:list_sources"))
        active = staff_client.get(reverse("eventsync_api:list_sources"), {"active": "1"})

        assert [s["name"] for s in response.json()["sources"]] == ["Official Site", "Race Platform API"]
        assert [s["name"] for s in active.json()["sources"]] == ["Official Site"]

    def test_update_source(self, staff_client, html_source):
        url = reverse("eventsync_api:update_source", args=[html_source.id])

        response = staff_client.patch(
            url,
            {"priority": 20, "is_active": False, "strategy_config": {"version": 1, "jsonld": False}},
            format="json",
        )

        assert response.status_code == 200
        assert response.json()["priority"] == 20
        html_source.refresh_from_db()
        assert html_source.is_active is False
        assert html_source.strategy_config == {"version": 1, "jsonld": False}

    def test_invalid_strategy_config_is_rejected(self, staff_client, html_source):
        url = reverse("eventsync_api:update_source", args=[html_source.id])

        response = staff_client.patch(url, {"priority": 1, "strategy_config": {"version": 2}}, format="json")

        assert response.status_code == 400
        assert "strategy_config" in response.json()["errors"]
        html_source.refresh_from_db()
        assert html_source.priority == 10

    def test_retries_longer_than_a_run_are_rejected(self, staff_client, html_source, settings):
        settings.SYNC_MAX_BACKOFF_SECONDS = 600
        url = reverse("eventsync_api:update_source", args=[html_source.id])

        response = staff_client.patch(url, {"retry_max": 8, "retry_backoff_seconds": 30}, format="json")

        assert response.status_code == 400
        assert "retry_max" in response.json()["errors"]
        html_source.refresh_from_db()
        assert html_source.retry_max == 3

    def test_form_encoded_update(self, staff_client, html_source):
        url = reverse("eventsync_api:update_source", args=[html_source.id])

        response = staff_client.patch(url, {"notes": "checked by phone"}, format="multipart")

        assert response.status_code == 200
        html_source.refresh_from_db()
        assert html_source.notes == "checked by phone"

    def test_unknown_fields_and_missing_source(self, staff_client, html_source):
        response = staff_client.patch(
            reverse("eventsync_api:update_source", args=[html_source.id]), {"last_run_at": None}, format="json"
        )
        assert response.status_code == 400

        response = staff_client.patch(
            reverse("eventsync_api:update_source", args=[uuid.uuid4()]), {"priority": 1}, format="json"
        )
        assert response.status_code == 404


@pytest.mark.django_db
class TestBindingEndpoints:
    def test_create_then_update_binding(self, staff_client, event, html_source):
        url = reverse("eventsync_api:bindings")
        payload = {"event_id": str(event.id), "source_id": str(html_source.id), "url": "https://example.com/a"}

        created = staff_client.post(url, payload, format="json")
        updated = staff_client.post(url, {**payload, "url": "https://example.com/b", "is_primary": True}, format="json")

        assert created.status_code == 201
        assert updated.status_code == 200
        assert updated.json()["id"] == created.json()["id"]
        binding = SourceBinding.objects.get(event=event, source=html_source)
        assert binding.source_url == "https://example.com/b"
        assert binding.is_primary

    def test_primary_flag_is_exclusive(self, staff_client, html_binding, api_source):
        url = reverse("eventsync_api:bindings")

        staff_client.post(
            url,
            {"event_id": str(html_binding.event_id), "source_id": str(api_source.id), "is_primary": True},
            format="json",
        )

        html_binding.refresh_from_db()
        assert html_binding.is_primary is False

    def test_list_bindings(self, staff_client, html_binding, api_binding):
        response = staff_client.get(
            reverse("eventsync_api:bindings"), {"source_id": str(api_binding.source_id)}
        )

        assert [b["id"] for b in response.json()["bindings"]] == [str(api_binding.id)]

    @pytest.mark.parametrize(
        "payload,status_code",
        [
            ({}, 400),
            ({"url": "ftp://example.com"}, 400),
            ({"event_id": "00000000-0000-0000-0000-000000000000"}, 404),
        ],
    )
    def test_invalid_requests(self, staff_client, event, html_source, payload, status_code):
        body = {"event_id": str(event.id), "source_id": str(html_source.id)} if payload else {}
        body.update(payload)

        response = staff_client.post(reverse("eventsync_api:bindings"), body, format="json")

        assert response.status_code == status_code


@pytest.mark.django_db
class TestSyncTriggers:
    def test_trigger_sync_all(self, staff_client):
        with patch("eventsync.api.views.sync_all_bindings") as mock_task:
            mock_task.apply_async.return_value = MagicMock(id="task-all")
            response = staff_client.post(reverse("eventsync_api:trigger_sync_all"))

        assert response.status_code == 202
        assert response.json() == {"queued": True, "task_id": "task-all"}
        mock_task.apply_async.assert_called_once_with(queue="default")

    def test_trigger_binding_sync(self, staff_client, html_binding):
        with patch("eventsync.api.views.sync_binding") as mock_task:
            mock_task.apply_async.return_value = MagicMock(id="task-1")
            response = staff_client.post(reverse("eventsync_api:trigger_binding_sync", args=[html_binding.id]))

        assert response.status_code == 202
        mock_task.apply_async.assert_called_once_with(args=[str(html_binding.id)], queue="sync")

    def test_trigger_inactive_or_missing_binding(self, staff_client, html_binding, html_source):
        html_source.is_active = False
        html_source.save()

        with patch("eventsync.api.views.sync_binding") as mock_task:
            inactive = staff_client.post(reverse("eventsync_api:trigger_binding_sync", args=[html_binding.id]))
            missing = staff_client.post(reverse("eventsync_api:trigger_binding_sync", args=[uuid.uuid4()]))

        assert inactive.status_code == 409
        assert missing.status_code == 404
        mock_task.apply_async.assert_not_called()

    def test_triggers_are_throttled(self, staff_client):
        with patch("eventsync.api.views.sync_all_bindings") as mock_task, patch(
            "eventsync.api.throttling.SyncTriggerThrottle.rate", "2/hour"
        ):
            mock_task.apply_async.return_value = MagicMock(id="task-all")
            statuses = [staff_client.post(reverse("eventsync_api:trigger_sync_all")).status_code for _ in range(3)]

        assert statuses == [202, 202, 429]


@pytest.mark.django_db
class TestReviewEndpoints:
    def test_list_filters_by_status(self, staff_client, review_entry):
        needs_review = staff_client.get(reverse("eventsync_api:list_raw_crawl"), {"status": "needs_review"})
        processed = staff_client.get(reverse("eventsync_api:list_raw_crawl"), {"status": "processed"})
        invalid = staff_client.get(reverse("eventsync_api:list_raw_crawl"), {"status": "archived"})

        assert [e["id"] for e in needs_review.json()["entries"]] == [str(review_entry.id)]
        assert "raw_content" not in needs_review.json()["entries"][0]
        assert processed.json()["entries"] == []
        assert invalid.status_code == 400

    def test_detail_previews_content(self, staff_client, review_entry, settings):
        settings.SYNC_RAW_PREVIEW_CHARS = 100
        url = reverse("eventsync_api:raw_crawl_detail", args=[review_entry.id])

        preview = staff_client.get(url).json()
        full = staff_client.get(url, {"full": "1"}).json()

        assert len(preview["raw_content"]) == 100
        assert preview["raw_content_truncated"] is True
        assert full["raw_content"] == review_entry.raw_content
        assert full["raw_content_truncated"] is False
        assert staff_client.get(reverse("eventsync_api:raw_crawl_detail", args=[uuid.uuid4()])).status_code == 404

    def test_resolve(self, staff_client, staff_user, review_entry):
        url = reverse("eventsync_api:resolve_raw_crawl", args=[review_entry.id])

        response = staff_client.post(url, {"race_date": "2025-11-30", "note": "confirmed"}, format="json")

        assert response.status_code == 200
        body = response.json()
        assert body["entry"]["status"] == "processed"
        assert body["entry"]["resolved_by"] == staff_user.username
        assert body["edition"]["race_date"] == "2025-11-30"
        assert body["edition"]["provenance"]["race_date"]["source_marker"] == "manual"

        again = staff_client.post(url, {"race_date": "2025-11-30"}, format="json")
        assert again.status_code == 409

    def test_resolve_form_encoded(self, staff_client, review_entry):
        url = reverse("eventsync_api:resolve_raw_crawl", args=[review_entry.id])

        response = staff_client.post(url, {"race_date": "2025-11-30", "note": "from the flyer"})

        assert response.status_code == 200
        assert response.json()["edition"]["race_date"] == "2025-11-30"
        entry = RawCrawlEntry.objects.get(pk=review_entry.pk)
        assert entry.status == RawCrawlStatus.PROCESSED

    def test_resolve_validation_errors(self, staff_client, review_entry):
        url = reverse("eventsync_api:resolve_raw_crawl", args=[review_entry.id])

        response = staff_client.post(url, {"year": 2026, "race_date": "2025-11-30"}, format="json")

        assert response.status_code == 400
        assert "year" in response.json()["errors"]
        assert RawCrawlEntry.objects.get(pk=review_entry.pk).status == RawCrawlStatus.NEEDS_REVIEW

    def test_ignore(self, staff_client, review_entry):
        url = reverse("eventsync_api:ignore_raw_crawl", args=[review_entry.id])

        response = staff_client.post(url, {"reason": "duplicate page"}, format="json")
        again = staff_client.post(url, {}, format="json")

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert again.status_code == 409


@pytest.mark.django_db
class TestEditionsAndStats:
    def test_event_editions_include_provenance(self, staff_client, event, html_source):
        reconciler = FieldReconciler()
        edition = reconciler.get_or_create_edition(event, 2025)
        reconciler.apply_field(
            edition,
            "race_date",
            "2025-11-30",
            ProvenanceStamp(priority=10, rank=0, observed_at=edition.created_at, method="rule"),
            source=html_source,
        )

        response = staff_client.get(reverse("eventsync_api:event_editions", args=[event.id]))

        assert response.status_code == 200
        editions = response.json()["editions"]
        assert editions[0]["year"] == 2025
        assert editions[0]["provenance"]["race_date"]["source_id"] == str(html_source.id)
        assert staff_client.get(reverse("eventsync_api:event_editions", args=[uuid.uuid4()])).status_code == 404

    def test_list_sync_runs(self, staff_client, html_binding):
        from eventsync.models import SyncRun

        run = SyncRun.objects.create(binding=html_binding, event=html_binding.event, source=html_binding.source)
        run.finish(success=False, error_message="HTTP 500")

        response = staff_client.get(reverse("eventsync_api:list_sync_runs"), {"status": "failed"})

        assert [r["id"] for r in response.json()["runs"]] == [str(run.id)]
        assert response.json()["runs"][0]["error_message"] == "HTTP 500"

    def test_stats(self, staff_client, review_entry, api_binding):
        Edition.objects.create(event=review_entry.event, year=2025)

        response = staff_client.get(reverse("eventsync_api:sync_stats"))

        body = response.json()
        assert body["sources"] == {"total": 2, "active": 2}
        assert body["bindings"]["total"] == 2
        assert body["bindings"]["due"] == 2
        assert body["raw_crawl"]["needs_review"] == 1
        assert body["editions"] == 1
        assert Source.objects.count() == 2
