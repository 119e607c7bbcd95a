"""
Tests for the sync orchestrator pipeline.

Fetchers and extractors are replaced with in-process doubles; backoff sleeps
are recorded instead of slept.
"""

import asyncio
import json
from datetime import date, datetime, timedelta, timezone as dt_timezone
from unittest.mock import Mock

import pytest
from celery.exceptions import SoftTimeLimitExceeded

from eventsync.exceptions import PermanentFetchError, TransientFetchError
from eventsync.fetchers import BaseFetcher
from eventsync.models import (
    Edition,
    EditionFieldProvenance,
    RawCrawlEntry,
    RawCrawlStatus,
    SourceBinding,
    SyncRun,
)
from eventsync.schemas import FieldCandidate
from eventsync.services.orchestrator import SyncOrchestrator
from tests.helpers import StaticFetcher, html_result, json_result, race_page

NOW = datetime(2025, 3, 1, 8, 0, tzinfo=dt_timezone.utc)


def make_orchestrator(fetcher, **kwargs):
    kwargs.setdefault("sleep", Mock())
    kwargs.setdefault("threshold", 0.7)
    return SyncOrchestrator(fetcher=fetcher, **kwargs)


def api_body(race_date="2025-03-16", status="closed", url="https://signup.racehub.example/42"):
    return json.dumps({"data": {"startDate": race_date, "status": status, "signupUrl": url}})


class FixedExtractor:
    def __init__(self, candidates=None, error=None):
        self.candidates = candidates or []
        self.error = error

    def extract(self, raw_body, content_type=""):
        if self.error:
            raise self.error
        return list(self.candidates)


def fixed_factory(extractor):
    return lambda source, page_url, config: extractor


@pytest.mark.django_db
class TestSuccessfulRuns:
    def test_html_run_applies_fields(self, html_binding):
        fetcher = StaticFetcher(html_result(race_page("2025-11-30", "报名中")))

        run = make_orchestrator(fetcher, clock=lambda: NOW).run(html_binding)

        assert run.status == "success"
        assert run.new_count == 2
        assert run.details["verification"] == "applied"

        edition = Edition.objects.get(event=html_binding.event, year=2025)
        assert edition.race_date == date(2025, 11, 30)
        assert edition.registration_status == "open"

        entry = RawCrawlEntry.objects.get(sync_run=run)
        assert entry.status == RawCrawlStatus.PROCESSED
        assert entry.metadata["edition_id"] == str(edition.id)
        assert entry.fetched_at == NOW

        provenance = EditionFieldProvenance.objects.get(edition=edition, field_name="race_date")
        assert provenance.priority == 10
        assert provenance.method == "rule"
        assert provenance.raw_entry == entry

        html_binding.refresh_from_db()
        assert html_binding.last_hash == entry.content_hash
        assert html_binding.last_checked_at == NOW
        assert html_binding.last_http_status == 200
        html_binding.source.refresh_from_db()
        assert html_binding.source.last_run_at is not None

    def test_api_run_applies_fields(self, api_binding):
        fetcher = StaticFetcher(json_result(api_body()))

        run = make_orchestrator(fetcher).run(api_binding)

        assert run.status == "success"
        edition = Edition.objects.get(event=api_binding.event, year=2025)
        assert edition.race_date == date(2025, 3, 16)
        assert edition.registration_status == "closed"
        assert edition.registration_url == "https://signup.racehub.example/42"

    def test_next_check_uses_min_interval(self, html_binding, html_source):
        html_source.min_interval_seconds = 3600
        html_source.save()

        make_orchestrator(StaticFetcher(html_result(race_page())), clock=lambda: NOW).run(html_binding)

        html_binding.refresh_from_db()
        assert html_binding.next_check_at == NOW + timedelta(hours=1)

    def test_content_is_truncated_before_hashing(self, html_binding):
        body = race_page() + "x" * 500
        fetcher = StaticFetcher(html_result(body))

        run = make_orchestrator(fetcher, raw_content_max_chars=200).run(html_binding)

        entry = RawCrawlEntry.objects.get(sync_run=run)
        assert len(entry.raw_content) == 200
        assert entry.metadata["truncated"] is True
        assert entry.metadata["content_length"] == len(body)
        assert entry.content_hash == RawCrawlEntry.generate_content_hash(body[:200])

    def test_invalid_candidates_are_recorded(self, api_binding):
        fetcher = StaticFetcher(json_result(api_body(status="s" * 80)))

        run = make_orchestrator(fetcher).run(api_binding)

        assert run.status == "success"
        assert len(run.details["invalid_candidates"]) == 1
        edition = Edition.objects.get(event=api_binding.event, year=2025)
        assert edition.registration_status == ""

    def test_failure_tracker_reset_on_success(self, html_binding):
        tracker = Mock()

        make_orchestrator(StaticFetcher(html_result(race_page())), failure_tracker=tracker).run(html_binding)

        tracker.record_success.assert_called_once_with(str(html_binding.id))
        tracker.record_failure.assert_not_called()


@pytest.mark.django_db
class TestPriorityAcrossSources:
    """Higher-priority source wins regardless of which runs first."""

    @pytest.mark.parametrize("order", [("html", "api"), ("api", "html")])
    def test_higher_priority_wins_in_any_order(self, html_binding, api_binding, order):
        runs = {
            "html": lambda: make_orchestrator(StaticFetcher(html_result(race_page("2025-03-15")))).run(html_binding),
            "api": lambda: make_orchestrator(StaticFetcher(json_result(api_body("2025-03-16")))).run(api_binding),
        }

        results = [runs[name]() for name in order]

        assert all(run.status == "success" for run in results)
        edition = Edition.objects.get(event=html_binding.event, year=2025)
        assert edition.race_date == date(2025, 3, 15)
        provenance = EditionFieldProvenance.objects.get(edition=edition, field_name="race_date")
        assert provenance.source_id == html_binding.source_id

    def test_lower_priority_run_records_conflict(self, html_binding, api_binding):
        make_orchestrator(StaticFetcher(html_result(race_page("2025-03-15")))).run(html_binding)

        run = make_orchestrator(StaticFetcher(json_result(api_body("2025-03-16")))).run(api_binding)

        assert run.updated_count == 0
        conflicts = run.details["conflicts"]
        assert [c["field"] for c in conflicts if c["reason"] == "lower_priority"] == [
            "race_date",
            "registration_status",
        ]
        entry = RawCrawlEntry.objects.get(sync_run=run)
        assert entry.status == RawCrawlStatus.PROCESSED
        assert len(entry.metadata["conflicts"]) == 2


@pytest.mark.django_db
class TestIdempotence:
    def test_unchanged_content_is_deduplicated(self, html_binding):
        orchestrator = make_orchestrator(StaticFetcher(html_result(race_page())))

        first = orchestrator.run(html_binding)
        second = orchestrator.run(html_binding)

        assert first.new_count == 2
        assert second.status == "success"
        assert second.new_count == 0
        assert second.updated_count == 0
        assert second.unchanged_count == 1
        assert second.details["verification"] == "deduplicated"
        assert RawCrawlEntry.objects.filter(binding=html_binding).count() == 1
        assert Edition.objects.filter(event=html_binding.event).count() == 1

    def test_changed_content_creates_new_entry(self, html_binding):
        make_orchestrator(StaticFetcher(html_result(race_page("2025-11-30")))).run(html_binding)

        run = make_orchestrator(StaticFetcher(html_result(race_page("2025-12-01")))).run(html_binding)

        assert run.updated_count == 1
        assert RawCrawlEntry.objects.filter(binding=html_binding).count() == 2
        assert Edition.objects.get(event=html_binding.event).race_date == date(2025, 12, 1)


@pytest.mark.django_db
class TestReviewRouting:
    def test_low_confidence_goes_to_review(self, html_binding):
        fetcher = StaticFetcher(html_result("<html><body><p>Maybe 2025-11-30?</p></body></html>"))

        run = make_orchestrator(fetcher).run(html_binding)

        assert run.status == "success"
        assert run.details["verification"] == "needs_review"
        assert run.details["review_reason"] == "low_confidence"
        entry = RawCrawlEntry.objects.get(sync_run=run)
        assert entry.status == RawCrawlStatus.NEEDS_REVIEW
        assert entry.metadata["candidates"][0]["method"] == "regex"
        assert not Edition.objects.filter(event=html_binding.event).exists()

    def test_no_candidates_goes_to_review(self, html_binding):
        run = make_orchestrator(StaticFetcher(html_result("<html>nothing</html>"))).run(html_binding)

        assert run.details["review_reason"] == "no_candidates"

    def test_no_year_goes_to_review(self, html_binding):
        extractor = FixedExtractor([FieldCandidate("registration_status", "open", 0.9, "rule")])

        run = make_orchestrator(
            StaticFetcher(html_result("<html/>")), extractor_factory=fixed_factory(extractor)
        ).run(html_binding)

        assert run.details["review_reason"] == "no_year"

    def test_year_candidate_applies_without_race_date(self, html_binding):
        extractor = FixedExtractor(
            [
                FieldCandidate("year", "2026", 0.9, "rule"),
                FieldCandidate("registration_status", "open", 0.9, "rule"),
            ]
        )

        run = make_orchestrator(
            StaticFetcher(html_result("<html/>")), extractor_factory=fixed_factory(extractor)
        ).run(html_binding)

        assert run.details["verification"] == "applied"
        assert Edition.objects.get(event=html_binding.event, year=2026).registration_status == "open"

    def test_year_conflict_goes_to_review(self, html_binding):
        extractor = FixedExtractor(
            [
                FieldCandidate("race_date", "2025-11-30", 0.9, "rule"),
                FieldCandidate("year", "2026", 0.9, "rule"),
            ]
        )

        run = make_orchestrator(
            StaticFetcher(html_result("<html/>")), extractor_factory=fixed_factory(extractor)
        ).run(html_binding)

        assert run.details["review_reason"] == "year_conflict"

    def test_extractor_exception_goes_to_review(self, html_binding):
        extractor = FixedExtractor(error=RuntimeError("parser exploded"))

        run = make_orchestrator(
            StaticFetcher(html_result("<html/>")), extractor_factory=fixed_factory(extractor)
        ).run(html_binding)

        assert run.status == "success"
        entry = RawCrawlEntry.objects.get(sync_run=run)
        assert entry.status == RawCrawlStatus.NEEDS_REVIEW
        assert entry.metadata["review_reason"] == "extraction_error"
        assert "parser exploded" in entry.metadata["extraction_error"]


@pytest.mark.django_db
class TestFailures:
    def test_transient_errors_retry_up_to_retry_max(self, html_binding, html_source):
        html_source.min_interval_seconds = 600
        html_source.save()
        fetcher = StaticFetcher(TransientFetchError("HTTP 503", status_code=503))
        sleep = Mock()

        run = make_orchestrator(fetcher, sleep=sleep, max_backoff_seconds=600, clock=lambda: NOW).run(html_binding)

        assert run.status == "failed"
        assert run.attempt == 3
        assert len(fetcher.calls) == 3
        assert [call.args[0] for call in sleep.call_args_list] == [1, 2]
        assert len(run.details["attempts"]) == 3
        assert run.http_status == 503
        assert not RawCrawlEntry.objects.filter(binding=html_binding).exists()

        html_binding.refresh_from_db()
        assert html_binding.last_error == "HTTP 503"
        assert html_binding.last_http_status == 503
        assert html_binding.next_check_at == NOW + timedelta(seconds=600)

    def test_transient_then_success(self, html_binding):
        fetcher = StaticFetcher(TransientFetchError("timeout"), html_result(race_page()))

        run = make_orchestrator(fetcher).run(html_binding)

        assert run.status == "success"
        assert run.attempt == 2

    def test_permanent_error_is_not_retried(self, html_binding):
        fetcher = StaticFetcher(PermanentFetchError("HTTP 404", status_code=404))
        sleep = Mock()

        run = make_orchestrator(fetcher, sleep=sleep, max_backoff_seconds=600).run(html_binding)

        assert run.status == "failed"
        assert len(fetcher.calls) == 1
        sleep.assert_not_called()
        assert run.error_message == "HTTP 404"

    def test_fetch_exceeding_timeout_is_transient(self, html_binding, html_source):
        class SlowFetcher(BaseFetcher):
            async def fetch(self, url, strategy_config, timeout_ms):
                await asyncio.sleep(5)

        html_source.retry_max = 1
        html_source.request_timeout_ms = 10
        html_source.save()

        run = make_orchestrator(SlowFetcher(), timeout_grace_seconds=0).run(html_binding)

        assert run.status == "failed"
        assert run.details["attempts"][0]["transient"] is True

    def test_invalid_strategy_config_fails_without_fetching(self, html_binding, html_source):
        html_source.strategy_config = {"version": 9}
        html_source.save()
        fetcher = StaticFetcher(html_result(race_page()))

        run = make_orchestrator(fetcher).run(html_binding)

        assert run.status == "failed"
        assert "Invalid strategy config" in run.error_message
        assert fetcher.calls == []

    def test_missing_url_fails(self, html_source):
        from eventsync.models import Event, SourceBinding
        from eventsync.fetchers import HttpxFetcher

        bare_event = Event.objects.create(name="No Website Marathon")
        binding = SourceBinding.objects.create(event=bare_event, source=html_source)

        run = make_orchestrator(HttpxFetcher()).run(binding)

        assert run.status == "failed"
        assert "No URL" in run.error_message

    def test_failure_tracker_records_failure(self, html_binding):
        tracker = Mock()
        fetcher = StaticFetcher(PermanentFetchError("HTTP 410", status_code=410))

        make_orchestrator(fetcher, failure_tracker=tracker).run(html_binding)

        tracker.record_failure.assert_called_once()
        assert tracker.record_failure.call_args.args[0] == str(html_binding.id)

    def test_unexpected_error_finishes_run(self, html_binding):
        reconciler = Mock()
        reconciler.get_or_create_edition.side_effect = RuntimeError("database on fire")

        run = make_orchestrator(StaticFetcher(html_result(race_page())), reconciler=reconciler).run(html_binding)

        assert run.status == "failed"
        assert "database on fire" in run.error_message
        assert SyncRun.objects.get(pk=run.pk).finished_at is not None


@pytest.mark.django_db
class TestRunDeadline:
    def test_retries_stop_before_run_budget(self, html_binding, html_source):
        html_source.retry_max = 8
        html_source.retry_backoff_seconds = 30
        html_source.save()
        fetcher = StaticFetcher(TransientFetchError("HTTP 503", status_code=503))
        current = [NOW]

        def advance(seconds):
            current[0] += timedelta(seconds=seconds)

        sleep = Mock(side_effect=advance)

        run = make_orchestrator(
            fetcher,
            sleep=sleep,
            clock=lambda: current[0],
            max_backoff_seconds=600,
            run_budget_seconds=780,
        ).run(html_binding)

        assert run.status == "failed"
        assert len(fetcher.calls) == 5
        assert [call.args[0] for call in sleep.call_args_list] == [30, 60, 120, 240]
        assert run.error_message.startswith("Run time budget exhausted after 5 attempt(s)")
        assert run.details["attempts"][-1]["budget_exhausted"] is True
        assert (current[0] - NOW).total_seconds() < 780

    def test_claim_is_refreshed_between_retries(self, html_binding):
        token = html_binding.claim()
        stale = NOW - timedelta(hours=1)
        SourceBinding.objects.filter(pk=html_binding.pk).update(sync_claimed_at=stale)
        seen = []

        def sleep(seconds):
            seen.append(SourceBinding.objects.get(pk=html_binding.pk).sync_claimed_at)

        timeout = TransientFetchError("timeout")
        fetcher = StaticFetcher(timeout, timeout, html_result(race_page()))

        run = make_orchestrator(fetcher, sleep=sleep, max_backoff_seconds=600).run(html_binding)

        assert run.status == "success"
        assert seen[0] == stale
        assert seen[1] > stale
        competitor = SourceBinding.objects.get(pk=html_binding.pk)
        assert competitor.sync_claim_token == token
        assert competitor.claim(stale_seconds=60) is None

    def test_refresh_requires_the_claim_token(self, html_binding):
        assert html_binding.refresh_claim() is False

        html_binding.claim()
        other = SourceBinding.objects.get(pk=html_binding.pk)
        other.release(other.sync_claim_token)

        assert html_binding.refresh_claim() is False

    def test_soft_time_limit_fails_run(self, html_binding):
        fetcher = StaticFetcher(SoftTimeLimitExceeded())

        run = make_orchestrator(fetcher).run(html_binding)

        assert run.status == "failed"
        assert run.error_message == "Run exceeded the task time limit"
        assert SyncRun.objects.get(pk=run.pk).finished_at is not None
        assert not RawCrawlEntry.objects.filter(binding=html_binding).exists()

    def test_soft_time_limit_during_extraction_parks_entry(self, html_binding):
        extractor = FixedExtractor(error=SoftTimeLimitExceeded())

        run = make_orchestrator(
            StaticFetcher(html_result(race_page())), extractor_factory=fixed_factory(extractor)
        ).run(html_binding)

        assert run.status == "failed"
        assert run.error_message == "Run exceeded the task time limit"
        entry = RawCrawlEntry.objects.get(sync_run=run)
        assert entry.status == RawCrawlStatus.NEEDS_REVIEW
        assert entry.metadata["review_reason"] == "processing_error"
        html_binding.refresh_from_db()
        assert html_binding.last_hash == ""


@pytest.mark.django_db
class TestInterruptedProcessing:
    def test_extractor_returning_none_goes_to_review(self, html_binding):
        extractor = Mock()
        extractor.extract.return_value = None

        run = make_orchestrator(
            StaticFetcher(html_result(race_page())), extractor_factory=fixed_factory(extractor)
        ).run(html_binding)

        assert run.status == "success"
        entry = RawCrawlEntry.objects.get(sync_run=run)
        assert entry.status == RawCrawlStatus.NEEDS_REVIEW
        assert entry.metadata["review_reason"] == "extraction_error"
        assert entry.metadata["extraction_error"].startswith("TypeError")

    def test_non_numeric_rank_is_an_invalid_candidate(self, html_binding):
        extractor = FixedExtractor(
            [{"field": "race_date", "value": "2025-11-30", "confidence": 0.9, "method": "rule", "rank": "first"}]
        )

        run = make_orchestrator(
            StaticFetcher(html_result(race_page())), extractor_factory=fixed_factory(extractor)
        ).run(html_binding)

        assert run.status == "success"
        assert run.details["review_reason"] == "no_candidates"
        assert "rank" in run.details["invalid_candidates"][0]["error"]

    def test_crash_while_applying_leaves_content_retryable(self, html_binding):
        reconciler = Mock()
        reconciler.apply_field.side_effect = RuntimeError("connection reset")
        fetcher = StaticFetcher(html_result(race_page()))

        crashed = make_orchestrator(fetcher, reconciler=reconciler).run(html_binding)

        assert crashed.status == "failed"
        assert "connection reset" in crashed.error_message
        assert crashed.details["review_reason"] == "processing_error"
        parked = RawCrawlEntry.objects.get(sync_run=crashed)
        assert parked.status == RawCrawlStatus.NEEDS_REVIEW
        assert "RuntimeError" in parked.metadata["processing_error"]
        html_binding.refresh_from_db()
        assert html_binding.last_hash == ""

        retried = make_orchestrator(fetcher).run(html_binding)

        assert retried.status == "success"
        assert retried.details["verification"] == "applied"
        assert RawCrawlEntry.objects.get(sync_run=retried).status == RawCrawlStatus.PROCESSED
        assert Edition.objects.get(event=html_binding.event, year=2025).race_date == date(2025, 11, 30)
        html_binding.refresh_from_db()
        assert html_binding.last_hash == parked.content_hash
