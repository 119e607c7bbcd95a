"""
Sync Orchestrator: runs the pipeline for one binding.

Pipeline:
1. Open a SyncRun and validate the source's strategy config
2. Fetch with retries (exponential backoff on transient errors)
3. Hash the (truncated) content; identical to last_hash -> unchanged, stop
4. Store a RawCrawlEntry and advance the binding's schedule
5. Extract candidates, validate and rank them
6. Candidates above the auto-apply threshold with a derivable year are
   reconciled into the edition; anything else goes to the review queue
7. Finish the run with new/updated/unchanged counts

Each run owns a SyncContext; nothing is shared between runs except the
injected collaborators.

Usage:
    orchestrator = SyncOrchestrator(fetcher=HttpxFetcher())
    run = orchestrator.run(binding)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings
from django.db import DatabaseError
from django.utils import timezone

from eventsync.exceptions import (
    CandidateValidationError,
    FetchError,
    StrategyConfigError,
    TransientFetchError,
)
from eventsync.extractors import build_extractor
from eventsync.fetchers import BaseFetcher, FetchResult, HttpxFetcher
from eventsync.models import RawCrawlEntry, RawCrawlStatus, Source, SourceBinding, SyncRun
from eventsync.monitoring import FailureTracker, add_sync_breadcrumb, capture_sync_error
from eventsync.schemas import FieldCandidate, ProvenanceStamp, coerce_field_value, rank_candidates
from eventsync.services.reconciliation import (
    ACTION_INSERTED,
    ACTION_UPDATED,
    FieldDecision,
    FieldReconciler,
)
from eventsync.utils.scheduling import (
    calculate_backoff_seconds,
    calculate_next_check,
    run_time_budget_seconds,
)

logger = logging.getLogger(__name__)

METADATA_VERSION = 1

# Outcomes recorded in SyncRun.details["verification"]
OUTCOME_APPLIED = "applied"
OUTCOME_NEEDS_REVIEW = "needs_review"
OUTCOME_DEDUPLICATED = "deduplicated"
OUTCOME_FAILED = "failed"


@dataclass
class SyncContext:
    """Per-run state passed through the pipeline and stored in SyncRun.details."""

    binding_id: str
    attempts: List[Dict[str, Any]] = field(default_factory=list)
    changes: List[Dict[str, Any]] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    invalid_candidates: List[Dict[str, Any]] = field(default_factory=list)
    verification: str = ""
    review_reason: str = ""
    raw_entry_id: Optional[str] = None
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0

    def record(self, decision: FieldDecision) -> None:
        """Count one reconciliation decision."""
        if decision.action == ACTION_INSERTED:
            self.new_count += 1
        elif decision.action == ACTION_UPDATED:
            self.updated_count += 1
        else:
            self.unchanged_count += 1

        self.changes.append(decision.to_dict())
        if decision.conflict:
            self.conflicts.append(decision.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": METADATA_VERSION,
            "binding_id": self.binding_id,
            "attempts": self.attempts,
            "changes": self.changes,
            "conflicts": self.conflicts,
            "invalid_candidates": self.invalid_candidates,
            "verification": self.verification,
            "review_reason": self.review_reason,
            "raw_entry_id": self.raw_entry_id,
        }


class SyncOrchestrator:
    """
    Runs fetch, dedup, extraction and reconciliation for one binding.

    All collaborators are injected so tests can replace them:
    - fetcher: BaseFetcher (async fetch)
    - extractor_factory: callable(source, page_url, config) -> BaseExtractor
    - reconciler: FieldReconciler
    - sleep: blocking sleep used for backoff
    - failure_tracker: FailureTracker (optional)
    - clock: callable returning the current aware datetime
    """

    def __init__(
        self,
        fetcher: Optional[BaseFetcher] = None,
        extractor_factory: Callable = build_extractor,
        reconciler: Optional[FieldReconciler] = None,
        sleep: Callable[[float], None] = time.sleep,
        threshold: Optional[float] = None,
        failure_tracker: Optional[FailureTracker] = None,
        clock: Callable = timezone.now,
        max_backoff_seconds: Optional[int] = None,
        timeout_grace_seconds: Optional[float] = None,
        raw_content_max_chars: Optional[int] = None,
        run_budget_seconds: Optional[float] = None,
    ):
        self.fetcher = fetcher or HttpxFetcher()
        self.extractor_factory = extractor_factory
        self.reconciler = reconciler or FieldReconciler()
        self.sleep = sleep
        self.threshold = threshold if threshold is not None else settings.SYNC_AUTO_APPLY_THRESHOLD
        self.failure_tracker = failure_tracker
        self.clock = clock
        self.max_backoff_seconds = (
            max_backoff_seconds if max_backoff_seconds is not None else settings.SYNC_MAX_BACKOFF_SECONDS
        )
        self.timeout_grace_seconds = (
            timeout_grace_seconds
            if timeout_grace_seconds is not None
            else settings.SYNC_FETCH_TIMEOUT_GRACE_SECONDS
        )
        self.raw_content_max_chars = raw_content_max_chars or settings.SYNC_RAW_CONTENT_MAX_CHARS
        self.run_budget_seconds = (
            run_budget_seconds if run_budget_seconds is not None else run_time_budget_seconds()
        )

    # =========================================================================
    # Entry point
    # =========================================================================

    def run(self, binding: SourceBinding) -> SyncRun:
        """
        Execute one sync run for a binding.

        Never raises for failures inside the run: they are recorded on the
        returned SyncRun.
        """
        source = binding.source
        run = SyncRun.objects.create(
            binding=binding,
            event=binding.event,
            source=source,
            strategy_used=source.strategy,
            started_at=self.clock(),
        )
        context = SyncContext(binding_id=str(binding.id))
        add_sync_breadcrumb(binding, message="Sync started", extra_data={"run_id": str(run.id)})

        try:
            self._execute(binding, run, context)
        except SoftTimeLimitExceeded as e:
            logger.error(f"Sync run {run.id} for {binding} hit the task time limit")
            capture_sync_error(e, binding=binding, attempt=run.attempt, extra_context={"run_id": str(run.id)})
            self._abandon(binding, run, context, e, "Run exceeded the task time limit")
        except Exception as e:
            logger.exception(f"Unexpected error syncing {binding}: {e}")
            capture_sync_error(e, binding=binding, attempt=run.attempt, extra_context={"run_id": str(run.id)})
            self._abandon(binding, run, context, e, f"Unexpected error: {e}")

        Source.objects.filter(pk=source.pk).update(last_run_at=self.clock())
        logger.info(
            f"Sync run {run.id} for {binding}: {run.status} "
            f"(new={run.new_count}, updated={run.updated_count}, unchanged={run.unchanged_count})"
        )
        return run

    def _execute(self, binding: SourceBinding, run: SyncRun, context: SyncContext) -> None:
        source = binding.source

        try:
            config = source.get_strategy_config()
        except StrategyConfigError as e:
            self._fail(binding, run, context, f"Invalid strategy config: {e.message}")
            return

        url = binding.effective_url
        result = self._fetch_with_retry(binding, run, context, url, config)
        if result is None:
            return

        body = result.body or ""
        content = body[: self.raw_content_max_chars]
        content_hash = RawCrawlEntry.generate_content_hash(content)
        now = self.clock()

        if binding.last_hash and binding.last_hash == content_hash:
            context.unchanged_count += 1
            context.verification = OUTCOME_DEDUPLICATED
            self._mark_checked(binding, now, result.status)
            run.http_status = result.status
            self._finish(run, context, success=True, message="Content unchanged")
            self._record_success(binding)
            return

        entry = RawCrawlEntry.objects.create(
            event=binding.event,
            source=source,
            binding=binding,
            sync_run=run,
            source_url=result.url or url,
            content_type=result.content_type[:100],
            http_status=result.status,
            raw_content=content,
            content_hash=content_hash,
            fetched_at=now,
            metadata={
                "version": METADATA_VERSION,
                "fetched_at": now.isoformat(),
                "content_length": len(body),
                "truncated": len(body) > len(content),
                "threshold": self.threshold,
            },
        )
        context.raw_entry_id = str(entry.id)

        self._mark_checked(binding, now, result.status)
        run.http_status = result.status

        self._process_entry(binding, entry, config, context)

        # last_hash only covers content whose entry has left pending
        binding.last_hash = content_hash
        binding.save(update_fields=["last_hash", "updated_at"])
        message = "Applied" if context.verification == OUTCOME_APPLIED else "Queued for review"
        self._finish(run, context, success=True, message=message)
        self._record_success(binding)

    # =========================================================================
    # Fetching
    # =========================================================================

    def _fetch_once(self, url: str, config, timeout_ms: int) -> FetchResult:
        """Run the async fetcher on a fresh event loop, bounded by the timeout."""
        outer_timeout = timeout_ms / 1000.0 + self.timeout_grace_seconds
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(
                asyncio.wait_for(self.fetcher.fetch(url, config, timeout_ms), timeout=outer_timeout)
            )
        except asyncio.TimeoutError:
            raise TransientFetchError(f"Fetch of {url} did not complete within {outer_timeout:.1f}s")
        finally:
            loop.close()

    def _fetch_with_retry(
        self, binding: SourceBinding, run: SyncRun, context: SyncContext, url: str, config
    ) -> Optional[FetchResult]:
        """
        Fetch with exponential backoff on transient errors.

        A retry is only made if its wait plus a full attempt still fits in the
        run's time budget; the claim is refreshed before every retry.

        Returns:
            FetchResult, or None after the failure has been recorded
        """
        source = binding.source
        attempt_seconds = source.request_timeout_ms / 1000.0 + self.timeout_grace_seconds
        attempt = 1

        while True:
            run.attempt = attempt
            try:
                return self._fetch_once(url, config, source.request_timeout_ms)
            except FetchError as e:
                context.attempts.append(
                    {
                        "attempt": attempt,
                        "error": e.message,
                        "status_code": e.status_code,
                        "transient": e.transient,
                    }
                )

                message = e.message
                if e.transient and attempt < source.retry_max:
                    delay = calculate_backoff_seconds(
                        source.retry_backoff_seconds, attempt, self.max_backoff_seconds
                    )
                    elapsed = (self.clock() - run.started_at).total_seconds()
                    next_attempt_seconds = delay + attempt_seconds
                    if elapsed + next_attempt_seconds <= self.run_budget_seconds:
                        logger.warning(
                            f"Transient error for {binding} (attempt {attempt}/{source.retry_max}), "
                            f"retrying in {delay}s: {e.message}"
                        )
                        add_sync_breadcrumb(
                            binding, message="Retrying fetch", level="warning", extra_data={"attempt": attempt}
                        )
                        if delay > 0:
                            self.sleep(delay)
                        binding.refresh_claim()
                        attempt += 1
                        continue

                    message = f"Run time budget exhausted after {attempt} attempt(s): {e.message}"
                    context.attempts[-1]["budget_exhausted"] = True

                logger.warning(f"Fetch failed for {binding} after {attempt} attempt(s): {message}")
                capture_sync_error(e, binding=binding, attempt=attempt)
                self._fail(binding, run, context, message, http_status=e.status_code)
                return None

    # =========================================================================
    # Extraction and reconciliation
    # =========================================================================

    def _validate_candidates(self, raw_candidates, context: SyncContext) -> List[FieldCandidate]:
        valid = []
        for raw in raw_candidates:
            try:
                candidate = FieldCandidate.from_dict(raw)
                _, text_value = coerce_field_value(candidate.field, candidate.value)
            except CandidateValidationError as e:
                shown = raw.to_dict() if isinstance(raw, FieldCandidate) else raw
                context.invalid_candidates.append({"candidate": repr(shown)[:500], "error": str(e)})
                continue
            candidate.value = text_value
            valid.append(candidate)
        return rank_candidates(valid)

    @staticmethod
    def _derive_year(candidates: List[FieldCandidate]) -> Optional[int]:
        """Year from the preferred race_date, else the preferred year candidate."""
        for field_name in ("race_date", "year"):
            for candidate in candidates:
                if candidate.field == field_name and candidate.rank == 0:
                    python_value, _ = coerce_field_value(field_name, candidate.value)
                    return python_value.year if field_name == "race_date" else python_value
        return None

    def _process_entry(self, binding: SourceBinding, entry: RawCrawlEntry, config, context: SyncContext):
        source = binding.source
        extractor = self.extractor_factory(source, binding.effective_url, config)

        try:
            raw_candidates = extractor.extract(entry.raw_content, entry.content_type)
            candidates = self._validate_candidates(raw_candidates, context)
        except SoftTimeLimitExceeded:
            raise
        except Exception as e:
            logger.warning(f"Extraction failed for {binding}: {e}")
            entry.metadata["extraction_error"] = f"{type(e).__name__}: {e}"
            self._route_to_review(entry, context, "extraction_error")
            return

        clearing = [c for c in candidates if c.confidence >= self.threshold]

        entry.metadata["candidates"] = [c.to_dict() for c in candidates]
        entry.metadata["methods"] = sorted({c.method for c in candidates})
        if context.invalid_candidates:
            entry.metadata["invalid_candidates"] = context.invalid_candidates

        if not clearing:
            self._route_to_review(entry, context, "no_candidates" if not candidates else "low_confidence")
            return

        year = self._derive_year(clearing)
        if year is None:
            self._route_to_review(entry, context, "no_year")
            return

        year_candidate = next((c for c in clearing if c.field == "year" and c.rank == 0), None)
        if year_candidate is not None and int(year_candidate.value) != year:
            self._route_to_review(entry, context, "year_conflict")
            return

        edition = self.reconciler.get_or_create_edition(binding.event, year)
        for candidate in clearing:
            if candidate.field == "year":
                continue
            stamp = ProvenanceStamp(
                priority=source.priority,
                rank=candidate.rank,
                observed_at=entry.fetched_at,
                source_id=str(source.id),
                method=candidate.method,
                confidence=candidate.confidence,
                raw_entry_id=str(entry.id),
            )
            decision = self.reconciler.apply_field(
                edition, candidate.field, candidate.value, stamp, source=source, raw_entry=entry
            )
            edition = decision.edition
            context.record(decision)

        context.verification = OUTCOME_APPLIED
        entry.metadata["edition_id"] = str(edition.id)
        entry.metadata["year"] = year
        entry.metadata["applied"] = context.changes
        entry.metadata["conflicts"] = context.conflicts
        entry.transition_to(RawCrawlStatus.PROCESSED)

    def _route_to_review(self, entry: RawCrawlEntry, context: SyncContext, reason: str) -> None:
        context.verification = OUTCOME_NEEDS_REVIEW
        context.review_reason = reason
        entry.metadata["review_reason"] = reason
        entry.transition_to(RawCrawlStatus.NEEDS_REVIEW)
        logger.info(f"Raw crawl entry {entry.id} needs review ({reason})")

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def _mark_checked(self, binding: SourceBinding, now, http_status: int, extra_fields=None) -> None:
        binding.last_checked_at = now
        binding.next_check_at = calculate_next_check(binding.source.min_interval_seconds, now)
        binding.last_http_status = http_status
        binding.last_error = ""
        binding.save(
            update_fields=[
                "last_checked_at",
                "next_check_at",
                "last_http_status",
                "last_error",
                "updated_at",
            ]
            + (extra_fields or [])
        )

    def _fail(
        self,
        binding: SourceBinding,
        run: SyncRun,
        context: SyncContext,
        message: str,
        http_status: Optional[int] = None,
    ) -> None:
        now = self.clock()
        binding.last_error = message
        binding.last_http_status = http_status
        binding.last_checked_at = now
        binding.next_check_at = calculate_next_check(binding.source.min_interval_seconds, now)
        binding.save(
            update_fields=["last_error", "last_http_status", "last_checked_at", "next_check_at", "updated_at"]
        )

        context.verification = OUTCOME_FAILED
        run.http_status = http_status
        self._finish(run, context, success=False, error_message=message)

        if self.failure_tracker is not None:
            self.failure_tracker.record_failure(str(binding.id), label=str(binding))

    def _abandon(
        self, binding: SourceBinding, run: SyncRun, context: SyncContext, error: Exception, message: str
    ) -> None:
        """Fail a run that was interrupted, parking its pending entry in the review queue."""
        if context.raw_entry_id:
            try:
                entry = RawCrawlEntry.objects.filter(
                    pk=context.raw_entry_id, status=RawCrawlStatus.PENDING
                ).first()
                if entry is not None:
                    entry.metadata["processing_error"] = f"{type(error).__name__}: {error}"
                    self._route_to_review(entry, context, "processing_error")
            except DatabaseError as db_error:
                logger.error(f"Could not park raw crawl entry {context.raw_entry_id}: {db_error}")

        if not run.is_finished:
            self._fail(binding, run, context, message)

    def _finish(
        self, run: SyncRun, context: SyncContext, success: bool, message: str = "", error_message: str = ""
    ) -> None:
        run.new_count = context.new_count
        run.updated_count = context.updated_count
        run.unchanged_count = context.unchanged_count
        run.details = context.to_dict()
        run.finish(success=success, message=message, error_message=error_message)

    def _record_success(self, binding: SourceBinding) -> None:
        if self.failure_tracker is not None:
            self.failure_tracker.record_success(str(binding.id))
