"""
Django models for the Marathon Event Sync engine.

Models: Source, Event, SourceBinding, SyncRun, RawCrawlEntry, Edition,
        EditionFieldProvenance

Sources and bindings are managed via Django Admin or the operator API. Sync
runs, raw crawl entries and field provenance are written by the sync
orchestrator and the review queue only.
"""

import hashlib
import uuid
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone

from eventsync.exceptions import EventSyncError, InvalidReviewTransition, StrategyConfigError
from eventsync.schemas import (
    MANUAL_PRIORITY,
    MARKER_MANUAL,
    MARKER_SOURCE,
    PROVENANCE_SCHEMA_VERSION,
    parse_strategy_config,
)
from eventsync.utils.normalization import MAX_YEAR, MIN_YEAR, canonicalize_name
from eventsync.utils.scheduling import run_time_budget_seconds, worst_case_run_seconds


class SourceType(models.TextChoices):
    """Kinds of event data sources. Informational only."""

    OFFICIAL = "official", "Official Website"
    PLATFORM = "platform", "Registration Platform"
    SEARCH = "search", "Search Results"
    SOCIAL = "social", "Social Media"
    OTHER = "other", "Other"


class SyncStrategy(models.TextChoices):
    """How a source's content is fetched and extracted."""

    HTML = "html", "HTML Page"
    API = "api", "JSON API"


class SyncRunStatus(models.TextChoices):
    """Status of a sync run."""

    RUNNING = "running", "Running"
    SUCCESS = "success", "Success"
    FAILED = "failed", "Failed"


class RawCrawlStatus(models.TextChoices):
    """Review status of a raw crawl entry."""

    PENDING = "pending", "Pending"
    NEEDS_REVIEW = "needs_review", "Needs Review"
    PROCESSED = "processed", "Processed"
    IGNORED = "ignored", "Ignored"


# Allowed review transitions. Processed and ignored are terminal.
RAW_CRAWL_TRANSITIONS = {
    RawCrawlStatus.PENDING: {RawCrawlStatus.NEEDS_REVIEW, RawCrawlStatus.PROCESSED},
    RawCrawlStatus.NEEDS_REVIEW: {RawCrawlStatus.PROCESSED, RawCrawlStatus.IGNORED},
    RawCrawlStatus.PROCESSED: set(),
    RawCrawlStatus.IGNORED: set(),
}


class ProvenanceMarker(models.TextChoices):
    """Who supplied a field value."""

    SOURCE = MARKER_SOURCE, "Source"
    MANUAL = MARKER_MANUAL, "Manual Resolution"


class Source(models.Model):
    """
    Configuration for an external event data source.

    Managed via Django Admin or the operator API without code changes.
    Priority decides which source wins a field conflict.
    """

    # Identity
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100, unique=True, help_text="Human-readable name")
    source_type = models.CharField(
        max_length=20,
        choices=SourceType.choices,
        default=SourceType.OFFICIAL,
        help_text="Kind of source (informational)",
    )
    base_url = models.URLField(max_length=500, blank=True, help_text="Base URL of the source")

    # Sync Configuration
    strategy = models.CharField(
        max_length=10,
        choices=SyncStrategy.choices,
        default=SyncStrategy.HTML,
        help_text="Fetch and extraction strategy",
    )
    strategy_config = models.JSONField(
        default=dict,
        blank=True,
        help_text="Versioned strategy configuration (headers, selector rules, API field paths)",
    )
    priority = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0), MaxValueValidator(MANUAL_PRIORITY - 1)],
        help_text="Higher = more authoritative in field conflicts",
    )
    is_active = models.BooleanField(default=True, help_text="Enable/disable syncing")

    # Retry and Timing
    retry_max = models.IntegerField(
        default=3, validators=[MinValueValidator(1)], help_text="Max fetch attempts per run"
    )
    retry_backoff_seconds = models.IntegerField(
        default=30,
        validators=[MinValueValidator(0)],
        help_text="Base backoff, doubled on every retry",
    )
    request_timeout_ms = models.IntegerField(
        default=15000, validators=[MinValueValidator(1)], help_text="Fetch timeout (milliseconds)"
    )
    min_interval_seconds = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="Minimum delay between runs of the same binding",
    )

    # Status Tracking
    last_run_at = models.DateTimeField(null=True, blank=True)

    # Metadata
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)
    notes = models.TextField(blank=True, help_text="Internal notes")

    def save(self, *args, **kwargs):
        if not kwargs.pop("raw", False):
            self.updated_at = timezone.now()
        super().save(*args, **kwargs)

    class Meta:
        db_table = "event_sources"
        ordering = ["-priority", "name"]
        indexes = [
            models.Index(fields=["is_active", "priority"], name="source_active_priority_idx"),
        ]

    def __str__(self):
        return f"{self.name} ({self.strategy}, priority {self.priority})"

    def clean(self):
        super().clean()
        errors = {}
        try:
            self.get_strategy_config()
        except StrategyConfigError as e:
            errors["strategy_config"] = e.message

        timing = (self.retry_max, self.retry_backoff_seconds, self.request_timeout_ms)
        if all(isinstance(value, int) and value >= 0 for value in timing):
            worst_case = worst_case_run_seconds(*timing)
            budget = run_time_budget_seconds()
            if worst_case > budget:
                errors["retry_max"] = (
                    f"Retries and timeouts can take {worst_case:.0f}s, "
                    f"more than the {budget:.0f}s a run may last"
                )

        if errors:
            raise ValidationError(errors)

    def get_strategy_config(self):
        """Return the typed strategy config. Raises StrategyConfigError if malformed."""
        return parse_strategy_config(self.strategy, self.strategy_config)

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000.0


class Event(models.Model):
    """
    A recurring marathon. Anchor for bindings and yearly editions.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200, help_text="Display name")
    canonical_name = models.CharField(
        max_length=200,
        unique=True,
        help_text="Normalized key, derived from name when blank",
    )
    city = models.CharField(max_length=100, blank=True)
    country = models.CharField(max_length=100, blank=True)
    website_url = models.URLField(
        max_length=500, blank=True, help_text="Official website, default URL for bindings"
    )

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    def save(self, *args, **kwargs):
        if not self.canonical_name:
            self.canonical_name = canonicalize_name(self.name)
        if not kwargs.pop("raw", False):
            self.updated_at = timezone.now()
        super().save(*args, **kwargs)

    class Meta:
        db_table = "events"
        ordering = ["name"]

    def __str__(self):
        return self.name


class SourceBinding(models.Model):
    """
    Connects an event to a source, with per-pair URL and sync state.

    Sync state columns are written by the orchestrator only. The claim
    columns hold the per-binding lock while a run is in flight.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name="bindings")
    source = models.ForeignKey(Source, on_delete=models.PROTECT, related_name="bindings")

    source_url = models.URLField(
        max_length=2000, blank=True, help_text="Page or endpoint URL, falls back to event website"
    )
    is_primary = models.BooleanField(default=False, help_text="Primary binding for this event")

    # Sync State
    last_hash = models.CharField(max_length=64, blank=True, help_text="SHA-256 of last stored content")
    last_http_status = models.IntegerField(null=True, blank=True)
    last_error = models.TextField(blank=True)
    last_checked_at = models.DateTimeField(null=True, blank=True)
    next_check_at = models.DateTimeField(null=True, blank=True)

    # Claim (per-binding lock)
    sync_claimed_at = models.DateTimeField(null=True, blank=True)
    sync_claim_token = models.CharField(max_length=64, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    def save(self, *args, **kwargs):
        if not kwargs.pop("raw", False):
            self.updated_at = timezone.now()
        super().save(*args, **kwargs)

    class Meta:
        db_table = "source_bindings"
        ordering = ["-is_primary", "created_at"]
        constraints = [
            models.UniqueConstraint(fields=["event", "source"], name="unique_binding_per_event_source"),
        ]
        indexes = [
            models.Index(fields=["next_check_at"], name="binding_next_check_idx"),
            models.Index(fields=["last_checked_at"], name="binding_last_checked_idx"),
        ]

    def __str__(self):
        return f"{self.event.name} <- {self.source.name}"

    @property
    def effective_url(self) -> str:
        return self.source_url or self.event.website_url

    def is_due(self, now=None) -> bool:
        """Check if binding is due for a sync run."""
        if not self.source.is_active:
            return False
        if self.next_check_at is None:
            return True
        return (now or timezone.now()) >= self.next_check_at

    def claim(self, stale_seconds: Optional[int] = None) -> Optional[str]:
        """
        Take the per-binding lock.

        A single conditional UPDATE so two workers can never both succeed.
        A claim older than stale_seconds is taken over.

        Returns:
            Claim token, or None if another run holds the binding
        """
        if stale_seconds is None:
            stale_seconds = settings.SYNC_LOCK_STALE_SECONDS
        now = timezone.now()
        token = uuid.uuid4().hex
        stale_before = now - timedelta(seconds=stale_seconds)

        updated = (
            SourceBinding.objects.filter(pk=self.pk)
            .filter(Q(sync_claimed_at__isnull=True) | Q(sync_claimed_at__lt=stale_before))
            .update(sync_claimed_at=now, sync_claim_token=token)
        )
        if not updated:
            return None

        self.sync_claimed_at = now
        self.sync_claim_token = token
        return token

    def refresh_claim(self) -> bool:
        """
        Push sync_claimed_at forward while a run is still working.

        Only succeeds if this instance's token still holds the binding.
        """
        if not self.sync_claim_token:
            return False
        now = timezone.now()
        refreshed = SourceBinding.objects.filter(pk=self.pk, sync_claim_token=self.sync_claim_token).update(
            sync_claimed_at=now
        )
        if refreshed:
            self.sync_claimed_at = now
        return bool(refreshed)

    def release(self, token: str) -> bool:
        """Release the lock if this token still holds it."""
        released = SourceBinding.objects.filter(pk=self.pk, sync_claim_token=token).update(
            sync_claimed_at=None, sync_claim_token=""
        )
        if released:
            self.sync_claimed_at = None
            self.sync_claim_token = ""
        return bool(released)

    @property
    def is_claimed(self) -> bool:
        return bool(self.sync_claim_token)


class SyncRun(models.Model):
    """
    One execution of the sync pipeline for a binding.

    Finished runs are never mutated.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    binding = models.ForeignKey(SourceBinding, on_delete=models.CASCADE, related_name="sync_runs")
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name="sync_runs")
    source = models.ForeignKey(Source, on_delete=models.CASCADE, related_name="sync_runs")

    status = models.CharField(
        max_length=20, choices=SyncRunStatus.choices, default=SyncRunStatus.RUNNING
    )
    strategy_used = models.CharField(max_length=10, blank=True)
    attempt = models.IntegerField(default=1, help_text="Fetch attempts made")

    # Metrics
    new_count = models.IntegerField(default=0, help_text="Fields filled for the first time")
    updated_count = models.IntegerField(default=0, help_text="Field values overwritten")
    unchanged_count = models.IntegerField(default=0, help_text="Rejected, same-value or deduplicated")
    http_status = models.IntegerField(null=True, blank=True)

    # Results
    message = models.TextField(blank=True)
    error_message = models.TextField(blank=True)
    details = models.JSONField(default=dict, blank=True, help_text="Changes, conflicts and verification outcome")

    # Timing
    started_at = models.DateTimeField(default=timezone.now)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "sync_runs"
        ordering = ["-started_at"]
        indexes = [
            models.Index(fields=["status", "started_at"], name="sync_run_status_started_idx"),
            models.Index(fields=["binding", "started_at"], name="sync_run_binding_started_idx"),
        ]

    def __str__(self):
        return f"Run {self.id} - {self.source.name} ({self.status})"

    @property
    def duration_seconds(self):
        """Calculate run duration."""
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    def finish(self, success: bool, message: str = "", error_message: str = ""):
        """Mark run as succeeded or failed. A run can only be finished once."""
        if self.is_finished:
            raise EventSyncError(f"Sync run {self.id} is already finished")
        self.status = SyncRunStatus.SUCCESS if success else SyncRunStatus.FAILED
        self.finished_at = timezone.now()
        self.message = message
        self.error_message = error_message
        self.save()


class RawCrawlEntry(models.Model):
    """
    Raw content fetched for a binding, plus its review status.

    Content is immutable once written. Only status, metadata and
    resolution columns change afterwards.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name="raw_entries")
    source = models.ForeignKey(Source, on_delete=models.CASCADE, related_name="raw_entries")
    binding = models.ForeignKey(
        SourceBinding, on_delete=models.SET_NULL, null=True, blank=True, related_name="raw_entries"
    )
    sync_run = models.ForeignKey(
        SyncRun, on_delete=models.SET_NULL, null=True, blank=True, related_name="raw_entries"
    )

    # Content
    source_url = models.URLField(max_length=2000)
    content_type = models.CharField(max_length=100, blank=True)
    http_status = models.IntegerField(null=True, blank=True)
    raw_content = models.TextField(blank=True)
    content_hash = models.CharField(max_length=64, db_index=True, help_text="SHA-256 of raw_content")
    metadata = models.JSONField(default=dict, blank=True, help_text="Extraction, candidates and resolution")

    # Review
    status = models.CharField(
        max_length=20, choices=RawCrawlStatus.choices, default=RawCrawlStatus.PENDING
    )
    resolved_by = models.CharField(max_length=150, blank=True)

    # Timing
    fetched_at = models.DateTimeField(default=timezone.now)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "raw_crawl_entries"
        ordering = ["-fetched_at"]
        verbose_name_plural = "raw crawl entries"
        indexes = [
            models.Index(fields=["status", "fetched_at"], name="raw_entry_status_fetched_idx"),
            models.Index(fields=["source", "fetched_at"], name="raw_entry_source_fetched_idx"),
        ]

    def __str__(self):
        return f"{self.source_url} ({self.status})"

    @staticmethod
    def generate_content_hash(content: str) -> str:
        """Generate SHA-256 hash of content for change detection."""
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in RAW_CRAWL_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: str, resolved_by: str = "", save: bool = True):
        """
        Move the entry along the review state machine.

        Raises:
            InvalidReviewTransition: If the move is not allowed
        """
        if not self.can_transition_to(new_status):
            raise InvalidReviewTransition(self.status, new_status)
        self.status = new_status
        if new_status in (RawCrawlStatus.PROCESSED, RawCrawlStatus.IGNORED):
            self.processed_at = timezone.now()
        if resolved_by:
            self.resolved_by = resolved_by
        if save:
            self.save(update_fields=["status", "processed_at", "resolved_by", "metadata"])


class Edition(models.Model):
    """
    The canonical record of one year's race for an event.

    Field values are written by the reconciliation engine only.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name="editions")
    year = models.IntegerField(validators=[MinValueValidator(MIN_YEAR), MaxValueValidator(MAX_YEAR)])

    race_date = models.DateField(null=True, blank=True)
    registration_status = models.CharField(max_length=50, blank=True)
    registration_url = models.URLField(max_length=2000, blank=True)
    registration_open_date = models.DateField(null=True, blank=True)
    registration_close_date = models.DateField(null=True, blank=True)

    last_synced_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    def save(self, *args, **kwargs):
        if not kwargs.pop("raw", False):
            self.updated_at = timezone.now()
        super().save(*args, **kwargs)

    class Meta:
        db_table = "event_editions"
        ordering = ["event", "-year"]
        constraints = [
            models.UniqueConstraint(fields=["event", "year"], name="unique_edition_per_event_year"),
        ]

    def __str__(self):
        return f"{self.event.name} {self.year}"


class EditionFieldProvenance(models.Model):
    """
    Who supplied the current value of one edition field.

    Typed columns of a ProvenanceStamp. One row per (edition, field).
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    edition = models.ForeignKey(Edition, on_delete=models.CASCADE, related_name="provenance")
    field_name = models.CharField(max_length=50)
    value = models.TextField(blank=True, help_text="Canonical text form of the applied value")

    source = models.ForeignKey(
        Source, on_delete=models.SET_NULL, null=True, blank=True, related_name="provenance"
    )
    source_marker = models.CharField(
        max_length=10, choices=ProvenanceMarker.choices, default=ProvenanceMarker.SOURCE
    )
    priority = models.IntegerField()
    rank = models.IntegerField(default=0)
    method = models.CharField(max_length=20, blank=True)
    confidence = models.FloatField(null=True, blank=True)
    observed_at = models.DateTimeField()
    applied_at = models.DateTimeField(default=timezone.now)
    raw_entry = models.ForeignKey(
        RawCrawlEntry, on_delete=models.SET_NULL, null=True, blank=True, related_name="provenance"
    )
    resolved_by = models.CharField(max_length=150, blank=True)
    schema_version = models.IntegerField(default=PROVENANCE_SCHEMA_VERSION)

    class Meta:
        db_table = "edition_field_provenance"
        ordering = ["edition", "field_name"]
        constraints = [
            models.UniqueConstraint(fields=["edition", "field_name"], name="unique_provenance_per_field"),
        ]

    def __str__(self):
        return f"{self.edition} {self.field_name} <- {self.source_marker}:{self.priority}"
