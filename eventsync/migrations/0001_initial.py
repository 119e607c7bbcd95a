"""
Migration: Initial schema for sources, events, bindings, sync runs,
raw crawl entries, editions and field provenance.
"""

import uuid

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Event",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(help_text="Display name", max_length=200)),
                (
                    "canonical_name",
                    models.CharField(
                        help_text="Normalized key, derived from name when blank",
                        max_length=200,
                        unique=True,
                    ),
                ),
                ("city", models.CharField(blank=True, max_length=100)),
                ("country", models.CharField(blank=True, max_length=100)),
                (
                    "website_url",
                    models.URLField(
                        blank=True,
                        help_text="Official website, default URL for bindings",
                        max_length=500,
                    ),
                ),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "events",
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="Source",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(help_text="Human-readable name", max_length=100, unique=True)),
                (
                    "source_type",
                    models.CharField(
                        choices=[
                            ("official", "Official Website"),
                            ("platform", "Registration Platform"),
                            ("search", "Search Results"),
                            ("social", "Social Media"),
                            ("other", "Other"),
                        ],
                        default="official",
                        help_text="Kind of source (informational)",
                        max_length=20,
                    ),
                ),
                ("base_url", models.URLField(blank=True, help_text="Base URL of the source", max_length=500)),
                (
                    "strategy",
                    models.CharField(
                        choices=[("html", "HTML Page"), ("api", "JSON API")],
                        default="html",
                        help_text="Fetch and extraction strategy",
                        max_length=10,
                    ),
                ),
                (
                    "strategy_config",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Versioned strategy configuration (headers, selector rules, API field paths)",
                    ),
                ),
                (
                    "priority",
                    models.IntegerField(
                        default=0,
                        help_text="Higher = more authoritative in field conflicts",
                        validators=[
                            django.core.validators.MinValueValidator(0),
                            django.core.validators.MaxValueValidator(2147483646),
                        ],
                    ),
                ),
                ("is_active", models.BooleanField(default=True, help_text="Enable/disable syncing")),
                (
                    "retry_max",
                    models.IntegerField(
                        default=3,
                        help_text="Max fetch attempts per run",
                        validators=[django.core.validators.MinValueValidator(1)],
                    ),
                ),
                (
                    "retry_backoff_seconds",
                    models.IntegerField(
                        default=30,
                        help_text="Base backoff, doubled on every retry",
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                (
                    "request_timeout_ms",
                    models.IntegerField(
                        default=15000,
                        help_text="Fetch timeout (milliseconds)",
                        validators=[django.core.validators.MinValueValidator(1)],
                    ),
                ),
                (
                    "min_interval_seconds",
                    models.IntegerField(
                        default=0,
                        help_text="Minimum delay between runs of the same binding",
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                ("last_run_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("notes", models.TextField(blank=True, help_text="Internal notes")),
            ],
            options={
                "db_table": "event_sources",
                "ordering": ["-priority", "name"],
                "indexes": [
                    models.Index(fields=["is_active", "priority"], name="source_active_priority_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="SourceBinding",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "source_url",
                    models.URLField(
                        blank=True,
                        help_text="Page or endpoint URL, falls back to event website",
                        max_length=2000,
                    ),
                ),
                ("is_primary", models.BooleanField(default=False, help_text="Primary binding for this event")),
                (
                    "last_hash",
                    models.CharField(blank=True, help_text="SHA-256 of last stored content", max_length=64),
                ),
                ("last_http_status", models.IntegerField(blank=True, null=True)),
                ("last_error", models.TextField(blank=True)),
                ("last_checked_at", models.DateTimeField(blank=True, null=True)),
                ("next_check_at", models.DateTimeField(blank=True, null=True)),
                ("sync_claimed_at", models.DateTimeField(blank=True, null=True)),
                ("sync_claim_token", models.CharField(blank=True, max_length=64)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "event",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="bindings",
                        to="eventsync.event",
                    ),
                ),
                (
                    "source",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="bindings",
                        to="eventsync.source",
                    ),
                ),
            ],
            options={
                "db_table": "source_bindings",
                "ordering": ["-is_primary", "created_at"],
                "indexes": [
                    models.Index(fields=["next_check_at"], name="binding_next_check_idx"),
                    models.Index(fields=["last_checked_at"], name="binding_last_checked_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("event", "source"), name="unique_binding_per_event_source"
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SyncRun",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "status",
                    models.CharField(
                        choices=[("running", "Running"), ("success", "Success"), ("failed", "Failed")],
                        default="running",
                        max_length=20,
                    ),
                ),
                ("strategy_used", models.CharField(blank=True, max_length=10)),
                ("attempt", models.IntegerField(default=1, help_text="Fetch attempts made")),
                ("new_count", models.IntegerField(default=0, help_text="Fields filled for the first time")),
                ("updated_count", models.IntegerField(default=0, help_text="Field values overwritten")),
                (
                    "unchanged_count",
                    models.IntegerField(default=0, help_text="Rejected, same-value or deduplicated"),
                ),
                ("http_status", models.IntegerField(blank=True, null=True)),
                ("message", models.TextField(blank=True)),
                ("error_message", models.TextField(blank=True)),
                (
                    "details",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Changes, conflicts and verification outcome",
                    ),
                ),
                ("started_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                (
                    "binding",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="sync_runs",
                        to="eventsync.sourcebinding",
                    ),
                ),
                (
                    "event",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="sync_runs",
                        to="eventsync.event",
                    ),
                ),
                (
                    "source",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="sync_runs",
                        to="eventsync.source",
                    ),
                ),
            ],
            options={
                "db_table": "sync_runs",
                "ordering": ["-started_at"],
                "indexes": [
                    models.Index(fields=["status", "started_at"], name="sync_run_status_started_idx"),
                    models.Index(fields=["binding", "started_at"], name="sync_run_binding_started_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="RawCrawlEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("source_url", models.URLField(max_length=2000)),
                ("content_type", models.CharField(blank=True, max_length=100)),
                ("http_status", models.IntegerField(blank=True, null=True)),
                ("raw_content", models.TextField(blank=True)),
                (
                    "content_hash",
                    models.CharField(db_index=True, help_text="SHA-256 of raw_content", max_length=64),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Extraction, candidates and resolution",
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("needs_review", "Needs Review"),
                            ("processed", "Processed"),
                            ("ignored", "Ignored"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("resolved_by", models.CharField(blank=True, max_length=150)),
                ("fetched_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "binding",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="raw_entries",
                        to="eventsync.sourcebinding",
                    ),
                ),
                (
                    "event",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="raw_entries",
                        to="eventsync.event",
                    ),
                ),
                (
                    "source",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="raw_entries",
                        to="eventsync.source",
                    ),
                ),
                (
                    "sync_run",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="raw_entries",
                        to="eventsync.syncrun",
                    ),
                ),
            ],
            options={
                "db_table": "raw_crawl_entries",
                "ordering": ["-fetched_at"],
                "verbose_name_plural": "raw crawl entries",
                "indexes": [
                    models.Index(fields=["status", "fetched_at"], name="raw_entry_status_fetched_idx"),
                    models.Index(fields=["source", "fetched_at"], name="raw_entry_source_fetched_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Edition",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "year",
                    models.IntegerField(
                        validators=[
                            django.core.validators.MinValueValidator(2000),
                            django.core.validators.MaxValueValidator(2100),
                        ]
                    ),
                ),
                ("race_date", models.DateField(blank=True, null=True)),
                ("registration_status", models.CharField(blank=True, max_length=50)),
                ("registration_url", models.URLField(blank=True, max_length=2000)),
                ("registration_open_date", models.DateField(blank=True, null=True)),
                ("registration_close_date", models.DateField(blank=True, null=True)),
                ("last_synced_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "event",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="editions",
                        to="eventsync.event",
                    ),
                ),
            ],
            options={
                "db_table": "event_editions",
                "ordering": ["event", "-year"],
                "constraints": [
                    models.UniqueConstraint(fields=("event", "year"), name="unique_edition_per_event_year"),
                ],
            },
        ),
        migrations.CreateModel(
            name="EditionFieldProvenance",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("field_name", models.CharField(max_length=50)),
                (
                    "value",
                    models.TextField(blank=True, help_text="Canonical text form of the applied value"),
                ),
                (
                    "source_marker",
                    models.CharField(
                        choices=[("source", "Source"), ("manual", "Manual Resolution")],
                        default="source",
                        max_length=10,
                    ),
                ),
                ("priority", models.IntegerField()),
                ("rank", models.IntegerField(default=0)),
                ("method", models.CharField(blank=True, max_length=20)),
                ("confidence", models.FloatField(blank=True, null=True)),
                ("observed_at", models.DateTimeField()),
                ("applied_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("resolved_by", models.CharField(blank=True, max_length=150)),
                ("schema_version", models.IntegerField(default=1)),
                (
                    "edition",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="provenance",
                        to="eventsync.edition",
                    ),
                ),
                (
                    "raw_entry",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="provenance",
                        to="eventsync.rawcrawlentry",
                    ),
                ),
                (
                    "source",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="provenance",
                        to="eventsync.source",
                    ),
                ),
            ],
            options={
                "db_table": "edition_field_provenance",
                "ordering": ["edition", "field_name"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("edition", "field_name"), name="unique_provenance_per_field"
                    ),
                ],
            },
        ),
    ]
