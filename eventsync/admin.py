"""
Django admin configuration for the sync engine.

Provides interfaces for managing sources, events and bindings, browsing
sync runs, working the raw crawl review queue and inspecting editions with
their field provenance.
"""

import json

from django.contrib import admin
from django.utils.html import format_html

from eventsync.exceptions import InvalidReviewTransition
from eventsync.models import (
    Edition,
    EditionFieldProvenance,
    Event,
    RawCrawlEntry,
    RawCrawlStatus,
    Source,
    SourceBinding,
    SyncRun,
)
from eventsync.services.review_queue import ReviewQueue
from eventsync.tasks import sync_binding

BADGE_HTML = (
    '<span style="background-color: {}; color: white; '
    'padding: 2px 8px; border-radius: 4px;">{}</span>'
)

STATUS_COLORS = {
    "running": "#007bff",
    "success": "#28a745",
    "failed": "#dc3545",
    "pending": "#6c757d",
    "needs_review": "#ffc107",
    "processed": "#28a745",
    "ignored": "#6c757d",
}


def _status_badge(status):
    return format_html(BADGE_HTML, STATUS_COLORS.get(status, "#6c757d"), status.replace("_", " ").title())


class SourceBindingInline(admin.TabularInline):
    model = SourceBinding
    extra = 0
    fields = ["source", "source_url", "is_primary", "last_checked_at", "next_check_at", "last_error"]
    readonly_fields = ["last_checked_at", "next_check_at", "last_error"]


@admin.register(Source)
class SourceAdmin(admin.ModelAdmin):
    """
    Admin interface for sources.

    Strategy config is validated by Source.clean() on save.
    """

    list_display = [
        "name",
        "source_type",
        "strategy",
        "is_active_badge",
        "priority",
        "last_run_at",
    ]
    list_filter = ["is_active", "source_type", "strategy"]
    search_fields = ["name", "base_url"]
    readonly_fields = ["id", "last_run_at", "created_at", "updated_at"]
    ordering = ["-priority", "name"]

    fieldsets = (
        ("Identity", {
            "fields": ("id", "name", "source_type", "base_url"),
        }),
        ("Sync Configuration", {
            "fields": ("is_active", "priority", "strategy", "strategy_config"),
        }),
        ("Retry and Timing", {
            "fields": (
                "retry_max",
                "retry_backoff_seconds",
                "request_timeout_ms",
                "min_interval_seconds",
            ),
        }),
        ("Metadata", {
            "fields": ("notes", "last_run_at", "created_at", "updated_at"),
            "classes": ("collapse",),
        }),
    )

    actions = ["trigger_sync", "enable_sources", "disable_sources", "reset_schedule"]

    def is_active_badge(self, obj):
        """Display active status as colored badge."""
        if obj.is_active:
            return format_html(BADGE_HTML, "#28a745", "Active")
        return format_html(BADGE_HTML, "#6c757d", "Inactive")
    is_active_badge.short_description = "Active"
    is_active_badge.admin_order_field = "is_active"

    @admin.action(description="Sync bindings now")
    def trigger_sync(self, request, queryset):
        """Queue a sync for every binding of the selected active sources."""
        count = 0
        for binding in SourceBinding.objects.filter(source__in=queryset.filter(is_active=True)):
            sync_binding.apply_async(args=[str(binding.id)], queue="sync")
            count += 1
        self.message_user(request, f"Queued sync for {count} binding(s).")

    @admin.action(description="Disable selected sources")
    def disable_sources(self, request, queryset):
        count = queryset.update(is_active=False)
        self.message_user(request, f"Disabled {count} source(s).")

    @admin.action(description="Enable selected sources")
    def enable_sources(self, request, queryset):
        count = queryset.update(is_active=True)
        self.message_user(request, f"Enabled {count} source(s).")

    @admin.action(description="Reset sync schedule (sync ASAP)")
    def reset_schedule(self, request, queryset):
        """Clear next_check_at on the selected sources' bindings."""
        count = SourceBinding.objects.filter(source__in=queryset).update(next_check_at=None)
        self.message_user(request, f"Reset schedule for {count} binding(s).")


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    list_display = ["name", "city", "country", "website_url", "created_at"]
    search_fields = ["name", "canonical_name", "city"]
    list_filter = ["country"]
    readonly_fields = ["id", "created_at", "updated_at"]
    inlines = [SourceBindingInline]


@admin.register(SourceBinding)
class SourceBindingAdmin(admin.ModelAdmin):
    """Admin interface for event/source bindings and their sync state."""

    list_display = [
        "event",
        "source",
        "is_primary",
        "last_http_status",
        "last_checked_at",
        "next_check_at",
        "error_flag",
    ]
    list_filter = ["is_primary", "source"]
    search_fields = ["event__name", "source__name", "source_url"]
    readonly_fields = [
        "id",
        "last_hash",
        "last_http_status",
        "last_error",
        "last_checked_at",
        "next_check_at",
        "sync_claimed_at",
        "sync_claim_token",
        "created_at",
        "updated_at",
    ]
    actions = ["trigger_sync", "reset_schedule"]

    def error_flag(self, obj):
        if obj.last_error:
            return format_html(BADGE_HTML, "#dc3545", "Error")
        return "-"
    error_flag.short_description = "Error"

    @admin.action(description="Sync now")
    def trigger_sync(self, request, queryset):
        count = 0
        for binding in queryset.filter(source__is_active=True):
            sync_binding.apply_async(args=[str(binding.id)], queue="sync")
            count += 1
        self.message_user(request, f"Queued sync for {count} binding(s).")

    @admin.action(description="Reset sync schedule (sync ASAP)")
    def reset_schedule(self, request, queryset):
        count = queryset.update(next_check_at=None)
        self.message_user(request, f"Reset schedule for {count} binding(s).")


@admin.register(SyncRun)
class SyncRunAdmin(admin.ModelAdmin):
    """
    Admin interface for sync runs.

    Read-only view of run status and metrics.
    """

    list_display = [
        "id_short",
        "source",
        "event",
        "status_badge",
        "attempt",
        "new_count",
        "updated_count",
        "unchanged_count",
        "started_at",
        "duration_display",
    ]
    list_filter = [
        "status",
        "source",
        ("started_at", admin.DateFieldListFilter),
    ]
    search_fields = ["event__name", "source__name", "id"]
    readonly_fields = [
        "id",
        "binding",
        "event",
        "source",
        "status",
        "strategy_used",
        "attempt",
        "new_count",
        "updated_count",
        "unchanged_count",
        "http_status",
        "message",
        "error_message",
        "details_formatted",
        "started_at",
        "finished_at",
    ]
    exclude = ["details"]
    ordering = ["-started_at"]

    def id_short(self, obj):
        """Display shortened run ID."""
        return str(obj.id)[:8]
    id_short.short_description = "Run ID"

    def status_badge(self, obj):
        return _status_badge(obj.status)
    status_badge.short_description = "Status"
    status_badge.admin_order_field = "status"

    def duration_display(self, obj):
        """Display run duration in human-readable format."""
        seconds = obj.duration_seconds
        if seconds is None:
            return "-"
        if seconds < 60:
            return f"{seconds:.1f}s"
        return f"{seconds / 60:.1f}m"
    duration_display.short_description = "Duration"

    def details_formatted(self, obj):
        """Display run details as formatted JSON."""
        return format_html(
            '<pre style="white-space: pre-wrap; word-wrap: break-word; '
            'background: #f5f5f5; padding: 10px; border-radius: 4px;">{}</pre>',
            json.dumps(obj.details, indent=2),
        )
    details_formatted.short_description = "Details"

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(RawCrawlEntry)
class RawCrawlEntryAdmin(admin.ModelAdmin):
    """
    Admin interface for the raw crawl review queue.

    Entries are resolved with values through the operator API; the admin
    can only dismiss them.
    """

    list_display = ["source_url", "source", "event", "status_badge", "http_status", "fetched_at"]
    list_filter = ["status", "source"]
    search_fields = ["source_url", "event__name", "content_hash"]
    readonly_fields = [
        "id",
        "event",
        "source",
        "binding",
        "sync_run",
        "source_url",
        "content_type",
        "http_status",
        "content_hash",
        "status",
        "resolved_by",
        "fetched_at",
        "processed_at",
        "metadata_formatted",
    ]
    exclude = ["raw_content", "metadata"]
    ordering = ["-fetched_at"]
    actions = ["ignore_entries"]

    def status_badge(self, obj):
        return _status_badge(obj.status)
    status_badge.short_description = "Status"
    status_badge.admin_order_field = "status"

    def metadata_formatted(self, obj):
        return format_html(
            '<pre style="white-space: pre-wrap; word-wrap: break-word; '
            'background: #f5f5f5; padding: 10px; border-radius: 4px;">{}</pre>',
            json.dumps(obj.metadata, indent=2),
        )
    metadata_formatted.short_description = "Metadata"

    @admin.action(description="Ignore selected entries")
    def ignore_entries(self, request, queryset):
        """Dismiss selected entries that are waiting for review."""
        queue = ReviewQueue()
        count = 0
        for entry in queryset.filter(status=RawCrawlStatus.NEEDS_REVIEW):
            try:
                queue.ignore(entry.id, resolved_by=request.user.get_username(), reason="Ignored from admin")
            except InvalidReviewTransition:
                continue
            count += 1
        self.message_user(request, f"Ignored {count} entry(ies).")

    def has_add_permission(self, request):
        return False


class EditionFieldProvenanceInline(admin.TabularInline):
    model = EditionFieldProvenance
    extra = 0
    can_delete = False
    fields = [
        "field_name",
        "value",
        "source_marker",
        "source",
        "priority",
        "rank",
        "method",
        "confidence",
        "observed_at",
        "resolved_by",
    ]
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Edition)
class EditionAdmin(admin.ModelAdmin):
    """
    Admin interface for editions.

    Field values are written through reconciliation only, so they are
    read-only here.
    """

    list_display = ["event", "year", "race_date", "registration_status", "last_synced_at"]
    list_filter = ["year", "registration_status"]
    search_fields = ["event__name"]
    readonly_fields = [
        "id",
        "event",
        "year",
        "race_date",
        "registration_status",
        "registration_url",
        "registration_open_date",
        "registration_close_date",
        "last_synced_at",
        "created_at",
        "updated_at",
    ]
    inlines = [EditionFieldProvenanceInline]

    def has_add_permission(self, request):
        return False
