"""
Operator API URL Configuration

Endpoints (all staff-only):
- GET   /api/v1/admin/sources/                      - List sources
- PATCH /api/v1/admin/sources/<id>/                 - Update a source
- POST  /api/v1/admin/sync/run-all/                 - Sync all active bindings
- GET   /api/v1/admin/bindings/                     - List bindings
- POST  /api/v1/admin/bindings/                     - Bind event to source (upsert)
- POST  /api/v1/admin/bindings/<id>/sync/           - Sync one binding
- GET   /api/v1/admin/sync-runs/                    - List sync runs
- GET   /api/v1/admin/raw-crawl/                    - List raw crawl entries
- GET   /api/v1/admin/raw-crawl/<id>/               - Raw crawl entry detail
- POST  /api/v1/admin/raw-crawl/<id>/resolve/       - Resolve entry manually
- POST  /api/v1/admin/raw-crawl/<id>/ignore/        - Ignore entry
- GET   /api/v1/admin/events/<id>/editions/         - Editions with provenance
- GET   /api/v1/admin/stats/                        - Sync statistics
"""

from django.urls import path

from eventsync.api.views import (
    bindings_collection,
    event_editions,
    ignore_raw_crawl,
    list_raw_crawl,
    list_sources,
    list_sync_runs,
    raw_crawl_detail,
    resolve_raw_crawl,
    sync_stats,
    trigger_binding_sync,
    trigger_sync_all,
    update_source,
)

app_name = 'eventsync_api'

urlpatterns = [
    # Sources
    path('admin/sources/', list_sources, name='list_sources'),
    path('admin/sources/<uuid:source_id>/', update_source, name='update_source'),

    # Sync triggers
    path('admin/sync/run-all/', trigger_sync_all, name='trigger_sync_all'),
    path('admin/bindings/', bindings_collection, name='bindings'),
    path('admin/bindings/<uuid:binding_id>/sync/', trigger_binding_sync, name='trigger_binding_sync'),
    path('admin/sync-runs/', list_sync_runs, name='list_sync_runs'),

    # Review queue
    path('admin/raw-crawl/', list_raw_crawl, name='list_raw_crawl'),
    path('admin/raw-crawl/<uuid:entry_id>/', raw_crawl_detail, name='raw_crawl_detail'),
    path('admin/raw-crawl/<uuid:entry_id>/resolve/', resolve_raw_crawl, name='resolve_raw_crawl'),
    path('admin/raw-crawl/<uuid:entry_id>/ignore/', ignore_raw_crawl, name='ignore_raw_crawl'),

    # Editions and stats
    path('admin/events/<uuid:event_id>/editions/', event_editions, name='event_editions'),
    path('admin/stats/', sync_stats, name='sync_stats'),
]
