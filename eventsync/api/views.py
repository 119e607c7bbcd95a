"""
Operator API Views

REST API endpoints for operators managing the sync engine.

This module provides endpoints for:
- Source configuration (list, update)
- Bindings between events and sources
- Triggering syncs (all bindings or one binding)
- Sync run history and statistics
- The raw crawl review queue (list, detail, resolve, ignore)
- Editions with per-field provenance

All endpoints require a staff user. Sync triggers are rate limited.
"""

import logging
from datetime import timedelta
from typing import Any, Dict

from django.conf import settings
from django.db.models import Count, Q
from django.http import QueryDict
from django.utils import timezone
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response

from eventsync.api.throttling import SyncTriggerThrottle
from eventsync.exceptions import InvalidReviewTransition, ReviewValidationError, StrategyConfigError
from eventsync.models import (
    Edition,
    Event,
    RawCrawlEntry,
    RawCrawlStatus,
    Source,
    SourceBinding,
    SyncRun,
)
from eventsync.services.registry import SourceRegistry
from eventsync.services.review_queue import ReviewQueue
from eventsync.tasks import sync_all_bindings, sync_binding

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 500


def _iso(value):
    return value.isoformat() if value else None


def _parse_limit(request) -> int:
    try:
        limit = int(request.query_params.get('limit', DEFAULT_LIST_LIMIT))
    except (TypeError, ValueError):
        return DEFAULT_LIST_LIMIT
    return max(1, min(limit, MAX_LIST_LIMIT))


def _is_truthy(value) -> bool:
    return str(value).lower() in ('1', 'true', 'yes')


def _source_to_dict(source: Source) -> Dict[str, Any]:
    return {
        'id': str(source.id),
        'name': source.name,
        'source_type': source.source_type,
        'base_url': source.base_url,
        'strategy': source.strategy,
        'strategy_config': source.strategy_config,
        'priority': source.priority,
        'is_active': source.is_active,
        'retry_max': source.retry_max,
        'retry_backoff_seconds': source.retry_backoff_seconds,
        'request_timeout_ms': source.request_timeout_ms,
        'min_interval_seconds': source.min_interval_seconds,
        'notes': source.notes,
        'last_run_at': _iso(source.last_run_at),
        'updated_at': _iso(source.updated_at),
    }


def _binding_to_dict(binding: SourceBinding) -> Dict[str, Any]:
    return {
        'id': str(binding.id),
        'event_id': str(binding.event_id),
        'event_name': binding.event.name,
        'source_id': str(binding.source_id),
        'source_name': binding.source.name,
        'source_url': binding.source_url,
        'effective_url': binding.effective_url,
        'is_primary': binding.is_primary,
        'last_http_status': binding.last_http_status,
        'last_error': binding.last_error,
        'last_checked_at': _iso(binding.last_checked_at),
        'next_check_at': _iso(binding.next_check_at),
        'is_syncing': binding.is_claimed,
    }


def _run_to_dict(run: SyncRun) -> Dict[str, Any]:
    return {
        'id': str(run.id),
        'binding_id': str(run.binding_id),
        'event_id': str(run.event_id),
        'source_id': str(run.source_id),
        'status': run.status,
        'strategy_used': run.strategy_used,
        'attempt': run.attempt,
        'new_count': run.new_count,
        'updated_count': run.updated_count,
        'unchanged_count': run.unchanged_count,
        'http_status': run.http_status,
        'message': run.message,
        'error_message': run.error_message,
        'started_at': _iso(run.started_at),
        'finished_at': _iso(run.finished_at),
    }


def _body_values(request) -> Dict[str, Any]:
    """Request body as a plain dict; form-encoded bodies keep the last value per key."""
    if isinstance(request.data, QueryDict):
        return request.data.dict()
    return dict(request.data)


def _entry_to_dict(entry: RawCrawlEntry, include_content: bool = False, full: bool = False) -> Dict[str, Any]:
    data = {
        'id': str(entry.id),
        'event_id': str(entry.event_id),
        'event_name': entry.event.name,
        'source_id': str(entry.source_id),
        'source_name': entry.source.name,
        'sync_run_id': str(entry.sync_run_id) if entry.sync_run_id else None,
        'source_url': entry.source_url,
        'content_type': entry.content_type,
        'http_status': entry.http_status,
        'content_hash': entry.content_hash,
        'status': entry.status,
        'resolved_by': entry.resolved_by,
        'fetched_at': _iso(entry.fetched_at),
        'processed_at': _iso(entry.processed_at),
        'metadata': entry.metadata,
    }
    if include_content:
        preview_chars = settings.SYNC_RAW_PREVIEW_CHARS
        content = entry.raw_content if full else entry.raw_content[:preview_chars]
        data['raw_content'] = content
        data['raw_content_length'] = len(entry.raw_content)
        data['raw_content_truncated'] = len(content) < len(entry.raw_content)
    return data


def _edition_to_dict(edition: Edition) -> Dict[str, Any]:
    return {
        'id': str(edition.id),
        'year': edition.year,
        'race_date': _iso(edition.race_date),
        'registration_status': edition.registration_status,
        'registration_url': edition.registration_url,
        'registration_open_date': _iso(edition.registration_open_date),
        'registration_close_date': _iso(edition.registration_close_date),
        'last_synced_at': _iso(edition.last_synced_at),
        'provenance': {
            record.field_name: {
                'value': record.value,
                'source_id': str(record.source_id) if record.source_id else None,
                'source_marker': record.source_marker,
                'priority': record.priority,
                'rank': record.rank,
                'method': record.method,
                'confidence': record.confidence,
                'observed_at': _iso(record.observed_at),
                'resolved_by': record.resolved_by,
            }
            for record in edition.provenance.all()
        },
    }


# =============================================================================
# Sources
# =============================================================================


@extend_schema(
    tags=['Sources'],
    summary='List sources',
    parameters=[
        OpenApiParameter('active', OpenApiTypes.BOOL, description='Only active sources'),
    ],
    responses={200: {'description': 'List of sources'}},
)
@api_view(['GET'])
@permission_classes([IsAdminUser])
def list_sources(request):
    """List all sources, highest priority first."""
    active_only = _is_truthy(request.query_params.get('active', ''))
    sources = SourceRegistry().list_sources(active_only=active_only)
    return Response({'sources': [_source_to_dict(source) for source in sources]})


@extend_schema(
    tags=['Sources'],
    summary='Update a source',
    description='''
    Update source settings: active flag, priority, strategy and strategy config,
    retry/timeout/interval settings and notes.

    The strategy config is validated against its versioned schema; invalid
    updates are rejected without saving anything.
    ''',
    request={
        'application/json': {
            'type': 'object',
            'properties': {
                'is_active': {'type': 'boolean'},
                'priority': {'type': 'integer', 'minimum': 0},
                'strategy': {'type': 'string', 'enum': ['html', 'api']},
                'strategy_config': {'type': 'object'},
                'retry_max': {'type': 'integer', 'minimum': 1},
                'retry_backoff_seconds': {'type': 'integer', 'minimum': 0},
                'request_timeout_ms': {'type': 'integer', 'minimum': 1},
                'min_interval_seconds': {'type': 'integer', 'minimum': 0},
                'notes': {'type': 'string'},
            },
        }
    },
    responses={
        200: {'description': 'Updated source'},
        400: {'description': 'Invalid values'},
        404: {'description': 'Source not found'},
    },
)
@api_view(['PATCH'])
@permission_classes([IsAdminUser])
def update_source(request, source_id):
    """Update one source."""
    if not isinstance(request.data, dict) or not request.data:
        return Response({'error': 'No fields to update'}, status=status.HTTP_400_BAD_REQUEST)

    try:
        source = SourceRegistry().update_source(source_id, _body_values(request))
    except Source.DoesNotExist:
        return Response({'error': 'Source not found'}, status=status.HTTP_404_NOT_FOUND)
    except StrategyConfigError as e:
        return Response({'error': e.message, 'errors': e.errors}, status=status.HTTP_400_BAD_REQUEST)

    logger.info(f"Source {source.name} updated by {request.user}")
    return Response(_source_to_dict(source))


# =============================================================================
# Bindings and sync triggers
# =============================================================================


@extend_schema(
    tags=['Bindings'],
    summary='List or create bindings',
    description='''
    GET lists bindings (filter by event_id / source_id).

    POST binds an event to a source. An existing binding for the same
    (event, source) pair is updated instead of duplicated.
    ''',
    request={
        'application/json': {
            'type': 'object',
            'properties': {
                'event_id': {'type': 'string', 'format': 'uuid'},
                'source_id': {'type': 'string', 'format': 'uuid'},
                'url': {'type': 'string', 'format': 'uri'},
                'is_primary': {'type': 'boolean'},
            },
            'required': ['event_id', 'source_id'],
        }
    },
    responses={
        200: {'description': 'Bindings, or the updated binding'},
        201: {'description': 'Binding created'},
        400: {'description': 'Missing or invalid parameters'},
        404: {'description': 'Event or source not found'},
    },
)
@api_view(['GET', 'POST'])
@permission_classes([IsAdminUser])
def bindings_collection(request):
    """List bindings or upsert one."""
    registry = SourceRegistry()

    if request.method == 'GET':
        bindings = registry.list_bindings(
            event_id=request.query_params.get('event_id'),
            source_id=request.query_params.get('source_id'),
        )
        return Response({'bindings': [_binding_to_dict(binding) for binding in bindings]})

    event_id = request.data.get('event_id')
    source_id = request.data.get('source_id')
    if not event_id or not source_id:
        return Response({'error': 'event_id and source_id are required'}, status=status.HTTP_400_BAD_REQUEST)

    url = request.data.get('url')
    if url is not None and not isinstance(url, str):
        return Response({'error': 'url must be a string'}, status=status.HTTP_400_BAD_REQUEST)
    if url and not url.startswith(('http://', 'https://')):
        return Response({'error': 'url must be an http(s) URL'}, status=status.HTTP_400_BAD_REQUEST)

    event = Event.objects.filter(pk=event_id).first()
    source = Source.objects.filter(pk=source_id).first()
    if event is None or source is None:
        return Response({'error': 'Event or source not found'}, status=status.HTTP_404_NOT_FOUND)

    is_primary = request.data.get('is_primary')
    binding, created = registry.bind(
        event, source, url=url, is_primary=None if is_primary is None else bool(is_primary)
    )
    return Response(
        _binding_to_dict(binding),
        status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
    )


@extend_schema(
    tags=['Sync'],
    summary='Sync all active bindings',
    description='''
    Dispatch every binding of an active source now, regardless of its
    schedule. Bindings that are already syncing are skipped.
    ''',
    request=None,
    responses={
        202: {
            'description': 'Sync queued',
            'content': {'application/json': {'example': {'queued': True, 'task_id': '...'}}},
        },
    },
)
@api_view(['POST'])
@permission_classes([IsAdminUser])
@throttle_classes([SyncTriggerThrottle])
def trigger_sync_all(request):
    """Queue a sync of every active binding."""
    result = sync_all_bindings.apply_async(queue='default')
    logger.info(f"Sync all triggered by {request.user}, task {result.id}")
    return Response({'queued': True, 'task_id': result.id}, status=status.HTTP_202_ACCEPTED)


@extend_schema(
    tags=['Sync'],
    summary='Sync one binding',
    request=None,
    responses={
        202: {'description': 'Sync queued'},
        404: {'description': 'Binding not found'},
        409: {'description': 'Source is inactive'},
    },
)
@api_view(['POST'])
@permission_classes([IsAdminUser])
@throttle_classes([SyncTriggerThrottle])
def trigger_binding_sync(request, binding_id):
    """Queue a sync of one binding."""
    binding = SourceBinding.objects.select_related('source').filter(pk=binding_id).first()
    if binding is None:
        return Response({'error': 'Binding not found'}, status=status.HTTP_404_NOT_FOUND)
    if not binding.source.is_active:
        return Response({'error': 'Source is inactive'}, status=status.HTTP_409_CONFLICT)

    result = sync_binding.apply_async(args=[str(binding.id)], queue='sync')
    logger.info(f"Sync of binding {binding_id} triggered by {request.user}, task {result.id}")
    return Response(
        {'queued': True, 'binding_id': str(binding.id), 'task_id': result.id},
        status=status.HTTP_202_ACCEPTED,
    )


@extend_schema(
    tags=['Sync'],
    summary='List sync runs',
    parameters=[
        OpenApiParameter('binding_id', OpenApiTypes.UUID),
        OpenApiParameter('status', OpenApiTypes.STR, enum=['running', 'success', 'failed']),
        OpenApiParameter('limit', OpenApiTypes.INT),
    ],
    responses={200: {'description': 'Sync runs, newest first'}},
)
@api_view(['GET'])
@permission_classes([IsAdminUser])
def list_sync_runs(request):
    """List sync runs, newest first."""
    runs = SyncRun.objects.all().order_by('-started_at')
    binding_id = request.query_params.get('binding_id')
    run_status = request.query_params.get('status')
    if binding_id:
        runs = runs.filter(binding_id=binding_id)
    if run_status:
        runs = runs.filter(status=run_status)
    runs = runs[:_parse_limit(request)]
    return Response({'runs': [_run_to_dict(run) for run in runs]})


# =============================================================================
# Review queue
# =============================================================================


@extend_schema(
    tags=['Review'],
    summary='List raw crawl entries',
    parameters=[
        OpenApiParameter(
            'status', OpenApiTypes.STR, enum=[choice for choice, _ in RawCrawlStatus.choices]
        ),
        OpenApiParameter('source_id', OpenApiTypes.UUID),
        OpenApiParameter('event_id', OpenApiTypes.UUID),
        OpenApiParameter('limit', OpenApiTypes.INT),
    ],
    responses={200: {'description': 'Entries without content'}},
)
@api_view(['GET'])
@permission_classes([IsAdminUser])
def list_raw_crawl(request):
    """List raw crawl entries, newest first."""
    entry_status = request.query_params.get('status')
    if entry_status and entry_status not in RawCrawlStatus.values:
        return Response({'error': f'Invalid status {entry_status}'}, status=status.HTTP_400_BAD_REQUEST)

    entries = ReviewQueue().list_entries(
        status=entry_status,
        source_id=request.query_params.get('source_id'),
        event_id=request.query_params.get('event_id'),
        limit=_parse_limit(request),
    )
    return Response({'entries': [_entry_to_dict(entry) for entry in entries]})


@extend_schema(
    tags=['Review'],
    summary='Raw crawl entry detail',
    description='Metadata plus a content preview. Pass ?full=1 for the complete content.',
    parameters=[OpenApiParameter('full', OpenApiTypes.BOOL)],
    responses={200: {'description': 'Entry detail'}, 404: {'description': 'Entry not found'}},
)
@api_view(['GET'])
@permission_classes([IsAdminUser])
def raw_crawl_detail(request, entry_id):
    """Get one raw crawl entry."""
    try:
        entry = ReviewQueue().get_entry(entry_id)
    except RawCrawlEntry.DoesNotExist:
        return Response({'error': 'Entry not found'}, status=status.HTTP_404_NOT_FOUND)

    full = _is_truthy(request.query_params.get('full', ''))
    return Response(_entry_to_dict(entry, include_content=True, full=full))


@extend_schema(
    tags=['Review'],
    summary='Resolve a raw crawl entry',
    description='''
    Apply operator-supplied values to the entry's edition with manual
    provenance, which no source can overwrite. A year or a race date is
    required; when both are given they must agree.
    ''',
    request={
        'application/json': {
            'type': 'object',
            'properties': {
                'year': {'type': 'integer', 'minimum': 2000, 'maximum': 2100},
                'race_date': {'type': 'string', 'format': 'date'},
                'registration_status': {'type': 'string'},
                'registration_url': {'type': 'string', 'format': 'uri'},
                'registration_open_date': {'type': 'string', 'format': 'date'},
                'registration_close_date': {'type': 'string', 'format': 'date'},
                'note': {'type': 'string'},
            },
        }
    },
    responses={
        200: {'description': 'Entry resolved'},
        400: {'description': 'Invalid values'},
        404: {'description': 'Entry not found'},
        409: {'description': 'Entry is not waiting for review'},
    },
)
@api_view(['POST'])
@permission_classes([IsAdminUser])
def resolve_raw_crawl(request, entry_id):
    """Resolve an entry waiting for review."""
    values = _body_values(request)
    note = values.pop('note', '') or ''

    try:
        result = ReviewQueue().resolve(
            entry_id, values, resolved_by=request.user.get_username(), note=str(note)
        )
    except RawCrawlEntry.DoesNotExist:
        return Response({'error': 'Entry not found'}, status=status.HTTP_404_NOT_FOUND)
    except ReviewValidationError as e:
        return Response({'error': e.message, 'errors': e.errors}, status=status.HTTP_400_BAD_REQUEST)
    except InvalidReviewTransition as e:
        return Response({'error': str(e), 'status': e.current}, status=status.HTTP_409_CONFLICT)

    return Response({
        'entry': _entry_to_dict(result.entry),
        'edition': _edition_to_dict(result.edition),
    })


@extend_schema(
    tags=['Review'],
    summary='Ignore a raw crawl entry',
    request={
        'application/json': {
            'type': 'object',
            'properties': {'reason': {'type': 'string'}},
        }
    },
    responses={
        200: {'description': 'Entry ignored'},
        404: {'description': 'Entry not found'},
        409: {'description': 'Entry is not waiting for review'},
    },
)
@api_view(['POST'])
@permission_classes([IsAdminUser])
def ignore_raw_crawl(request, entry_id):
    """Dismiss an entry waiting for review."""
    reason = request.data.get('reason', '') if isinstance(request.data, dict) else ''

    try:
        entry = ReviewQueue().ignore(entry_id, resolved_by=request.user.get_username(), reason=str(reason or ''))
    except RawCrawlEntry.DoesNotExist:
        return Response({'error': 'Entry not found'}, status=status.HTTP_404_NOT_FOUND)
    except InvalidReviewTransition as e:
        return Response({'error': str(e), 'status': e.current}, status=status.HTTP_409_CONFLICT)

    return Response(_entry_to_dict(entry))


# =============================================================================
# Editions and stats
# =============================================================================


@extend_schema(
    tags=['Editions'],
    summary='Editions of an event with field provenance',
    responses={200: {'description': 'Editions, newest year first'}, 404: {'description': 'Event not found'}},
)
@api_view(['GET'])
@permission_classes([IsAdminUser])
def event_editions(request, event_id):
    """List an event's editions with provenance per field."""
    event = Event.objects.filter(pk=event_id).first()
    if event is None:
        return Response({'error': 'Event not found'}, status=status.HTTP_404_NOT_FOUND)

    editions = event.editions.prefetch_related('provenance').order_by('-year')
    return Response({
        'event_id': str(event.id),
        'event_name': event.name,
        'editions': [_edition_to_dict(edition) for edition in editions],
    })


@extend_schema(
    tags=['Sync'],
    summary='Sync statistics',
    responses={
        200: {
            'description': 'Counts of sources, bindings, entries by status and runs in the last 24h',
        },
    },
)
@api_view(['GET'])
@permission_classes([IsAdminUser])
def sync_stats(request):
    """Summary counts for the operator dashboard."""
    since = timezone.now() - timedelta(hours=24)

    entries_by_status = {choice: 0 for choice in RawCrawlStatus.values}
    for row in RawCrawlEntry.objects.values('status').annotate(count=Count('id')):
        entries_by_status[row['status']] = row['count']

    runs_by_status = {}
    for row in SyncRun.objects.filter(started_at__gte=since).values('status').annotate(count=Count('id')):
        runs_by_status[row['status']] = row['count']

    latest_run = SyncRun.objects.order_by('-started_at').values_list('started_at', flat=True).first()

    return Response({
        'sources': {
            'total': Source.objects.count(),
            'active': Source.objects.filter(is_active=True).count(),
        },
        'bindings': {
            'total': SourceBinding.objects.count(),
            'due': SourceBinding.objects.filter(source__is_active=True)
            .filter(Q(next_check_at__isnull=True) | Q(next_check_at__lte=timezone.now()))
            .count(),
            'with_errors': SourceBinding.objects.exclude(last_error='').count(),
        },
        'raw_crawl': entries_by_status,
        'sync_runs_24h': runs_by_status,
        'editions': Edition.objects.count(),
        'last_sync_run': _iso(latest_run),
    })
