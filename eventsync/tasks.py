"""
Celery tasks for the sync engine.

Tasks:
- check_due_bindings: Periodic task (every 5 minutes) dispatching due bindings
- sync_all_bindings: Dispatch every active binding regardless of schedule
- sync_binding: Worker task running one binding sync (queue "sync")
- trigger_binding_sync: Manually trigger one binding from the API or admin
"""

import logging
from typing import Any, Dict

from celery import shared_task
from django.utils import timezone

from eventsync.services import dispatcher
from eventsync.services.scheduler import active_bindings, due_bindings

logger = logging.getLogger(__name__)


@shared_task(name="eventsync.tasks.check_due_bindings")
def check_due_bindings() -> Dict[str, Any]:
    """
    Periodic task to dispatch bindings that are due.

    Runs every 5 minutes via Celery Beat. A binding is due when its source is
    active and next_check_at is empty or in the past.

    Returns:
        Dict with the number of due bindings and the dispatch summary
    """
    logger.info("Checking for due bindings...")

    now = timezone.now()
    bindings = due_bindings(now)
    summary = dispatcher.SyncDispatcher().dispatch(binding.id for binding in bindings)

    logger.info(f"Due binding check complete: {len(bindings)} bindings dispatched")

    return {
        "checked": True,
        "bindings_found": len(bindings),
        "dispatch": summary,
        "timestamp": now.isoformat(),
    }


@shared_task(name="eventsync.tasks.sync_all_bindings")
def sync_all_bindings() -> Dict[str, Any]:
    """
    Dispatch every binding of an active source now, ignoring next_check_at.

    Bindings already syncing are skipped by their claim.
    """
    now = timezone.now()
    bindings = active_bindings()
    summary = dispatcher.SyncDispatcher().dispatch(binding.id for binding in bindings)

    logger.info(f"Sync all: {len(bindings)} bindings dispatched")

    return {
        "bindings_found": len(bindings),
        "dispatch": summary,
        "timestamp": now.isoformat(),
    }


@shared_task(name="eventsync.tasks.sync_binding", bind=True)
def sync_binding(self, binding_id: str) -> Dict[str, Any]:
    """
    Sync worker task - runs the pipeline for one binding.

    Args:
        binding_id: UUID of the SourceBinding

    Returns:
        Dict with run status, binding_id and run_id
    """
    logger.info(f"Starting sync for binding {binding_id} (task {self.request.id})")
    return dispatcher.run_binding_sync(binding_id)


@shared_task(name="eventsync.tasks.trigger_binding_sync", bind=True)
def trigger_binding_sync(self, binding_id: str) -> Dict[str, Any]:
    """
    Trigger an immediate sync for a specific binding.

    Queues sync_binding on the sync queue so the run counts against the
    bounded worker pool like any scheduled run.
    """
    result = sync_binding.apply_async(args=[binding_id], queue="sync")
    logger.info(f"Triggered sync for binding {binding_id}, task {result.id}")
    return {
        "triggered": True,
        "binding_id": binding_id,
        "task_id": result.id,
    }
