"""
Dispatcher: the single path from "these bindings should sync" to runs.

Both the periodic tick and manual sync-all go through SyncDispatcher:
- celery mode: one sync_binding task per binding on the "sync" queue,
  whose workers run with CELERY_WORKER_CONCURRENCY = SYNC_MAX_WORKERS
- local mode: a ThreadPoolExecutor bounded by SYNC_MAX_WORKERS

Whatever the mode, run_binding_sync claims the binding first, so a binding
that is already running is skipped rather than run twice.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Iterable, Optional

from django.conf import settings
from django.db import connection

from eventsync.fetchers import HttpxFetcher
from eventsync.models import SourceBinding, SyncRunStatus
from eventsync.monitoring import build_failure_tracker
from eventsync.services.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

MODE_CELERY = "celery"
MODE_LOCAL = "local"

STATUS_SKIPPED = "skipped"
STATUS_MISSING = "missing"
STATUS_INACTIVE = "inactive"


def build_orchestrator() -> SyncOrchestrator:
    """Create an orchestrator wired with the production collaborators."""
    return SyncOrchestrator(fetcher=HttpxFetcher(), failure_tracker=build_failure_tracker())


def run_binding_sync(
    binding_id, orchestrator_factory: Optional[Callable[[], SyncOrchestrator]] = None
) -> Dict[str, Any]:
    """
    Claim a binding, run one sync, release the claim.

    Returns:
        Dict with status ("success", "failed", "skipped", "missing" or
        "inactive"), binding_id and run_id when a run happened
    """
    binding_id = str(binding_id)
    try:
        binding = SourceBinding.objects.select_related("source", "event").get(pk=binding_id)
    except SourceBinding.DoesNotExist:
        logger.warning(f"Binding {binding_id} not found")
        return {"status": STATUS_MISSING, "binding_id": binding_id}

    if not binding.source.is_active:
        logger.info(f"Source {binding.source.name} is inactive, skipping binding {binding_id}")
        return {"status": STATUS_INACTIVE, "binding_id": binding_id}

    token = binding.claim()
    if token is None:
        logger.info(f"Binding {binding} is already syncing, skipped")
        return {"status": STATUS_SKIPPED, "binding_id": binding_id}

    try:
        factory = orchestrator_factory or build_orchestrator
        run = factory().run(binding)
    finally:
        binding.release(token)

    return {"status": run.status, "binding_id": binding_id, "run_id": str(run.id)}


class SyncDispatcher:
    """
    Sends bindings to the bounded worker pool.

    Usage:
        summary = SyncDispatcher().dispatch(binding.id for binding in due_bindings())
    """

    def __init__(
        self,
        mode: Optional[str] = None,
        max_workers: Optional[int] = None,
        runner: Optional[Callable[[str], Dict[str, Any]]] = None,
    ):
        self.mode = mode or getattr(settings, "SYNC_DISPATCH_MODE", MODE_CELERY)
        self.max_workers = max_workers or getattr(settings, "SYNC_MAX_WORKERS", 4)
        self.runner = runner or run_binding_sync

        if self.mode not in (MODE_CELERY, MODE_LOCAL):
            raise ValueError(f"Unknown dispatch mode '{self.mode}'")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")

    def dispatch(self, binding_ids: Iterable) -> Dict[str, Any]:
        """
        Dispatch bindings and return a summary.

        A failure for one binding is logged and counted; it never stops
        the others.
        """
        ids = [str(binding_id) for binding_id in binding_ids]
        if self.mode == MODE_CELERY:
            return self._dispatch_celery(ids)
        return self._dispatch_local(ids)

    def _dispatch_celery(self, ids) -> Dict[str, Any]:
        from eventsync.tasks import sync_binding

        summary = {"mode": MODE_CELERY, "total": len(ids), "dispatched": 0, "failed": 0, "task_ids": []}
        for binding_id in ids:
            try:
                result = sync_binding.apply_async(args=[binding_id], queue="sync")
                summary["dispatched"] += 1
                summary["task_ids"].append(result.id)
            except Exception as e:
                logger.error(f"Failed to queue sync for binding {binding_id}: {e}")
                summary["failed"] += 1
        logger.info(f"Queued {summary['dispatched']}/{len(ids)} binding syncs")
        return summary

    def _run_in_thread(self, binding_id: str) -> Dict[str, Any]:
        try:
            return self.runner(binding_id)
        finally:
            connection.close()

    def _dispatch_local(self, ids) -> Dict[str, Any]:
        summary = {
            "mode": MODE_LOCAL,
            "total": len(ids),
            "succeeded": 0,
            "failed": 0,
            "skipped": 0,
            "results": [],
        }
        if not ids:
            return summary

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="eventsync") as pool:
            futures = {pool.submit(self._run_in_thread, binding_id): binding_id for binding_id in ids}
            for future in as_completed(futures):
                binding_id = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.error(f"Sync failed for binding {binding_id}: {e}")
                    result = {"status": SyncRunStatus.FAILED, "binding_id": binding_id, "error": str(e)}

                status = result.get("status")
                if status == SyncRunStatus.SUCCESS:
                    summary["succeeded"] += 1
                elif status == SyncRunStatus.FAILED:
                    summary["failed"] += 1
                else:
                    summary["skipped"] += 1
                summary["results"].append(result)

        logger.info(
            f"Local sync finished: {summary['succeeded']} succeeded, "
            f"{summary['failed']} failed, {summary['skipped']} skipped"
        )
        return summary
