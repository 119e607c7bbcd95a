"""
Management command to run syncs immediately.

Usage:
    python manage.py sync_now                  # due bindings, configured dispatch mode
    python manage.py sync_now --all            # every active binding
    python manage.py sync_now --binding <id>   # one binding
    python manage.py sync_now --local          # run in this process with a thread pool
"""

import json

from django.core.management.base import BaseCommand, CommandError

from eventsync.services.dispatcher import MODE_CELERY, MODE_LOCAL, SyncDispatcher
from eventsync.services.scheduler import active_bindings, due_bindings


class Command(BaseCommand):
    help = 'Sync due bindings (or all bindings) now'

    def add_arguments(self, parser):
        parser.add_argument('--all', action='store_true', help='Sync every active binding, ignoring the schedule')
        parser.add_argument('--binding', action='append', default=[], help='Binding id (repeatable)')
        parser.add_argument('--local', action='store_true', help='Run in-process instead of queueing Celery tasks')
        parser.add_argument('--workers', type=int, default=None, help='Worker pool size for --local')

    def handle(self, *args, **options):
        if options['binding']:
            binding_ids = options['binding']
        elif options['all']:
            binding_ids = [binding.id for binding in active_bindings()]
        else:
            binding_ids = [binding.id for binding in due_bindings()]

        if not binding_ids:
            self.stdout.write('No bindings to sync.')
            return

        mode = MODE_LOCAL if options['local'] else None
        try:
            dispatcher = SyncDispatcher(mode=mode, max_workers=options['workers'])
        except ValueError as e:
            raise CommandError(str(e))

        self.stdout.write(f'Dispatching {len(binding_ids)} binding(s) ({dispatcher.mode} mode)...')
        summary = dispatcher.dispatch(binding_ids)

        if dispatcher.mode == MODE_CELERY:
            self.stdout.write(self.style.SUCCESS(
                f"Queued {summary['dispatched']} sync task(s), {summary['failed']} failed to queue"
            ))
            return

        for result in summary['results']:
            self.stdout.write(f'  {json.dumps(result, default=str)}')
        style = self.style.SUCCESS if not summary['failed'] else self.style.WARNING
        self.stdout.write(style(
            f"Done: {summary['succeeded']} succeeded, {summary['failed']} failed, "
            f"{summary['skipped']} skipped"
        ))
