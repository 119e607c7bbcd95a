"""
Management command to import sources and bindings from a JSON file.

Usage:
    python manage.py import_sources /path/to/sources.json
    python manage.py import_sources /path/to/sources.json --dry-run

File format:
    {
        "sources": [{"name": "Official Site", "strategy": "html", "priority": 10}],
        "bindings": [{"event": "Shanghai Marathon", "source": "Official Site",
                      "url": "https://example.com/race", "is_primary": true}]
    }
"""

import json

from django.core.management.base import BaseCommand, CommandError

from eventsync.exceptions import StrategyConfigError
from eventsync.services.registry import SourceRegistry


class Command(BaseCommand):
    help = 'Import sources and event bindings from JSON file'

    def add_arguments(self, parser):
        parser.add_argument('json_file', type=str, help='Path to JSON file with sources and bindings')
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Validate and show what would be imported without saving'
        )

    def handle(self, *args, **options):
        json_file = options['json_file']
        dry_run = options['dry_run']

        try:
            with open(json_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise CommandError(f'Cannot read {json_file}: {e}')

        if not isinstance(data, dict):
            raise CommandError('Expected a JSON object with "sources" and "bindings" lists')

        self.stdout.write(
            f"Found {len(data.get('sources', []))} sources and "
            f"{len(data.get('bindings', []))} bindings in {json_file}"
        )

        try:
            summary = SourceRegistry().import_definitions(data, dry_run=dry_run)
        except StrategyConfigError as e:
            raise CommandError(f'{e.message}: {json.dumps(e.errors, default=str)}')

        prefix = 'Would ' if dry_run else ''
        for name in summary['sources_created']:
            self.stdout.write(self.style.SUCCESS(f'  {prefix}create source: {name}'))
        for name in summary['sources_updated']:
            self.stdout.write(f'  {prefix}update source: {name}')
        for label in summary['bindings_created']:
            self.stdout.write(self.style.SUCCESS(f'  {prefix}create binding: {label}'))
        for label in summary['bindings_updated']:
            self.stdout.write(f'  {prefix}update binding: {label}')

        self.stdout.write('')
        self.stdout.write('=' * 60)
        self.stdout.write('Dry run complete, nothing saved.' if dry_run else 'Import complete!')
        self.stdout.write(f"  Sources created: {len(summary['sources_created'])}")
        self.stdout.write(f"  Sources updated: {len(summary['sources_updated'])}")
        self.stdout.write(f"  Bindings created: {len(summary['bindings_created'])}")
        self.stdout.write(f"  Bindings updated: {len(summary['bindings_updated'])}")
