"""
Source Registry.

Operator-facing operations on sources and bindings. Every write validates
the strategy config against its versioned schema before saving.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from django.core.exceptions import ValidationError
from django.db import transaction

from eventsync.exceptions import StrategyConfigError
from eventsync.models import Event, Source, SourceBinding
from eventsync.utils.normalization import canonicalize_name

logger = logging.getLogger(__name__)

# Source fields an operator may change
UPDATABLE_SOURCE_FIELDS = {
    "name",
    "source_type",
    "base_url",
    "strategy",
    "strategy_config",
    "priority",
    "is_active",
    "retry_max",
    "retry_backoff_seconds",
    "request_timeout_ms",
    "min_interval_seconds",
    "notes",
}


def _validation_errors(error: ValidationError) -> Dict[str, Any]:
    if hasattr(error, "message_dict"):
        return error.message_dict
    return {"non_field_errors": error.messages}


class SourceRegistry:
    """
    Create, update and bind sources.

    Usage:
        registry = SourceRegistry()
        source = registry.update_source(source_id, {"priority": 10})
        binding, created = registry.bind(event, source, url="https://example.com/race")
    """

    def list_sources(self, active_only: bool = False):
        queryset = Source.objects.all()
        if active_only:
            queryset = queryset.filter(is_active=True)
        return queryset

    def create_source(self, values: Dict[str, Any]) -> Source:
        source = Source()
        return self._apply(source, values)

    def update_source(self, source_or_id, values: Dict[str, Any]) -> Source:
        """
        Update a source with validated values.

        Raises:
            Source.DoesNotExist: Unknown id
            StrategyConfigError: Invalid values, nothing saved
        """
        source = source_or_id if isinstance(source_or_id, Source) else Source.objects.get(pk=source_or_id)
        return self._apply(source, values)

    def _apply(self, source: Source, values: Dict[str, Any]) -> Source:
        unknown = set(values) - UPDATABLE_SOURCE_FIELDS
        if unknown:
            raise StrategyConfigError(
                f"Unknown source fields: {', '.join(sorted(unknown))}",
                {key: "unknown field" for key in unknown},
            )
        for key, value in values.items():
            setattr(source, key, value)

        try:
            source.full_clean()
        except ValidationError as e:
            raise StrategyConfigError("Invalid source configuration", _validation_errors(e))

        source.save()
        logger.info(f"Saved source {source.name}")
        return source

    def list_bindings(self, event_id=None, source_id=None):
        queryset = SourceBinding.objects.select_related("event", "source")
        if event_id:
            queryset = queryset.filter(event_id=event_id)
        if source_id:
            queryset = queryset.filter(source_id=source_id)
        return queryset.order_by("event__name", "-is_primary", "-source__priority")

    def bind(
        self,
        event: Event,
        source: Source,
        url: Optional[str] = None,
        is_primary: Optional[bool] = None,
    ) -> Tuple[SourceBinding, bool]:
        """
        Bind an event to a source, updating the existing binding for the pair.

        Marking a binding primary clears the flag on the event's other bindings.

        Returns:
            Tuple of (binding, created)
        """
        with transaction.atomic():
            binding, created = SourceBinding.objects.select_for_update().get_or_create(
                event=event,
                source=source,
                defaults={"source_url": url or "", "is_primary": bool(is_primary)},
            )
            if not created:
                update_fields = []
                if url is not None and url != binding.source_url:
                    binding.source_url = url
                    update_fields.append("source_url")
                if is_primary is not None and is_primary != binding.is_primary:
                    binding.is_primary = is_primary
                    update_fields.append("is_primary")
                if update_fields:
                    binding.save(update_fields=update_fields + ["updated_at"])

            if binding.is_primary:
                SourceBinding.objects.filter(event=event, is_primary=True).exclude(pk=binding.pk).update(
                    is_primary=False
                )

        logger.info(f"{'Created' if created else 'Updated'} binding {event.name} <- {source.name}")
        return binding, created

    def import_definitions(self, data: Dict[str, Any], dry_run: bool = False) -> Dict[str, List[str]]:
        """
        Upsert sources by name and bindings by (event canonical name, source name).

        Format:
            {
                "sources": [{"name": "Official", "strategy": "html", "priority": 10, ...}],
                "bindings": [{"event": "Shanghai Marathon", "source": "Official", "url": "...",
                              "is_primary": true}]
            }

        Events named in bindings are created when missing. The whole import runs
        in one transaction; dry_run rolls it back.

        Returns:
            Dict of created/updated source names and binding labels

        Raises:
            StrategyConfigError: Any invalid source or binding, nothing saved
        """
        summary = {"sources_created": [], "sources_updated": [], "bindings_created": [], "bindings_updated": []}

        with transaction.atomic():
            for item in data.get("sources", []):
                values = dict(item)
                name = values.get("name")
                if not name:
                    raise StrategyConfigError("Source entry without a name", {"name": "required"})
                existing = Source.objects.filter(name=name).first()
                if existing:
                    self.update_source(existing, values)
                    summary["sources_updated"].append(name)
                else:
                    self.create_source(values)
                    summary["sources_created"].append(name)

            for item in data.get("bindings", []):
                event_name = item.get("event")
                source_name = item.get("source")
                if not event_name or not source_name:
                    raise StrategyConfigError("Binding entry needs event and source", {"binding": item})
                source = Source.objects.filter(name=source_name).first()
                if source is None:
                    raise StrategyConfigError(f"Unknown source '{source_name}'", {"source": source_name})
                event, _ = Event.objects.get_or_create(
                    canonical_name=canonicalize_name(event_name),
                    defaults={"name": event_name, "website_url": item.get("website_url", "")},
                )
                _, created = self.bind(
                    event, source, url=item.get("url"), is_primary=item.get("is_primary")
                )
                label = f"{event.name} <- {source.name}"
                summary["bindings_created" if created else "bindings_updated"].append(label)

            if dry_run:
                transaction.set_rollback(True)

        return summary
