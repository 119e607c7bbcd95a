"""
Field Reconciliation Engine.

Merges candidate values into the canonical Edition record one field at a
time. Every field carries a ProvenanceStamp recording who supplied it.

Decision rule (should_accept), evaluated in order:
1. A manual stamp always wins
2. An empty field accepts anything
3. A manually resolved field rejects every automated candidate
4. Higher source priority wins
5. Same priority: lower rank (preferred candidate) wins
6. Same priority and rank: strictly newer observation wins

The compare-and-set runs inside transaction.atomic() with the edition row
locked, so sources writing the same edition at the same time are applied
one after the other.

Usage:
    reconciler = FieldReconciler()
    edition = reconciler.get_or_create_edition(event, 2025)
    decision = reconciler.apply_field(edition, "race_date", "2025-03-15", stamp, source=source)
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional, Tuple

from django.db import IntegrityError, transaction
from django.utils import timezone

from eventsync.exceptions import CandidateValidationError
from eventsync.models import Edition, EditionFieldProvenance
from eventsync.schemas import EDITION_FIELDS, ProvenanceStamp, coerce_field_value

logger = logging.getLogger(__name__)

ACTION_INSERTED = "inserted"
ACTION_UPDATED = "updated"
ACTION_UNCHANGED = "unchanged"
ACTION_REJECTED = "rejected"


def should_accept(
    current: Optional[ProvenanceStamp], candidate: ProvenanceStamp
) -> Tuple[bool, str]:
    """
    Decide whether a candidate may overwrite the current value of a field.

    Pure and total: depends only on the two stamps.

    Args:
        current: Stamp of the current value, None if the field was never set
        candidate: Stamp of the proposed value

    Returns:
        Tuple of (accepted, reason)
    """
    if candidate.is_manual:
        return True, "manual_override"
    if current is None:
        return True, "empty"
    if current.is_manual:
        return False, "manual_locked"
    if candidate.priority > current.priority:
        return True, "higher_priority"
    if candidate.priority < current.priority:
        return False, "lower_priority"
    if candidate.rank < current.rank:
        return True, "better_rank"
    if candidate.rank > current.rank:
        return False, "worse_rank"
    if candidate.observed_at > current.observed_at:
        return True, "newer"
    return False, "not_newer"


@dataclass
class FieldDecision:
    """Outcome of one apply_field call."""

    field: str
    action: str
    reason: str
    value: Optional[str] = None
    previous_value: Optional[str] = None
    conflict: bool = False
    edition: Any = None

    @property
    def accepted(self) -> bool:
        return self.action in (ACTION_INSERTED, ACTION_UPDATED, ACTION_UNCHANGED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "action": self.action,
            "reason": self.reason,
            "value": self.value,
            "previous_value": self.previous_value,
            "conflict": self.conflict,
        }


def _as_text(value) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


class FieldReconciler:
    """
    Applies candidate values to editions under the provenance rule.

    Holds no state between calls; one instance can serve many runs.
    """

    def get_or_create_edition(self, event, year: int):
        """Return the edition for (event, year), creating it when missing."""
        try:
            with transaction.atomic():
                edition, created = Edition.objects.get_or_create(event=event, year=year)
        except IntegrityError:
            # Created concurrently by another run
            edition, created = Edition.objects.get(event=event, year=year), False

        if created:
            logger.info(f"Created edition {event.name} {year}")
        return edition

    def apply_field(
        self,
        edition,
        field_name: str,
        value,
        provenance: ProvenanceStamp,
        source=None,
        raw_entry=None,
    ) -> FieldDecision:
        """
        Compare-and-set one edition field.

        Args:
            edition: Edition to update
            field_name: Edition field (see EDITION_FIELDS)
            value: Candidate value
            provenance: Stamp of the candidate
            source: Source instance for the provenance row (None for manual)
            raw_entry: RawCrawlEntry the value came from

        Returns:
            FieldDecision with the refreshed edition attached

        Raises:
            CandidateValidationError: Unknown field or malformed value
        """
        field_def = EDITION_FIELDS.get(field_name)
        if field_def is None or not field_def.applies_to_edition:
            raise CandidateValidationError(f"'{field_name}' is not an edition field")

        if value is None or (isinstance(value, str) and not value.strip()):
            return FieldDecision(field_name, ACTION_REJECTED, "empty_value", edition=edition)

        python_value, text_value = coerce_field_value(field_name, value)

        with transaction.atomic():
            locked = Edition.objects.select_for_update().get(pk=edition.pk)
            record = EditionFieldProvenance.objects.filter(edition=locked, field_name=field_name).first()
            current = ProvenanceStamp.from_record(record) if record else None

            previous_value = _as_text(getattr(locked, field_name))
            accepted, reason = should_accept(current, provenance)

            if not accepted:
                conflict = previous_value is not None and previous_value != text_value
                if conflict:
                    logger.info(
                        f"Rejected {field_name}={text_value} for {locked} ({reason}), "
                        f"keeping {previous_value}"
                    )
                return FieldDecision(
                    field_name,
                    ACTION_REJECTED,
                    reason,
                    value=text_value,
                    previous_value=previous_value,
                    conflict=conflict,
                    edition=locked,
                )

            if previous_value is None:
                action = ACTION_INSERTED
            elif previous_value == text_value:
                action = ACTION_UNCHANGED
            else:
                action = ACTION_UPDATED

            now = timezone.now()
            setattr(locked, field_name, python_value)
            locked.last_synced_at = now
            locked.save()

            EditionFieldProvenance.objects.update_or_create(
                edition=locked,
                field_name=field_name,
                defaults={
                    "value": text_value,
                    "source": source,
                    "source_marker": provenance.marker,
                    "priority": provenance.priority,
                    "rank": provenance.rank,
                    "method": provenance.method,
                    "confidence": provenance.confidence,
                    "observed_at": provenance.observed_at,
                    "applied_at": now,
                    "raw_entry": raw_entry,
                    "resolved_by": provenance.resolved_by,
                    "schema_version": provenance.version,
                },
            )

        logger.debug(f"{action} {field_name}={text_value} on {locked} ({reason})")
        return FieldDecision(
            field_name,
            action,
            reason,
            value=text_value,
            previous_value=previous_value,
            edition=locked,
        )
