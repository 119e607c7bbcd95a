"""
Review Queue for raw crawl entries that could not be auto-applied.

State machine:
    pending -> needs_review | processed   (automatic, by the orchestrator)
    needs_review -> processed             (resolve)
    needs_review -> ignored               (ignore)

Resolution applies operator values through the reconciliation engine with a
manual provenance stamp, which outranks every source. Invalid input raises
ReviewValidationError before anything is written.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.utils import timezone

from eventsync.exceptions import CandidateValidationError, InvalidReviewTransition, ReviewValidationError
from eventsync.models import RawCrawlEntry, RawCrawlStatus
from eventsync.schemas import RECONCILED_FIELDS, ProvenanceStamp, coerce_field_value
from eventsync.services.reconciliation import FieldDecision, FieldReconciler

logger = logging.getLogger(__name__)

RESOLVABLE_FIELDS = ["year"] + RECONCILED_FIELDS


@dataclass
class ResolutionResult:
    """Outcome of ReviewQueue.resolve."""

    entry: RawCrawlEntry
    edition: Any
    decisions: List[FieldDecision] = field(default_factory=list)


class ReviewQueue:
    """
    Lists, resolves and dismisses raw crawl entries.

    Usage:
        queue = ReviewQueue()
        result = queue.resolve(entry_id, {"race_date": "2025-04-20"}, resolved_by="alice")
    """

    def __init__(self, reconciler: Optional[FieldReconciler] = None, clock=timezone.now):
        self.reconciler = reconciler or FieldReconciler()
        self.clock = clock

    def list_entries(self, status: Optional[str] = None, source_id=None, event_id=None, limit: Optional[int] = None):
        queryset = RawCrawlEntry.objects.select_related("event", "source").order_by("-fetched_at")
        if status:
            queryset = queryset.filter(status=status)
        if source_id:
            queryset = queryset.filter(source_id=source_id)
        if event_id:
            queryset = queryset.filter(event_id=event_id)
        if limit:
            queryset = queryset[:limit]
        return queryset

    def get_entry(self, entry_id) -> RawCrawlEntry:
        """Raises RawCrawlEntry.DoesNotExist for unknown ids."""
        return RawCrawlEntry.objects.select_related("event", "source").get(pk=entry_id)

    @staticmethod
    def _check_reviewable(entry: RawCrawlEntry, requested: str) -> None:
        if entry.status != RawCrawlStatus.NEEDS_REVIEW:
            raise InvalidReviewTransition(entry.status, requested)

    @staticmethod
    def validate_values(values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate operator input.

        Returns:
            Dict of field -> python value, including the edition "year"

        Raises:
            ReviewValidationError: Unknown fields, bad values, missing or conflicting year
        """
        if not isinstance(values, dict):
            raise ReviewValidationError("Values must be an object")

        errors = {}
        cleaned = {}
        for key, value in values.items():
            if key not in RESOLVABLE_FIELDS:
                errors[key] = "Unknown field"
                continue
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            try:
                cleaned[key], _ = coerce_field_value(key, value)
            except CandidateValidationError as e:
                errors[key] = str(e)

        if errors:
            raise ReviewValidationError("Invalid resolution values", errors)

        race_date = cleaned.get("race_date")
        year = cleaned.get("year")
        if year is None and race_date is None:
            raise ReviewValidationError(
                "A year or a race date is required", {"year": "Provide year or race_date"}
            )
        if year is not None and race_date is not None and race_date.year != year:
            raise ReviewValidationError(
                "Year does not match race date",
                {"year": f"{year} does not match race_date {race_date.isoformat()}"},
            )
        cleaned["year"] = year if year is not None else race_date.year
        return cleaned

    def resolve(self, entry_id, values: Dict[str, Any], resolved_by: str = "", note: str = "") -> ResolutionResult:
        """
        Apply operator values to the entry's edition and mark it processed.

        Raises:
            RawCrawlEntry.DoesNotExist: Unknown entry
            InvalidReviewTransition: Entry is not waiting for review
            ReviewValidationError: Invalid values, nothing changed
        """
        entry = self.get_entry(entry_id)
        self._check_reviewable(entry, RawCrawlStatus.PROCESSED)
        cleaned = self.validate_values(values)
        year = cleaned.pop("year")

        with transaction.atomic():
            entry = RawCrawlEntry.objects.select_for_update().select_related("event").get(pk=entry.pk)
            self._check_reviewable(entry, RawCrawlStatus.PROCESSED)

            now = self.clock()
            edition = self.reconciler.get_or_create_edition(entry.event, year)
            decisions = []
            for field_name in RECONCILED_FIELDS:
                if field_name not in cleaned:
                    continue
                stamp = ProvenanceStamp.manual(observed_at=now, resolved_by=resolved_by, raw_entry_id=entry.id)
                decision = self.reconciler.apply_field(
                    edition, field_name, cleaned[field_name], stamp, raw_entry=entry
                )
                edition = decision.edition
                decisions.append(decision)

            entry.metadata["resolution"] = {
                "action": "resolved",
                "resolved_by": resolved_by,
                "resolved_at": now.isoformat(),
                "note": note,
                "year": year,
                "edition_id": str(edition.id),
                "decisions": [decision.to_dict() for decision in decisions],
            }
            entry.transition_to(RawCrawlStatus.PROCESSED, resolved_by=resolved_by)

        logger.info(f"Raw crawl entry {entry.id} resolved by {resolved_by or 'operator'} for {edition}")
        return ResolutionResult(entry=entry, edition=edition, decisions=decisions)

    def ignore(self, entry_id, resolved_by: str = "", reason: str = "") -> RawCrawlEntry:
        """
        Dismiss an entry waiting for review.

        Raises:
            RawCrawlEntry.DoesNotExist: Unknown entry
            InvalidReviewTransition: Entry is not waiting for review
        """
        with transaction.atomic():
            entry = RawCrawlEntry.objects.select_for_update().get(pk=entry_id)
            self._check_reviewable(entry, RawCrawlStatus.IGNORED)
            entry.metadata["resolution"] = {
                "action": "ignored",
                "resolved_by": resolved_by,
                "resolved_at": self.clock().isoformat(),
                "reason": reason,
            }
            entry.transition_to(RawCrawlStatus.IGNORED, resolved_by=resolved_by)

        logger.info(f"Raw crawl entry {entry.id} ignored by {resolved_by or 'operator'}")
        return entry
