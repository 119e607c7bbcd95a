"""
Extractor contract used by the sync orchestrator.

An extractor turns raw content into FieldCandidate objects. It never touches
the database; ranking, validation and applying are done by the orchestrator.
"""

from abc import ABC, abstractmethod
from typing import List

from eventsync.schemas import FieldCandidate

# Confidence per extraction method
RULE_CONFIDENCE = 0.9
JSONLD_CONFIDENCE = 0.85
REGEX_CONFIDENCE = 0.5


class BaseExtractor(ABC):
    """Base class for extractors."""

    @abstractmethod
    def extract(self, raw_body: str, content_type: str = "") -> List[FieldCandidate]:
        """
        Extract field candidates from raw content.

        Args:
            raw_body: Fetched body as text
            content_type: Content-Type reported by the fetcher

        Returns:
            List of FieldCandidate (may be empty)
        """
