"""
JSON API extractor.

Reads edition fields from a JSON document using the dotted paths configured
in ApiStrategyConfig.fields, e.g. {"race_date": "data.events.0.start"}.
"""

import json
import logging
from typing import Any, List, Optional

from eventsync.extractors.base import BaseExtractor
from eventsync.schemas import ApiStrategyConfig, FieldCandidate

logger = logging.getLogger(__name__)


def resolve_path(document: Any, path: str) -> Optional[Any]:
    """
    Walk a dotted path through nested dicts and lists.

    Numeric segments index into lists. Returns None when any segment is missing.

    Example:
        >>> resolve_path({"a": [{"b": 1}]}, "a.0.b")
        1
    """
    current = document
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


class JsonApiExtractor(BaseExtractor):
    """Extracts candidates from JSON API responses."""

    method = "api"

    def __init__(self, config: Optional[ApiStrategyConfig] = None):
        self.config = config or ApiStrategyConfig()

    def extract(self, raw_body: str, content_type: str = "") -> List[FieldCandidate]:
        """
        Raises:
            ValueError: If the body is not valid JSON
        """
        if not raw_body:
            return []
        try:
            document = json.loads(raw_body)
        except ValueError as e:
            raise ValueError(f"Response is not valid JSON: {e}")

        candidates = []
        for field_name, path in self.config.fields.items():
            value = resolve_path(document, path)
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            if isinstance(value, (dict, list)):
                logger.debug(f"Path {path} for {field_name} points at a container, skipping")
                continue
            candidates.append(FieldCandidate(field_name, value, self.config.confidence, self.method))
        return candidates
