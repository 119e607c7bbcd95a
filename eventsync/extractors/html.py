"""
HTML event extractor.

Three passes over the page, strongest first:
1. CSS selector rules from the source's strategy config (method "rule")
2. JSON-LD blocks with @type Event: startDate and url (method "jsonld")
3. First ISO or "YYYY年M月D日" date in the page text (method "regex"),
   only when no other pass produced a race date
"""

import json
import logging
import re
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from eventsync.extractors.base import (
    JSONLD_CONFIDENCE,
    REGEX_CONFIDENCE,
    RULE_CONFIDENCE,
    BaseExtractor,
)
from eventsync.schemas import EDITION_FIELDS, FieldCandidate, HtmlStrategyConfig, SelectorRule
from eventsync.utils.normalization import find_first_date, parse_race_date

logger = logging.getLogger(__name__)


class HtmlEventExtractor(BaseExtractor):
    """
    Extracts race date and registration fields from HTML pages.

    Usage:
        extractor = HtmlEventExtractor(source.get_strategy_config(), page_url=binding.effective_url)
        candidates = extractor.extract(html)
    """

    def __init__(self, config: Optional[HtmlStrategyConfig] = None, page_url: str = ""):
        self.config = config or HtmlStrategyConfig()
        self.page_url = page_url

    def extract(self, raw_body: str, content_type: str = "") -> List[FieldCandidate]:
        if not raw_body:
            return []

        soup = BeautifulSoup(raw_body, "html.parser")
        candidates: List[FieldCandidate] = []

        candidates.extend(self._extract_rules(soup))
        if self.config.jsonld:
            candidates.extend(self._extract_jsonld(soup))

        has_race_date = any(c.field == "race_date" for c in candidates)
        if self.config.regex_fallback and not has_race_date:
            found = find_first_date(soup.get_text(" "))
            if found:
                candidates.append(
                    FieldCandidate("race_date", found.isoformat(), REGEX_CONFIDENCE, "regex")
                )

        logger.debug(f"Extracted {len(candidates)} candidates from {self.page_url or 'page'}")
        return candidates

    # =========================================================================
    # Selector rules
    # =========================================================================

    def _extract_rules(self, soup: BeautifulSoup) -> List[FieldCandidate]:
        candidates = []
        for field_name, rule in self.config.extract.items():
            raw_value = self._apply_rule(soup, rule)
            if raw_value is None:
                continue
            value = self._normalize(field_name, raw_value)
            if value is None:
                logger.debug(f"Rule for {field_name} matched unusable value '{raw_value[:80]}'")
                continue
            candidates.append(FieldCandidate(field_name, value, RULE_CONFIDENCE, "rule"))
        return candidates

    @staticmethod
    def _apply_rule(soup: BeautifulSoup, rule: SelectorRule) -> Optional[str]:
        element = soup.select_one(rule.selector)
        if element is None:
            return None

        if not rule.attr or rule.attr == "text":
            raw_value = element.get_text(" ", strip=True)
        elif rule.attr == "html":
            raw_value = element.decode_contents()
        else:
            raw_value = element.get(rule.attr) or ""
            if isinstance(raw_value, list):
                raw_value = " ".join(raw_value)

        trimmed = str(raw_value).strip()
        if not trimmed:
            return None
        if not rule.regex:
            return trimmed

        match = re.search(rule.regex, trimmed, re.IGNORECASE)
        if not match:
            return None
        try:
            grouped = match.group(rule.group)
        except IndexError:
            return None
        return grouped.strip() if grouped and grouped.strip() else None

    def _normalize(self, field_name: str, raw_value: str) -> Optional[str]:
        kind = EDITION_FIELDS[field_name].kind
        if kind == "date":
            parsed = parse_race_date(raw_value) or find_first_date(raw_value)
            return parsed.isoformat() if parsed else None
        if kind == "url":
            return self._resolve_url(raw_value)
        return raw_value

    def _resolve_url(self, value: str) -> str:
        if not self.page_url:
            return value
        return urljoin(self.page_url, value)

    # =========================================================================
    # JSON-LD
    # =========================================================================

    def _extract_jsonld(self, soup: BeautifulSoup) -> List[FieldCandidate]:
        for event in self._iter_jsonld_events(soup):
            start = parse_race_date(event.get("startDate"))
            if not start:
                continue
            candidates = [FieldCandidate("race_date", start.isoformat(), JSONLD_CONFIDENCE, "jsonld")]
            url = event.get("url")
            if isinstance(url, str) and url.strip():
                candidates.append(
                    FieldCandidate(
                        "registration_url", self._resolve_url(url.strip()), JSONLD_CONFIDENCE, "jsonld"
                    )
                )
            return candidates
        return []

    @staticmethod
    def _iter_jsonld_events(soup: BeautifulSoup) -> Iterator[Dict[str, Any]]:
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            raw = (script.string or script.get_text() or "").strip()
            if not raw:
                continue
            try:
                parsed = json.loads(raw)
            except ValueError:
                logger.debug("Skipping invalid JSON-LD block")
                continue

            stack = list(parsed) if isinstance(parsed, list) else [parsed]
            while stack:
                item = stack.pop(0)
                if not isinstance(item, dict):
                    continue
                types = item.get("@type")
                types = types if isinstance(types, list) else [types]
                if "Event" in types or "SportsEvent" in types:
                    yield item
                for value in item.values():
                    if isinstance(value, list):
                        stack.extend(value)
                    elif isinstance(value, dict):
                        stack.append(value)
