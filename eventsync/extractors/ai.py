"""
AI fallback extractor.

Wraps another extractor and, when none of its race date candidates clears
the auto-apply threshold, asks an OpenAI-compatible chat completions endpoint
for raceDate, registrationStatus and registrationUrl.

Features:
- httpx client with configurable timeout
- Bearer token authentication
- JSON-only response format
- API failures are logged and leave the inner candidates untouched
"""

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from django.conf import settings

from eventsync.extractors.base import BaseExtractor
from eventsync.schemas import FieldCandidate
from eventsync.utils.normalization import parse_race_date

logger = logging.getLogger(__name__)

# Characters of page content sent to the model
MAX_PROMPT_CHARS = 80_000

# Response keys mapped to edition fields
AI_FIELD_MAP = {
    "raceDate": "race_date",
    "registrationStatus": "registration_status",
    "registrationUrl": "registration_url",
}


class AiFallbackExtractor(BaseExtractor):
    """
    Extractor that falls back to an LLM when rule-based extraction is weak.

    Usage:
        extractor = AiFallbackExtractor(HtmlEventExtractor(config, page_url), page_url=page_url)
        candidates = extractor.extract(html)
    """

    method = "ai"

    def __init__(
        self,
        inner: BaseExtractor,
        page_url: str = "",
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        confidence: Optional[float] = None,
        threshold: Optional[float] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the AI fallback extractor.

        Args:
            inner: Extractor run first
            page_url: URL of the page, passed to the model
            api_key: API key (defaults to settings.AI_API_KEY)
            model: Model name (defaults to settings.AI_MODEL)
            base_url: API base URL (defaults to settings.AI_BASE_URL)
            confidence: Confidence stamped on AI candidates (defaults to settings.SYNC_AI_CONFIDENCE)
            threshold: Auto-apply threshold (defaults to settings.SYNC_AUTO_APPLY_THRESHOLD)
            timeout: Request timeout in seconds (defaults to settings.SYNC_AI_TIMEOUT)
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests
        """
        self.inner = inner
        self.page_url = page_url
        self.api_key = api_key if api_key is not None else getattr(settings, "AI_API_KEY", "")
        self.model = model if model is not None else getattr(settings, "AI_MODEL", "")
        self.base_url = (base_url or getattr(settings, "AI_BASE_URL", "https://api.openai.com/v1")).rstrip("/")
        self.confidence = confidence if confidence is not None else settings.SYNC_AI_CONFIDENCE
        self.threshold = threshold if threshold is not None else settings.SYNC_AUTO_APPLY_THRESHOLD
        self.timeout = timeout if timeout is not None else getattr(settings, "SYNC_AI_TIMEOUT", 60.0)
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.model)

    def extract(self, raw_body: str, content_type: str = "") -> List[FieldCandidate]:
        candidates = self.inner.extract(raw_body, content_type)

        strong_date = any(
            c.field == "race_date" and c.confidence >= self.threshold for c in candidates
        )
        if strong_date or not raw_body or not self.is_configured:
            return candidates

        parsed = self._request_extraction(raw_body)
        if parsed is None:
            return candidates

        return candidates + self._candidates_from_response(parsed)

    def _build_prompt(self, snippet: str) -> str:
        fingerprint = hashlib.sha1(snippet.encode("utf-8")).hexdigest()[:12]
        return "\n".join(
            [
                "You are extracting structured marathon event info from an HTML page.",
                "Return JSON ONLY with keys: raceDate, registrationStatus, registrationUrl.",
                "raceDate must be YYYY-MM-DD or null.",
                "registrationStatus should be a short string "
                "(e.g. open/closed/not-open/sold-out/unknown) or null.",
                "registrationUrl must be an absolute URL or null.",
                f"pageUrl: {self.page_url}",
                f"htmlFingerprint: {fingerprint}",
                "html:",
                snippet,
            ]
        )

    def _request_extraction(self, raw_body: str) -> Optional[Dict[str, Any]]:
        snippet = raw_body[:MAX_PROMPT_CHARS]
        payload = {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": "You output JSON only."},
                {"role": "user", "content": self._build_prompt(snippet)},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"AI extraction request failed for {self.page_url}: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"AI extraction returned HTTP {response.status_code} for {self.page_url}")
            return None

        try:
            content = response.json()["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"AI extraction returned an unusable payload for {self.page_url}: {e}")
            return None

        return parsed if isinstance(parsed, dict) else None

    def _candidates_from_response(self, parsed: Dict[str, Any]) -> List[FieldCandidate]:
        candidates = []
        for key, field_name in AI_FIELD_MAP.items():
            value = parsed.get(key)
            if not isinstance(value, str) or not value.strip():
                continue
            value = value.strip()
            if field_name == "race_date":
                found = parse_race_date(value)
                if not found:
                    continue
                value = found.isoformat()
            candidates.append(FieldCandidate(field_name, value, self.confidence, self.method))
        return candidates
