"""
HTTP fetcher built on httpx.AsyncClient.

Single attempt per call. Source headers from the strategy config are merged
over the defaults, API sources also send their configured query params.
"""

import logging
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx

from django.conf import settings

from eventsync.exceptions import PermanentFetchError, TransientFetchError
from eventsync.fetchers.base import BaseFetcher, FetchResult, classify_status

logger = logging.getLogger(__name__)


class HttpxFetcher(BaseFetcher):
    """
    Fetcher using async httpx.

    Features:
    - Per-call AsyncClient bounded by the source's request timeout
    - Per-source headers and query params from the strategy config
    - Status classification into transient and permanent errors
    """

    # Note: 'br' left out because httpx only decodes brotli with an extra package installed
    DEFAULT_HEADERS = {
        "Accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8",
        "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
        "Accept-Encoding": "gzip, deflate",
    }

    def __init__(
        self,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize fetcher.

        Args:
            user_agent: User-Agent header (default from settings)
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests
        """
        self.user_agent = user_agent or getattr(settings, "SYNC_USER_AGENT", "marathon-sync/1.0")
        self.transport = transport

    def _build_headers(self, strategy_config) -> Dict[str, str]:
        headers = {**self.DEFAULT_HEADERS, "User-Agent": self.user_agent}
        if strategy_config is not None:
            headers.update(strategy_config.headers)
        return headers

    @staticmethod
    def _validate_url(url: str) -> None:
        if not url:
            raise PermanentFetchError("No URL configured for binding")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise PermanentFetchError(f"Unsupported URL scheme for {url}")
        if not parsed.netloc:
            raise PermanentFetchError(f"Invalid URL {url}")

    async def fetch(self, url: str, strategy_config, timeout_ms: int) -> FetchResult:
        """
        Fetch URL content.

        Args:
            url: URL to fetch
            strategy_config: Typed strategy config of the source (or None)
            timeout_ms: Request timeout in milliseconds

        Returns:
            FetchResult with body, status and content type
        """
        self._validate_url(url)

        params = getattr(strategy_config, "params", None) or None
        timeout = httpx.Timeout(timeout_ms / 1000.0)

        try:
            async with httpx.AsyncClient(
                timeout=timeout,
                headers=self._build_headers(strategy_config),
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await client.get(url, params=params)

        except httpx.TimeoutException as e:
            logger.warning(f"Timeout fetching {url}: {e}")
            raise TransientFetchError(f"Timeout fetching {url}: {e}")

        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            logger.warning(f"Invalid URL {url}: {e}")
            raise PermanentFetchError(f"Invalid URL {url}: {e}")

        except httpx.TransportError as e:
            logger.warning(f"Transport error fetching {url}: {e}")
            raise TransientFetchError(f"Transport error fetching {url}: {e}")

        if not 200 <= response.status_code < 400:
            logger.warning(f"HTTP {response.status_code} for {url}")
        classify_status(response.status_code, url)

        return FetchResult(
            status=response.status_code,
            body=response.text,
            content_type=response.headers.get("content-type", ""),
            url=str(response.url),
            headers=dict(response.headers),
        )
