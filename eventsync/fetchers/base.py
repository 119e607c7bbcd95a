"""
Fetcher contract used by the sync orchestrator.

A fetcher turns (url, strategy config, timeout) into a FetchResult or raises
TransientFetchError / PermanentFetchError. Retrying is the orchestrator's
job; fetchers make exactly one attempt.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict

from eventsync.exceptions import PermanentFetchError, TransientFetchError

# Statuses worth retrying even though they are 4xx
TRANSIENT_CLIENT_STATUSES = {408, 425, 429}


@dataclass
class FetchResult:
    """Successful response from a fetch operation."""

    status: int
    body: str
    content_type: str = ""
    url: str = ""
    headers: Dict[str, str] = field(default_factory=dict)


def classify_status(status: int, url: str = "") -> None:
    """
    Raise the matching fetch error for a non-success status.

    2xx/3xx pass silently. 408, 425, 429 and 5xx are transient,
    every other 4xx is permanent.
    """
    if 200 <= status < 400:
        return
    if status in TRANSIENT_CLIENT_STATUSES or 500 <= status < 600:
        raise TransientFetchError(f"HTTP {status} for {url}", status_code=status)
    raise PermanentFetchError(f"HTTP {status} for {url}", status_code=status)


class BaseFetcher(ABC):
    """Base class for fetchers."""

    @abstractmethod
    async def fetch(self, url: str, strategy_config, timeout_ms: int) -> FetchResult:
        """
        Fetch one URL.

        Args:
            url: Absolute http(s) URL
            strategy_config: HtmlStrategyConfig or ApiStrategyConfig of the source
            timeout_ms: Request timeout in milliseconds

        Returns:
            FetchResult for 2xx/3xx responses

        Raises:
            TransientFetchError: Timeouts, transport errors, 408/425/429/5xx
            PermanentFetchError: Invalid URL, unsupported scheme, other 4xx
        """

