"""
Content fetching for source bindings.

- BaseFetcher: async fetch contract (one attempt, typed errors)
- HttpxFetcher: default implementation on httpx.AsyncClient
"""

from .base import BaseFetcher, FetchResult, classify_status
from .httpx_fetcher import HttpxFetcher

__all__ = [
    "BaseFetcher",
    "FetchResult",
    "classify_status",
    "HttpxFetcher",
]
