"""
Builds the extractor for a source from its typed strategy config.
"""

from django.conf import settings

from eventsync.extractors.ai import AiFallbackExtractor
from eventsync.extractors.base import BaseExtractor
from eventsync.extractors.html import HtmlEventExtractor
from eventsync.extractors.json_api import JsonApiExtractor
from eventsync.schemas import ApiStrategyConfig


def build_extractor(source, page_url: str, config) -> BaseExtractor:
    """
    Create the extractor for one sync run.

    Args:
        source: Source being synced
        page_url: Effective URL of the binding
        config: Typed strategy config (already validated)

    Returns:
        JsonApiExtractor for API sources, HtmlEventExtractor otherwise,
        wrapped in AiFallbackExtractor when the AI fallback is enabled
    """
    if isinstance(config, ApiStrategyConfig):
        return JsonApiExtractor(config)

    extractor = HtmlEventExtractor(config, page_url=page_url)
    if getattr(settings, "SYNC_AI_FALLBACK_ENABLED", False):
        return AiFallbackExtractor(extractor, page_url=page_url)
    return extractor
