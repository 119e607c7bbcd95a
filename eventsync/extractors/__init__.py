"""
Field extraction from fetched content.

- HtmlEventExtractor: selector rules, JSON-LD and regex dates
- JsonApiExtractor: dotted paths into JSON responses
- AiFallbackExtractor: optional LLM fallback for weak HTML extractions
"""

from .ai import AiFallbackExtractor
from .base import BaseExtractor, JSONLD_CONFIDENCE, REGEX_CONFIDENCE, RULE_CONFIDENCE
from .factory import build_extractor
from .html import HtmlEventExtractor
from .json_api import JsonApiExtractor, resolve_path

__all__ = [
    "AiFallbackExtractor",
    "BaseExtractor",
    "HtmlEventExtractor",
    "JsonApiExtractor",
    "build_extractor",
    "resolve_path",
    "JSONLD_CONFIDENCE",
    "REGEX_CONFIDENCE",
    "RULE_CONFIDENCE",
]
