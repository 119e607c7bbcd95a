"""
Typed, versioned schemas for sync configuration and field provenance.

Every config and provenance blob has an explicit schema with a version
number. Anything unrecognized raises StrategyConfigError or
CandidateValidationError.

Strategy configs (stored in Source.strategy_config):

    html, version 1:
        {
            "version": 1,
            "headers": {"Accept-Language": "zh-CN"},
            "extract": {
                "race_date": {"selector": ".race-date", "regex": "(\\d{4}-\\d{2}-\\d{2})"},
                "registration_url": {"selector": "a.signup", "attr": "href"}
            },
            "jsonld": true,
            "regex_fallback": true
        }

    api, version 1:
        {
            "version": 1,
            "headers": {},
            "params": {"id": "42"},
            "fields": {"race_date": "data.event.start", "registration_status": "data.status"},
            "confidence": 0.9
        }

Edition fields and their value types are listed in EDITION_FIELDS.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from django.core.exceptions import ValidationError
from django.core.validators import URLValidator

from eventsync.exceptions import CandidateValidationError, StrategyConfigError
from eventsync.utils.normalization import (
    is_valid_year,
    normalize_registration_status,
    parse_race_date,
)

STRATEGY_CONFIG_VERSION = 1
PROVENANCE_SCHEMA_VERSION = 1

# Reserved priority stamped on manually resolved fields. Source priorities must stay below it.
MANUAL_PRIORITY = 2**31 - 1

STRATEGY_HTML = "html"
STRATEGY_API = "api"


# =============================================================================
# Edition field registry
# =============================================================================


@dataclass(frozen=True)
class FieldSpec:
    """Declares the value type of an edition field."""

    name: str
    kind: str  # "date", "text", "url" or "year"
    max_length: Optional[int] = None
    applies_to_edition: bool = True


EDITION_FIELDS: Dict[str, FieldSpec] = {
    "race_date": FieldSpec("race_date", "date"),
    "registration_status": FieldSpec("registration_status", "text", max_length=50),
    "registration_url": FieldSpec("registration_url", "url", max_length=2000),
    "registration_open_date": FieldSpec("registration_open_date", "date"),
    "registration_close_date": FieldSpec("registration_close_date", "date"),
    # Selects the edition only; never stored as an edition column
    "year": FieldSpec("year", "year", applies_to_edition=False),
}

RECONCILED_FIELDS = [name for name, field_def in EDITION_FIELDS.items() if field_def.applies_to_edition]

_url_validator = URLValidator(schemes=["http", "https"])


def coerce_field_value(field_name: str, raw_value: Any) -> Tuple[Any, str]:
    """
    Validate and convert a raw value for an edition field.

    Args:
        field_name: Name from EDITION_FIELDS
        raw_value: Value as produced by an extractor or an operator

    Returns:
        Tuple of (python value for the model column, canonical text form)

    Raises:
        CandidateValidationError: Unknown field, empty value or wrong type
    """
    field_def = EDITION_FIELDS.get(field_name)
    if field_def is None:
        raise CandidateValidationError(f"Unknown field '{field_name}'")

    if raw_value is None or (isinstance(raw_value, str) and not raw_value.strip()):
        raise CandidateValidationError(f"Empty value for '{field_name}'")

    if field_def.kind == "date":
        parsed = parse_race_date(raw_value)
        if parsed is None:
            raise CandidateValidationError(f"'{raw_value}' is not a valid date for '{field_name}'")
        return parsed, parsed.isoformat()

    if field_def.kind == "year":
        try:
            year = int(str(raw_value).strip())
        except ValueError:
            raise CandidateValidationError(f"'{raw_value}' is not a valid year")
        if not is_valid_year(year):
            raise CandidateValidationError(f"Year {year} is out of range")
        return year, str(year)

    if field_def.kind == "url":
        url = str(raw_value).strip()
        try:
            _url_validator(url)
        except ValidationError:
            raise CandidateValidationError(f"'{url}' is not a valid http(s) URL")
        if field_def.max_length and len(url) > field_def.max_length:
            raise CandidateValidationError(f"URL for '{field_name}' is too long")
        return url, url

    text = normalize_registration_status(raw_value) if field_name == "registration_status" else str(raw_value).strip()
    if field_def.max_length and len(text) > field_def.max_length:
        raise CandidateValidationError(f"Value for '{field_name}' exceeds {field_def.max_length} characters")
    return text, text


# =============================================================================
# Extractor candidates
# =============================================================================


@dataclass
class FieldCandidate:
    """
    One structured value proposed by an extractor.

    Attributes:
        field: Edition field name (see EDITION_FIELDS)
        value: Raw value as extracted
        confidence: 0.0-1.0 confidence reported by the extractor
        method: How it was extracted (rule, jsonld, regex, api, ai)
        rank: Position among same-field candidates of one extraction (0 = preferred)
    """

    field: str
    value: Any
    confidence: float
    method: str
    rank: int = 0

    @classmethod
    def from_dict(cls, data: Union["FieldCandidate", Dict[str, Any]]) -> "FieldCandidate":
        """Build a candidate from an extractor dict, validating its shape."""
        if isinstance(data, FieldCandidate):
            return data
        if not isinstance(data, dict):
            raise CandidateValidationError("Candidate must be a mapping")
        missing = [key for key in ("field", "value", "confidence", "method") if key not in data]
        if missing:
            raise CandidateValidationError(f"Candidate is missing {', '.join(missing)}")
        try:
            confidence = float(data["confidence"])
        except (TypeError, ValueError):
            raise CandidateValidationError("Candidate confidence must be a number")
        if not 0.0 <= confidence <= 1.0:
            raise CandidateValidationError("Candidate confidence must be between 0 and 1")
        try:
            rank = int(data.get("rank", 0))
        except (TypeError, ValueError):
            raise CandidateValidationError("Candidate rank must be an integer")
        return cls(
            field=str(data["field"]),
            value=data["value"],
            confidence=confidence,
            method=str(data["method"]),
            rank=rank,
        )

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        return {
            "field": self.field,
            "value": value,
            "confidence": self.confidence,
            "method": self.method,
            "rank": self.rank,
        }


def rank_candidates(candidates: List[FieldCandidate]) -> List[FieldCandidate]:
    """
    Assign per-field ranks by confidence, highest first.

    Ties keep extractor order. Returns candidates ordered by (field order, rank).
    """
    by_field: Dict[str, List[FieldCandidate]] = {}
    for candidate in candidates:
        by_field.setdefault(candidate.field, []).append(candidate)

    ranked: List[FieldCandidate] = []
    for field_candidates in by_field.values():
        ordered = sorted(field_candidates, key=lambda c: -c.confidence)
        for index, candidate in enumerate(ordered):
            candidate.rank = index
            ranked.append(candidate)
    return ranked


# =============================================================================
# Field provenance
# =============================================================================

MARKER_SOURCE = "source"
MARKER_MANUAL = "manual"


@dataclass
class ProvenanceStamp:
    """
    Who supplied a field value, with what authority, and when.

    Persisted as typed columns of EditionFieldProvenance.
    """

    priority: int
    rank: int
    observed_at: datetime
    marker: str = MARKER_SOURCE
    source_id: Optional[str] = None
    method: str = ""
    confidence: Optional[float] = None
    raw_entry_id: Optional[str] = None
    resolved_by: str = ""
    version: int = PROVENANCE_SCHEMA_VERSION

    def __post_init__(self):
        if self.marker not in (MARKER_SOURCE, MARKER_MANUAL):
            raise CandidateValidationError(f"Unknown provenance marker '{self.marker}'")
        if self.version != PROVENANCE_SCHEMA_VERSION:
            raise CandidateValidationError(f"Unsupported provenance version {self.version}")
        if self.marker == MARKER_SOURCE and self.priority >= MANUAL_PRIORITY:
            raise CandidateValidationError("Source priority must stay below the manual priority")

    @property
    def is_manual(self) -> bool:
        return self.marker == MARKER_MANUAL

    @classmethod
    def manual(cls, observed_at: datetime, resolved_by: str = "", raw_entry_id=None) -> "ProvenanceStamp":
        """Stamp for an operator resolution: maximal priority, always wins."""
        return cls(
            priority=MANUAL_PRIORITY,
            rank=0,
            observed_at=observed_at,
            marker=MARKER_MANUAL,
            method="manual",
            confidence=1.0,
            raw_entry_id=str(raw_entry_id) if raw_entry_id else None,
            resolved_by=resolved_by,
        )

    @classmethod
    def from_record(cls, record) -> "ProvenanceStamp":
        """Build a stamp from an EditionFieldProvenance row."""
        return cls(
            priority=record.priority,
            rank=record.rank,
            observed_at=record.observed_at,
            marker=record.source_marker,
            source_id=str(record.source_id) if record.source_id else None,
            method=record.method,
            confidence=record.confidence,
            raw_entry_id=str(record.raw_entry_id) if record.raw_entry_id else None,
            resolved_by=record.resolved_by,
            version=record.schema_version,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["observed_at"] = self.observed_at.isoformat()
        return data


# =============================================================================
# Strategy configuration
# =============================================================================


@dataclass
class SelectorRule:
    """CSS selector rule reading one field from an HTML page."""

    selector: str
    attr: Optional[str] = None  # None/"text" = element text, "html" = inner HTML, else attribute
    regex: Optional[str] = None
    group: int = 1

    @classmethod
    def from_dict(cls, field_name: str, data: Any) -> "SelectorRule":
        if not isinstance(data, dict):
            raise StrategyConfigError(
                f"Rule for '{field_name}' must be an object",
                {field_name: "must be an object"},
            )
        unknown = set(data) - {"selector", "attr", "regex", "group"}
        if unknown:
            raise StrategyConfigError(
                f"Rule for '{field_name}' has unknown keys: {', '.join(sorted(unknown))}",
                {field_name: f"unknown keys {sorted(unknown)}"},
            )
        selector = data.get("selector")
        if not isinstance(selector, str) or not selector.strip():
            raise StrategyConfigError(
                f"Rule for '{field_name}' needs a non-empty selector",
                {field_name: "selector is required"},
            )
        attr = data.get("attr")
        if attr is not None and (not isinstance(attr, str) or not attr):
            raise StrategyConfigError(f"Rule for '{field_name}' has an invalid attr", {field_name: "invalid attr"})
        regex = data.get("regex")
        if regex is not None:
            if not isinstance(regex, str) or not regex:
                raise StrategyConfigError(f"Rule for '{field_name}' has an invalid regex", {field_name: "invalid regex"})
            try:
                re.compile(regex)
            except re.error as e:
                raise StrategyConfigError(
                    f"Rule for '{field_name}' has an invalid regex: {e}",
                    {field_name: f"invalid regex: {e}"},
                )
        group = data.get("group", 1)
        if isinstance(group, bool) or not isinstance(group, int) or not 0 <= group <= 20:
            raise StrategyConfigError(f"Rule for '{field_name}' has an invalid group", {field_name: "group must be 0-20"})
        return cls(selector=selector.strip(), attr=attr, regex=regex, group=group)


def _read_string_map(data: Dict[str, Any], key: str) -> Dict[str, str]:
    value = data.get(key, {})
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise StrategyConfigError(f"'{key}' must be a mapping of strings", {key: "must be a mapping of strings"})
    return dict(value)


def _read_bool(data: Dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise StrategyConfigError(f"'{key}' must be a boolean", {key: "must be a boolean"})
    return value


def _check_version(data: Dict[str, Any]) -> int:
    version = data.get("version", STRATEGY_CONFIG_VERSION)
    if version != STRATEGY_CONFIG_VERSION:
        raise StrategyConfigError(
            f"Unsupported strategy config version {version!r}",
            {"version": f"expected {STRATEGY_CONFIG_VERSION}"},
        )
    return version


def _check_keys(data: Dict[str, Any], allowed: set, strategy: str) -> None:
    unknown = set(data) - allowed
    if unknown:
        raise StrategyConfigError(
            f"Unknown keys for {strategy} strategy config: {', '.join(sorted(unknown))}",
            {key: "unknown key" for key in unknown},
        )


@dataclass
class HtmlStrategyConfig:
    """Configuration for sources whose pages are HTML."""

    version: int = STRATEGY_CONFIG_VERSION
    headers: Dict[str, str] = field(default_factory=dict)
    extract: Dict[str, SelectorRule] = field(default_factory=dict)
    jsonld: bool = True
    regex_fallback: bool = True

    strategy = STRATEGY_HTML

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HtmlStrategyConfig":
        _check_keys(data, {"version", "headers", "extract", "jsonld", "regex_fallback"}, STRATEGY_HTML)
        version = _check_version(data)
        raw_rules = data.get("extract", {})
        if not isinstance(raw_rules, dict):
            raise StrategyConfigError("'extract' must be an object", {"extract": "must be an object"})
        rules = {}
        for field_name, rule in raw_rules.items():
            field_def = EDITION_FIELDS.get(field_name)
            if field_def is None:
                raise StrategyConfigError(f"Unknown extract field '{field_name}'", {field_name: "unknown field"})
            rules[field_name] = SelectorRule.from_dict(field_name, rule)
        return cls(
            version=version,
            headers=_read_string_map(data, "headers"),
            extract=rules,
            jsonld=_read_bool(data, "jsonld", True),
            regex_fallback=_read_bool(data, "regex_fallback", True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "headers": dict(self.headers),
            "extract": {
                name: {k: v for k, v in asdict(rule).items() if v is not None}
                for name, rule in self.extract.items()
            },
            "jsonld": self.jsonld,
            "regex_fallback": self.regex_fallback,
        }


@dataclass
class ApiStrategyConfig:
    """Configuration for sources that publish JSON."""

    version: int = STRATEGY_CONFIG_VERSION
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)
    fields: Dict[str, str] = field(default_factory=dict)
    confidence: float = 0.9

    strategy = STRATEGY_API

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiStrategyConfig":
        _check_keys(data, {"version", "headers", "params", "fields", "confidence"}, STRATEGY_API)
        version = _check_version(data)
        fields_map = _read_string_map(data, "fields")
        for field_name in fields_map:
            if field_name not in EDITION_FIELDS:
                raise StrategyConfigError(f"Unknown field '{field_name}'", {field_name: "unknown field"})
        confidence = data.get("confidence", 0.9)
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
            raise StrategyConfigError("'confidence' must be between 0 and 1", {"confidence": "must be between 0 and 1"})
        return cls(
            version=version,
            headers=_read_string_map(data, "headers"),
            params=_read_string_map(data, "params"),
            fields=fields_map,
            confidence=float(confidence),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "headers": dict(self.headers),
            "params": dict(self.params),
            "fields": dict(self.fields),
            "confidence": self.confidence,
        }


StrategyConfig = Union[HtmlStrategyConfig, ApiStrategyConfig]

STRATEGY_CONFIG_TYPES = {
    STRATEGY_HTML: HtmlStrategyConfig,
    STRATEGY_API: ApiStrategyConfig,
}


def parse_strategy_config(strategy: str, data: Optional[Dict[str, Any]]) -> StrategyConfig:
    """
    Validate a stored strategy config blob against its versioned schema.

    Args:
        strategy: Source.strategy value ("html" or "api")
        data: The stored JSON object (None or {} means defaults)

    Returns:
        HtmlStrategyConfig or ApiStrategyConfig

    Raises:
        StrategyConfigError: Unknown strategy, unknown keys, bad version or bad rule
    """
    config_type = STRATEGY_CONFIG_TYPES.get(strategy)
    if config_type is None:
        raise StrategyConfigError(f"Unknown strategy '{strategy}'", {"strategy": "unknown strategy"})
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise StrategyConfigError("Strategy config must be an object", {"strategy_config": "must be an object"})
    return config_type.from_dict(data)
