"""
Tests for strategy config schemas, field candidates and provenance stamps.
"""

from datetime import date, datetime, timezone as dt_timezone

import pytest

from eventsync.exceptions import CandidateValidationError, StrategyConfigError
from eventsync.schemas import (
    MANUAL_PRIORITY,
    ApiStrategyConfig,
    FieldCandidate,
    HtmlStrategyConfig,
    ProvenanceStamp,
    coerce_field_value,
    parse_strategy_config,
    rank_candidates,
)

OBSERVED = datetime(2025, 3, 1, 8, 0, tzinfo=dt_timezone.utc)


class TestParseStrategyConfig:
    """Versioned strategy config validation."""

    def test_empty_config_yields_defaults(self):
        config = parse_strategy_config("html", None)

        assert isinstance(config, HtmlStrategyConfig)
        assert config.version == 1
        assert config.extract == {}
        assert config.jsonld is True
        assert config.regex_fallback is True

        assert isinstance(parse_strategy_config("api", {}), ApiStrategyConfig)

    def test_html_rules_are_parsed(self):
        config = parse_strategy_config(
            "html",
            {
                "version": 1,
                "headers": {"Accept-Language": "en"},
                "extract": {
                    "race_date": {"selector": ".date", "regex": r"(\d{4}-\d{2}-\d{2})"},
                    "registration_url": {"selector": "a.signup", "attr": "href"},
                },
                "jsonld": False,
            },
        )

        assert config.headers == {"Accept-Language": "en"}
        assert config.extract["race_date"].group == 1
        assert config.extract["registration_url"].attr == "href"
        assert config.jsonld is False

    def test_to_dict_round_trips(self):
        data = {
            "version": 1,
            "headers": {},
            "extract": {"race_date": {"selector": ".date", "group": 1}},
            "jsonld": True,
            "regex_fallback": False,
        }
        assert parse_strategy_config("html", data).to_dict() == data

    @pytest.mark.parametrize(
        "strategy,data",
        [
            ("html", {"version": 2}),
            ("html", {"selectors": {}}),
            ("html", {"extract": {"distance": {"selector": ".x"}}}),
            ("html", {"extract": {"race_date": {"selector": ""}}}),
            ("html", {"extract": {"race_date": {"selector": ".x", "regex": "(unclosed"}}}),
            ("html", {"extract": {"race_date": {"selector": ".x", "group": 99}}}),
            ("html", {"jsonld": "yes"}),
            ("api", {"fields": {"race_date": 5}}),
            ("api", {"fields": {"price": "data.price"}}),
            ("api", {"confidence": 1.5}),
            ("ftp", {}),
            ("html", ["not", "an", "object"]),
        ],
    )
    def test_invalid_configs_are_rejected(self, strategy, data):
        with pytest.raises(StrategyConfigError) as exc_info:
            parse_strategy_config(strategy, data)

        assert exc_info.value.errors

    def test_unknown_keys_are_reported(self):
        with pytest.raises(StrategyConfigError) as exc_info:
            parse_strategy_config("api", {"fields": {}, "cookies": {}})

        assert "cookies" in exc_info.value.errors


class TestCoerceFieldValue:
    """Field registry value checks."""

    def test_dates_are_normalized(self):
        assert coerce_field_value("race_date", "2025年11月30日") == (date(2025, 11, 30), "2025-11-30")
        assert coerce_field_value("registration_close_date", "2025-10-01T00:00:00Z")[1] == "2025-10-01"

    def test_year_range(self):
        assert coerce_field_value("year", "2026") == (2026, "2026")
        with pytest.raises(CandidateValidationError):
            coerce_field_value("year", 1999)

    def test_registration_status_is_normalized(self):
        assert coerce_field_value("registration_status", "报名中") == ("open", "open")

    def test_invalid_values(self):
        with pytest.raises(CandidateValidationError):
            coerce_field_value("race_date", "next spring")
        with pytest.raises(CandidateValidationError):
            coerce_field_value("registration_url", "javascript:alert(1)")
        with pytest.raises(CandidateValidationError):
            coerce_field_value("registration_status", "x" * 51)
        with pytest.raises(CandidateValidationError):
            coerce_field_value("distance", "42km")
        with pytest.raises(CandidateValidationError):
            coerce_field_value("race_date", "   ")


class TestFieldCandidates:
    """Candidate parsing and ranking."""

    def test_from_dict_validates_shape(self):
        candidate = FieldCandidate.from_dict(
            {"field": "race_date", "value": "2025-11-30", "confidence": "0.8", "method": "api"}
        )
        assert candidate.confidence == 0.8
        assert candidate.rank == 0

        with pytest.raises(CandidateValidationError):
            FieldCandidate.from_dict({"field": "race_date", "value": "2025-11-30"})
        with pytest.raises(CandidateValidationError):
            FieldCandidate.from_dict({"field": "race_date", "value": "x", "confidence": 2, "method": "api"})
        with pytest.raises(CandidateValidationError):
            FieldCandidate.from_dict("race_date=2025-11-30")
        with pytest.raises(CandidateValidationError, match="rank"):
            FieldCandidate.from_dict(
                {"field": "race_date", "value": "2025-11-30", "confidence": 0.8, "method": "api", "rank": "top"}
            )
        with pytest.raises(CandidateValidationError, match="rank"):
            FieldCandidate.from_dict(
                {"field": "race_date", "value": "2025-11-30", "confidence": 0.8, "method": "api", "rank": None}
            )

    def test_rank_candidates_orders_by_confidence_per_field(self):
        ranked = rank_candidates(
            [
                FieldCandidate("race_date", "2025-11-29", 0.5, "regex"),
                FieldCandidate("registration_status", "open", 0.9, "rule"),
                FieldCandidate("race_date", "2025-11-30", 0.9, "rule"),
            ]
        )

        ranks = {(c.field, c.value): c.rank for c in ranked}
        assert ranks[("race_date", "2025-11-30")] == 0
        assert ranks[("race_date", "2025-11-29")] == 1
        assert ranks[("registration_status", "open")] == 0


class TestProvenanceStamp:
    """Provenance stamp invariants."""

    def test_manual_stamp(self):
        stamp = ProvenanceStamp.manual(OBSERVED, resolved_by="alice")

        assert stamp.is_manual
        assert stamp.priority == MANUAL_PRIORITY
        assert stamp.to_dict()["observed_at"] == OBSERVED.isoformat()

    def test_source_priority_must_stay_below_manual(self):
        with pytest.raises(CandidateValidationError):
            ProvenanceStamp(priority=MANUAL_PRIORITY, rank=0, observed_at=OBSERVED)

    def test_unknown_marker_and_version(self):
        with pytest.raises(CandidateValidationError):
            ProvenanceStamp(priority=1, rank=0, observed_at=OBSERVED, marker="robot")
        with pytest.raises(CandidateValidationError):
            ProvenanceStamp(priority=1, rank=0, observed_at=OBSERVED, version=7)
