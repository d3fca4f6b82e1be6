"""Tests for the Source Resolver fallback chain."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from source_resolver import (RealValue, SourceResolver, Unavailable,
                             canonical_field, read_live)


# =====================================================================
# TIER ORDER
# =====================================================================

class TestTierOrder:
    def test_cache_precedes_live(self):
        r = SourceResolver(stored={"JEPI": {"4w": {"percentage": 5.0}}},
                           live={"JEPI": {"drip4wPercent": 9.0}})
        res = r.resolve("JEPI", "drip", "4w")
        assert isinstance(res, RealValue)
        assert res.value == 5.0
        assert res.source.startswith("stored")

    def test_canonical_field_first(self):
        r = SourceResolver(stored={"JEPI": {"drip13wPercent": 1.5,
                                            "13w": {"percentage": 2.5}}})
        assert r.resolve("JEPI", "drip", "13w").value == 1.5

    def test_percentage_beats_growth_percent(self):
        r = SourceResolver(stored={"QYLD": {"26w": {"growthPercent": 7.0,
                                                    "percentage": 3.0}}})
        res = r.resolve("QYLD", "drip", "26w")
        assert res.value == 3.0
        assert res.source == "stored:percentage"

    def test_growth_percent_used_when_alone(self):
        r = SourceResolver(stored={"QYLD": {"26w": {"growthPercent": 7.0}}})
        assert r.resolve("QYLD", "drip", "26w").value == 7.0

    def test_live_when_cache_missing(self):
        r = SourceResolver(stored={}, live={"VYM": {"52w": 4.2}})
        res = r.resolve("VYM", "drip", "52w")
        assert res.value == 4.2
        assert res.source == "live"

    def test_unavailable_when_nothing(self):
        res = SourceResolver().resolve("NONE", "drip", "4w")
        assert isinstance(res, Unavailable)


# =====================================================================
# RECORD SHAPES
# =====================================================================

class TestRecordShapes:
    def test_period_prefixed_key(self):
        r = SourceResolver(stored={"SCHD": {"period_4w": {"percentage": 1.1}}})
        assert r.resolve("SCHD", "drip", "4w").value == 1.1

    def test_json_string_period_object(self):
        r = SourceResolver(stored={"SCHD": {"4w": '{"percentage": 2.2}'}})
        assert r.resolve("SCHD", "drip", "4w").value == 2.2

    def test_bad_json_falls_through(self):
        r = SourceResolver(stored={"SCHD": {"4w": "{not json"}},
                           live={"SCHD": {"drip4wPercent": 0.7}})
        assert r.resolve("SCHD", "drip", "4w").value == 0.7

    def test_non_numeric_ignored(self):
        r = SourceResolver(stored={"SCHD": {"drip4wPercent": "n/a",
                                            "4w": {"percentage": True}}})
        assert isinstance(r.resolve("SCHD", "drip", "4w"), Unavailable)

    def test_nan_ignored(self):
        r = SourceResolver(stored={"SCHD": {"drip4wPercent": float("nan")}})
        assert isinstance(r.resolve("SCHD", "drip", "4w"), Unavailable)

    def test_non_mapping_record_skipped(self):
        r = SourceResolver(stored={"SCHD": ["garbage"]})
        assert isinstance(r.resolve("SCHD", "drip", "4w"), Unavailable)

    def test_canonical_field_name(self):
        assert canonical_field("drip", "52w") == "drip52wPercent"

    def test_read_live_nested(self):
        assert read_live({"4w": {"percentage": 3.3}}, "drip", "4w") == 3.3
