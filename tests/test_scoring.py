"""
tests/test_scoring.py

Pytest unit tests for completeness scoring.

Scoring is pure: same records in, same report out.

Coverage
--------
- Empty record sets score exactly zero
- Weighted required/optional formula
- Per-field coverage percentages
- Blank strings and empty lists count as absent
- Missing required fields and sample ranking
- Quality issues for titles, dates and prices
- Venue field set scoring
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.scraping.records import EVENT_FIELDS, VENUE_FIELDS
from app.scraping.scoring import (
    find_quality_issues,
    has_value,
    missing_required_fields,
    sample_records,
    score_records,
)


def _full_event(index: int = 0) -> dict:
    return {
        "title": f"Show {index}",
        "starts_at": "2026-12-05T01:00:00+00:00",
        "source_url": f"https://venue.example.com/events/show-{index}",
        "description": "Live music",
        "cover_charge": 10.0,
        "image_url": "https://venue.example.com/img.jpg",
        "doors_at": "2026-12-05T00:00:00+00:00",
        "ends_at": "2026-12-05T04:00:00+00:00",
        "ticket_url": "https://tickets.example.com/1",
        "genres": ["jazz"],
        "artists": ["Trio"],
        "age_restriction": "21+",
    }


# ---------------------------------------------------------------------------
# score_records
# ---------------------------------------------------------------------------


class TestScoreRecords:
    def test_empty_input_scores_zero(self) -> None:
        report = score_records([], EVENT_FIELDS)
        assert report.completeness == 0.0
        assert report.coverage == {}
        assert report.record_count == 0

    def test_fully_populated_records_score_one(self) -> None:
        report = score_records([_full_event(1), _full_event(2)], EVENT_FIELDS)
        assert report.completeness == pytest.approx(1.0)
        assert all(pct == 100.0 for pct in report.coverage.values())

    def test_required_only_scores_point_seven(self) -> None:
        records = [
            {"title": "A", "starts_at": "2026-12-05T01:00:00+00:00", "source_url": "https://x.example.com/a"},
        ]
        report = score_records(records, EVENT_FIELDS)
        assert report.completeness == pytest.approx(0.7)
        assert report.required_coverage == pytest.approx(1.0)
        assert report.optional_coverage == pytest.approx(0.0)

    def test_partial_coverage_uses_weighted_means(self) -> None:
        records = [
            {"title": "A", "starts_at": "2026-12-05T01:00:00+00:00", "source_url": "u", "description": "d"},
            {"title": "B", "source_url": "u"},
        ]
        report = score_records(records, EVENT_FIELDS)

        assert report.coverage["title"] == 100.0
        assert report.coverage["starts_at"] == 50.0
        assert report.coverage["description"] == 50.0
        assert report.coverage["ticket_url"] == 0.0

        required = (100 + 50 + 100) / 3
        optional = 50 / 9
        expected = round((0.7 * required + 0.3 * optional) / 100, 4)
        assert report.completeness == pytest.approx(expected)

    def test_coverage_lists_every_expected_field(self) -> None:
        report = score_records([{"title": "Only a title"}], EVENT_FIELDS)
        assert set(report.coverage) == set(EVENT_FIELDS.all_fields)
        assert report.fields_found() == ["title"]
        assert "starts_at" in report.fields_missing()

    def test_blank_values_are_absent(self) -> None:
        records = [{"title": "   ", "starts_at": "", "source_url": None, "genres": []}]
        report = score_records(records, EVENT_FIELDS)
        assert report.completeness == 0.0

    def test_venue_scoring(self) -> None:
        venue = {
            "name": "The Blue Room",
            "website": "https://blueroom.example.com",
            "address": "1 Main St",
            "city": "Austin",
            "state": "TX",
        }
        report = score_records([venue], VENUE_FIELDS)
        assert report.completeness == pytest.approx(0.7)

    def test_completeness_stays_in_unit_interval(self) -> None:
        report = score_records([_full_event()] * 50, EVENT_FIELDS)
        assert 0.0 <= report.completeness <= 1.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    @pytest.mark.parametrize(
        "value, expected",
        [(None, False), ("", False), ("  ", False), ([], False), ({}, False), ("x", True), (0, True), ([1], True)],
    )
    def test_has_value(self, value, expected) -> None:
        assert has_value(value) is expected

    def test_missing_required_for_empty_report(self) -> None:
        assert missing_required_fields(score_records([], EVENT_FIELDS), EVENT_FIELDS) == list(EVENT_FIELDS.required)

    def test_missing_required_when_any_record_lacks_field(self) -> None:
        records = [_full_event(1), {"title": "No date", "source_url": "u"}]
        missing = missing_required_fields(score_records(records, EVENT_FIELDS), EVENT_FIELDS)
        assert missing == ["starts_at"]

    def test_sample_records_prefers_best_covered(self) -> None:
        sparse = {"title": "sparse"}
        full = _full_event(7)
        samples = sample_records([sparse, full], EVENT_FIELDS, limit=1)
        assert samples == [full]

    def test_sample_records_is_stable_for_ties(self) -> None:
        first, second = {"title": "a"}, {"title": "b"}
        assert sample_records([first, second], EVENT_FIELDS, limit=2) == [first, second]


# ---------------------------------------------------------------------------
# find_quality_issues
# ---------------------------------------------------------------------------


class TestQualityIssues:
    NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

    def test_clean_records_have_no_issues(self) -> None:
        records = [{"title": "Jazz Night", "starts_at": "2026-11-20T01:00:00+00:00", "cover_charge": 15.0}]
        assert find_quality_issues(records, now=self.NOW) == []

    def test_time_and_date_in_title(self) -> None:
        records = [{"title": "Jazz Night 8:00 PM 11/20"}]
        issues = find_quality_issues(records, now=self.NOW)
        assert any("contain a time" in issue for issue in issues)
        assert any("contain a date" in issue for issue in issues)

    def test_past_and_far_future_dates(self) -> None:
        records = [
            {"title": "Old", "starts_at": "2025-01-01T00:00:00+00:00"},
            {"title": "Far", "starts_at": "2030-01-01T00:00:00+00:00"},
        ]
        issues = find_quality_issues(records, now=self.NOW)
        assert any("in the past" in issue for issue in issues)
        assert any("two years ahead" in issue for issue in issues)

    def test_out_of_range_price(self) -> None:
        issues = find_quality_issues([{"title": "Gala", "cover_charge": 9000.0}], now=self.NOW)
        assert any("cover_charge" in issue for issue in issues)

    def test_empty_records(self) -> None:
        assert find_quality_issues([], now=self.NOW) == []
