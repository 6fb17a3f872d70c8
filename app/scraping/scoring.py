"""
Completeness scoring for scraped record sets.

Pure functions: identical input always yields the identical report, and
nothing here touches the network, the database or the clock except where
``now`` is passed in explicitly.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from app.scraping.records import EVENT_FIELDS, FieldSet
from app.scraping.types import CompletenessReport

REQUIRED_WEIGHT = 0.7
OPTIONAL_WEIGHT = 0.3

_TIME_IN_TITLE_RE = re.compile(r"\b\d{1,2}:\d{2}\b|\b\d{1,2}\s?(?:am|pm)\b", re.IGNORECASE)
_DATE_IN_TITLE_RE = re.compile(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b|\b\d{4}-\d{2}-\d{2}\b")
MAX_REASONABLE_PRICE = 500.0


def has_value(value: Any) -> bool:
    """
    Present means non-null, non-blank after trimming, and non-empty for
    collections.
    """

    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) > 0
    return True


def _mean(values: Iterable[float]) -> float:
    items = list(values)
    if not items:
        return 0.0
    return sum(items) / len(items)


def score_records(
    records: list[dict[str, Any]],
    field_set: FieldSet = EVENT_FIELDS,
) -> CompletenessReport:
    """
    Weighted field coverage of ``records``.

    Each field's coverage is the percentage of records where it is
    present. Required coverage is the mean over required fields, optional
    coverage the mean over optional fields, and completeness is
    ``0.7 * required + 0.3 * optional``. Empty input scores exactly 0.
    """

    if not records:
        return CompletenessReport(
            coverage={},
            completeness=0.0,
            required_coverage=0.0,
            optional_coverage=0.0,
            record_count=0,
        )

    total = len(records)
    coverage: dict[str, float] = {}
    for name in field_set.all_fields:
        present = sum(1 for record in records if has_value(record.get(name)))
        coverage[name] = round(present / total * 100, 2)

    required_pct = _mean(coverage[name] for name in field_set.required)
    optional_pct = _mean(coverage[name] for name in field_set.optional)
    completeness = (required_pct * REQUIRED_WEIGHT + optional_pct * OPTIONAL_WEIGHT) / 100

    return CompletenessReport(
        coverage=coverage,
        completeness=round(min(1.0, max(0.0, completeness)), 4),
        required_coverage=round(required_pct / 100, 4),
        optional_coverage=round(optional_pct / 100, 4),
        record_count=total,
    )


def missing_required_fields(report: CompletenessReport, field_set: FieldSet = EVENT_FIELDS) -> list[str]:
    """Required fields absent from at least one record."""
    if report.record_count == 0:
        return list(field_set.required)
    return [name for name in field_set.required if report.coverage.get(name, 0.0) < 100]


def sample_records(
    records: list[dict[str, Any]],
    field_set: FieldSet = EVENT_FIELDS,
    limit: int = 5,
) -> list[dict[str, Any]]:
    """
    The ``limit`` best-covered records, stable for equal coverage.
    """

    ranked = sorted(
        enumerate(records),
        key=lambda pair: (
            -sum(1 for name in field_set.all_fields if has_value(pair[1].get(name))),
            pair[0],
        ),
    )
    return [record for _, record in ranked[: max(0, limit)]]


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def find_quality_issues(
    records: list[dict[str, Any]],
    *,
    now: datetime | None = None,
) -> list[str]:
    """
    Event-record problems that field coverage alone does not reveal.
    """

    if not records:
        return []

    reference = now or datetime.now(timezone.utc)
    past_cutoff = reference - timedelta(days=1)
    future_cutoff = reference + timedelta(days=730)

    time_in_title = 0
    date_in_title = 0
    past_dates = 0
    far_future = 0
    bad_prices = 0

    for record in records:
        title = record.get("title")
        if isinstance(title, str):
            if _TIME_IN_TITLE_RE.search(title):
                time_in_title += 1
            if _DATE_IN_TITLE_RE.search(title):
                date_in_title += 1

        starts_at = _parse_iso(record.get("starts_at"))
        if starts_at is not None:
            if starts_at < past_cutoff:
                past_dates += 1
            elif starts_at > future_cutoff:
                far_future += 1

        price = record.get("cover_charge")
        if price is not None and (
            not isinstance(price, (int, float))
            or isinstance(price, bool)
            or price < 0
            or price > MAX_REASONABLE_PRICE
        ):
            bad_prices += 1

    issues: list[str] = []
    if time_in_title:
        issues.append(f"{time_in_title} title(s) contain a time; put it in starts_at instead")
    if date_in_title:
        issues.append(f"{date_in_title} title(s) contain a date; put it in starts_at instead")
    if past_dates:
        issues.append(f"{past_dates} event(s) start in the past; check the year and timezone")
    if far_future:
        issues.append(f"{far_future} event(s) start more than two years ahead; check date parsing")
    if bad_prices:
        issues.append(
            f"{bad_prices} cover_charge value(s) are not a number between 0 and {MAX_REASONABLE_PRICE:.0f}"
        )
    return issues
