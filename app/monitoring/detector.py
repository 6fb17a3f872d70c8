"""
app/monitoring/detector.py

Classification of one production run against the source's history.

Pure logic: callers supply the execution result, the recent successful
event counts and the current failure streak; nothing here touches the
database or sends alerts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app.config import MonitorSettings, get_monitor_settings
from app.failure_codes import FailureType, Severity, escalate
from app.scraping.records import EVENT_FIELDS
from app.scraping.scoring import has_value
from app.scraping.types import ExecutionResult


@dataclass(frozen=True)
class FailureClassification:
    failure_type: str
    severity: str
    message: str
    event_count: int
    expected_count: float | None
    consecutive_failures: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "failure_type": self.failure_type,
            "severity": self.severity,
            "message": self.message,
            "event_count": self.event_count,
            "expected_count": self.expected_count,
            "consecutive_failures": self.consecutive_failures,
        }


@dataclass(frozen=True)
class RunAssessment:
    """
    Outcome of classifying one run. ``classification`` is None for a healthy run.
    """

    event_count: int
    expected_count: float | None
    consecutive_failures: int
    classification: FailureClassification | None = None
    notes: list[str] = field(default_factory=list)

    @property
    def is_failure(self) -> bool:
        return self.classification is not None


def expected_count_from(history: list[int]) -> float | None:
    """Mean of recent successful event counts, or None without history."""
    if not history:
        return None
    return round(sum(history) / len(history), 2)


class FailureDetector:
    def __init__(self, settings: MonitorSettings | None = None) -> None:
        self._settings = settings or get_monitor_settings()

    def classify(
        self,
        result: ExecutionResult,
        *,
        success_history: list[int],
        has_history: bool,
        previous_failures: int,
    ) -> RunAssessment:
        event_count = result.record_count if result.success else 0
        expected = expected_count_from(success_history)

        if not has_history:
            note = "First run for this source; no baseline to compare against."
            return RunAssessment(
                event_count=event_count,
                expected_count=expected,
                consecutive_failures=0,
                notes=[note],
            )

        detected = self._detect(result, event_count=event_count, expected=expected)
        if detected is None:
            return RunAssessment(event_count=event_count, expected_count=expected, consecutive_failures=0)

        failure_type, base_severity, message = detected
        streak = previous_failures + 1
        severity = escalate(base_severity, streak - 1)
        if streak > 1:
            message = f"{message} ({streak} consecutive failures)"

        return RunAssessment(
            event_count=event_count,
            expected_count=expected,
            consecutive_failures=streak,
            classification=FailureClassification(
                failure_type=failure_type,
                severity=severity,
                message=message,
                event_count=event_count,
                expected_count=expected,
                consecutive_failures=streak,
            ),
        )

    def _detect(
        self,
        result: ExecutionResult,
        *,
        event_count: int,
        expected: float | None,
    ) -> tuple[str, str, str] | None:
        if not result.success:
            failure_type = result.failure_type or FailureType.PARSE_ERROR
            detail = "; ".join(result.errors[:3]) or "no error detail"
            return failure_type, Severity.ERROR, f"Scraper failed ({failure_type}): {detail}"

        if expected is not None and expected > 0:
            if event_count == 0:
                return (
                    FailureType.ZERO_EVENTS,
                    Severity.ERROR,
                    f"No events found. Expected ~{expected:g} events based on recent runs.",
                )
            drop = (expected - event_count) / expected
            if drop >= self._settings.structure_change_drop:
                severity = Severity.ERROR if drop >= self._settings.severe_drop else Severity.WARNING
                return (
                    FailureType.STRUCTURE_CHANGE,
                    severity,
                    f"Event count dropped {round(drop * 100)}%: {event_count} found vs ~{expected:g} "
                    "expected. Possible structure change.",
                )

        if event_count:
            malformed = sum(
                1
                for record in result.records
                if not all(has_value(record.get(name)) for name in EVENT_FIELDS.required)
            )
            if malformed / event_count >= self._settings.malformed_ratio:
                return (
                    FailureType.UNEXPECTED_FORMAT,
                    Severity.WARNING,
                    f"{malformed} of {event_count} events are missing title, start time or URL.",
                )

        return None
