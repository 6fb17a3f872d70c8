"""Shared failure type and severity constants for run classification."""

from __future__ import annotations


class FailureType:
    ZERO_EVENTS = "zero_events"
    PARSE_ERROR = "parse_error"
    STRUCTURE_CHANGE = "structure_change"
    HTTP_ERROR = "http_error"
    TIMEOUT = "timeout"
    UNEXPECTED_FORMAT = "unexpected_format"
    # Rejected by the static gate before any execution.
    VALIDATION = "validation"


class Severity:
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    ORDER = (WARNING, ERROR, CRITICAL)


def severity_rank(severity: str) -> int:
    return Severity.ORDER.index(severity)


def escalate(base: str, steps: int) -> str:
    """Raise ``base`` by ``steps`` levels, capped at critical."""
    index = min(len(Severity.ORDER) - 1, severity_rank(base) + max(0, steps))
    return Severity.ORDER[index]

