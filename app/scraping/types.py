"""
Typed data structures used by the sandboxed executor and scorer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ExecutionResult:
    """
    Outcome of one candidate program run. Never persisted directly.
    """

    records: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    success: bool = False
    failure_type: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def record_count(self) -> int:
        return len(self.records)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "failure_type": self.failure_type,
            "record_count": self.record_count,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class CompletenessReport:
    """
    Field coverage of a record set.

    ``coverage`` maps each expected field to the percentage (0-100) of
    records where it is present; the three scores are in [0, 1].
    """

    coverage: dict[str, float]
    completeness: float
    required_coverage: float
    optional_coverage: float
    record_count: int = 0

    def fields_found(self) -> list[str]:
        return [name for name, pct in self.coverage.items() if pct > 0]

    def fields_missing(self) -> list[str]:
        return [name for name, pct in self.coverage.items() if pct == 0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "coverage": dict(self.coverage),
            "completeness": self.completeness,
            "required_coverage": self.required_coverage,
            "optional_coverage": self.optional_coverage,
            "record_count": self.record_count,
        }
