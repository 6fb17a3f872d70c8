"""Structured feedback passed from one generation iteration to the next."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AttemptFeedback(BaseModel):
    """What the model is told about its previous candidate."""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        str_strip_whitespace=True,
    )

    attempt_number: int = Field(ge=1)
    status: str = Field(min_length=1)
    failure_type: Optional[str] = None
    code: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    record_count: int = Field(default=0, ge=0)
    completeness: float = Field(default=0.0, ge=0.0, le=1.0)
    coverage: Dict[str, float] = Field(default_factory=dict)
    fields_missing: List[str] = Field(default_factory=list)
    quality_issues: List[str] = Field(default_factory=list)
    sample_records: List[Dict[str, Any]] = Field(default_factory=list)

    def to_text(self, *, max_errors: int = 8) -> str:
        """Render the feedback as plain prose for the next prompt."""
        lines = [
            f"Attempt {self.attempt_number} status: {self.status}"
            + (f" ({self.failure_type})" if self.failure_type else ""),
            f"Records extracted: {self.record_count}",
            f"Completeness: {self.completeness:.0%}",
        ]
        if self.errors:
            lines.append("Errors:")
            lines.extend(f"- {error}" for error in self.errors[:max_errors])
            if len(self.errors) > max_errors:
                lines.append(f"- ... {len(self.errors) - max_errors} more")
        if self.fields_missing:
            lines.append("Fields never or only partly filled: " + ", ".join(self.fields_missing))
        if self.coverage:
            coverage = ", ".join(f"{name}={pct:.0f}%" for name, pct in sorted(self.coverage.items()))
            lines.append(f"Field coverage: {coverage}")
        if self.quality_issues:
            lines.append("Quality issues:")
            lines.extend(f"- {issue}" for issue in self.quality_issues[:max_errors])
        return "\n".join(lines)
