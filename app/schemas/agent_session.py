"""
Schemas for agent session start, status, and approval endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, HttpUrl, model_validator


class AgentSessionStartRequest(BaseModel):
    url: HttpUrl | None = None
    kind: Literal["event-scraper", "venue-info"] = "event-scraper"
    model: str | None = Field(default=None, max_length=100)
    max_iterations: int | None = Field(default=None, ge=1, le=20)
    data_source_id: UUID | None = None
    prior_code: str | None = None
    feedback: str | None = Field(default=None, max_length=4000)
    timezone: str | None = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def require_target(self) -> "AgentSessionStartRequest":
        if self.url is None and self.data_source_id is None:
            raise ValueError("Provide url or data_source_id")
        return self


class AgentSessionAcceptedResponse(BaseModel):
    session_id: UUID
    status: str
    created: bool
    queued_at: datetime


class ThinkingStepResponse(BaseModel):
    type: str
    message: str
    timestamp: str
    data: dict[str, Any] | None = None


class AgentAttemptResponse(BaseModel):
    attempt_number: int
    status: str
    failure_type: str | None = None
    record_count: int
    completeness: float
    fields_found: list[str] = Field(default_factory=list)
    fields_missing: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_ms: int
    started_at: datetime
    completed_at: datetime


class AgentSessionStatusResponse(BaseModel):
    session_id: UUID
    url: str
    kind: str
    mode: str
    status: str
    model: str | None = None
    current_iteration: int
    max_iterations: int
    best_score: float | None = None
    extracted_data: dict[str, Any] | None = None
    best_code: str | None = None
    thinking_steps: list[ThinkingStepResponse] = Field(default_factory=list)
    data_source_id: UUID | None = None
    result_version_id: UUID | None = None
    error_message: str | None = None
    queued_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attempts: list[AgentAttemptResponse] | None = None


class AgentSessionListResponse(BaseModel):
    sessions: list[AgentSessionStatusResponse] = Field(default_factory=list)


class AgentSessionApproveRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    approved_by: str | None = Field(default=None, max_length=255)


class AgentSessionApproveResponse(BaseModel):
    session_id: UUID
    status: str
    data_source_id: UUID
    version_id: UUID
    version_number: int
