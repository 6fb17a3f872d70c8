"""
Schemas for scraper version store and dry-run endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class ScraperVersionCreateRequest(BaseModel):
    code: str = Field(min_length=1)
    description: str | None = Field(default=None, max_length=2000)
    set_active: bool = False
    created_by: str | None = Field(default=None, max_length=255)


class ScraperVersionResponse(BaseModel):
    version_id: UUID
    data_source_id: UUID
    version_number: int
    code_hash: str
    description: str | None = None
    provenance: str
    is_active: bool
    created_by: str | None = None
    created_at: datetime
    last_tested_at: datetime | None = None
    test_results: dict[str, Any] | None = None
    code: str | None = None


class ScraperVersionListResponse(BaseModel):
    versions: list[ScraperVersionResponse] = Field(default_factory=list)


class ScraperTestRequest(BaseModel):
    code: str | None = None
    version_id: UUID | None = None


class ScraperTestResponse(BaseModel):
    data_source_id: UUID
    version_id: UUID | None = None
    success: bool
    failure_type: str | None = None
    record_count: int
    completeness: float
    coverage: dict[str, float] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    duration_ms: int
    samples: list[dict[str, Any]] = Field(default_factory=list)
