"""
Schemas for data source, improve, and production run endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, HttpUrl


class DataSourceCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    url: HttpUrl
    timezone: str = Field(default="America/New_York", max_length=64)
    is_active: bool = True


class DataSourceResponse(BaseModel):
    data_source_id: UUID
    name: str
    url: str
    timezone: str
    is_active: bool
    consecutive_failures: int
    last_run_at: datetime | None = None
    last_run_status: str | None = None
    last_success_at: datetime | None = None
    last_event_count: int | None = None
    active_version_id: str | None = None
    active_version_number: int | None = None
    created_at: datetime


class DataSourceListResponse(BaseModel):
    sources: list[DataSourceResponse] = Field(default_factory=list)


class ImproveScraperRequest(BaseModel):
    feedback: str = Field(min_length=1, max_length=4000)
    prior_code: str | None = None
    test_result: dict[str, Any] | None = None
    model: str | None = Field(default=None, max_length=100)


class ProductionRunAcceptedResponse(BaseModel):
    data_source_id: UUID
    status: str
