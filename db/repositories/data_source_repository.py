"""
Repository for data source lookup and production run bookkeeping.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from db.models.data_source import DataSource, DataSourceRunStatus
from db.repositories.errors import DataSourceNotFoundError


class DataSourceRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_source(
        self,
        *,
        name: str,
        url: str,
        timezone: str,
        is_active: bool = True,
        config: dict[str, Any] | None = None,
    ) -> DataSource:
        source = DataSource(
            name=name,
            url=url,
            timezone=timezone,
            is_active=is_active,
            consecutive_failures=0,
            config=config or {},
        )
        self._session.add(source)
        self._session.flush()
        self._session.refresh(source)
        return source

    def get_source(self, data_source_id: uuid.UUID) -> DataSource | None:
        return self._session.get(DataSource, data_source_id)

    def require_source(self, data_source_id: uuid.UUID) -> DataSource:
        source = self.get_source(data_source_id)
        if source is None:
            raise DataSourceNotFoundError(data_source_id)
        return source

    def list_sources(
        self,
        *,
        limit: int = 100,
        active_only: bool = False,
    ) -> list[DataSource]:
        stmt: Select[tuple[DataSource]] = select(DataSource)
        if active_only:
            stmt = stmt.where(DataSource.is_active.is_(True))
        stmt = stmt.order_by(DataSource.name.asc()).limit(max(1, limit))
        return list(self._session.scalars(stmt).all())

    def list_runnable_sources(self) -> list[DataSource]:
        """Active sources; callers skip those without mirrored code."""
        stmt = select(DataSource).where(DataSource.is_active.is_(True)).order_by(DataSource.name.asc())
        return list(self._session.scalars(stmt).all())

    def mark_run_succeeded(
        self,
        *,
        source: DataSource,
        finished_at: datetime,
        event_count: int,
    ) -> DataSource:
        source.last_run_at = finished_at
        source.last_run_status = DataSourceRunStatus.SUCCESS
        source.last_success_at = finished_at
        source.last_event_count = event_count
        source.consecutive_failures = 0
        return source

    def mark_run_failed(
        self,
        *,
        source: DataSource,
        finished_at: datetime,
        event_count: int,
        consecutive_failures: int,
    ) -> DataSource:
        source.last_run_at = finished_at
        source.last_run_status = DataSourceRunStatus.FAILED
        source.last_event_count = event_count
        source.consecutive_failures = consecutive_failures
        return source
