"""
Repository for production run history and baseline lookup.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from db.models.scraper_run import ScraperRun, ScraperRunStatus


class ScraperRunRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def record_run(
        self,
        *,
        data_source_id: uuid.UUID,
        version_id: uuid.UUID | None,
        status: str,
        event_count: int,
        expected_count: float | None,
        failure_type: str | None,
        severity: str | None,
        consecutive_failures: int,
        errors: list[str],
        duration_ms: int,
        started_at: datetime,
        completed_at: datetime,
    ) -> ScraperRun:
        run = ScraperRun(
            data_source_id=data_source_id,
            version_id=version_id,
            status=status,
            event_count=event_count,
            expected_count=expected_count,
            failure_type=failure_type,
            severity=severity,
            consecutive_failures=consecutive_failures,
            errors=list(errors),
            duration_ms=duration_ms,
            started_at=started_at,
            completed_at=completed_at,
        )
        self._session.add(run)
        self._session.flush()
        return run

    def count_runs(self, data_source_id: uuid.UUID) -> int:
        stmt = select(func.count(ScraperRun.id)).where(ScraperRun.data_source_id == data_source_id)
        return int(self._session.scalar(stmt) or 0)

    def recent_success_counts(self, *, data_source_id: uuid.UUID, window: int) -> list[int]:
        """
        Event counts of the latest ``window`` successful runs, newest first.
        """
        stmt = (
            select(ScraperRun.event_count)
            .where(
                ScraperRun.data_source_id == data_source_id,
                ScraperRun.status == ScraperRunStatus.SUCCESS,
            )
            .order_by(ScraperRun.started_at.desc())
            .limit(max(1, window))
        )
        return [int(value) for value in self._session.scalars(stmt).all()]

    def list_runs(self, *, data_source_id: uuid.UUID, limit: int = 50) -> list[ScraperRun]:
        stmt = (
            select(ScraperRun)
            .where(ScraperRun.data_source_id == data_source_id)
            .order_by(ScraperRun.started_at.desc())
            .limit(max(1, limit))
        )
        return list(self._session.scalars(stmt).all())

