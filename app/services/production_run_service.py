"""
app/services/production_run_service.py

Scheduled production runs of each source's active program.

Each run executes the mirrored code, classifies the outcome against the
source's recent history, records a ``scraper_runs`` row, updates the
failure streak, alerts above the configured severity, and queues an
automatic repair session once the streak is long enough.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from functools import lru_cache
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from app.config import AgentSettings, MonitorSettings, get_agent_settings, get_monitor_settings
from app.failure_codes import severity_rank
from app.monitoring.detector import FailureDetector, RunAssessment
from app.notifications import Alert, NotificationGateway, build_alert_key, get_notification_gateway
from app.scraping.logging_utils import log_event
from app.scraping.records import EVENT_SCRAPER
from app.scraping.sandbox import SandboxedExecutor
from app.scraping.types import ExecutionResult
from app.services.agent_session_service import AgentSessionService
from db.base import utcnow
from db.models.agent_session import AgentSessionMode
from db.models.data_source import DataSource
from db.models.scraper_run import ScraperRunStatus
from db.repositories import (
    AgentSessionRepository,
    DataSourceRepository,
    ScraperRunRepository,
    ScraperVersionRepository,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProductionRunSummary:
    data_source_id: uuid.UUID
    status: str
    event_count: int
    expected_count: float | None
    consecutive_failures: int
    failure_type: str | None = None
    severity: str | None = None
    alerted: bool = False
    repair_session_id: uuid.UUID | None = None
    skipped_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_source_id": str(self.data_source_id),
            "status": self.status,
            "event_count": self.event_count,
            "expected_count": self.expected_count,
            "consecutive_failures": self.consecutive_failures,
            "failure_type": self.failure_type,
            "severity": self.severity,
            "alerted": self.alerted,
            "repair_session_id": str(self.repair_session_id) if self.repair_session_id else None,
            "skipped_reason": self.skipped_reason,
        }


@dataclass(frozen=True)
class _RunPlan:
    code: str
    version_id: uuid.UUID | None
    url: str
    name: str
    timezone: str
    kind: str
    has_history: bool
    success_history: list[int]
    previous_failures: int


class ProductionRunService:
    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session] | None = None,
        executor: SandboxedExecutor | None = None,
        detector: FailureDetector | None = None,
        gateway: NotificationGateway | None = None,
        session_service: AgentSessionService | None = None,
        agent_settings: AgentSettings | None = None,
        monitor_settings: MonitorSettings | None = None,
    ) -> None:
        if session_factory is None:
            from db.session import SessionLocal

            self._session_factory = SessionLocal
        else:
            self._session_factory = session_factory

        self._agent_settings = agent_settings or get_agent_settings()
        self._monitor_settings = monitor_settings or get_monitor_settings()
        self._executor = executor
        self._detector = detector or FailureDetector(self._monitor_settings)
        self._gateway = gateway
        self._session_service = session_service or AgentSessionService(
            session_factory=session_factory,
            settings=self._agent_settings,
        )

    @property
    def executor(self) -> SandboxedExecutor:
        if self._executor is None:
            self._executor = SandboxedExecutor(default_timeout_ms=self._agent_settings.execution_timeout_ms)
        return self._executor

    @property
    def gateway(self) -> NotificationGateway:
        if self._gateway is None:
            self._gateway = get_notification_gateway()
        return self._gateway

    def run_all(self) -> list[ProductionRunSummary]:
        """Run every active source; one failing source never stops the batch."""
        with self._session_factory() as db:
            source_ids = [source.id for source in DataSourceRepository(db).list_runnable_sources()]

        summaries: list[ProductionRunSummary] = []
        for source_id in source_ids:
            try:
                summaries.append(self.run_source(source_id))
            except Exception as exc:  # noqa: BLE001
                logger.error("Production run failed for source=%s: %s", source_id, exc, exc_info=True)
        return summaries

    def run_source(self, data_source_id: uuid.UUID) -> ProductionRunSummary:
        with self._session_factory() as db:
            plan = self._plan(db, data_source_id)
            if isinstance(plan, ProductionRunSummary):
                return plan

            started_at = utcnow()
            result = self.executor.execute(
                plan.code,
                plan.url,
                plan.timezone,
                self._agent_settings.execution_timeout_ms,
                kind=plan.kind,
            )
            completed_at = utcnow()

            assessment = self._detector.classify(
                result,
                success_history=plan.success_history,
                has_history=plan.has_history,
                previous_failures=plan.previous_failures,
            )
            self._record(db, data_source_id, plan, result, assessment, started_at, completed_at)

            summary = ProductionRunSummary(
                data_source_id=data_source_id,
                status=self._run_status(result, assessment),
                event_count=assessment.event_count,
                expected_count=assessment.expected_count,
                consecutive_failures=assessment.consecutive_failures,
                failure_type=assessment.classification.failure_type if assessment.classification else None,
                severity=assessment.classification.severity if assessment.classification else None,
            )
            log_event(logger, logging.INFO, "production_run_complete", **summary.to_dict())

            if assessment.classification is None:
                return summary

            alerted = self._maybe_alert(data_source_id, plan, result, assessment)
            repair_session_id = self._maybe_repair(db, data_source_id, plan, result, assessment)
            return replace(summary, alerted=alerted, repair_session_id=repair_session_id)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _plan(self, db: Session, data_source_id: uuid.UUID) -> _RunPlan | ProductionRunSummary:
        with db.begin():
            source = DataSourceRepository(db).require_source(data_source_id)
            code, version_id = self._resolve_code(db, source)
            if not source.is_active or not code:
                reason = "source is inactive" if not source.is_active else "source has no active code"
                logger.info("Skipping production run source=%s: %s", data_source_id, reason)
                return ProductionRunSummary(
                    data_source_id=data_source_id,
                    status="skipped",
                    event_count=0,
                    expected_count=None,
                    consecutive_failures=source.consecutive_failures,
                    skipped_reason=reason,
                )
            runs = ScraperRunRepository(db)
            return _RunPlan(
                code=code,
                version_id=version_id,
                url=source.url,
                name=source.name,
                timezone=source.timezone,
                kind=(source.config or {}).get("kind", EVENT_SCRAPER),
                has_history=runs.count_runs(data_source_id) > 0,
                success_history=runs.recent_success_counts(
                    data_source_id=data_source_id,
                    window=self._monitor_settings.baseline_window,
                ),
                previous_failures=source.consecutive_failures,
            )

    @staticmethod
    def _resolve_code(db: Session, source: DataSource) -> tuple[str | None, uuid.UUID | None]:
        config = source.config or {}
        mirrored = config.get("generated_code")
        if mirrored:
            version_id = config.get("active_version_id")
            return mirrored, uuid.UUID(version_id) if version_id else None
        active = ScraperVersionRepository(db).get_active_version(source.id)
        if active is not None:
            return active.code, active.id
        return None, None

    @staticmethod
    def _run_status(result: ExecutionResult, assessment: RunAssessment) -> str:
        if assessment.is_failure or not result.success:
            return ScraperRunStatus.FAILED
        return ScraperRunStatus.SUCCESS

    def _record(
        self,
        db: Session,
        data_source_id: uuid.UUID,
        plan: _RunPlan,
        result: ExecutionResult,
        assessment: RunAssessment,
        started_at: datetime,
        completed_at: datetime,
    ) -> None:
        classification = assessment.classification
        with db.begin():
            sources = DataSourceRepository(db)
            source = sources.require_source(data_source_id)
            ScraperRunRepository(db).record_run(
                data_source_id=data_source_id,
                version_id=plan.version_id,
                status=self._run_status(result, assessment),
                event_count=assessment.event_count,
                expected_count=assessment.expected_count,
                failure_type=classification.failure_type if classification else result.failure_type,
                severity=classification.severity if classification else None,
                consecutive_failures=assessment.consecutive_failures,
                errors=list(result.errors[:50]),
                duration_ms=result.duration_ms,
                started_at=started_at,
                completed_at=completed_at,
            )
            if result.success and not assessment.is_failure:
                sources.mark_run_succeeded(
                    source=source,
                    finished_at=completed_at,
                    event_count=assessment.event_count,
                )
            else:
                sources.mark_run_failed(
                    source=source,
                    finished_at=completed_at,
                    event_count=assessment.event_count,
                    consecutive_failures=assessment.consecutive_failures,
                )

    def _maybe_alert(
        self,
        data_source_id: uuid.UUID,
        plan: _RunPlan,
        result: ExecutionResult,
        assessment: RunAssessment,
    ) -> bool:
        classification = assessment.classification
        if classification is None:
            return False
        if severity_rank(classification.severity) < severity_rank(self._monitor_settings.notify_min_severity):
            return False
        alert = Alert(
            key=build_alert_key(classification.failure_type, str(data_source_id)),
            title=f"Parser Failure: {plan.name}",
            severity=classification.severity,
            message=classification.message,
            created_at=utcnow(),
            failure_type=classification.failure_type,
            source_id=str(data_source_id),
            source_name=plan.name,
            source_url=plan.url,
            details={
                "events_found": classification.event_count,
                "events_expected": classification.expected_count,
                "consecutive_failures": classification.consecutive_failures,
            },
            errors=list(result.errors[:10]),
        )
        try:
            return self.gateway.notify(alert)
        except Exception as exc:  # noqa: BLE001
            logger.error("Alert delivery raised for source=%s: %s", data_source_id, exc)
            return False

    def _maybe_repair(
        self,
        db: Session,
        data_source_id: uuid.UUID,
        plan: _RunPlan,
        result: ExecutionResult,
        assessment: RunAssessment,
    ) -> uuid.UUID | None:
        threshold = self._monitor_settings.auto_repair_after
        classification = assessment.classification
        if classification is None or threshold <= 0 or assessment.consecutive_failures < threshold:
            return None

        with db.begin():
            in_flight = AgentSessionRepository(db).find_in_flight(
                data_source_id=data_source_id,
                url=plan.url,
                kind=plan.kind,
            )
        if in_flight is not None:
            return None

        try:
            start = self._session_service.improve(
                db=db,
                executor=None,
                data_source_id=data_source_id,
                feedback=(
                    f"Automatic repair after {assessment.consecutive_failures} consecutive failures: "
                    f"{classification.message}"
                ),
                prior_code=plan.code,
                test_result={
                    "success": result.success,
                    "record_count": assessment.event_count,
                    "errors": list(result.errors),
                },
                mode=AgentSessionMode.AUTO_REPAIR,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not queue repair session for source=%s: %s", data_source_id, exc)
            return None

        if start.created:
            log_event(
                logger,
                logging.WARNING,
                "auto_repair_queued",
                data_source_id=data_source_id,
                session_id=start.session.id,
                consecutive_failures=assessment.consecutive_failures,
            )
            return start.session.id
        return None


@lru_cache(maxsize=1)
def get_production_run_service() -> ProductionRunService:
    return ProductionRunService()
