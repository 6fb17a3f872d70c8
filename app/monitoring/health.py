"""
app/monitoring/health.py

Daily health digest across all data sources.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from app.config import MonitorSettings, get_monitor_settings
from app.failure_codes import Severity
from app.notifications import Alert, NotificationGateway, build_alert_key, get_notification_gateway
from db.base import as_utc, utcnow
from db.models.data_source import DataSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceHealth:
    id: str
    name: str
    url: str
    consecutive_failures: int
    last_success_at: datetime | None

    def describe(self) -> str:
        last = self.last_success_at.date().isoformat() if self.last_success_at else "never"
        return f"{self.name} (failures: {self.consecutive_failures}, last success: {last})"


@dataclass(frozen=True)
class HealthReport:
    stale: list[SourceHealth] = field(default_factory=list)
    failing: list[SourceHealth] = field(default_factory=list)
    disabled: list[SourceHealth] = field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        return not (self.stale or self.failing or self.disabled)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stale": [item.id for item in self.stale],
            "failing": [item.id for item in self.failing],
            "disabled": [item.id for item in self.disabled],
        }


def build_health_report(
    db: Session,
    *,
    settings: MonitorSettings | None = None,
    now: datetime | None = None,
) -> HealthReport:
    resolved = settings or get_monitor_settings()
    reference = now or utcnow()
    stale_before = reference - timedelta(days=resolved.stale_days)

    stale: list[SourceHealth] = []
    failing: list[SourceHealth] = []
    disabled: list[SourceHealth] = []
    for source in db.scalars(select(DataSource).order_by(DataSource.name.asc())).all():
        health = SourceHealth(
            id=str(source.id),
            name=source.name,
            url=source.url,
            consecutive_failures=source.consecutive_failures,
            last_success_at=as_utc(source.last_success_at),
        )
        if not source.is_active:
            disabled.append(health)
            continue
        if source.consecutive_failures >= resolved.failing_threshold:
            failing.append(health)
        # Sources that have never run yet are not stale.
        if source.last_run_at is not None and (
            health.last_success_at is None or health.last_success_at < stale_before
        ):
            stale.append(health)
    return HealthReport(stale=stale, failing=failing, disabled=disabled)


class HealthDigestService:
    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session] | None = None,
        gateway: NotificationGateway | None = None,
        settings: MonitorSettings | None = None,
    ) -> None:
        if session_factory is None:
            from db.session import SessionLocal

            self._session_factory = SessionLocal
        else:
            self._session_factory = session_factory
        self._gateway = gateway
        self._settings = settings or get_monitor_settings()

    def send_digest(self, *, now: datetime | None = None) -> HealthReport:
        reference = now or utcnow()
        with self._session_factory() as db:
            report = build_health_report(db, settings=self._settings, now=reference)

        if report.is_healthy:
            logger.info("Scraper health digest: all sources healthy")
            return report

        sections = []
        if report.failing:
            sections.append(("Failing", report.failing))
        if report.stale:
            sections.append((f"No success in {self._settings.stale_days} days", report.stale))
        if report.disabled:
            sections.append(("Disabled", report.disabled))
        message = "\n".join(
            f"{title}:\n" + "\n".join(f"- {item.describe()}" for item in items) for title, items in sections
        )

        gateway = self._gateway or get_notification_gateway()
        gateway.notify(
            Alert(
                key=build_alert_key("health_digest", reference.date().isoformat()),
                title="Scraper health digest",
                severity=Severity.CRITICAL if report.failing else Severity.WARNING,
                message=message,
                created_at=reference,
                details={
                    "failing": len(report.failing),
                    "stale": len(report.stale),
                    "disabled": len(report.disabled),
                },
            )
        )
        return report
