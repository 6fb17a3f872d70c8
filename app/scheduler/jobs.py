"""
app/scheduler/jobs.py

APScheduler jobs for the session queue worker and production monitoring.

Schedule (all times UTC)
--------------------------
  agent_queue          every SCHEDULER_QUEUE_POLL_SECONDS, up to
                       SCHEDULER_WORKER_CONCURRENCY overlapping runs
  production_scrapers  daily at SCHEDULER_PRODUCTION_RUN_HOUR
  alert_dedup_sweep    every ALERT_SWEEP_INTERVAL_SECONDS
  health_digest        daily at SCHEDULER_HEALTH_DIGEST_HOUR

Lifecycle
----------
Call ``build_scheduler()`` once to get a configured ``BackgroundScheduler``.
Start it on app boot; shut it down gracefully on app shutdown.
The scheduler is wired into FastAPI via the ``lifespan`` context in main.py.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from app.config import (
    SchedulerSettings,
    get_notification_settings,
    get_scheduler_settings,
)
from app.monitoring.health import HealthDigestService
from app.notifications import get_notification_gateway
from app.services.agent_session_service import get_agent_session_service
from app.services.production_run_service import get_production_run_service

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Job: session queue worker
# ---------------------------------------------------------------------------


def process_agent_queue() -> None:
    """
    Requeue abandoned sessions, then run the oldest pending one.

    Overlapping runs each claim a different session; the claim is atomic.
    """
    service = get_agent_session_service()
    try:
        service.recover_stale_sessions()
        session_id = service.process_next()
    except Exception as exc:  # noqa: BLE001
        logger.error("Scheduler: agent_queue failed: %s", exc, exc_info=True)
        return
    if session_id is not None:
        logger.info("Scheduler: agent_queue finished session=%s", session_id)


# ---------------------------------------------------------------------------
# Job: daily production runs
# ---------------------------------------------------------------------------


def run_production_scrapers() -> None:
    """
    Execute the active program of every active data source.
    """
    logger.info("Scheduler: production_scrapers starting")
    summaries = get_production_run_service().run_all()
    failed = sum(1 for summary in summaries if summary.status == "failed")
    skipped = sum(1 for summary in summaries if summary.status == "skipped")
    logger.info(
        "Scheduler: production_scrapers complete sources=%d failed=%d skipped=%d",
        len(summaries),
        failed,
        skipped,
    )


# ---------------------------------------------------------------------------
# Job: alert dedup maintenance
# ---------------------------------------------------------------------------


def sweep_alert_dedup() -> None:
    removed = get_notification_gateway().sweep()
    if removed:
        logger.info("Scheduler: alert_dedup_sweep removed=%d", removed)


# ---------------------------------------------------------------------------
# Job: daily health digest
# ---------------------------------------------------------------------------


def send_health_digest() -> None:
    logger.info("Scheduler: health_digest starting")
    report = HealthDigestService().send_digest()
    logger.info("Scheduler: health_digest complete %s", report.to_dict())


# ---------------------------------------------------------------------------
# Scheduler factory
# ---------------------------------------------------------------------------


def build_scheduler(settings: SchedulerSettings | None = None) -> BackgroundScheduler:
    """
    Build and register all periodic jobs.

    Returns a configured but *not yet started* ``BackgroundScheduler``.
    The caller must call ``.start()`` and ``.shutdown(wait=True)`` at the
    appropriate lifecycle points.
    """
    resolved = settings or get_scheduler_settings()
    notification_settings = get_notification_settings()
    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler.add_job(
        process_agent_queue,
        trigger="interval",
        seconds=resolved.queue_poll_seconds,
        id="agent_queue",
        name="Agent session queue worker",
        replace_existing=True,
        max_instances=resolved.worker_concurrency,
        coalesce=True,
    )
    scheduler.add_job(
        run_production_scrapers,
        trigger="cron",
        hour=resolved.production_run_hour,
        minute=0,
        id="production_scrapers",
        name="Daily production scraper runs",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.add_job(
        sweep_alert_dedup,
        trigger="interval",
        seconds=notification_settings.sweep_interval_seconds,
        id="alert_dedup_sweep",
        name="Alert dedup sweep",
        replace_existing=True,
    )
    scheduler.add_job(
        send_health_digest,
        trigger="cron",
        hour=resolved.health_digest_hour,
        minute=0,
        id="health_digest",
        name="Daily scraper health digest",
        replace_existing=True,
        misfire_grace_time=3600,
    )

    return scheduler
