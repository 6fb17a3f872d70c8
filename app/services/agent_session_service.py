"""
Session lifecycle service: start, observe, cancel, approve and improve
synthesis sessions, and drain the durable session queue.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Any, Protocol
from urllib.parse import urlparse

from fastapi import BackgroundTasks
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.config import AgentSettings, get_agent_settings
from app.scraping.logging_utils import log_event
from app.scraping.records import EVENT_SCRAPER, guess_timezone
from app.services.agent_orchestrator import AgentOrchestrator, ThinkingStep
from db.base import utcnow
from db.models.agent_session import (
    AgentAttempt,
    AgentSession,
    AgentSessionKind,
    AgentSessionMode,
    AgentSessionStatus,
)
from db.models.scraper_version import ScraperVersion, ScraperVersionProvenance
from db.repositories import (
    AgentSessionRepository,
    AgentSessionStateError,
    DataSourceRepository,
    ScraperVersionRepository,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"


class SessionTaskExecutor(Protocol):
    def submit(self, task: Callable[..., None], *args: Any, **kwargs: Any) -> None:
        ...


class FastAPIBackgroundTaskExecutor:
    def __init__(self, background_tasks: BackgroundTasks) -> None:
        self._background_tasks = background_tasks

    def submit(self, task: Callable[..., None], *args: Any, **kwargs: Any) -> None:
        self._background_tasks.add_task(task, *args, **kwargs)


@dataclass(frozen=True)
class SessionStart:
    session: AgentSession
    created: bool


class AgentSessionService:
    """
    Coordinates session creation, queue claiming, and status transitions.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session] | None = None,
        orchestrator: AgentOrchestrator | None = None,
        settings: AgentSettings | None = None,
    ) -> None:
        if session_factory is None:
            from db.session import SessionLocal

            self._session_factory = SessionLocal
        else:
            self._session_factory = session_factory

        self._settings = settings or get_agent_settings()
        self._orchestrator = orchestrator
        self._orchestrator_session_factory = session_factory

    @property
    def orchestrator(self) -> AgentOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = AgentOrchestrator(
                session_factory=self._orchestrator_session_factory,
                settings=self._settings,
            )
        return self._orchestrator

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start_session(
        self,
        *,
        db: Session,
        executor: SessionTaskExecutor | None,
        url: str | None = None,
        kind: str = AgentSessionKind.EVENT_SCRAPER,
        model: str | None = None,
        max_iterations: int | None = None,
        data_source_id: uuid.UUID | None = None,
        user_feedback: str | None = None,
        baseline_code: str | None = None,
        mode: str = AgentSessionMode.CREATE,
        timezone: str | None = None,
    ) -> SessionStart:
        """
        Queue a session, or return the in-flight one for the same target.

        With an ``executor`` the new session is also dispatched right away;
        the queue worker picks it up otherwise. Both paths go through the
        same atomic claim, so a session never runs twice.
        """

        if kind not in AgentSessionKind.ALL:
            raise ValueError(f"Unknown session kind: {kind!r}")

        try:
            with db.begin():
                start = self._create_or_attach(
                    db=db,
                    url=url,
                    kind=kind,
                    model=model,
                    max_iterations=max_iterations,
                    data_source_id=data_source_id,
                    user_feedback=user_feedback,
                    baseline_code=baseline_code,
                    mode=mode,
                    timezone=timezone,
                )
        except IntegrityError:
            # Lost the race for the one in-flight slot of this source.
            with db.begin():
                existing = AgentSessionRepository(db).find_in_flight(
                    data_source_id=data_source_id,
                    url=url or "",
                    kind=kind,
                )
            if existing is None:
                raise
            return SessionStart(session=existing, created=False)

        if not start.created:
            log_event(logger, logging.INFO, "agent_session_attached", session_id=start.session.id)
            return start

        log_event(
            logger,
            logging.INFO,
            "agent_session_queued",
            session_id=start.session.id,
            url=start.session.url,
            kind=kind,
            mode=mode,
            max_iterations=start.session.max_iterations,
        )
        if executor is not None:
            executor.submit(self.dispatch, start.session.id)
        return start

    def _create_or_attach(
        self,
        *,
        db: Session,
        url: str | None,
        kind: str,
        model: str | None,
        max_iterations: int | None,
        data_source_id: uuid.UUID | None,
        user_feedback: str | None,
        baseline_code: str | None,
        mode: str,
        timezone: str | None,
    ) -> SessionStart:
        repository = AgentSessionRepository(db)
        if data_source_id is not None:
            source = DataSourceRepository(db).require_source(data_source_id)
            url = url or source.url
            timezone = timezone or source.timezone
            kind = (source.config or {}).get("kind", kind)
        if not url:
            raise ValueError("A target URL is required")

        existing = repository.find_in_flight(data_source_id=data_source_id, url=url, kind=kind)
        if existing is not None:
            return SessionStart(session=existing, created=False)

        budget = max_iterations if max_iterations is not None else self._settings.max_iterations
        agent_session = repository.create_session(
            url=url,
            kind=kind,
            max_iterations=max(1, budget),
            timezone=timezone or self._settings.default_timezone,
            model=model,
            mode=mode,
            data_source_id=data_source_id,
            user_feedback=user_feedback,
            baseline_code=baseline_code,
        )
        return SessionStart(session=agent_session, created=True)

    def dispatch(self, session_id: uuid.UUID) -> bool:
        """
        Claim ``session_id`` and run it. Returns False when another worker won.
        """

        with self._session_factory() as db:
            with db.begin():
                generation = AgentSessionRepository(db).claim(session_id)
        if generation is None:
            logger.info("Agent session already claimed id=%s", session_id)
            return False
        self.orchestrator.run_session(session_id, claim_generation=generation)
        return True

    # ------------------------------------------------------------------
    # Observe
    # ------------------------------------------------------------------

    def get_session(self, *, db: Session, session_id: uuid.UUID) -> AgentSession:
        return AgentSessionRepository(db).require_session(session_id)

    def list_sessions(
        self,
        *,
        db: Session,
        limit: int = 50,
        status: str | None = None,
        data_source_id: uuid.UUID | None = None,
    ) -> list[AgentSession]:
        return AgentSessionRepository(db).list_sessions(
            limit=limit,
            status=status,
            data_source_id=data_source_id,
        )

    def list_attempts(self, *, db: Session, session_id: uuid.UUID) -> list[AgentAttempt]:
        repository = AgentSessionRepository(db)
        repository.require_session(session_id)
        return repository.list_attempts(session_id)

    def stream_events(
        self,
        session_id: uuid.UUID,
        *,
        after: int = 0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        """
        Yield ``(event, payload)`` pairs for an observer of ``session_id``.

        Thinking steps are delivered once each, starting at index ``after``.
        A ``data_update`` follows whenever the progress snapshot changes, and
        the feed ends with one ``complete`` event.
        """

        delivered = max(0, after)
        deadline = time.monotonic() + self._settings.stream_max_seconds
        last_snapshot: dict[str, Any] | None = None
        while True:
            with self._session_factory() as db:
                agent_session = AgentSessionRepository(db).require_session(session_id)
                steps = list(agent_session.thinking_steps or [])
                snapshot = {
                    "status": agent_session.status,
                    "current_iteration": agent_session.current_iteration,
                    "max_iterations": agent_session.max_iterations,
                    "best_score": agent_session.best_score,
                    "extracted_data": agent_session.extracted_data,
                }
                error_message = agent_session.error_message

            for index in range(delivered, len(steps)):
                yield "thinking", {"index": index, **steps[index]}
            delivered = max(delivered, len(steps))

            if snapshot != last_snapshot:
                yield "data_update", snapshot
                last_snapshot = snapshot

            if snapshot["status"] in AgentSessionStatus.TERMINAL:
                yield "complete", {
                    "status": snapshot["status"],
                    "best_score": snapshot["best_score"],
                    "error_message": error_message,
                }
                return
            if time.monotonic() >= deadline:
                yield "complete", {"status": snapshot["status"], "timed_out": True}
                return
            sleep(self._settings.stream_poll_seconds)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def cancel(self, *, db: Session, session_id: uuid.UUID) -> AgentSession:
        """Fail an in-flight session; terminal sessions are returned unchanged."""
        with db.begin():
            repository = AgentSessionRepository(db)
            agent_session = repository.require_session(session_id)
            if agent_session.status in AgentSessionStatus.IN_FLIGHT:
                repository.mark_failed(agent_session, error_message=CANCELLED_MESSAGE)
                repository.append_thinking(
                    agent_session,
                    step_type=ThinkingStep.FAILURE,
                    message="Session cancelled by user.",
                )
                log_event(logger, logging.INFO, "agent_session_cancel_requested", session_id=session_id)
        return agent_session

    def approve(
        self,
        *,
        db: Session,
        session_id: uuid.UUID,
        name: str | None = None,
        approved_by: str | None = None,
    ) -> tuple[AgentSession, ScraperVersion]:
        """
        Promote the session's best program to the active version of its source.

        Creates the data source when the session has none. Runs in one
        transaction: on any error nothing is written.
        """

        with db.begin():
            repository = AgentSessionRepository(db)
            sources = DataSourceRepository(db)
            versions = ScraperVersionRepository(db)

            agent_session = repository.require_session(session_id)
            if agent_session.status != AgentSessionStatus.SUCCESS:
                raise AgentSessionStateError(
                    f"Only successful sessions can be approved (session {session_id} is {agent_session.status})"
                )
            if not agent_session.best_code:
                raise AgentSessionStateError(f"Session {session_id} has no candidate code to approve")

            if agent_session.data_source_id is None:
                venue = (agent_session.extracted_data or {}).get("venue") or {}
                source = sources.create_source(
                    name=name or venue.get("name") or urlparse(agent_session.url).netloc or agent_session.url,
                    url=agent_session.url,
                    timezone=guess_timezone(venue.get("state"), agent_session.timezone),
                    config={"kind": agent_session.kind},
                )
                agent_session.data_source_id = source.id
            else:
                source = sources.require_source(agent_session.data_source_id)

            if agent_session.result_version_id is not None:
                version = versions.activate(
                    data_source_id=source.id,
                    version_id=agent_session.result_version_id,
                )
            else:
                description = (
                    "Initial AI-generated scraper"
                    if not versions.list_versions(source.id)
                    else f"AI-generated update from session {str(agent_session.id)[:8]}"
                )
                version = versions.create_version(
                    data_source_id=source.id,
                    code=agent_session.best_code,
                    description=description,
                    provenance=ScraperVersionProvenance.AI_GENERATED,
                    set_active=True,
                    created_by=approved_by or "agent",
                    agent_session_id=agent_session.id,
                )

            source.config = {**(source.config or {}), "session_id": str(agent_session.id)}
            repository.mark_approved(agent_session, version_id=version.id)

        log_event(
            logger,
            logging.INFO,
            "agent_session_approved",
            session_id=session_id,
            data_source_id=version.data_source_id,
            version_number=version.version_number,
        )
        return agent_session, version

    def improve(
        self,
        *,
        db: Session,
        executor: SessionTaskExecutor | None,
        data_source_id: uuid.UUID,
        feedback: str,
        prior_code: str | None = None,
        test_result: dict[str, Any] | None = None,
        mode: str = AgentSessionMode.IMPROVE,
        model: str | None = None,
    ) -> SessionStart:
        """
        Start a short session seeded with the source's current program.
        """

        if prior_code is None:
            with db.begin():
                source = DataSourceRepository(db).require_source(data_source_id)
                active = ScraperVersionRepository(db).get_active_version(data_source_id)
                prior_code = active.code if active is not None else (source.config or {}).get("generated_code")

        return self.start_session(
            db=db,
            executor=executor,
            kind=EVENT_SCRAPER,
            model=model,
            max_iterations=self._settings.improve_max_iterations,
            data_source_id=data_source_id,
            user_feedback=compose_feedback(feedback, test_result),
            baseline_code=prior_code,
            mode=mode,
        )

    # ------------------------------------------------------------------
    # Durable queue
    # ------------------------------------------------------------------

    def recover_stale_sessions(self) -> int:
        """
        Requeue in-progress sessions whose worker stopped heartbeating.
        """

        cutoff = utcnow() - timedelta(seconds=self._settings.stale_session_seconds)
        recovered = 0
        with self._session_factory() as db:
            with db.begin():
                repository = AgentSessionRepository(db)
                for agent_session in repository.stale_in_progress(heartbeat_before=cutoff):
                    if agent_session.claim_count >= self._settings.max_session_claims:
                        message = (
                            f"Worker lost this session {agent_session.claim_count} time(s); giving up"
                        )
                        repository.mark_failed(agent_session, error_message=message)
                        repository.append_thinking(agent_session, step_type=ThinkingStep.FAILURE, message=message)
                    else:
                        repository.requeue(agent_session)
                        repository.append_thinking(
                            agent_session,
                            step_type=ThinkingStep.PLANNING,
                            message=(
                                f"Resuming after iteration {agent_session.current_iteration} "
                                "because the previous worker stopped responding."
                            ),
                        )
                    recovered += 1
        if recovered:
            log_event(logger, logging.WARNING, "agent_sessions_recovered", count=recovered)
        return recovered

    def process_next(self) -> uuid.UUID | None:
        """
        Claim the oldest pending session and run it to completion.
        """

        claimed: uuid.UUID | None = None
        generation: int | None = None
        with self._session_factory() as db:
            with db.begin():
                repository = AgentSessionRepository(db)
                for session_id in repository.next_pending_ids(limit=5):
                    generation = repository.claim(session_id)
                    if generation is not None:
                        claimed = session_id
                        break
        if claimed is None:
            return None
        self.orchestrator.run_session(claimed, claim_generation=generation)
        return claimed


def compose_feedback(feedback: str | None, test_result: dict[str, Any] | None) -> str | None:
    """Merge operator feedback with a summary of the latest test run."""
    parts = [feedback.strip()] if feedback and feedback.strip() else []
    if test_result:
        summary = [
            f"success={test_result.get('success')}",
            f"records={test_result.get('record_count', 0)}",
        ]
        if test_result.get("completeness") is not None:
            summary.append(f"completeness={test_result['completeness']}")
        parts.append("Latest test run: " + ", ".join(summary))
        errors = test_result.get("errors") or []
        if errors:
            parts.append("Test errors:\n" + "\n".join(f"- {error}" for error in errors[:5]))
    return "\n\n".join(parts) or None


@lru_cache(maxsize=1)
def get_agent_session_service() -> AgentSessionService:
    return AgentSessionService()
