"""
Repository for agent session lifecycle, queue claiming, and attempt history.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Select, select, update
from sqlalchemy.orm import Session

from db.base import utcnow
from db.models.agent_session import (
    AgentAttempt,
    AgentSession,
    AgentSessionMode,
    AgentSessionStatus,
)
from db.repositories.errors import AgentSessionNotFoundError


class AgentSessionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_session(
        self,
        *,
        url: str,
        kind: str,
        max_iterations: int,
        timezone: str,
        model: str | None = None,
        mode: str = AgentSessionMode.CREATE,
        data_source_id: uuid.UUID | None = None,
        user_feedback: str | None = None,
        baseline_code: str | None = None,
    ) -> AgentSession:
        agent_session = AgentSession(
            url=url,
            kind=kind,
            mode=mode,
            status=AgentSessionStatus.PENDING,
            model=model,
            timezone=timezone,
            current_iteration=0,
            max_iterations=max_iterations,
            data_source_id=data_source_id,
            user_feedback=user_feedback,
            baseline_code=baseline_code,
            thinking_steps=[],
            claim_count=0,
            queued_at=utcnow(),
        )
        self._session.add(agent_session)
        self._session.flush()
        self._session.refresh(agent_session)
        return agent_session

    def get_session(self, session_id: uuid.UUID) -> AgentSession | None:
        return self._session.get(AgentSession, session_id)

    def require_session(self, session_id: uuid.UUID) -> AgentSession:
        agent_session = self.get_session(session_id)
        if agent_session is None:
            raise AgentSessionNotFoundError(session_id)
        return agent_session

    def list_sessions(
        self,
        *,
        limit: int = 50,
        status: str | None = None,
        data_source_id: uuid.UUID | None = None,
    ) -> list[AgentSession]:
        stmt: Select[tuple[AgentSession]] = select(AgentSession)
        if status:
            stmt = stmt.where(AgentSession.status == status)
        if data_source_id is not None:
            stmt = stmt.where(AgentSession.data_source_id == data_source_id)
        stmt = stmt.order_by(AgentSession.queued_at.desc()).limit(max(1, limit))
        return list(self._session.scalars(stmt).all())

    def find_in_flight(
        self,
        *,
        data_source_id: uuid.UUID | None,
        url: str,
        kind: str,
    ) -> AgentSession | None:
        """
        Return the pending or running session for the same source, or for
        the same url and kind when no source is attached.
        """
        stmt = select(AgentSession).where(AgentSession.status.in_(AgentSessionStatus.IN_FLIGHT))
        if data_source_id is not None:
            stmt = stmt.where(AgentSession.data_source_id == data_source_id)
        else:
            stmt = stmt.where(
                AgentSession.data_source_id.is_(None),
                AgentSession.url == url,
                AgentSession.kind == kind,
            )
        stmt = stmt.order_by(AgentSession.queued_at.asc())
        return self._session.scalars(stmt).first()

    def best_session_code(self, *, url: str, kind: str) -> AgentSession | None:
        """Highest scoring finished session for the same target, if any."""
        stmt = (
            select(AgentSession)
            .where(
                AgentSession.url == url,
                AgentSession.kind == kind,
                AgentSession.best_code.is_not(None),
                AgentSession.status.in_(AgentSessionStatus.TERMINAL),
            )
            .order_by(AgentSession.best_score.desc())
        )
        return self._session.scalars(stmt).first()

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def claim(self, session_id: uuid.UUID) -> int | None:
        """
        Atomically move one session from pending to in-progress.

        Returns the new claim generation for the single caller whose update
        matched, None for everyone else. A worker owns the session only while
        the stored ``claim_count`` still equals its generation.
        """
        now = utcnow()
        result = self._session.execute(
            update(AgentSession)
            .where(
                AgentSession.id == session_id,
                AgentSession.status == AgentSessionStatus.PENDING,
            )
            .values(
                status=AgentSessionStatus.IN_PROGRESS,
                claim_count=AgentSession.claim_count + 1,
                heartbeat_at=now,
                started_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return self._session.scalar(select(AgentSession.claim_count).where(AgentSession.id == session_id))

    def next_pending_ids(self, *, limit: int = 1) -> list[uuid.UUID]:
        stmt = (
            select(AgentSession.id)
            .where(AgentSession.status == AgentSessionStatus.PENDING)
            .order_by(AgentSession.queued_at.asc())
            .limit(max(1, limit))
        )
        return list(self._session.scalars(stmt).all())

    def stale_in_progress(self, *, heartbeat_before: datetime) -> list[AgentSession]:
        stmt = select(AgentSession).where(
            AgentSession.status == AgentSessionStatus.IN_PROGRESS,
            AgentSession.heartbeat_at < heartbeat_before,
        )
        return list(self._session.scalars(stmt).all())

    def requeue(self, agent_session: AgentSession) -> AgentSession:
        agent_session.status = AgentSessionStatus.PENDING
        agent_session.heartbeat_at = None
        agent_session.queued_at = utcnow()
        return agent_session

    # ------------------------------------------------------------------
    # Progress and terminal states
    # ------------------------------------------------------------------

    def append_thinking(
        self,
        agent_session: AgentSession,
        *,
        step_type: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        step: dict[str, Any] = {
            "type": step_type,
            "message": message,
            "timestamp": utcnow().isoformat(),
        }
        if data:
            step["data"] = data
        # Reassign so the JSON column is flagged dirty.
        agent_session.thinking_steps = [*(agent_session.thinking_steps or []), step]
        agent_session.heartbeat_at = utcnow()
        return step

    def mark_success(self, agent_session: AgentSession) -> AgentSession:
        agent_session.status = AgentSessionStatus.SUCCESS
        agent_session.error_message = None
        agent_session.completed_at = utcnow()
        return agent_session

    def mark_failed(self, agent_session: AgentSession, *, error_message: str) -> AgentSession:
        agent_session.status = AgentSessionStatus.FAILED
        agent_session.error_message = error_message
        agent_session.completed_at = utcnow()
        return agent_session

    def mark_approved(self, agent_session: AgentSession, *, version_id: uuid.UUID) -> AgentSession:
        agent_session.status = AgentSessionStatus.APPROVED
        agent_session.result_version_id = version_id
        return agent_session

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def add_attempt(
        self,
        *,
        session_id: uuid.UUID,
        attempt_number: int,
        status: str,
        started_at: datetime,
        failure_type: str | None = None,
        code: str | None = None,
        code_hash: str | None = None,
        record_count: int = 0,
        completeness: float = 0.0,
        fields_found: list[str] | None = None,
        fields_missing: list[str] | None = None,
        errors: list[str] | None = None,
        feedback: str | None = None,
        duration_ms: int = 0,
    ) -> AgentAttempt:
        attempt = AgentAttempt(
            session_id=session_id,
            attempt_number=attempt_number,
            status=status,
            failure_type=failure_type,
            code=code,
            code_hash=code_hash,
            record_count=record_count,
            completeness=completeness,
            fields_found=list(fields_found or []),
            fields_missing=list(fields_missing or []),
            errors=list(errors or []),
            feedback=feedback,
            duration_ms=duration_ms,
            started_at=started_at,
            completed_at=utcnow(),
        )
        self._session.add(attempt)
        self._session.flush()
        return attempt

    def list_attempts(self, session_id: uuid.UUID) -> list[AgentAttempt]:
        stmt = (
            select(AgentAttempt)
            .where(AgentAttempt.session_id == session_id)
            .order_by(AgentAttempt.attempt_number.asc())
        )
        return list(self._session.scalars(stmt).all())
