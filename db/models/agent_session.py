"""
db/models/agent_session.py

Synthesis sessions and their per-iteration attempts.

The ``agent_sessions`` table doubles as the durable work queue: rows in
``pending`` are claimed by the scheduler worker, and ``heartbeat_at``
lets a restarted worker requeue sessions that were abandoned mid-flight.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONType, TimestampMixin, utcnow


class AgentSessionKind:
    EVENT_SCRAPER = "event-scraper"
    VENUE_INFO = "venue-info"

    ALL = frozenset({EVENT_SCRAPER, VENUE_INFO})


class AgentSessionStatus:
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SUCCESS = "success"
    FAILED = "failed"
    APPROVED = "approved"

    IN_FLIGHT = frozenset({PENDING, IN_PROGRESS})
    TERMINAL = frozenset({SUCCESS, FAILED, APPROVED})


class AgentSessionMode:
    CREATE = "create"
    IMPROVE = "improve"
    AUTO_REPAIR = "auto_repair"


class AgentAttemptStatus:
    SUCCESS = "success"
    ERROR = "error"
    INVALID = "invalid"
    LLM_ERROR = "llm_error"


class AgentSession(Base, TimestampMixin):
    __tablename__ = "agent_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=AgentSessionKind.EVENT_SCRAPER,
        comment="event-scraper, venue-info",
    )
    mode: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=AgentSessionMode.CREATE,
        comment="create, improve, auto_repair",
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=AgentSessionStatus.PENDING,
    )
    model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    timezone: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="America/New_York",
    )
    current_iteration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_iterations: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    user_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    baseline_code: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Prior code shown to the model as a starting point",
    )
    best_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    best_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    extracted_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    thinking_steps: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    data_source_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("data_sources.id", ondelete="SET NULL"),
        nullable=True,
    )
    result_version_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("scraper_versions.id", ondelete="SET NULL"),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    claim_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    queued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_agent_sessions_status", "status"),
        Index("ix_agent_sessions_status_queued_at", "status", "queued_at"),
        Index("ix_agent_sessions_data_source_id", "data_source_id"),
        Index(
            "uq_agent_sessions_inflight_source",
            "data_source_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'in-progress')"),
            sqlite_where=text("status IN ('pending', 'in-progress')"),
        ),
    )


class AgentAttempt(Base):
    """
    One iteration of a session. Written once, never updated.
    """

    __tablename__ = "agent_attempts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("agent_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="success, error, invalid, llm_error",
    )
    failure_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    code: Mapped[str | None] = mapped_column(Text, nullable=True)
    code_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completeness: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    fields_found: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    fields_missing: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    errors: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "session_id",
            "attempt_number",
            name="uq_agent_attempts_session_attempt",
        ),
        Index("ix_agent_attempts_session_id", "session_id"),
    )
