"""
Scraper synthesis session endpoints.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.api.errors import SERVICE_ERRORS, to_http_exception
from app.schemas.agent_session import (
    AgentAttemptResponse,
    AgentSessionAcceptedResponse,
    AgentSessionApproveRequest,
    AgentSessionApproveResponse,
    AgentSessionListResponse,
    AgentSessionStartRequest,
    AgentSessionStatusResponse,
    ThinkingStepResponse,
)
from app.services.agent_session_service import (
    AgentSessionService,
    FastAPIBackgroundTaskExecutor,
    get_agent_session_service,
)
from db.models.agent_session import AgentAttempt, AgentSession
from db.session import get_db

router = APIRouter(prefix="/agent/sessions", tags=["agent-sessions"])


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=AgentSessionAcceptedResponse,
)
def start_session(
    body: AgentSessionStartRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    service: AgentSessionService = Depends(get_agent_session_service),
) -> AgentSessionAcceptedResponse:
    try:
        start = service.start_session(
            db=db,
            executor=FastAPIBackgroundTaskExecutor(background_tasks),
            url=str(body.url) if body.url is not None else None,
            kind=body.kind,
            model=body.model,
            max_iterations=body.max_iterations,
            data_source_id=body.data_source_id,
            user_feedback=body.feedback,
            baseline_code=body.prior_code,
            timezone=body.timezone,
        )
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc

    return AgentSessionAcceptedResponse(
        session_id=start.session.id,
        status=start.session.status,
        created=start.created,
        queued_at=start.session.queued_at,
    )


@router.get("", response_model=AgentSessionListResponse)
def list_sessions(
    status_filter: str | None = Query(default=None, alias="status", description="Optional status filter"),
    data_source_id: UUID | None = Query(default=None, description="Optional data source filter"),
    limit: int = Query(default=50, ge=1, le=500, description="Max sessions returned"),
    db: Session = Depends(get_db),
    service: AgentSessionService = Depends(get_agent_session_service),
) -> AgentSessionListResponse:
    sessions = service.list_sessions(
        db=db,
        limit=limit,
        status=status_filter,
        data_source_id=data_source_id,
    )
    return AgentSessionListResponse(sessions=[_to_status_response(item) for item in sessions])


@router.get("/{session_id}", response_model=AgentSessionStatusResponse)
def get_session(
    session_id: UUID,
    include_attempts: bool = Query(default=False, description="Include per-iteration attempts"),
    db: Session = Depends(get_db),
    service: AgentSessionService = Depends(get_agent_session_service),
) -> AgentSessionStatusResponse:
    try:
        agent_session = service.get_session(db=db, session_id=session_id)
        attempts = service.list_attempts(db=db, session_id=session_id) if include_attempts else None
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return _to_status_response(agent_session, attempts)


@router.get("/{session_id}/stream")
def stream_session(
    session_id: UUID,
    after: int = Query(default=0, ge=0, description="Index of the first thinking step to deliver"),
    db: Session = Depends(get_db),
    service: AgentSessionService = Depends(get_agent_session_service),
) -> StreamingResponse:
    try:
        service.get_session(db=db, session_id=session_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc

    return StreamingResponse(
        _sse(service.stream_events(session_id, after=after)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/{session_id}/cancel", response_model=AgentSessionStatusResponse)
def cancel_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    service: AgentSessionService = Depends(get_agent_session_service),
) -> AgentSessionStatusResponse:
    try:
        agent_session = service.cancel(db=db, session_id=session_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return _to_status_response(agent_session)


@router.post("/{session_id}/approve", response_model=AgentSessionApproveResponse)
def approve_session(
    session_id: UUID,
    body: AgentSessionApproveRequest | None = None,
    db: Session = Depends(get_db),
    service: AgentSessionService = Depends(get_agent_session_service),
) -> AgentSessionApproveResponse:
    request = body or AgentSessionApproveRequest()
    try:
        agent_session, version = service.approve(
            db=db,
            session_id=session_id,
            name=request.name,
            approved_by=request.approved_by,
        )
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc

    return AgentSessionApproveResponse(
        session_id=agent_session.id,
        status=agent_session.status,
        data_source_id=version.data_source_id,
        version_id=version.id,
        version_number=version.version_number,
    )


def _sse(events: Iterator[tuple[str, dict]]) -> Iterator[str]:
    for event, payload in events:
        yield f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


def _to_status_response(
    agent_session: AgentSession,
    attempts: list[AgentAttempt] | None = None,
) -> AgentSessionStatusResponse:
    return AgentSessionStatusResponse(
        session_id=agent_session.id,
        url=agent_session.url,
        kind=agent_session.kind,
        mode=agent_session.mode,
        status=agent_session.status,
        model=agent_session.model,
        current_iteration=agent_session.current_iteration,
        max_iterations=agent_session.max_iterations,
        best_score=agent_session.best_score,
        extracted_data=agent_session.extracted_data,
        best_code=agent_session.best_code,
        thinking_steps=[ThinkingStepResponse(**step) for step in agent_session.thinking_steps or []],
        data_source_id=agent_session.data_source_id,
        result_version_id=agent_session.result_version_id,
        error_message=agent_session.error_message,
        queued_at=agent_session.queued_at,
        started_at=agent_session.started_at,
        completed_at=agent_session.completed_at,
        attempts=(
            [
                AgentAttemptResponse(
                    attempt_number=attempt.attempt_number,
                    status=attempt.status,
                    failure_type=attempt.failure_type,
                    record_count=attempt.record_count,
                    completeness=attempt.completeness,
                    fields_found=attempt.fields_found or [],
                    fields_missing=attempt.fields_missing or [],
                    errors=attempt.errors or [],
                    duration_ms=attempt.duration_ms,
                    started_at=attempt.started_at,
                    completed_at=attempt.completed_at,
                )
                for attempt in attempts
            ]
            if attempts is not None
            else None
        ),
    )
