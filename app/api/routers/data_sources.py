"""
app/api/routers/data_sources.py

Data source, scraper version, dry-run, and production run endpoints.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.errors import SERVICE_ERRORS, to_http_exception
from app.schemas.agent_session import AgentSessionAcceptedResponse
from app.schemas.data_source import (
    DataSourceCreateRequest,
    DataSourceListResponse,
    DataSourceResponse,
    ImproveScraperRequest,
    ProductionRunAcceptedResponse,
)
from app.schemas.scraper_version import (
    ScraperTestRequest,
    ScraperTestResponse,
    ScraperVersionCreateRequest,
    ScraperVersionListResponse,
    ScraperVersionResponse,
)
from app.services.agent_session_service import (
    AgentSessionService,
    FastAPIBackgroundTaskExecutor,
    get_agent_session_service,
)
from app.services.production_run_service import ProductionRunService, get_production_run_service
from app.services.scraper_version_service import ScraperVersionService, get_scraper_version_service
from db.models.data_source import DataSource
from db.models.scraper_version import ScraperVersion
from db.repositories import DataSourceRepository
from db.session import get_db

router = APIRouter(prefix="/data-sources", tags=["data-sources"])


@router.get("", response_model=DataSourceListResponse)
def list_sources(
    active_only: bool = Query(default=False, description="Only return active sources"),
    limit: int = Query(default=100, ge=1, le=500, description="Max sources returned"),
    db: Session = Depends(get_db),
) -> DataSourceListResponse:
    sources = DataSourceRepository(db).list_sources(limit=limit, active_only=active_only)
    return DataSourceListResponse(sources=[_to_source_response(source) for source in sources])


@router.post("", response_model=DataSourceResponse, status_code=status.HTTP_201_CREATED)
def create_source(
    body: DataSourceCreateRequest,
    db: Session = Depends(get_db),
) -> DataSourceResponse:
    with db.begin():
        source = DataSourceRepository(db).create_source(
            name=body.name,
            url=str(body.url),
            timezone=body.timezone,
            is_active=body.is_active,
        )
    return _to_source_response(source)


@router.get("/{data_source_id}", response_model=DataSourceResponse)
def get_source(
    data_source_id: UUID,
    db: Session = Depends(get_db),
) -> DataSourceResponse:
    source = DataSourceRepository(db).get_source(data_source_id)
    if source is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Data source not found: {data_source_id}",
        )
    return _to_source_response(source)


@router.post(
    "/{data_source_id}/improve",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=AgentSessionAcceptedResponse,
)
def improve_source(
    data_source_id: UUID,
    body: ImproveScraperRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    service: AgentSessionService = Depends(get_agent_session_service),
) -> AgentSessionAcceptedResponse:
    try:
        start = service.improve(
            db=db,
            executor=FastAPIBackgroundTaskExecutor(background_tasks),
            data_source_id=data_source_id,
            feedback=body.feedback,
            prior_code=body.prior_code,
            test_result=body.test_result,
            model=body.model,
        )
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc

    return AgentSessionAcceptedResponse(
        session_id=start.session.id,
        status=start.session.status,
        created=start.created,
        queued_at=start.session.queued_at,
    )


@router.post(
    "/{data_source_id}/run",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ProductionRunAcceptedResponse,
)
def run_source(
    data_source_id: UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    run_service: ProductionRunService = Depends(get_production_run_service),
) -> ProductionRunAcceptedResponse:
    if DataSourceRepository(db).get_source(data_source_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Data source not found: {data_source_id}",
        )
    background_tasks.add_task(run_service.run_source, data_source_id)
    return ProductionRunAcceptedResponse(data_source_id=data_source_id, status="queued")


@router.get("/{data_source_id}/versions", response_model=ScraperVersionListResponse)
def list_versions(
    data_source_id: UUID,
    include_code: bool = Query(default=False, description="Include program text"),
    db: Session = Depends(get_db),
    service: ScraperVersionService = Depends(get_scraper_version_service),
) -> ScraperVersionListResponse:
    try:
        versions = service.list_versions(db=db, data_source_id=data_source_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return ScraperVersionListResponse(
        versions=[_to_version_response(version, include_code=include_code) for version in versions]
    )


@router.post(
    "/{data_source_id}/versions",
    status_code=status.HTTP_201_CREATED,
    response_model=ScraperVersionResponse,
)
def create_version(
    data_source_id: UUID,
    body: ScraperVersionCreateRequest,
    db: Session = Depends(get_db),
    service: ScraperVersionService = Depends(get_scraper_version_service),
) -> ScraperVersionResponse:
    try:
        version = service.create_version(
            db=db,
            data_source_id=data_source_id,
            code=body.code,
            description=body.description,
            set_active=body.set_active,
            created_by=body.created_by,
        )
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return _to_version_response(version, include_code=True)


@router.post(
    "/{data_source_id}/versions/{version_id}/activate",
    response_model=ScraperVersionResponse,
)
def activate_version(
    data_source_id: UUID,
    version_id: UUID,
    db: Session = Depends(get_db),
    service: ScraperVersionService = Depends(get_scraper_version_service),
) -> ScraperVersionResponse:
    try:
        version = service.activate(db=db, data_source_id=data_source_id, version_id=version_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return _to_version_response(version)


@router.post("/{data_source_id}/test", response_model=ScraperTestResponse)
def dry_run_scraper(
    data_source_id: UUID,
    body: ScraperTestRequest | None = None,
    db: Session = Depends(get_db),
    service: ScraperVersionService = Depends(get_scraper_version_service),
) -> ScraperTestResponse:
    request = body or ScraperTestRequest()
    try:
        outcome = service.test(
            db=db,
            data_source_id=data_source_id,
            code=request.code,
            version_id=request.version_id,
        )
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc

    return ScraperTestResponse(
        data_source_id=outcome.data_source_id,
        version_id=outcome.version_id,
        samples=outcome.samples,
        **outcome.summary,
    )


def _to_source_response(source: DataSource) -> DataSourceResponse:
    config = source.config or {}
    return DataSourceResponse(
        data_source_id=source.id,
        name=source.name,
        url=source.url,
        timezone=source.timezone,
        is_active=source.is_active,
        consecutive_failures=source.consecutive_failures,
        last_run_at=source.last_run_at,
        last_run_status=source.last_run_status,
        last_success_at=source.last_success_at,
        last_event_count=source.last_event_count,
        active_version_id=config.get("active_version_id"),
        active_version_number=config.get("active_version_number"),
        created_at=source.created_at,
    )


def _to_version_response(version: ScraperVersion, *, include_code: bool = False) -> ScraperVersionResponse:
    return ScraperVersionResponse(
        version_id=version.id,
        data_source_id=version.data_source_id,
        version_number=version.version_number,
        code_hash=version.code_hash,
        description=version.description,
        provenance=version.provenance,
        is_active=version.is_active,
        created_by=version.created_by,
        created_at=version.created_at,
        last_tested_at=version.last_tested_at,
        test_results=version.test_results,
        code=version.code if include_code else None,
    )
