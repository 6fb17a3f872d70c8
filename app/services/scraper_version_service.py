"""
app/services/scraper_version_service.py

Version store operations exposed to the API: create (validated), list,
activate, and dry-run test.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from sqlalchemy.orm import Session

from app.config import AgentSettings, get_agent_settings
from app.scraping.logging_utils import log_event
from app.scraping.records import EVENT_SCRAPER, field_set_for
from app.scraping.sandbox import SandboxedExecutor
from app.scraping.scoring import score_records
from app.validators.code_validator import CodeValidator
from db.base import utcnow
from db.models.scraper_version import ScraperVersion, ScraperVersionProvenance
from db.repositories import (
    DataSourceRepository,
    ForeignVersionError,
    ScraperVersionError,
    ScraperVersionRepository,
    VersionNotFoundError,
)

logger = logging.getLogger(__name__)

MAX_TEST_SAMPLES = 50


@dataclass(frozen=True)
class VersionTestOutcome:
    """
    Dry-run result; ``summary`` is what gets cached on the version.
    """

    data_source_id: uuid.UUID
    version_id: uuid.UUID | None
    summary: dict[str, Any]
    samples: list[dict[str, Any]]


class ScraperVersionService:
    def __init__(
        self,
        *,
        executor: SandboxedExecutor | None = None,
        validator: CodeValidator | None = None,
        settings: AgentSettings | None = None,
    ) -> None:
        self._settings = settings or get_agent_settings()
        self._executor = executor
        self._validator = validator or CodeValidator()

    @property
    def executor(self) -> SandboxedExecutor:
        if self._executor is None:
            self._executor = SandboxedExecutor(default_timeout_ms=self._settings.test_timeout_ms)
        return self._executor

    def create_version(
        self,
        *,
        db: Session,
        data_source_id: uuid.UUID,
        code: str,
        description: str | None = None,
        set_active: bool = False,
        created_by: str | None = None,
        provenance: str = ScraperVersionProvenance.MANUAL,
    ) -> ScraperVersion:
        """
        Store a hand-edited program. Raises CodeValidationError before any write.
        """

        with db.begin():
            source = DataSourceRepository(db).require_source(data_source_id)
            kind = (source.config or {}).get("kind", EVENT_SCRAPER)
            self._validator.require_valid(code, kind)
            version = ScraperVersionRepository(db).create_version(
                data_source_id=data_source_id,
                code=code,
                description=description,
                provenance=provenance,
                set_active=set_active,
                created_by=created_by,
            )
        log_event(
            logger,
            logging.INFO,
            "scraper_version_created",
            data_source_id=data_source_id,
            version_number=version.version_number,
            active=version.is_active,
        )
        return version

    def list_versions(self, *, db: Session, data_source_id: uuid.UUID) -> list[ScraperVersion]:
        DataSourceRepository(db).require_source(data_source_id)
        return ScraperVersionRepository(db).list_versions(data_source_id)

    def activate(self, *, db: Session, data_source_id: uuid.UUID, version_id: uuid.UUID) -> ScraperVersion:
        with db.begin():
            DataSourceRepository(db).require_source(data_source_id)
            version = ScraperVersionRepository(db).activate(
                data_source_id=data_source_id,
                version_id=version_id,
            )
        log_event(
            logger,
            logging.INFO,
            "scraper_version_activated",
            data_source_id=data_source_id,
            version_number=version.version_number,
        )
        return version

    def test(
        self,
        *,
        db: Session,
        data_source_id: uuid.UUID,
        code: str | None = None,
        version_id: uuid.UUID | None = None,
    ) -> VersionTestOutcome:
        """
        Run code against the source URL without touching activation.

        Code is taken from ``code``, else ``version_id``, else the active
        version. Outcomes of stored versions are cached on the version.
        """

        with db.begin():
            source = DataSourceRepository(db).require_source(data_source_id)
            versions = ScraperVersionRepository(db)
            kind = (source.config or {}).get("kind", EVENT_SCRAPER)
            url = source.url
            timezone = source.timezone
            tested_version_id: uuid.UUID | None = None

            if code is None and version_id is not None:
                version = versions.get_version(version_id)
                if version is None:
                    raise VersionNotFoundError(version_id)
                if version.data_source_id != data_source_id:
                    raise ForeignVersionError(version_id=version_id, data_source_id=data_source_id)
                code = version.code
                tested_version_id = version.id
            elif code is None:
                active = versions.get_active_version(data_source_id)
                if active is not None:
                    code = active.code
                    tested_version_id = active.id
                else:
                    code = (source.config or {}).get("generated_code")
            if not code:
                raise ScraperVersionError(f"Data source {data_source_id} has no code to test")

        result = self.executor.execute(
            code,
            url,
            timezone,
            self._settings.test_timeout_ms,
            kind=kind,
        )
        report = score_records(result.records, field_set_for(kind))
        summary = {
            "success": result.success,
            "failure_type": result.failure_type,
            "record_count": result.record_count,
            "completeness": report.completeness,
            "coverage": dict(report.coverage),
            "errors": list(result.errors[:20]),
            "warnings": list(result.warnings),
            "duration_ms": result.duration_ms,
        }

        if tested_version_id is not None:
            with db.begin():
                ScraperVersionRepository(db).record_test_result(
                    version_id=tested_version_id,
                    tested_at=utcnow(),
                    test_results=summary,
                )

        log_event(
            logger,
            logging.INFO,
            "scraper_version_tested",
            data_source_id=data_source_id,
            version_id=tested_version_id,
            success=result.success,
            record_count=result.record_count,
            completeness=report.completeness,
        )
        return VersionTestOutcome(
            data_source_id=data_source_id,
            version_id=tested_version_id,
            summary=summary,
            samples=result.records[:MAX_TEST_SAMPLES],
        )


@lru_cache(maxsize=1)
def get_scraper_version_service() -> ScraperVersionService:
    return ScraperVersionService()
