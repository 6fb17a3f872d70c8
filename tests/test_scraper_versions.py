"""
tests/test_scraper_versions.py

Version store behaviour on a real (SQLite) database.

Coverage
--------
- Version numbers are gapless and start at 1
- Re-storing identical code is rejected and writes nothing
- At most one active version; activation mirrors code into the config
- Activating a missing or foreign version fails without side effects
- Service-level validation before any write
- Dry-run tests cache their summary on the tested version
- Concurrent writers keep numbering gapless and exactly one version active
"""

from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select

from app.config import AgentSettings
from app.scraping.types import ExecutionResult
from app.services.scraper_version_service import ScraperVersionService
from app.validators.code_validator import CodeValidationError
from db.models.scraper_version import ScraperVersion, ScraperVersionProvenance
from db.repositories import (
    DataSourceRepository,
    DuplicateVersionError,
    ForeignVersionError,
    ScraperVersionRepository,
    VersionNotFoundError,
)

PROGRAM_A = "def scrape_events(page, timezone):\n    return page.json_ld('Event')\n"
PROGRAM_B = "def scrape_events(page, timezone):\n    return []\n"
PROGRAM_C = "def scrape_events(page, timezone):\n    return [{'title': 'x'}]\n"


class RecordingExecutor:
    def __init__(self, result: ExecutionResult) -> None:
        self.result = result
        self.calls: list[dict] = []

    def execute(self, code, url, timezone="America/New_York", timeout_ms=None, *, kind="event-scraper"):
        self.calls.append({"code": code, "url": url, "timezone": timezone, "kind": kind})
        return self.result


@pytest.fixture()
def source_id(session_factory) -> uuid.UUID:
    with session_factory() as db, db.begin():
        source = DataSourceRepository(db).create_source(
            name="The Blue Room",
            url="https://blueroom.example.com/calendar",
            timezone="America/Chicago",
            config={"kind": "event-scraper"},
        )
        return source.id


def _count_versions(session_factory, source_id: uuid.UUID) -> int:
    with session_factory() as db:
        return db.scalar(
            select(func.count(ScraperVersion.id)).where(ScraperVersion.data_source_id == source_id)
        )


class TestScraperVersionRepository:
    def test_numbers_are_gapless(self, session_factory, source_id) -> None:
        with session_factory() as db, db.begin():
            versions = ScraperVersionRepository(db)
            numbers = [
                versions.create_version(data_source_id=source_id, code=code).version_number
                for code in (PROGRAM_A, PROGRAM_B, PROGRAM_C)
            ]
        assert numbers == [1, 2, 3]

    def test_duplicate_code_is_rejected_without_write(self, session_factory, source_id) -> None:
        with session_factory() as db, db.begin():
            first = ScraperVersionRepository(db).create_version(data_source_id=source_id, code=PROGRAM_A)

        with pytest.raises(DuplicateVersionError) as exc_info:
            with session_factory() as db, db.begin():
                ScraperVersionRepository(db).create_version(data_source_id=source_id, code=PROGRAM_A)

        assert exc_info.value.existing_version_number == 1
        assert exc_info.value.existing_version_id == first.id
        assert _count_versions(session_factory, source_id) == 1

    def test_same_code_allowed_for_different_sources(self, session_factory, source_id) -> None:
        with session_factory() as db, db.begin():
            other = DataSourceRepository(db).create_source(
                name="Other", url="https://other.example.com", timezone="UTC"
            )
            versions = ScraperVersionRepository(db)
            versions.create_version(data_source_id=source_id, code=PROGRAM_A)
            copy = versions.create_version(data_source_id=other.id, code=PROGRAM_A)
        assert copy.version_number == 1

    def test_single_active_version_and_config_mirror(self, session_factory, source_id) -> None:
        with session_factory() as db, db.begin():
            versions = ScraperVersionRepository(db)
            v1 = versions.create_version(data_source_id=source_id, code=PROGRAM_A, set_active=True)
            v2 = versions.create_version(data_source_id=source_id, code=PROGRAM_B, set_active=True)

        with session_factory() as db:
            active = [version for version in ScraperVersionRepository(db).list_versions(source_id) if version.is_active]
            source = DataSourceRepository(db).require_source(source_id)

        assert [version.id for version in active] == [v2.id]
        assert source.config["generated_code"] == PROGRAM_B
        assert source.config["active_version_id"] == str(v2.id)
        assert source.config["active_version_number"] == 2
        assert source.config["kind"] == "event-scraper"

        with session_factory() as db, db.begin():
            ScraperVersionRepository(db).activate(data_source_id=source_id, version_id=v1.id)

        with session_factory() as db:
            versions = ScraperVersionRepository(db)
            assert versions.get_active_version(source_id).id == v1.id
            assert DataSourceRepository(db).require_source(source_id).config["generated_code"] == PROGRAM_A

    def test_list_versions_newest_first(self, session_factory, source_id) -> None:
        with session_factory() as db, db.begin():
            versions = ScraperVersionRepository(db)
            versions.create_version(data_source_id=source_id, code=PROGRAM_A)
            versions.create_version(data_source_id=source_id, code=PROGRAM_B)
        with session_factory() as db:
            listed = ScraperVersionRepository(db).list_versions(source_id)
        assert [version.version_number for version in listed] == [2, 1]

    def test_activate_unknown_version(self, session_factory, source_id) -> None:
        with pytest.raises(VersionNotFoundError):
            with session_factory() as db, db.begin():
                ScraperVersionRepository(db).activate(data_source_id=source_id, version_id=uuid.uuid4())

    def test_activate_foreign_version(self, session_factory, source_id) -> None:
        with session_factory() as db, db.begin():
            other = DataSourceRepository(db).create_source(
                name="Other", url="https://other.example.com", timezone="UTC"
            )
            foreign = ScraperVersionRepository(db).create_version(data_source_id=other.id, code=PROGRAM_A)

        with pytest.raises(ForeignVersionError):
            with session_factory() as db, db.begin():
                ScraperVersionRepository(db).activate(data_source_id=source_id, version_id=foreign.id)

        with session_factory() as db:
            assert ScraperVersionRepository(db).get_active_version(source_id) is None

    def test_unknown_provenance(self, session_factory, source_id) -> None:
        with pytest.raises(ValueError):
            with session_factory() as db, db.begin():
                ScraperVersionRepository(db).create_version(
                    data_source_id=source_id, code=PROGRAM_A, provenance="copied"
                )


class TestScraperVersionService:
    def test_create_validates_before_writing(self, session_factory, source_id) -> None:
        service = ScraperVersionService(executor=RecordingExecutor(ExecutionResult(success=True)))
        with pytest.raises(CodeValidationError):
            with session_factory() as db:
                service.create_version(db=db, data_source_id=source_id, code="import os\n")
        assert _count_versions(session_factory, source_id) == 0

    def test_create_manual_version(self, session_factory, source_id) -> None:
        service = ScraperVersionService(executor=RecordingExecutor(ExecutionResult(success=True)))
        with session_factory() as db:
            version = service.create_version(
                db=db,
                data_source_id=source_id,
                code=PROGRAM_A,
                description="hand fix",
                set_active=True,
                created_by="ops",
            )
        assert version.provenance == ScraperVersionProvenance.MANUAL
        assert version.is_active is True
        assert version.created_by == "ops"

    def test_dry_run_caches_summary_on_active_version(self, session_factory, source_id) -> None:
        records = [
            {"title": "Show", "starts_at": "2026-12-06T02:00:00+00:00", "source_url": "https://blueroom.example.com/e/1"}
        ]
        executor = RecordingExecutor(ExecutionResult(records=records, success=True, duration_ms=42))
        service = ScraperVersionService(executor=executor)
        with session_factory() as db, db.begin():
            active = ScraperVersionRepository(db).create_version(
                data_source_id=source_id, code=PROGRAM_A, set_active=True
            )

        with session_factory() as db:
            outcome = service.test(db=db, data_source_id=source_id)

        assert outcome.version_id == active.id
        assert outcome.summary["success"] is True
        assert outcome.summary["record_count"] == 1
        assert outcome.summary["completeness"] == pytest.approx(0.7)
        assert outcome.samples == records
        assert executor.calls[0]["code"] == PROGRAM_A
        assert executor.calls[0]["timezone"] == "America/Chicago"

        with session_factory() as db:
            stored = ScraperVersionRepository(db).get_version(active.id)
            assert stored.test_results["record_count"] == 1
            assert stored.last_tested_at is not None
            # Testing never changes activation.
            assert stored.is_active is True

    def test_dry_run_of_ad_hoc_code_caches_nothing(self, session_factory, source_id) -> None:
        service = ScraperVersionService(executor=RecordingExecutor(ExecutionResult(success=False, errors=["boom"])))
        with session_factory() as db:
            outcome = service.test(db=db, data_source_id=source_id, code=PROGRAM_C)
        assert outcome.version_id is None
        assert outcome.summary["success"] is False
        assert outcome.summary["errors"] == ["boom"]


class TestConcurrentWrites:
    """Each worker thread uses its own session, as request handlers do."""

    WORKERS = 6

    @staticmethod
    def _program(index: int) -> str:
        return f"def scrape_events(page, timezone):\n    return page.json_ld('Event')[:{index + 1}]\n"

    @staticmethod
    def _run_together(count: int, task) -> list:
        barrier = threading.Barrier(count)

        def worker(index: int):
            barrier.wait()
            return task(index)

        with ThreadPoolExecutor(max_workers=count) as pool:
            return list(pool.map(worker, range(count)))

    def _assert_single_active(self, session_factory, source_id) -> ScraperVersion:
        with session_factory() as db:
            stored = ScraperVersionRepository(db).list_versions(source_id)
            source = DataSourceRepository(db).require_source(source_id)
        active = [version for version in stored if version.is_active]
        assert len(active) == 1
        assert source.config["active_version_id"] == str(active[0].id)
        assert source.config["active_version_number"] == active[0].version_number
        assert source.config["generated_code"] == active[0].code
        return active[0]

    def test_concurrent_create_and_activate(self, session_factory, source_id) -> None:
        service = ScraperVersionService(settings=AgentSettings())

        def create(index: int) -> int:
            with session_factory() as db:
                version = service.create_version(
                    db=db, data_source_id=source_id, code=self._program(index), set_active=True
                )
                return version.version_number

        numbers = self._run_together(self.WORKERS, create)

        assert sorted(numbers) == list(range(1, self.WORKERS + 1))
        with session_factory() as db:
            stored = ScraperVersionRepository(db).list_versions(source_id)
        assert sorted(version.version_number for version in stored) == list(range(1, self.WORKERS + 1))
        self._assert_single_active(session_factory, source_id)

    def test_concurrent_activation(self, session_factory, source_id) -> None:
        with session_factory() as db, db.begin():
            versions = ScraperVersionRepository(db)
            ids = [
                versions.create_version(data_source_id=source_id, code=self._program(index)).id
                for index in range(self.WORKERS)
            ]
        service = ScraperVersionService(settings=AgentSettings())

        def activate(index: int) -> uuid.UUID:
            with session_factory() as db:
                return service.activate(db=db, data_source_id=source_id, version_id=ids[index]).id

        activated = self._run_together(self.WORKERS, activate)

        assert sorted(activated) == sorted(ids)
        assert self._assert_single_active(session_factory, source_id).id in ids
