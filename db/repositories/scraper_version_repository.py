"""
Content-addressed scraper version store.

Every write locks the owning ``data_sources`` row first, which serialises
version numbering and activation per source. Combined with the unique
constraints on (source, number), (source, hash) and the partial unique
index on active versions, a reader can never observe two active versions
or a config mirror that disagrees with the active version record.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.models.data_source import DataSource
from db.models.scraper_version import ScraperVersion, ScraperVersionProvenance
from db.repositories.errors import (
    DataSourceNotFoundError,
    DuplicateVersionError,
    ForeignVersionError,
    ScraperVersionError,
    VersionNotFoundError,
)


def compute_code_hash(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class ScraperVersionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_version(
        self,
        *,
        data_source_id: uuid.UUID,
        code: str,
        description: str | None = None,
        provenance: str = ScraperVersionProvenance.MANUAL,
        set_active: bool = False,
        created_by: str | None = None,
        agent_session_id: uuid.UUID | None = None,
    ) -> ScraperVersion:
        """
        Store ``code`` as the next version of the data source.

        Raises DuplicateVersionError when the same code is already stored
        for this source; no row is written in that case.
        """

        if provenance not in ScraperVersionProvenance.ALL:
            raise ValueError(f"Unknown provenance: {provenance!r}")

        source = self._lock_source(data_source_id)
        code_hash = compute_code_hash(code)

        existing = self.get_by_hash(data_source_id=data_source_id, code_hash=code_hash)
        if existing is not None:
            raise DuplicateVersionError(
                existing_version_number=existing.version_number,
                existing_version_id=existing.id,
            )

        version = ScraperVersion(
            data_source_id=data_source_id,
            version_number=self._next_version_number(data_source_id),
            code=code,
            code_hash=code_hash,
            description=description,
            provenance=provenance,
            is_active=False,
            created_by=created_by,
            agent_session_id=agent_session_id,
        )
        self._session.add(version)
        try:
            self._session.flush()
        except IntegrityError as exc:
            raise ScraperVersionError(
                f"Concurrent version write for data source {data_source_id}"
            ) from exc

        if set_active:
            self._activate_locked(source, version)

        self._session.refresh(version)
        return version

    def activate(self, *, data_source_id: uuid.UUID, version_id: uuid.UUID) -> ScraperVersion:
        """
        Make ``version_id`` the single active version of the data source.

        Deactivating the others, activating the target and refreshing the
        config mirror happen in the caller's transaction.
        """

        source = self._lock_source(data_source_id)
        version = self._session.get(ScraperVersion, version_id)
        if version is None:
            raise VersionNotFoundError(version_id)
        if version.data_source_id != data_source_id:
            raise ForeignVersionError(version_id=version_id, data_source_id=data_source_id)

        self._activate_locked(source, version)
        return version

    def get_version(self, version_id: uuid.UUID) -> ScraperVersion | None:
        return self._session.get(ScraperVersion, version_id)

    def get_by_hash(self, *, data_source_id: uuid.UUID, code_hash: str) -> ScraperVersion | None:
        stmt = select(ScraperVersion).where(
            ScraperVersion.data_source_id == data_source_id,
            ScraperVersion.code_hash == code_hash,
        )
        return self._session.scalars(stmt).first()

    def get_active_version(self, data_source_id: uuid.UUID) -> ScraperVersion | None:
        stmt = select(ScraperVersion).where(
            ScraperVersion.data_source_id == data_source_id,
            ScraperVersion.is_active.is_(True),
        )
        return self._session.scalars(stmt).first()

    def list_versions(self, data_source_id: uuid.UUID) -> list[ScraperVersion]:
        stmt: Select[tuple[ScraperVersion]] = (
            select(ScraperVersion)
            .where(ScraperVersion.data_source_id == data_source_id)
            .order_by(ScraperVersion.version_number.desc())
        )
        return list(self._session.scalars(stmt).all())

    def record_test_result(
        self,
        *,
        version_id: uuid.UUID,
        tested_at: datetime,
        test_results: dict[str, Any],
    ) -> ScraperVersion | None:
        version = self.get_version(version_id)
        if version is None:
            return None
        version.last_tested_at = tested_at
        version.test_results = test_results
        return version

    def _lock_source(self, data_source_id: uuid.UUID) -> DataSource:
        if self._session.get_bind().dialect.name == "sqlite":
            # SQLite ignores FOR UPDATE; a no-op write takes the database write lock instead.
            self._session.execute(
                update(DataSource)
                .where(DataSource.id == data_source_id)
                .values(name=DataSource.name)
                .execution_options(synchronize_session=False)
            )
        stmt = (
            select(DataSource)
            .where(DataSource.id == data_source_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        source = self._session.scalars(stmt).first()
        if source is None:
            raise DataSourceNotFoundError(data_source_id)
        return source

    def _next_version_number(self, data_source_id: uuid.UUID) -> int:
        stmt = select(func.max(ScraperVersion.version_number)).where(
            ScraperVersion.data_source_id == data_source_id
        )
        current = self._session.scalar(stmt)
        return (current or 0) + 1

    def _activate_locked(self, source: DataSource, version: ScraperVersion) -> None:
        # Deactivate first so the partial unique index never sees two active rows.
        self._session.execute(
            update(ScraperVersion)
            .where(
                ScraperVersion.data_source_id == source.id,
                ScraperVersion.id != version.id,
                ScraperVersion.is_active.is_(True),
            )
            .values(is_active=False)
            .execution_options(synchronize_session="fetch")
        )
        self._session.flush()

        version.is_active = True
        source.config = {
            **(source.config or {}),
            "generated_code": version.code,
            "active_version_id": str(version.id),
            "active_version_number": version.version_number,
        }
        self._session.flush()
