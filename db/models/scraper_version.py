"""
db/models/scraper_version.py

Immutable, hash-addressed scraper programs attached to a data source.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
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

from db.base import Base, JSONType, TimestampMixin


class ScraperVersionProvenance:
    MANUAL = "manual"
    AI_GENERATED = "ai-generated"
    AI_IMPROVED = "ai-improved"

    ALL = frozenset({MANUAL, AI_GENERATED, AI_IMPROVED})


class ScraperVersion(Base, TimestampMixin):
    __tablename__ = "scraper_versions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    data_source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("data_sources.id", ondelete="RESTRICT"),
        nullable=False,
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    code: Mapped[str] = mapped_column(Text, nullable=False)
    code_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="sha256 hex digest of code",
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    provenance: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ScraperVersionProvenance.MANUAL,
        comment="manual, ai-generated, ai-improved",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    agent_session_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
    )
    last_tested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    test_results: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "data_source_id",
            "version_number",
            name="uq_scraper_versions_source_number",
        ),
        UniqueConstraint(
            "data_source_id",
            "code_hash",
            name="uq_scraper_versions_source_hash",
        ),
        Index(
            "uq_scraper_versions_one_active",
            "data_source_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_scraper_versions_data_source_id", "data_source_id"),
    )
