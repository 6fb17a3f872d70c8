"""
Repository package exports.
"""

from db.repositories.agent_session_repository import AgentSessionRepository
from db.repositories.data_source_repository import DataSourceRepository
from db.repositories.errors import (
    AgentSessionNotFoundError,
    AgentSessionStateError,
    DataSourceNotFoundError,
    DuplicateVersionError,
    ForeignVersionError,
    RepositoryError,
    ScraperVersionError,
    VersionNotFoundError,
)
from db.repositories.scraper_run_repository import ScraperRunRepository
from db.repositories.scraper_version_repository import (
    ScraperVersionRepository,
    compute_code_hash,
)

__all__ = [
    "AgentSessionNotFoundError",
    "AgentSessionRepository",
    "AgentSessionStateError",
    "DataSourceNotFoundError",
    "DataSourceRepository",
    "DuplicateVersionError",
    "ForeignVersionError",
    "RepositoryError",
    "ScraperRunRepository",
    "ScraperVersionError",
    "ScraperVersionRepository",
    "VersionNotFoundError",
    "compute_code_hash",
]
