"""
Repository-layer exceptions for data source, version, and session flows.
"""

from __future__ import annotations

import uuid


class RepositoryError(Exception):
    """Base exception for repository failures."""


class DataSourceNotFoundError(RepositoryError):
    """Raised when a referenced data source does not exist."""

    def __init__(self, data_source_id: uuid.UUID) -> None:
        self.data_source_id = data_source_id
        super().__init__(f"Data source not found: {data_source_id}")


class ScraperVersionError(RepositoryError):
    """Base exception for version store conflicts."""


class DuplicateVersionError(ScraperVersionError):
    """Raised when identical code is already stored for the data source."""

    def __init__(self, *, existing_version_number: int, existing_version_id: uuid.UUID) -> None:
        self.existing_version_number = existing_version_number
        self.existing_version_id = existing_version_id
        super().__init__(f"This code is identical to version {existing_version_number}")


class VersionNotFoundError(ScraperVersionError):
    """Raised when a referenced version does not exist."""

    def __init__(self, version_id: uuid.UUID) -> None:
        self.version_id = version_id
        super().__init__(f"Scraper version not found: {version_id}")


class ForeignVersionError(ScraperVersionError):
    """Raised when a version belongs to a different data source."""

    def __init__(self, *, version_id: uuid.UUID, data_source_id: uuid.UUID) -> None:
        self.version_id = version_id
        self.data_source_id = data_source_id
        super().__init__(
            f"Version {version_id} does not belong to data source {data_source_id}"
        )


class AgentSessionNotFoundError(RepositoryError):
    """Raised when a referenced agent session does not exist."""

    def __init__(self, session_id: uuid.UUID) -> None:
        self.session_id = session_id
        super().__init__(f"Agent session not found: {session_id}")


class AgentSessionStateError(RepositoryError):
    """Raised when a session transition is not allowed from its current status."""
