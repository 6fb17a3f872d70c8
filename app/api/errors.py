"""
app/api/errors.py

Map domain exceptions raised by services to HTTP errors.
"""

from __future__ import annotations

from fastapi import HTTPException, status

from app.validators.code_validator import CodeValidationError
from db.repositories import (
    AgentSessionNotFoundError,
    AgentSessionStateError,
    DataSourceNotFoundError,
    DuplicateVersionError,
    ForeignVersionError,
    ScraperVersionError,
    VersionNotFoundError,
)


def to_http_exception(exc: Exception) -> HTTPException:
    """
    Return the HTTPException for a known service error.

    Unknown exceptions are re-raised so FastAPI reports them as 500s.
    """

    if isinstance(exc, (DataSourceNotFoundError, AgentSessionNotFoundError, VersionNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, DuplicateVersionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(exc),
                "existing_version_number": exc.existing_version_number,
                "existing_version_id": str(exc.existing_version_id),
            },
        )
    if isinstance(exc, AgentSessionStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ForeignVersionError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, CodeValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.to_dict())
    if isinstance(exc, ScraperVersionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    raise exc


SERVICE_ERRORS = (
    AgentSessionNotFoundError,
    AgentSessionStateError,
    DataSourceNotFoundError,
    ScraperVersionError,
    ValueError,
)
