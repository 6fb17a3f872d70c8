"""
app/schemas package marker.
"""

from app.schemas.agent_session import (
    AgentSessionAcceptedResponse,
    AgentSessionApproveResponse,
    AgentSessionListResponse,
    AgentSessionStartRequest,
    AgentSessionStatusResponse,
)
from app.schemas.data_source import DataSourceListResponse, DataSourceResponse
from app.schemas.health import HealthResponse
from app.schemas.scraper_version import (
    ScraperTestResponse,
    ScraperVersionListResponse,
    ScraperVersionResponse,
)

__all__ = [
    "AgentSessionAcceptedResponse",
    "AgentSessionApproveResponse",
    "AgentSessionListResponse",
    "AgentSessionStartRequest",
    "AgentSessionStatusResponse",
    "DataSourceListResponse",
    "DataSourceResponse",
    "HealthResponse",
    "ScraperTestResponse",
    "ScraperVersionListResponse",
    "ScraperVersionResponse",
]
