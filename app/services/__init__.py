"""
app/services package marker.
"""

from app.services.agent_orchestrator import AgentOrchestrator
from app.services.agent_session_service import (
    AgentSessionService,
    FastAPIBackgroundTaskExecutor,
    get_agent_session_service,
)
from app.services.production_run_service import (
    ProductionRunService,
    ProductionRunSummary,
    get_production_run_service,
)
from app.services.scraper_version_service import (
    ScraperVersionService,
    get_scraper_version_service,
)

__all__ = [
    "AgentOrchestrator",
    "AgentSessionService",
    "FastAPIBackgroundTaskExecutor",
    "get_agent_session_service",
    "ProductionRunService",
    "ProductionRunSummary",
    "get_production_run_service",
    "ScraperVersionService",
    "get_scraper_version_service",
]
