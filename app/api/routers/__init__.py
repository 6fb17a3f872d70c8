"""
app/api/routers package marker.
"""

from app.api.routers.agent_sessions import router as agent_sessions_router
from app.api.routers.data_sources import router as data_sources_router

__all__ = [
    "agent_sessions_router",
    "data_sources_router",
]
