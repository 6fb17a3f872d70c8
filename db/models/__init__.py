"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.agent_session import AgentAttempt, AgentSession
from db.models.data_source import DataSource
from db.models.scraper_run import ScraperRun
from db.models.scraper_version import ScraperVersion

__all__ = [
    "AgentAttempt",
    "AgentSession",
    "DataSource",
    "ScraperRun",
    "ScraperVersion",
]
