"""
Database module for genqueue.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from genqueue.db.engine import (
    async_session,
    build_engine,
    build_session_factory,
    engine,
    get_session,
    shutdown,
)
from genqueue.db.models import Base, Project, QueueTask

logger = logging.getLogger(__name__)


async def init_database(bind: Optional[AsyncEngine] = None):
    """Create the projects and queue_tasks tables if they do not exist."""
    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug(f"Database schema ready ({target.url})")


__all__ = [
    "Base",
    "Project",
    "QueueTask",
    "engine",
    "async_session",
    "build_engine",
    "build_session_factory",
    "get_session",
    "shutdown",
    "init_database",
]
