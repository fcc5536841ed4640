from __future__ import annotations

import logging

from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from grounding.config import settings

logger = logging.getLogger(__name__)


def build_session_factory(database_url: str) -> tuple[AsyncEngine | None, async_sessionmaker[AsyncSession] | None]:
    url = (database_url or "").strip()
    if not url:
        return None, None
    try:
        engine = create_async_engine(url, echo=False, pool_pre_ping=True)
    except (ArgumentError, ImportError):
        # unusable URL or missing driver: the catalog reports db_not_configured
        logger.exception("database url rejected, catalog store disabled")
        return None, None
    return engine, async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


engine, SessionLocal = build_session_factory(settings.database_url)
