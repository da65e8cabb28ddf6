"""
Database engine and sessions.

There is no request-scoped session: every DocumentRepository call opens
its own short transaction through session_scope(), so API handlers and
Celery workers share one code path.

  session_scope()    async context manager; commits on clean exit
  check_db_health()  SELECT 1 with latency, used by startup and /ready
  dispose_engine()   close pooled connections on shutdown
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docsim.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
    pool_recycle=1800,
    echo=settings.db_echo_sql,
    connect_args={"server_settings": {"application_name": "docsim"}},
)

# ORM rows are read after the transaction closes (pipeline, search summaries)
async_session = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def check_db_health() -> dict[str, Any]:
    started = time.perf_counter()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Database unreachable | error=%s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


async def dispose_engine() -> None:
    await engine.dispose()
    logger.info("Database pool closed")
