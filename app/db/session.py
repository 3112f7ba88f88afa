"""
Database session management with organization context injection.

Flow:
  1. The auth dependency resolves organization_id from the JWT (API) or the
     task arguments carry it (worker).
  2. tenant_session(organization_id) opens a transaction and sets the
     PostgreSQL GUC `app.current_organization_id` with SET LOCAL.
  3. RLS policies on saas.* read the GUC; the transaction commits when the
     block exits and the GUC disappears with it.

The pipeline orchestrator receives tenant_session as its session factory so
every stage runs in its own short transaction.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=settings.db_echo_sql,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# ---------------------------------------------------------------------------
# Organization context
# ---------------------------------------------------------------------------

async def _set_organization_context(session: AsyncSession, organization_id: UUID) -> None:
    await session.execute(
        text("SELECT set_config('app.current_organization_id', :oid, true)"),
        {"oid": str(organization_id)},
    )
    logger.debug("Organization context set: %s", organization_id)


@asynccontextmanager
async def tenant_session(organization_id: UUID) -> AsyncGenerator[AsyncSession, None]:
    """One transaction scoped to `organization_id`; commits on clean exit."""
    async with AsyncSessionLocal() as session:
        async with session.begin():
            await _set_organization_context(session, organization_id)
            yield session


async def get_db(organization_id: UUID) -> AsyncGenerator[AsyncSession, None]:
    """
    Generator form of tenant_session for FastAPI dependencies.
    See app.auth.dependencies.get_tenant_db for the composed dependency.
    """
    async with tenant_session(organization_id) as session:
        yield session


# ---------------------------------------------------------------------------
# System session (NO organization context: bypasses RLS)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def get_admin_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Session without organization context.

    ONLY for background system jobs that operate across organizations
    (the worker's re-queue sweep). Never exposed to request handlers.
    """
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """Ping the database; used by /ready."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
