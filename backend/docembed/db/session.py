"""
Async engine and transactional sessions for the document store.

  get_db(tenant_id)   Tenant-scoped. Sets `app.current_tenant_id` inside the
                      transaction so the RLS policies on documents and
                      document_chunks only expose that tenant's rows. The
                      status route reads through this.
  get_admin_db()      No tenant context. The embedding pipeline, usage
                      accounting and the stale-document scanner act for the
                      trusted service caller and write tenant_id explicitly.

Each `async with` block is exactly one transaction: commit on clean exit,
rollback when the block raises. SqlDocumentStore opens one block per
operation, so batches written before a failure stay committed.
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

from docembed.core.config import settings

logger = logging.getLogger(__name__)

_TENANT_GUC = "app.current_tenant_id"

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

# ORM rows are converted to DocumentRecord after commit; keep them loaded
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@asynccontextmanager
async def _transaction(tenant_id: UUID | None) -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        async with session.begin():
            if tenant_id is not None:
                # is_local=true: the setting dies with the transaction
                await session.execute(
                    text(f"SELECT set_config('{_TENANT_GUC}', :tid, true)"),
                    {"tid": str(tenant_id)},
                )
                logger.debug("Tenant context set | tenant=%s", tenant_id)
            yield session


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

def get_db(tenant_id: UUID):
    """
    Tenant-scoped transaction.

        async with get_db(identity.tenant_id) as db:
            row = await db.get(Document, document_id)
    """
    return _transaction(tenant_id)


def get_admin_db():
    """Transaction without tenant context. Never handed to user reads."""
    return _transaction(None)


async def check_db_health() -> dict:
    """Ping the database for /ready."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed | error=%s", exc)
        return {"status": "error", "detail": str(exc)}
