"""
Usage Recorder — Per-Tenant Embedding Token Accounting

Records estimated embedding tokens per (tenant, model, month) using
PostgreSQL upsert semantics:

    INSERT ... ON CONFLICT (tenant_id, model, month_year)
    DO UPDATE SET
        total_tokens  += EXCLUDED.total_tokens,
        chunk_count   += EXCLUDED.chunk_count,
        request_count += 1

Token counts are the pipeline's own estimates (ceil(chars / 4)), the same
figure returned to the caller as totalTokens.

Fire-and-forget contract:
  record_in_background() schedules the upsert as a detached asyncio task and
  returns immediately. The task holds its own session; if it fails, the
  error is logged and dropped. A pipeline run never waits on it and never
  fails because of it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Optional
from uuid import UUID

from sqlalchemy import text

from docembed.core.exceptions import StorageError
from docembed.db.store import SessionFactory

logger = logging.getLogger(__name__)


def _month_year() -> str:
    """Return the current month as 'YYYY-MM', e.g. '2025-01'."""
    return date.today().strftime("%Y-%m")


_UPSERT_SQL = text("""
    INSERT INTO embedding_usage_logs
        (tenant_id, model, month_year, total_tokens, chunk_count,
         request_count, first_request_at, last_request_at)
    VALUES
        (:tenant_id, :model, :month_year, :total_tokens, :chunk_count,
         1, now(), now())
    ON CONFLICT (tenant_id, model, month_year)
    DO UPDATE SET
        total_tokens    = embedding_usage_logs.total_tokens  + EXCLUDED.total_tokens,
        chunk_count     = embedding_usage_logs.chunk_count   + EXCLUDED.chunk_count,
        request_count   = embedding_usage_logs.request_count + 1,
        last_request_at = now()
""")


class UsageRecorder:
    """
    Records and schedules per-tenant embedding usage.

    Uses a service-role session (no RLS tenant context) because the
    tenant_id is written explicitly in the INSERT.

    Usage::

        recorder = UsageRecorder(get_admin_db)
        recorder.record_in_background(
            tenant_id=doc.tenant_id,
            model="text-embedding-3-small",
            total_tokens=1024,
            chunk_count=3,
        )
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory
        self._pending: set[asyncio.Task] = set()

    # -----------------------------------------------------------------------
    # Write path
    # -----------------------------------------------------------------------

    async def track_usage(
        self,
        tenant_id:    UUID,
        model:        str,
        total_tokens: int,
        chunk_count:  int,
        month_year:   Optional[str] = None,
    ) -> None:
        """
        Upsert one completed run into embedding_usage_logs.

        Raises:
            StorageError: the upsert failed.
        """
        period = month_year or _month_year()
        try:
            async with self._session_factory() as db:
                await db.execute(_UPSERT_SQL, {
                    "tenant_id":    str(tenant_id),
                    "model":        model,
                    "month_year":   period,
                    "total_tokens": total_tokens,
                    "chunk_count":  chunk_count,
                })
        except Exception as exc:
            raise StorageError(f"Failed to record embedding usage: {exc}") from exc

        logger.debug(
            "Usage recorded | tenant=%s model=%s month=%s tokens=%d chunks=%d",
            tenant_id, model, period, total_tokens, chunk_count,
        )

    def record_in_background(
        self,
        tenant_id:    UUID,
        model:        str,
        total_tokens: int,
        chunk_count:  int,
    ) -> asyncio.Task:
        """Schedule track_usage() without awaiting it."""
        task = asyncio.create_task(
            self.track_usage(tenant_id, model, total_tokens, chunk_count),
            name=f"embedding-usage:{tenant_id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("Usage recording cancelled | task=%s", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            # Non-critical: log and drop
            logger.error("Usage recording failed (non-fatal) | task=%s error=%s", task.get_name(), exc)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for in-flight recordings; called on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
