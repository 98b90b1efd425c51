"""
Celery Tasks — Embedding Runs Off the Request Path

Task: generate_document_embeddings
  Runs the same EmbeddingOrchestrator as POST /generate-embeddings, as the
  trusted service caller. Retryable provider failures (429, timeout) are
  retried with back-off; anything else is reported in the task result.
  The document's embedding_status is already 'failed' in either case.

Task: requeue_stale_embeddings
  Beat task. Re-queues documents whose extraction completed but whose
  embedding_status is still 'pending' five minutes later; the
  extraction subsystem's fire-and-forget trigger was lost. Claiming a
  document touches its updated_at, so it is queued at most once per
  five minutes, and the queued run is skipped if the document has left
  'pending' by the time a worker picks it up.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any

from celery import Task

from docembed.core.exceptions import PipelineError
from docembed.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(minutes=5)
REQUEUE_LIMIT = 50
DEFAULT_RETRY_DELAY = 60


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


def _build_orchestrator():
    # Built per task: asyncio.run() gives every task a fresh event loop
    from docembed.core.config import PipelineConfig, settings
    from docembed.db.session import get_admin_db
    from docembed.db.store import SqlDocumentStore
    from docembed.observability.usage import UsageRecorder
    from docembed.services.embedding_pipeline import EmbeddingOrchestrator

    return EmbeddingOrchestrator(
        config=PipelineConfig.from_settings(settings),
        store=SqlDocumentStore(get_admin_db),
        usage=UsageRecorder(get_admin_db),
    )


# ---------------------------------------------------------------------------
# Embedding task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docembed.workers.tasks.generate_document_embeddings",
    bind=True,
    max_retries=3,
    acks_late=True,
    reject_on_worker_lost=True,
)
def generate_document_embeddings(
    self: Task, *, document_id: str, only_if_pending: bool = False,
) -> dict[str, Any]:
    try:
        return run_async(_generate_async(uuid.UUID(document_id), only_if_pending))
    except PipelineError as exc:
        if exc.retryable:
            delay = int(getattr(exc, "retry_after", None) or DEFAULT_RETRY_DELAY)
            logger.warning(
                "Retryable embedding failure | doc=%s error_code=%s retry_in=%ds",
                document_id, exc.error_code, delay,
            )
            raise self.retry(exc=exc, countdown=delay)
        logger.error(
            "Embedding task failed | doc=%s error_code=%s error=%s",
            document_id, exc.error_code, exc.message,
        )
        return {"status": "failed", "document_id": document_id, "error_code": exc.error_code}


async def _generate_async(document_id: uuid.UUID, only_if_pending: bool = False) -> dict[str, Any]:
    from docembed.db.session import engine
    from docembed.schemas.documents import EmbeddingStatus

    orchestrator = _build_orchestrator()
    try:
        if only_if_pending:
            document = await orchestrator.store.get_document(document_id)
            if document is None or document.embedding_status != EmbeddingStatus.PENDING:
                logger.info(
                    "Re-queued document no longer pending, skipping | doc=%s status=%s",
                    document_id, document.embedding_status.value if document else None,
                )
                return {"status": "skipped", "document_id": str(document_id)}
        result = await orchestrator.run(document_id)
        if orchestrator.usage is not None:
            await orchestrator.usage.drain()
    finally:
        await orchestrator.aclose()
        # Pooled connections belong to this task's event loop
        await engine.dispose()

    return {
        "status":         "completed",
        "document_id":    str(result.document_id),
        "chunks_created": result.chunks_created,
        "total_tokens":   result.total_tokens,
    }


# ---------------------------------------------------------------------------
# Stale-document scanner: runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docembed.workers.tasks.requeue_stale_embeddings",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stale_embeddings() -> dict[str, int]:
    return run_async(_requeue_stale_async())


async def _requeue_stale_async() -> dict[str, int]:
    from docembed.db.session import engine, get_admin_db
    from docembed.db.store import SqlDocumentStore

    cutoff = datetime.now(timezone.utc) - STALE_AFTER
    try:
        stale = await SqlDocumentStore(get_admin_db).claim_stale_pending(cutoff, limit=REQUEUE_LIMIT)
    finally:
        await engine.dispose()

    for document_id in stale:
        generate_document_embeddings.apply_async(
            kwargs={"document_id": str(document_id), "only_if_pending": True},
            countdown=5,
        )
        logger.info("Re-queued stale document | doc=%s", document_id)

    return {"requeued": len(stale)}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="docembed.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
