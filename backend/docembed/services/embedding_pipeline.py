"""
Document Embedding Pipeline

Turns one document's extracted text into stored, vector-indexed chunks:
  1. Load the document; reject unknown (404) or not-yet-extracted (400) ones
  2. Set embedding_status = processing
  3. Delete every existing chunk of the document (idempotent reset)
  4. Chunk the extracted text into overlapping windows
  5. Partition the windows into batches of `batch_size`
  6. Per batch, sequentially: embed all windows concurrently, classify,
     estimate tokens, assign dense chunk_index values, bulk-insert
  7. Sleep `batch_delay_seconds` between batches
  8. Set embedding_status = completed and return the totals
  9. On any failure after step 2: set embedding_status = failed, re-raise

Invariants enforced here:
  - Only this service writes documents.embedding_status.
  - chunk_index is 0..N-1 in document order; batch k precedes batch k+1 and
    order inside a batch matches window order regardless of which provider
    call finishes first.
  - Batches never overlap. Within a batch one failed call cancels the rest
    and aborts the run; nothing from that batch is inserted.
  - Runs on the same document are serialized by an in-process lock.
    Different documents run concurrently.

Batches already inserted before a failure stay committed until the next
run's reset removes them. Retrieval should only read chunks of documents
whose embedding_status is 'completed'.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator
from uuid import UUID

from docembed.core.config import PipelineConfig
from docembed.core.exceptions import (
    DocumentNotFound,
    EmbeddingShapeError,
    PreconditionFailed,
)
from docembed.db.store import DocumentStoreBase
from docembed.observability.tracing import traced
from docembed.observability.usage import UsageRecorder
from docembed.processing.chunking import WindowChunker, estimate_tokens
from docembed.processing.classifier import classify_chunk
from docembed.processing.embeddings import EmbeddingClient
from docembed.schemas.documents import (
    ChunkRecord,
    DocumentRecord,
    EmbeddingStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Outcome of one successful run."""
    document_id:    UUID
    chunks_created: int
    total_tokens:   int
    batches:        int
    elapsed_ms:     float = 0.0


# ---------------------------------------------------------------------------
# Per-document lock registry
# ---------------------------------------------------------------------------

class DocumentLockRegistry:
    """
    One asyncio.Lock per document_id, created on first use and dropped once
    no run holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks:   dict[UUID, asyncio.Lock] = {}
        self._holders: dict[UUID, int] = {}

    @asynccontextmanager
    async def hold(self, document_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(document_id, asyncio.Lock())
        self._holders[document_id] = self._holders.get(document_id, 0) + 1
        if lock.locked():
            logger.info("Waiting for in-flight embedding run | doc=%s", document_id)
        try:
            async with lock:
                yield
        finally:
            self._holders[document_id] -= 1
            if self._holders[document_id] == 0:
                del self._holders[document_id]
                del self._locks[document_id]

    def is_locked(self, document_id: UUID) -> bool:
        lock = self._locks.get(document_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class EmbeddingOrchestrator:
    """
    Drives one embedding run per call to run().

    Usage:
        orchestrator = EmbeddingOrchestrator(
            config=PipelineConfig.from_settings(settings),
            store=SqlDocumentStore(get_admin_db),
        )
        result = await orchestrator.run(document_id)

    A single instance is shared by all requests of a process so that its
    lock registry sees every run.
    """

    def __init__(
        self,
        config:   PipelineConfig,
        store:    DocumentStoreBase,
        embedder: EmbeddingClient | None = None,
        usage:    UsageRecorder | None = None,
        locks:    DocumentLockRegistry | None = None,
    ) -> None:
        self._config   = config
        self._store    = store
        self._embedder = embedder or EmbeddingClient.from_config(config)
        self._usage    = usage
        self._locks    = locks or DocumentLockRegistry()
        self._chunker  = WindowChunker(
            chunk_size=config.chunk_size,
            overlap=config.chunk_overlap,
        )

    @property
    def locks(self) -> DocumentLockRegistry:
        return self._locks

    @property
    def store(self) -> DocumentStoreBase:
        return self._store

    @property
    def usage(self) -> UsageRecorder | None:
        return self._usage

    async def aclose(self) -> None:
        await self._embedder.aclose()

    # -----------------------------------------------------------------------
    # Public entry point
    # -----------------------------------------------------------------------

    @traced("embedding_run")
    async def run(self, document_id: UUID, tenant_id: UUID | None = None) -> PipelineResult:
        """
        Embed one document end to end.

        Args:
            document_id: Document to (re)process.
            tenant_id:   When set, a document of any other tenant is reported
                         as not found. None for the trusted service caller.

        Raises:
            DocumentNotFound, PreconditionFailed: before any state change.
            RateLimitExceeded, QuotaExhausted, EmbeddingTimeout,
            EmbeddingShapeError, EmbeddingProviderError, StorageError:
                after embedding_status has been set to failed.
        """
        async with self._locks.hold(document_id):
            document = await self._load_eligible(document_id, tenant_id)
            try:
                result = await self._process(document)
            except Exception as exc:
                await self._mark_failed(document_id, exc)
                raise

        if self._usage is not None and result.chunks_created:
            self._usage.record_in_background(
                tenant_id=document.tenant_id,
                model=self._config.embedding_model,
                total_tokens=result.total_tokens,
                chunk_count=result.chunks_created,
            )
        return result

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    async def _load_eligible(self, document_id: UUID, tenant_id: UUID | None) -> DocumentRecord:
        document = await self._store.get_document(document_id)
        if document is None or (tenant_id is not None and document.tenant_id != tenant_id):
            logger.info("Embedding rejected, document not found | doc=%s", document_id)
            raise DocumentNotFound(document_id)

        if not document.is_ready_for_embedding:
            logger.info(
                "Embedding rejected, extraction incomplete | doc=%s extraction=%s has_text=%s",
                document_id, document.extraction_status.value, bool(document.extracted_text),
            )
            raise PreconditionFailed("Document text extraction not complete")
        return document

    async def _process(self, document: DocumentRecord) -> PipelineResult:
        t0 = time.monotonic()
        cfg = self._config

        await self._store.set_embedding_status(document.id, EmbeddingStatus.PROCESSING)

        deleted = await self._store.delete_chunks(document.id)
        if deleted:
            logger.info("Previous chunks removed | doc=%s deleted=%d", document.id, deleted)

        windows = self._chunker.chunk(document.extracted_text or "")
        batches = [windows[i : i + cfg.batch_size] for i in range(0, len(windows), cfg.batch_size)]

        logger.info(
            "Embedding run start | doc=%s tenant=%s chunks=%d batches=%d model=%s",
            document.id, document.tenant_id, len(windows), len(batches), cfg.embedding_model,
        )

        next_index = 0
        total_tokens = 0
        for batch_no, batch in enumerate(batches):
            vectors = await self._embed_batch(batch)

            records: list[ChunkRecord] = []
            for text, vector in zip(batch, vectors):
                tokens = estimate_tokens(text)
                records.append(ChunkRecord(
                    document_id=document.id,
                    tenant_id=document.tenant_id,
                    chunk_index=next_index,
                    chunk_text=text,
                    embedding=vector,
                    token_count=tokens,
                    chunk_type=classify_chunk(text),
                    equipment_type=document.primary_equipment_type,
                ))
                next_index += 1
                total_tokens += tokens

            await self._store.insert_chunks(records)
            logger.debug(
                "Batch stored | doc=%s batch=%d/%d chunks=%d",
                document.id, batch_no + 1, len(batches), len(records),
            )

            if batch_no < len(batches) - 1 and cfg.batch_delay_seconds > 0:
                await asyncio.sleep(cfg.batch_delay_seconds)

        await self._store.set_embedding_status(document.id, EmbeddingStatus.COMPLETED)

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Embedding run complete | doc=%s chunks=%d tokens=%d elapsed_ms=%.0f",
            document.id, next_index, total_tokens, elapsed_ms,
        )
        return PipelineResult(
            document_id=document.id,
            chunks_created=next_index,
            total_tokens=total_tokens,
            batches=len(batches),
            elapsed_ms=elapsed_ms,
        )

    async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed all texts concurrently; results follow input order."""
        tasks = [asyncio.create_task(self._embed_one(text)) for text in texts]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _embed_one(self, text: str) -> list[float]:
        vector = await self._embedder.embed(text)
        expected = self._config.embedding_dimensions
        if not vector:
            raise EmbeddingShapeError("Embedding provider returned no vector")
        if len(vector) != expected:
            raise EmbeddingShapeError(
                f"Embedding has {len(vector)} dimensions, expected {expected}"
            )
        return vector

    async def _mark_failed(self, document_id: UUID, cause: Exception) -> None:
        logger.error(
            "Embedding run failed | doc=%s error_type=%s error=%s",
            document_id, type(cause).__name__, cause,
        )
        try:
            await self._store.set_embedding_status(document_id, EmbeddingStatus.FAILED)
        except Exception as exc:
            logger.error(
                "Could not record failed status | doc=%s error=%s", document_id, exc,
            )
