"""
Document & Chunk Store

The only shared mutable state of the pipeline. The orchestrator speaks this
protocol; the SQL implementation below is the production backend and tests
substitute an in-memory one.

Contract (enforced by ALL implementations):
  - Every operation is its own transaction. There is no cross-call
    transaction; a run that fails midway leaves earlier batches committed
    and the document marked failed.
  - delete_chunks removes every chunk of the document before any new chunk
    of the same run is written.
  - Rows cross this boundary as typed records (DocumentRecord, ChunkRecord),
    never as ORM objects.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from typing import AsyncContextManager, AsyncIterator, Callable
from uuid import UUID

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from docembed.core.exceptions import StorageError
from docembed.db.session import get_db
from docembed.models.documents import Document, DocumentChunk
from docembed.schemas.documents import (
    ChunkRecord,
    DocumentRecord,
    EmbeddingStatus,
    ExtractionStatus,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class DocumentStoreBase(ABC):
    """Document reads, embedding-status writes and full-replace chunk writes."""

    def for_tenant(self, tenant_id: UUID) -> DocumentStoreBase:
        """Store whose reads are limited to one tenant. Defaults to self."""
        return self

    @abstractmethod
    async def get_document(self, document_id: UUID) -> DocumentRecord | None:
        """Return the document or None if it does not exist."""

    @abstractmethod
    async def set_embedding_status(self, document_id: UUID, status: EmbeddingStatus) -> None:
        """Single-row update of documents.embedding_status."""

    @abstractmethod
    async def delete_chunks(self, document_id: UUID) -> int:
        """Delete ALL chunks of a document. Returns the number removed."""

    @abstractmethod
    async def insert_chunks(self, chunks: list[ChunkRecord]) -> int:
        """Bulk-insert one batch of chunk rows. Returns the number written."""

    @abstractmethod
    async def count_chunks(self, document_id: UUID) -> int:
        """Number of chunk rows currently stored for a document."""

    @abstractmethod
    async def claim_stale_pending(self, updated_before: datetime, limit: int = 100) -> list[UUID]:
        """
        Documents whose extraction completed but whose embedding is still
        pending and untouched since `updated_before`. Claimed documents are
        touched, so a later scan skips them until they go stale again.
        """


# ---------------------------------------------------------------------------
# SQL implementation
# ---------------------------------------------------------------------------

class SqlDocumentStore(DocumentStoreBase):
    """
    PostgreSQL + pgvector backend.

    Usage:
        from docembed.db.session import get_admin_db
        store = SqlDocumentStore(get_admin_db)
        doc = await store.get_document(document_id)
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def for_tenant(self, tenant_id: UUID) -> SqlDocumentStore:
        # get_db sets app.current_tenant_id so RLS filters every statement
        return SqlDocumentStore(partial(get_db, tenant_id))

    @asynccontextmanager
    async def _session(self, operation: str, document_id: UUID | None = None) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error(
                "Store operation failed | op=%s doc=%s error=%s",
                operation, document_id, exc,
            )
            raise StorageError(f"Failed to {operation.replace('_', ' ')}: {exc}") from exc

    async def get_document(self, document_id: UUID) -> DocumentRecord | None:
        async with self._session("get_document", document_id) as db:
            row = await db.get(Document, document_id)
            return DocumentRecord.model_validate(row) if row is not None else None

    async def set_embedding_status(self, document_id: UUID, status: EmbeddingStatus) -> None:
        async with self._session("update_embedding_status", document_id) as db:
            await db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(embedding_status=status.value, updated_at=func.now())
            )
        logger.debug("Embedding status set | doc=%s status=%s", document_id, status.value)

    async def delete_chunks(self, document_id: UUID) -> int:
        async with self._session("delete_existing_chunks", document_id) as db:
            result = await db.execute(
                delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
            )
            return result.rowcount or 0

    async def insert_chunks(self, chunks: list[ChunkRecord]) -> int:
        if not chunks:
            return 0
        rows = [
            {
                "document_id":    c.document_id,
                "tenant_id":      c.tenant_id,
                "chunk_index":    c.chunk_index,
                "chunk_text":     c.chunk_text,
                "embedding":      c.embedding,
                "token_count":    c.token_count,
                "chunk_type":     c.chunk_type.value,
                "equipment_type": c.equipment_type,
            }
            for c in chunks
        ]
        async with self._session("insert_chunks", chunks[0].document_id) as db:
            await db.execute(insert(DocumentChunk), rows)
        return len(rows)

    async def count_chunks(self, document_id: UUID) -> int:
        async with self._session("count_chunks", document_id) as db:
            result = await db.execute(
                select(func.count())
                .select_from(DocumentChunk)
                .where(DocumentChunk.document_id == document_id)
            )
            return int(result.scalar_one())

    async def claim_stale_pending(self, updated_before: datetime, limit: int = 100) -> list[UUID]:
        stale = (
            select(Document.id)
            .where(
                Document.extraction_status == ExtractionStatus.COMPLETED.value,
                Document.embedding_status == EmbeddingStatus.PENDING.value,
                Document.updated_at < updated_before,
            )
            .order_by(Document.updated_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        # Concurrent scanners skip each other's locked rows
        async with self._session("claim_stale_documents") as db:
            result = await db.execute(
                update(Document)
                .where(Document.id.in_(stale))
                .values(updated_at=func.now())
                .returning(Document.id)
                .execution_options(synchronize_session=False)
            )
            return list(result.scalars().all())
