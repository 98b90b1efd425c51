"""
SQLAlchemy ORM Models — Documents, Chunks & Embedding Usage

Three tables:

  documents
    One uploaded reference document. The extraction subsystem owns
    extracted_text and extraction_status; the embedding orchestrator owns
    embedding_status.

  document_chunks
    The derived, vector-indexed passages of a document. Fully replaced on
    every embedding run (delete-all then insert). Read by the retrieval
    subsystem, always filtered by tenant_id and document_id.

  embedding_usage_logs
    Estimated embedding token consumption per (tenant, model, month),
    maintained with an upsert by observability.usage.UsageRecorder.

RLS note: Row-Level Security is enforced at the PostgreSQL level via the
app.current_tenant_id GUC set by db/session.py. tenant_id is still stored
on every chunk row so retrieval can filter without a join.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from docembed.core.config import settings


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


_STATUS_VALUES = "('pending', 'processing', 'completed', 'failed')"


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    A tenant's uploaded reference document after text extraction.

    Two independent state machines:
        extraction_status — pending → processing → completed | failed
                            (written by the extraction subsystem)
        embedding_status  — pending → processing → completed | failed
                            (written only by the embedding orchestrator)

    A document is eligible for embedding once extraction_status='completed'
    and extracted_text is non-empty.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            f"extraction_status IN {_STATUS_VALUES}",
            name="documents_extraction_status_check",
        ),
        CheckConstraint(
            f"embedding_status IN {_STATUS_VALUES}",
            name="documents_embedding_status_check",
        ),
        Index("idx_documents_tenant_id",        "tenant_id"),
        Index("idx_documents_embedding_status", "tenant_id", "embedding_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    name: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    category: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="e.g. manual, spec_sheet, warranty",
    )
    equipment_types: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default="[]",
        comment="Equipment tags; the first entry is copied onto every chunk",
    )

    # Extraction output (read-only for this service)
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extraction_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        server_default="pending",
    )

    # Embedding state machine
    embedding_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        server_default="pending",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    chunks: Mapped[list["DocumentChunk"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentChunk.chunk_index",
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} tenant={self.tenant_id} "
            f"extraction={self.extraction_status} embedding={self.embedding_status}>"
        )


# ---------------------------------------------------------------------------
# DocumentChunk model: document_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """
    One embedded passage of a Document.

    chunk_index is dense and zero-based within a document (0..N-1), in
    document order. The embedding dimension matches settings.embedding_dimensions
    and must agree with the configured embedding model.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        CheckConstraint(
            "chunk_type IN ('table', 'procedure', 'specification', 'narrative')",
            name="document_chunks_type_check",
        ),
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_position"),
        Index("idx_document_chunks_document_id", "document_id"),
        Index("idx_document_chunks_tenant_id",   "tenant_id"),
        Index("idx_document_chunks_tenant_doc",  "tenant_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Denormalized from the parent document for query isolation
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str]  = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=False,
    )
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    chunk_type: Mapped[str]  = mapped_column(String(16), nullable=False, default="narrative")
    equipment_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    document: Mapped[Document] = relationship(back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<DocumentChunk doc={self.document_id} index={self.chunk_index} "
            f"type={self.chunk_type}>"
        )


# ---------------------------------------------------------------------------
# EmbeddingUsageLog model: embedding_usage_logs
# ---------------------------------------------------------------------------

class EmbeddingUsageLog(Base):
    """
    Monthly roll-up of estimated embedding tokens per tenant and model.

    Written with INSERT ... ON CONFLICT DO UPDATE so concurrent runs
    increment the same row.
    """

    __tablename__ = "embedding_usage_logs"
    __table_args__ = (
        UniqueConstraint("tenant_id", "model", "month_year", name="uq_embedding_usage_period"),
        Index("idx_embedding_usage_tenant_id", "tenant_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    model: Mapped[str]      = mapped_column(Text, nullable=False)
    month_year: Mapped[str] = mapped_column(String(7), nullable=False, comment="YYYY-MM")

    total_tokens: Mapped[int]   = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    chunk_count: Mapped[int]    = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    request_count: Mapped[int]  = mapped_column(Integer, nullable=False, default=0, server_default="0")

    first_request_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    last_request_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<EmbeddingUsageLog tenant={self.tenant_id} model={self.model!r} "
            f"month={self.month_year} tokens={self.total_tokens}>"
        )
