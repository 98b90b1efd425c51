"""
Document Embedding — Pydantic Records and Request/Response Schemas

Covers:
  - Status enums shared by the ORM, the store and the API
  - Typed records validated at the store boundary (DocumentRecord, ChunkRecord)
  - POST /api/v1/generate-embeddings request and response bodies
  - GET /api/v1/documents/{id}/embedding-status response body

Wire format:
  The trigger endpoint speaks camelCase JSON ({"documentId": ...}) because
  its callers are the web client and the extraction function. Models use
  an alias generator so Python code stays snake_case.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# Chunks must be longer than this after trimming
MIN_CHUNK_CHARS = 50


# ---------------------------------------------------------------------------
# State machines
# ---------------------------------------------------------------------------

class ExtractionStatus(str, Enum):
    """Owned by the extraction subsystem; read-only here."""
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


class EmbeddingStatus(str, Enum):
    """
    Owned exclusively by the embedding orchestrator.
    Transitions: pending → processing → completed | failed
    A failed document may be re-triggered, which re-enters processing.
    """
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


class ChunkType(str, Enum):
    TABLE         = "table"
    PROCEDURE     = "procedure"
    SPECIFICATION = "specification"
    NARRATIVE     = "narrative"


# ---------------------------------------------------------------------------
# Store-boundary records
# ---------------------------------------------------------------------------

class DocumentRecord(BaseModel):
    """The slice of a documents row the pipeline consumes."""
    model_config = ConfigDict(from_attributes=True)

    id:                UUID
    tenant_id:         UUID
    name:              str = ""
    extracted_text:    str | None = None
    extraction_status: ExtractionStatus = ExtractionStatus.PENDING
    embedding_status:  EmbeddingStatus  = EmbeddingStatus.PENDING
    category:          str | None = None
    equipment_types:   list[str] = Field(default_factory=list)
    updated_at:        datetime | None = None

    @field_validator("equipment_types", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or []

    @property
    def primary_equipment_type(self) -> str | None:
        """First listed equipment type; copied onto every chunk."""
        return self.equipment_types[0] if self.equipment_types else None

    @property
    def is_ready_for_embedding(self) -> bool:
        return (
            self.extraction_status == ExtractionStatus.COMPLETED
            and bool(self.extracted_text)
        )


class ChunkRecord(BaseModel):
    """One document_chunks row, validated before insert."""
    document_id:    UUID
    tenant_id:      UUID
    chunk_index:    int = Field(..., ge=0)
    chunk_text:     str
    embedding:      list[float]
    token_count:    int = Field(..., ge=0)
    chunk_type:     ChunkType
    equipment_type: str | None = None

    @field_validator("chunk_text")
    @classmethod
    def _non_trivial_text(cls, value: str) -> str:
        if len(value.strip()) <= MIN_CHUNK_CHARS:
            raise ValueError(f"chunk_text must be longer than {MIN_CHUNK_CHARS} characters")
        return value

    @field_validator("embedding")
    @classmethod
    def _non_empty_embedding(cls, value: list[float]) -> list[float]:
        if not value:
            raise ValueError("embedding must not be empty")
        return value


# ---------------------------------------------------------------------------
# POST /generate-embeddings
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateEmbeddingsRequest(_CamelModel):
    document_id: str | None = None


class GenerateEmbeddingsResponse(_CamelModel):
    """200 body: run finished and every chunk was stored."""
    success:        bool = True
    document_id:    UUID
    chunks_created: int
    total_tokens:   int


class ErrorBody(_CamelModel):
    """
    4xx body ({"error": ...}) and, with success=False, the 500 body for
    failures during processing. Rendered with exclude_none.
    """
    success:    bool | None = None
    error:      str
    error_code: str | None = None
    request_id: str | None = None


# ---------------------------------------------------------------------------
# GET /documents/{id}/embedding-status
# ---------------------------------------------------------------------------

class EmbeddingStatusResponse(_CamelModel):
    document_id:       UUID
    extraction_status: ExtractionStatus
    embedding_status:  EmbeddingStatus
    chunk_count:       int = 0
    updated_at:        datetime | None = None
