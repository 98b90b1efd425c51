"""
Document Embedding Status API Router
GET /api/v1/documents/{document_id}/embedding-status

Lets the web client poll a document after triggering (or after the
extraction subsystem triggered) an embedding run.

Tenant scoping:
  A user may only see documents of the tenant in their token. A document
  of another tenant answers 404, exactly like a missing one. User reads go
  through a tenant-scoped store (RLS session) and the tenant is checked
  again on the row. The service caller is not tenant-restricted.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter

from docembed.auth.dependencies import CurrentIdentity, DocumentStore
from docembed.core.exceptions import DocumentNotFound
from docembed.schemas.documents import EmbeddingStatusResponse, ErrorBody

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)


@router.get(
    "/{document_id}/embedding-status",
    response_model=EmbeddingStatusResponse,
    summary="Poll embedding status",
    responses={
        401: {"model": ErrorBody, "description": "Missing or invalid credential"},
        404: {"model": ErrorBody, "description": "Document not found"},
    },
)
async def get_embedding_status(
    document_id: UUID,
    identity:    CurrentIdentity,
    store:       DocumentStore,
) -> EmbeddingStatusResponse:
    """
    Returns extraction and embedding status plus the number of chunks
    currently stored. chunkCount may be non-zero for a failed run; only
    a completed run's chunks are complete.
    """
    if identity.tenant_id is not None:
        store = store.for_tenant(identity.tenant_id)

    doc = await store.get_document(document_id)
    if doc is None or (identity.tenant_id is not None and doc.tenant_id != identity.tenant_id):
        raise DocumentNotFound(document_id)

    return EmbeddingStatusResponse(
        document_id=doc.id,
        extraction_status=doc.extraction_status,
        embedding_status=doc.embedding_status,
        chunk_count=await store.count_chunks(document_id),
        updated_at=doc.updated_at,
    )
