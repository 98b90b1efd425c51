"""
Embedding Trigger API Router
POST /api/v1/generate-embeddings

Called by the extraction subsystem once a document's text is ready (with
the service-role key) and by the web client when a user re-runs embedding
(with their own JWT).

Request lifecycle:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. AccessGate → service or user Identity (401 if none)  │
  │ 2. Parse { documentId } (400 if missing)                │
  │ 3. Orchestrator run (404 / 400 before any state change) │
  │ 4. 200 { success, documentId, chunksCreated,            │
  │          totalTokens }                                  │
  └─────────────────────────────────────────────────────────┘

Provider and storage failures during the run surface as
500 { success: false, error } via the PipelineError handler in main.py;
the document is left with embedding_status='failed'.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Request
from pydantic import ValidationError

from docembed.auth.dependencies import CurrentIdentity, Orchestrator
from docembed.core.exceptions import DocumentNotFound, InvalidRequest
from docembed.schemas.documents import (
    ErrorBody,
    GenerateEmbeddingsRequest,
    GenerateEmbeddingsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Embeddings"])


async def _read_document_id(request: Request) -> UUID:
    """Pull documentId out of the JSON body. Runs after authentication."""
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")

    try:
        parsed = GenerateEmbeddingsRequest.model_validate(body)
    except ValidationError:
        raise InvalidRequest("documentId must be a string")

    if not parsed.document_id:
        raise InvalidRequest("documentId is required")

    try:
        return UUID(parsed.document_id)
    except ValueError:
        # Not a valid id, so no such document exists
        raise DocumentNotFound(parsed.document_id)


@router.post(
    "/generate-embeddings",
    response_model=GenerateEmbeddingsResponse,
    summary="Chunk and embed a document",
    description=(
        "Replaces every chunk of the document with freshly embedded ones. "
        "Safe to re-trigger after a failure."
    ),
    responses={
        400: {"model": ErrorBody, "description": "Missing documentId or extraction not complete"},
        401: {"model": ErrorBody, "description": "Missing or invalid credential"},
        404: {"model": ErrorBody, "description": "Unknown document"},
        500: {"model": ErrorBody, "description": "Provider or storage failure; document marked failed"},
    },
)
async def generate_embeddings(
    request:      Request,
    identity:     CurrentIdentity,
    orchestrator: Orchestrator,
) -> GenerateEmbeddingsResponse:
    document_id = await _read_document_id(request)

    logger.info(
        "Embedding requested | doc=%s caller=%s tenant=%s",
        document_id, identity.kind, identity.tenant_id or "-",
    )
    result = await orchestrator.run(document_id, tenant_id=identity.tenant_id)

    return GenerateEmbeddingsResponse(
        document_id=result.document_id,
        chunks_created=result.chunks_created,
        total_tokens=result.total_tokens,
    )
