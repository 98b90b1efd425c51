"""
Composed FastAPI Dependencies

Combines auth, the document store and the embedding orchestrator into
injectable objects. Route handlers import from here and never build these
collaborators themselves; tests swap them via app.dependency_overrides.

This is the single wiring point for the entire request context.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from docembed.auth.gate import Identity, access_gate
from docembed.core.config import PipelineConfig, get_settings
from docembed.db.session import get_admin_db
from docembed.db.store import DocumentStoreBase, SqlDocumentStore
from docembed.observability.usage import UsageRecorder
from docembed.services.embedding_pipeline import EmbeddingOrchestrator


# ---------------------------------------------------------------------------
# Process-wide singletons
#   One orchestrator per process so its per-document lock registry sees
#   every run. The embedding client inside it reuses one HTTP pool.
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_pipeline_config() -> PipelineConfig:
    return PipelineConfig.from_settings(get_settings())


@lru_cache(maxsize=1)
def get_usage_recorder() -> UsageRecorder:
    return UsageRecorder(get_admin_db)


@lru_cache(maxsize=1)
def get_document_store() -> DocumentStoreBase:
    """Service-role store; tenant checks happen in the orchestrator and routes."""
    return SqlDocumentStore(get_admin_db)


@lru_cache(maxsize=1)
def get_orchestrator() -> EmbeddingOrchestrator:
    return EmbeddingOrchestrator(
        config=get_pipeline_config(),
        store=get_document_store(),
        usage=get_usage_recorder(),
    )


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentIdentity = Annotated[Identity,              Depends(access_gate)]
DocumentStore   = Annotated[DocumentStoreBase,     Depends(get_document_store)]
Orchestrator    = Annotated[EmbeddingOrchestrator, Depends(get_orchestrator)]
