"""
Document Processing Package
════════════════════════════

The pure and provider-facing building blocks of the embedding pipeline:

  Extracted Text → Window Chunking → Classification → Embedding

Modules
───────
  chunking.py    Overlapping character windows snapped to sentence/line boundaries
  classifier.py  Heuristic content-type label per chunk (table/procedure/spec/narrative)
  embeddings.py  Async client for an OpenAI-compatible embeddings endpoint

Design principles
─────────────────
  • Chunking and classification are pure functions; same input, same output.
  • The embedding client does no retries; failures are typed and surfaced.
  • Sequencing, batching and persistence live in services.embedding_pipeline.
"""

from docembed.processing.chunking import WindowChunker, chunk_text, estimate_tokens
from docembed.processing.classifier import ClassifierThresholds, classify_chunk
from docembed.processing.embeddings import EmbeddingClient

__all__ = [
    "WindowChunker",
    "chunk_text",
    "estimate_tokens",
    "ClassifierThresholds",
    "classify_chunk",
    "EmbeddingClient",
]
