"""
Embedding Client  —  One Chunk In, One Vector Out
═══════════════════════════════════════════════════

Talks to an OpenAI-compatible /v1/embeddings endpoint (OpenAI directly or
an AI gateway in front of it) through openai.AsyncOpenAI.

Error mapping (provider → pipeline):
  HTTP 429              → RateLimitExceeded  (retryable: back off, re-trigger)
  HTTP 402              → QuotaExhausted     (needs billing remediation)
  other non-2xx         → EmbeddingProviderError(status)
  timeout               → EmbeddingTimeout   (retryable)
  connection failure    → EmbeddingProviderError(status=None)

There is no retry logic here. The SDK's built-in retries are disabled
(max_retries=0) so a 429 surfaces immediately; deciding whether to try
again belongs to whoever triggered the run.

Model selection:
  text-embedding-3-small  → 1536 dims (default)
  text-embedding-3-large  → 3072 dims
  The requested dimension is always sent so the vector fits the
  document_chunks.embedding column.
"""

from __future__ import annotations

import asyncio
import logging
import time

import openai
from openai import AsyncOpenAI

from docembed.core.config import PipelineConfig
from docembed.core.exceptions import (
    EmbeddingProviderError,
    EmbeddingTimeout,
    QuotaExhausted,
    RateLimitExceeded,
)

logger = logging.getLogger(__name__)

_ERROR_BODY_LOG_LIMIT = 500


def _retry_after(exc: openai.APIStatusError) -> float | None:
    raw = exc.response.headers.get("retry-after") if exc.response is not None else None
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None


def map_status_error(exc: openai.APIStatusError) -> EmbeddingProviderError:
    """Translate a non-2xx provider response into the pipeline taxonomy."""
    status = exc.status_code
    if status == 429:
        return RateLimitExceeded(retry_after=_retry_after(exc))
    if status == 402:
        return QuotaExhausted()
    return EmbeddingProviderError(f"Embedding generation failed: {status}", status=status)


class EmbeddingClient:
    """
    Thin async wrapper around the provider's embeddings endpoint.

    Usage:
        client = EmbeddingClient.from_config(config)
        vector = await client.embed("Torque the compressor bolts to 25 Nm.")

    The AsyncOpenAI instance is created once and reused so its HTTP
    connection pool is shared across the concurrent calls of a batch.
    """

    def __init__(
        self,
        api_key:    str,
        model:      str   = "text-embedding-3-small",
        dimensions: int   = 1536,
        base_url:   str | None = None,
        timeout:    float = 30.0,
        client:     AsyncOpenAI | None = None,
    ) -> None:
        self._model      = model
        self._dimensions = dimensions
        self._timeout    = timeout
        self._client     = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "EmbeddingClient":
        return cls(
            api_key=config.embedding_api_key,
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            base_url=config.embedding_api_base_url,
            timeout=config.embedding_timeout_seconds,
        )

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        """
        Embed a single chunk.

        Returns the vector from the first result entry, or an empty list if
        the provider answered 2xx without one; callers treat an empty vector
        as a data-shape fault.

        Raises:
            RateLimitExceeded, QuotaExhausted, EmbeddingTimeout,
            EmbeddingProviderError
        """
        t0 = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.embeddings.create(
                    model=self._model,
                    input=text,
                    dimensions=self._dimensions,
                ),
                timeout=self._timeout,
            )
        except (openai.APITimeoutError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Embedding timeout | model=%s timeout=%.1fs chars=%d",
                self._model, self._timeout, len(text),
            )
            raise EmbeddingTimeout(self._timeout) from exc
        except openai.APIStatusError as exc:
            body = exc.response.text if exc.response is not None else ""
            logger.error(
                "Embedding generation failed | status=%d model=%s body=%s",
                exc.status_code, self._model, body[:_ERROR_BODY_LOG_LIMIT],
            )
            raise map_status_error(exc) from exc
        except openai.APIConnectionError as exc:
            logger.error("Embedding provider unreachable | model=%s error=%s", self._model, exc)
            raise EmbeddingProviderError(f"Embedding provider unreachable: {exc}") from exc

        data = getattr(response, "data", None) or []
        vector = list(data[0].embedding) if data and data[0].embedding else []

        logger.debug(
            "Embedding ok | model=%s chars=%d dims=%d api_ms=%.0f",
            self._model, len(text), len(vector), (time.monotonic() - t0) * 1000,
        )
        return vector

    async def aclose(self) -> None:
        await self._client.close()
