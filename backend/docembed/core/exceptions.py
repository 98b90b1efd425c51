"""
Pipeline error taxonomy.

Every failure the trigger endpoint can report is one of these classes.
The API layer renders them with a single exception handler; the
orchestrator records embedding_status=failed and re-raises them unchanged.

  Unauthorized          401  missing/invalid credential
  InvalidRequest        400  malformed body, missing documentId
  DocumentNotFound      404  unknown (or other-tenant) document
  PreconditionFailed    400  extraction not completed
  RateLimitExceeded     500  provider 429, retryable by re-triggering
  QuotaExhausted        500  provider 402, needs billing remediation
  EmbeddingTimeout      500  provider call exceeded its timeout, retryable
  EmbeddingShapeError   500  provider returned an unusable vector
  EmbeddingProviderError 500 any other non-2xx provider response
  StorageError          500  chunk/document store failure
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class; carries the HTTP mapping and a stable error code."""

    status_code: int  = 500
    error_code:  str  = "PIPELINE_ERROR"
    retryable:   bool = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class Unauthorized(PipelineError):
    status_code = 401
    error_code  = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class InvalidRequest(PipelineError):
    status_code = 400
    error_code  = "INVALID_REQUEST"


class DocumentNotFound(PipelineError):
    status_code = 404
    error_code  = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: object) -> None:
        self.document_id = document_id
        super().__init__("Document not found")


class PreconditionFailed(PipelineError):
    status_code = 400
    error_code  = "PRECONDITION_FAILED"


class EmbeddingProviderError(PipelineError):
    """Non-success response from the embedding provider."""

    error_code = "EMBEDDING_PROVIDER_ERROR"

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class RateLimitExceeded(EmbeddingProviderError):
    error_code = "RATE_LIMIT_EXCEEDED"
    retryable  = True

    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, status=429)


class QuotaExhausted(EmbeddingProviderError):
    error_code = "QUOTA_EXHAUSTED"

    def __init__(
        self,
        message: str = "AI credits exhausted. Please add credits to continue.",
    ) -> None:
        super().__init__(message, status=402)


class EmbeddingTimeout(EmbeddingProviderError):
    error_code = "EMBEDDING_TIMEOUT"
    retryable  = True

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Embedding request timed out after {timeout_seconds:.1f}s")


class EmbeddingShapeError(EmbeddingProviderError):
    error_code = "EMBEDDING_SHAPE_ERROR"


class StorageError(PipelineError):
    error_code = "STORAGE_ERROR"
