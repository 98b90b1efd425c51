"""
FastAPI Application — Entry Point

Document Embedding Service

Architecture:
  - All routes are versioned under /api/v1/
  - Callers authenticate with the service-role key or a user JWT (AccessGate)
  - The embedding orchestrator is a process-wide singleton (auth/dependencies.py)
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS — browser clients call the trigger endpoint directly; preflight
     OPTIONS requests are answered here
  2. Request ID injection — X-Request-ID header on every response
  3. Request logging — one log line per request with latency

Error bodies:
  4xx  { "error": ..., "errorCode": ..., "requestId": ... }
  5xx  { "success": false, "error": ..., "errorCode": ..., "requestId": ... }
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docembed.api.v1.documents import router as documents_router
from docembed.api.v1.embeddings import router as embeddings_router
from docembed.core.config import settings
from docembed.core.exceptions import PipelineError, RateLimitExceeded
from docembed.db.session import check_db_health
from docembed.schemas.documents import ErrorBody

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


def _error_response(
    status_code: int,
    message:     str,
    request_id:  str | None,
    error_code:  str | None = None,
    headers:     dict | None = None,
) -> JSONResponse:
    body = ErrorBody(
        success=False if status_code >= 500 else None,
        error=message,
        error_code=error_code,
        request_id=request_id,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: validate DB connectivity, log config summary.
    Run on shutdown: flush usage recordings, clean up connection pools.
    """
    logger.info(
        "Starting embedding service | env=%s model=%s dims=%d",
        settings.app_env, settings.embedding_model, settings.embedding_dimensions,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    logger.info("Database: connected")
    logger.info("Auth issuer: %s", settings.auth_issuer or "-")
    if not settings.service_role_key:
        logger.warning("SERVICE_ROLE_KEY is not set; only user tokens will be accepted")

    yield

    logger.info("Shutting down embedding service")
    from docembed.auth.dependencies import get_orchestrator, get_usage_recorder
    from docembed.db.session import engine
    await get_usage_recorder().drain()
    if get_orchestrator.cache_info().currsize:
        await get_orchestrator().aclose()
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Embedding Service",
        description=(
            "Chunks extracted document text, embeds each chunk and stores "
            "the vectors for retrieval."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "GET", "OPTIONS"],
        allow_headers=[
            "authorization", "x-client-info", "apikey", "content-type", "x-request-id",
        ],
        expose_headers=["X-Request-ID"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    def _request_id(request: Request) -> str | None:
        return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError):
        if exc.status_code >= 500:
            logger.error(
                "Pipeline failure | path=%s error_code=%s error=%s",
                request.url.path, exc.error_code, exc.message,
            )
        headers = None
        if isinstance(exc, RateLimitExceeded) and exc.retry_after is not None:
            headers = {"Retry-After": str(int(exc.retry_after))}
        return _error_response(
            exc.status_code, exc.message, _request_id(request), exc.error_code, headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Validation errors render as 400 { error } with the first problem."""
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(loc) for loc in first.get("loc", ()) if loc != "body")
            message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
        else:
            message = "Invalid request"
        return _error_response(
            status.HTTP_400_BAD_REQUEST, message, _request_id(request), "VALIDATION_ERROR",
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = _request_id(request) or str(uuid.uuid4())
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "An unexpected error occurred.",
            request_id,
            "INTERNAL_ERROR",
            {"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(embeddings_router, prefix="/api/v1")
    app.include_router(documents_router,  prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth: used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness check",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "docembed-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness check",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docembed.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
