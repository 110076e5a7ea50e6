"""
Watermark Pipeline Backend — FastAPI Application Factory
==========================================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() wires the pipeline (remote client, repositories, file
       storage, worker pool), middleware, exception handlers and routes.
Who:   uvicorn (`uvicorn watermark_pipeline.main:app`) and the test suite,
       which passes its own in-memory pipeline.

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware Chain:                                       │
    │  ┌────────────┐ ┌────────┐ ┌─────────┐ ┌──────┐ ┌──────┐ │
    │  │ Rate Limit │→│ Req ID │→│ Logging │→│ GZip │→│ CORS │ │
    │  └────────────┘ └────────┘ └─────────┘ └──────┘ └──────┘ │
    │                                                          │
    │  Routes:                                                 │
    │  ┌────────────────┐ ┌────────────────┐ ┌──────────────┐  │
    │  │ /api/watermark │ │ GET /api/files │ │ GET /health  │  │
    │  └────────────────┘ └────────────────┘ └──────────────┘  │
    │                                                          │
    │  app.state.pipeline ─▶ WatermarkPipeline ─▶ TaskWorkerPool│
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Validate configuration (logged, the server still starts)
    3. Create the storage directory
    4. Resume polling for tasks a previous run left 'processing'

    Shutdown:
    1. Cancel outstanding jobs (records stay 'processing')
    2. Close the remote client
    3. Dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from watermark_pipeline import __version__
from watermark_pipeline.config import settings
from watermark_pipeline.database import dispose_engine, engine
from watermark_pipeline.exceptions import (
    CircuitBreakerOpenError,
    DatabaseError,
    FileStorageError,
    NotFoundError,
    RateLimitExceededError,
    RemoteServiceError,
    SigningError,
    TaskStateError,
    UnsupportedFileTypeError,
    ValidationError,
    WatermarkPipelineError,
)
from watermark_pipeline.middleware.logging import RequestLoggingMiddleware
from watermark_pipeline.middleware.rate_limit import RateLimitMiddleware
from watermark_pipeline.middleware.request_id import RequestIDMiddleware, request_id_var
from watermark_pipeline.routes import files, health, watermark
from watermark_pipeline.services.file_service import FileService
from watermark_pipeline.services.pipeline import WatermarkPipeline
from watermark_pipeline.services.repositories import (
    SqlPolicyStore,
    SqlTaskStore,
    SqlWatermarkContentStore,
)
from watermark_pipeline.services.watermark_client import WatermarkServiceClient

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Request IDs are included by the access logger and by exception handlers.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Third-party libraries log every request/statement at INFO or DEBUG
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Pipeline Assembly
# ══════════════════════════════════════════════════════════════════════════

def build_default_pipeline() -> WatermarkPipeline:
    """SQL repositories, the signed httpx client and local file storage, all from settings."""
    return WatermarkPipeline(
        remote=WatermarkServiceClient(),
        tasks=SqlTaskStore(),
        contents=SqlWatermarkContentStore(),
        policies=SqlPolicyStore(),
        file_service=FileService(),
    )


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("Watermark Pipeline Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # The server still starts so /health can report the problem
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")

    storage = Path(settings.storage_root)
    storage.mkdir(parents=True, exist_ok=True)
    logger.info("Storage directory: %s", storage.resolve())

    pipeline: WatermarkPipeline = app.state.pipeline
    try:
        await pipeline.resume_unfinished()
    except WatermarkPipelineError as e:
        logger.error("Could not resume unfinished tasks: %s", e.message)

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("Watermark Pipeline Backend shutting down...")
    await pipeline.close()
    if getattr(app.state, "engine", None) is not None:
        await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: Optional[dict] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "details": details,
            "request_id": request_id_var.get(""),
        },
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map pipeline exceptions to HTTP status codes and one JSON error shape:
    {error, message, details, request_id}.

    Handler hierarchy:
        UnsupportedFileTypeError → 400 unsupported_file_type
        ValidationError          → 400 validation_error
        NotFoundError            → 404 not_found
        TaskStateError           → 409 task_state_error
        RateLimitExceededError   → 429 rate_limit_exceeded
        RemoteServiceError       → 502 remote_service_error
        CircuitBreakerOpenError  → 503 circuit_breaker_open
        SigningError, FileStorageError, DatabaseError → 500 (details logged only)
        Exception                → 500 internal_server_error

    Internal details (key material, paths, SQL) are logged, never returned.
    """

    @app.exception_handler(UnsupportedFileTypeError)
    async def handle_unsupported_type(request: Request, exc: UnsupportedFileTypeError):
        logger.warning("[%s] Unsupported file type: %s", request_id_var.get(""), exc.file_type)
        return _error_response(400, "unsupported_file_type", exc.message, exc.context)

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return _error_response(400, "validation_error", exc.message, exc.context)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error_response(404, "not_found", exc.message, exc.context)

    @app.exception_handler(TaskStateError)
    async def handle_task_state(request: Request, exc: TaskStateError):
        return _error_response(409, "task_state_error", exc.message, exc.context)

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return _error_response(
            429,
            "rate_limit_exceeded",
            exc.message,
            exc.context,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(RemoteServiceError)
    async def handle_remote_error(request: Request, exc: RemoteServiceError):
        logger.error(
            "[%s] Remote service error: %s | Context: %s",
            request_id_var.get(""),
            exc.message,
            exc.context,
        )
        return _error_response(
            502,
            "remote_service_error",
            exc.message,
            {"status_code": exc.status_code, "detail": exc.detail},
        )

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", request_id_var.get(""), exc.message)
        return _error_response(
            503,
            "circuit_breaker_open",
            exc.message,
            {"recovery_time": exc.recovery_time},
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(SigningError)
    async def handle_signing_error(request: Request, exc: SigningError):
        logger.error("[%s] Signing error: %s", request_id_var.get(""), exc.message)
        return _error_response(
            500, "signing_error", "The watermark service credentials are not configured."
        )

    @app.exception_handler(FileStorageError)
    async def handle_file_storage_error(request: Request, exc: FileStorageError):
        logger.error(
            "[%s] File storage error: %s | Context: %s",
            request_id_var.get(""),
            exc.message,
            exc.context,
        )
        return _error_response(500, "file_storage_error", exc.message)

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error(
            "[%s] Database error: %s | Context: %s",
            request_id_var.get(""),
            exc.message,
            exc.context,
        )
        return _error_response(
            500, "database_error", "An internal error occurred. Please try again later."
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return _error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(pipeline: Optional[WatermarkPipeline] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        pipeline: Pre-built pipeline (tests pass one with in-memory stores
                  and a fake remote). Defaults to the SQL-backed pipeline,
                  in which case the engine is also exposed to /health.
    """
    app = FastAPI(
        title="Watermark Pipeline API",
        description=(
            "Orchestrates document watermark embedding and extraction on a remote "
            "watermarking service: signed task creation, background status polling, "
            "provenance lookup and policy adaptation."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    if pipeline is None:
        pipeline = build_default_pipeline()
        app.state.engine = engine
    else:
        app.state.engine = None
    app.state.pipeline = pipeline

    # ── Register Middleware ───────────────────────────────────────────────
    # Executes in reverse order of addition:
    # RateLimit → RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Total-Count", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    app.include_router(watermark.router)
    app.include_router(files.router)
    app.include_router(health.router)

    return app


# ── Application Instance ─────────────────────────────────────────────────
app = create_app()
