"""
FastAPI Application — Entry Point

Document ingestion pipeline API.

Architecture:
  - All routes are versioned under /api/v1/
  - The processing orchestrator and the execution coordinator are built once
    in the lifespan and shared through app.state
  - Uploads return 202; coordination (server path → worker → synchronous)
    runs in BackgroundTasks after the request transaction commits
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. Request ID injection + request logging with latency
  2. CORS — restricted to configured origins outside development
  3. Gzip — compress responses > 1 KB
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from docpipe.api.v1.auth import router as auth_router
from docpipe.api.v1.documents import router as documents_router
from docpipe.core.config import settings
from docpipe.db.session import check_db_health
from docpipe.schemas.documents import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: validate DB connectivity, wire the orchestrator + coordinator.
    Shutdown: dispose the connection pool.
    """
    from docpipe.services.coordinator import build_coordinator
    from docpipe.services.orchestrator import build_orchestrator

    logger.info(
        "Starting document pipeline | env=%s pdf_backend=%s server_path=%s worker_enabled=%s",
        settings.app_env,
        settings.pdf_backend,
        settings.processing_server_url or "-",
        settings.worker_enabled,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    orchestrator = build_orchestrator()
    coordinator  = build_coordinator(orchestrator)
    app.state.orchestrator = orchestrator
    app.state.dispatcher   = orchestrator.dispatcher
    app.state.coordinator  = coordinator

    logger.info("Database: connected")
    logger.info("S3 bucket: %s", settings.s3_bucket)
    logger.info("Execution paths: %s", " → ".join(coordinator.strategy_names))

    yield

    logger.info("Shutting down document pipeline")
    from docpipe.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Ingestion Pipeline",
        description=(
            "Turns uploaded documents into embedded, searchable chunks: "
            "extraction, chunking, embedding and dual-path execution."
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

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    allowed_origins = ["*"] if settings.app_env == "development" else settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
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

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(auth_router,      prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth: used by load balancer)
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "docpipe-api"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe")
    async def readiness(request: Request) -> JSONResponse:
        db_status   = await check_db_health()
        coordinator = getattr(request.app.state, "coordinator", None)
        body = {
            "database":        db_status,
            "execution_paths": coordinator.strategy_names if coordinator else [],
        }
        if db_status["status"] != "ok" or coordinator is None:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", **body},
            )
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready", **body})

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docpipe.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
