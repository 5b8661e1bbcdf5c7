"""
Document Indexing Worker: HTTP entry point
══════════════════════════════════════════

Routes
  /api/v1/uploads, /api/v1/jobs/...   app.api.v1.jobs
  /health                             liveness, never touches the database
  /ready                              readiness, pings PostgreSQL

The API never receives file bytes: uploads go straight to S3 through a
presigned PUT, and the indexing pipeline runs either inline on
POST /api/v1/jobs/process or in the Celery worker.

Every 4xx/5xx body is the {"error": ...} envelope from app.schemas.jobs.
Each response carries X-Request-ID (echoed from the request or generated).

Run locally:
  uvicorn app.main:app --reload
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

from app.api.v1.jobs import router as jobs_router
from app.core.config import Settings, settings
from app.db.session import check_db_health, dispose_engine
from app.schemas.jobs import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

SERVICE_NAME = "document-indexing-worker"
REQUEST_ID_HEADER = "X-Request-ID"

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting %s | env=%s bucket=%s model=%s",
        SERVICE_NAME, settings.app_env, settings.s3_bucket or "-", settings.embedding_model,
    )
    missing = settings.missing_pipeline_config()
    if missing:
        # Upload registration may still work; /jobs/process will answer 500.
        logger.warning("Pipeline not configured | missing=%s", ",".join(missing))

    yield

    await dispose_engine()
    logger.info("Stopped %s", SERVICE_NAME)


# ---------------------------------------------------------------------------
# Middleware and exception handlers
# ---------------------------------------------------------------------------

async def tag_and_log_request(request: Request, call_next):
    """Attach X-Request-ID and log one line per request."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()

    response = await call_next(request)

    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "HTTP | method=%s path=%s status=%d elapsed_ms=%.1f request_id=%s",
        request.method, request.url.path, response.status_code,
        (time.perf_counter() - started) * 1000, request_id,
    )
    return response


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        ErrorDetail(
            field=".".join(str(part) for part in err["loc"]),
            message=err["msg"],
            code="VALIDATION_ERROR",
        )
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(error="Request validation failed", details=details).body(),
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    """Log the traceback; the client only sees the generic envelope."""
    request_id = getattr(request.state, "request_id", None) or uuid.uuid4().hex
    logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, request_id)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(error="Internal server error").body(),
        headers={REQUEST_ID_HEADER: request_id},
    )


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

async def liveness() -> dict:
    return {"status": "ok", "service": SERVICE_NAME}


async def readiness() -> JSONResponse:
    database = await check_db_health()
    ready = database["status"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "not_ready", "database": database},
    )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_app(config: Settings = settings) -> FastAPI:
    expose_docs = not config.is_production
    app = FastAPI(
        title="Document Indexing Worker",
        description="Upload registration, OCR text extraction and embedding indexing for stored documents.",
        version="1.0.0",
        docs_url="/api/docs" if expose_docs else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if expose_docs else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if config.app_env == "development" else [],
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["Content-Type", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )
    app.middleware("http")(tag_and_log_request)

    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(jobs_router, prefix="/api/v1")
    app.add_api_route("/health", liveness, methods=["GET"], tags=["Operations"], summary="Liveness probe")
    app.add_api_route("/ready", readiness, methods=["GET"], tags=["Operations"], summary="Readiness probe")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
