"""
Processing Jobs API Router

  POST  /api/v1/uploads               register an upload, get a presigned PUT URL
  PATCH /api/v1/jobs/{job_id}/stage   record a stage reported by a collaborator
  POST  /api/v1/jobs/process          run the indexing pipeline for one job

Request lifecycle (typical browser flow):
  ┌──────────────────────────────────────────────────────────────┐
  │ 1. POST /uploads → job (queued, stage=registered) + PUT URL  │
  │ 2. Browser PUTs the file straight to S3                      │
  │ 3. PATCH /jobs/{id}/stage {"stage": "uploaded"}              │
  │    → process_job published to Celery                         │
  │ 4. Worker (or POST /jobs/process) runs the pipeline          │
  └──────────────────────────────────────────────────────────────┘

Trigger outcome → HTTP mapping:
  missing configuration   500  {"error": "Server not configured", "missing": [...]}
  unknown job             404  {"error": "Job not found"}
  not queued / lost claim 200  {"message": "already processed"}
  success                 200  {"status": "completed", "jobId", "stage", "chunkCount"}
  unsupported target      400  {"status": "failed", "jobId", "error"}
  any other failure       500  {"status": "failed", "jobId", "error"}
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from app.core.config import Settings, get_settings
from app.core.errors import (
    AlreadyProcessed,
    ConfigurationError,
    NotFoundError,
    PersistenceError,
    PipelineError,
    StageTransitionError,
)
from app.db.session import get_session_factory
from app.schemas.jobs import (
    ErrorResponse,
    ProcessJobRequest,
    ProcessJobResponse,
    StageUpdateRequest,
    StageUpdateResponse,
    UploadRegistrationRequest,
    UploadRegistrationResponse,
)
from app.services import stage_tracker
from app.services.dispatch import TaskPublisher
from app.services.job_store import JobStore, SqlJobStore
from app.services.pipeline import DocumentIndexingPipeline
from app.services.stage_tracker import JobStage
from app.storage.s3 import S3DocumentFetcher
from app.storage.signing import AwsCredentials

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Processing Jobs"])

# Upload registration only needs storage access, not the embedding key
UPLOAD_REQUIRED_SETTINGS = ("AWS_REGION", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_S3_BUCKET")

PipelineFactory = Callable[[Settings, JobStore], DocumentIndexingPipeline]


# ---------------------------------------------------------------------------
# Dependencies (overridden in tests)
# ---------------------------------------------------------------------------

def get_job_store() -> JobStore:
    return SqlJobStore(get_session_factory())


def get_task_publisher() -> TaskPublisher:
    return TaskPublisher()


def get_pipeline_factory() -> PipelineFactory:
    return DocumentIndexingPipeline.from_settings


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message, **extra).body(),
    )


def _credentials(settings: Settings) -> AwsCredentials:
    return AwsCredentials(
        access_key_id=settings.aws_access_key_id,
        secret_access_key=settings.aws_secret_access_key,
        session_token=settings.aws_session_token or None,
    )


# ---------------------------------------------------------------------------
# POST /uploads
# ---------------------------------------------------------------------------

@router.post(
    "/uploads",
    response_model=UploadRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register an upload and get a presigned PUT URL",
    responses={
        422: {"model": ErrorResponse, "description": "Invalid request body"},
        500: {"model": ErrorResponse, "description": "Server not configured or registration failed"},
    },
)
async def register_upload(
    body:     UploadRegistrationRequest,
    store:    JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_settings),
):
    missing = [name for name in settings.missing_pipeline_config() if name in UPLOAD_REQUIRED_SETTINGS]
    if missing:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server not configured", missing=missing)

    storage_path = f"incoming/{uuid.uuid4()}-{body.file_name}"
    fetcher = S3DocumentFetcher(
        bucket=settings.s3_bucket,
        region=settings.aws_region,
        credentials=_credentials(settings),
    )
    presigned = fetcher.presigned_put(
        storage_path,
        content_type=body.file_type,
        expires_in=settings.presigned_url_ttl_seconds,
    )

    try:
        job = await store.create_job(
            file_name=body.file_name,
            file_type=body.file_type,
            file_size=body.file_size,
            storage_path=storage_path,
            analysis_target=body.analysis_target.value,
            metadata=stage_tracker.advance(body.metadata, JobStage.REGISTERED),
            user_id=str(body.user_id) if body.user_id else None,
        )
    except PersistenceError as exc:
        logger.error("Upload registration failed | file=%s error=%s", body.file_name, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to register job")

    return UploadRegistrationResponse(
        job_id=job.id,
        storage_path=storage_path,
        upload_url=presigned.url,
        expires_in=presigned.expires_in,
    )


# ---------------------------------------------------------------------------
# PATCH /jobs/{job_id}/stage
# ---------------------------------------------------------------------------

@router.patch(
    "/jobs/{job_id}/stage",
    response_model=StageUpdateResponse,
    summary="Record a job stage",
    responses={
        404: {"model": ErrorResponse, "description": "Job not found"},
        409: {"model": ErrorResponse, "description": "Job is failed; stage cannot change"},
        422: {"model": ErrorResponse, "description": "Invalid stage value"},
    },
)
async def update_stage(
    job_id:    str,
    body:      StageUpdateRequest,
    store:     JobStore      = Depends(get_job_store),
    publisher: TaskPublisher = Depends(get_task_publisher),
):
    job = await store.get_job(job_id)
    if job is None:
        return _error(status.HTTP_404_NOT_FOUND, "Job not found")

    timestamp = stage_tracker.isoformat()
    extra: dict[str, str] = {}
    if body.stage is JobStage.UPLOADED:
        extra["uploaded_at"] = timestamp
    elif body.stage is JobStage.INJECTED:
        extra["injected_at"] = timestamp

    try:
        metadata = stage_tracker.advance(job.metadata, body.stage, extra=extra)
    except StageTransitionError as exc:
        return _error(status.HTTP_409_CONFLICT, str(exc))

    try:
        await store.update_job(job.id, metadata=metadata)
    except PersistenceError as exc:
        logger.error("Stage update failed | job=%s error=%s", job_id, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to update job stage")

    logger.info("Stage recorded | job=%s stage=%s", job_id, body.stage.value)

    if body.stage is JobStage.UPLOADED and job.status == "queued":
        try:
            await publisher.publish_processing_task(job.id)
        except Exception as exc:
            # Non-fatal: the stale-job scanner re-queues uploaded jobs.
            logger.error("Failed to publish processing task | job=%s error=%s", job_id, exc)

    return StageUpdateResponse(job_id=job.id, stage=body.stage, metadata=metadata)


# ---------------------------------------------------------------------------
# POST /jobs/process
# ---------------------------------------------------------------------------

@router.post(
    "/jobs/process",
    response_model=ProcessJobResponse,
    response_model_exclude_none=True,
    summary="Run the indexing pipeline for one job",
    responses={
        400: {"model": ProcessJobResponse, "description": "Unsupported analysis target"},
        404: {"model": ErrorResponse, "description": "Job not found"},
        500: {"model": ErrorResponse, "description": "Server not configured or job failed"},
    },
)
async def process_job(
    body:             ProcessJobRequest,
    store:            JobStore        = Depends(get_job_store),
    settings:         Settings        = Depends(get_settings),
    pipeline_factory: PipelineFactory = Depends(get_pipeline_factory),
) -> JSONResponse:
    try:
        pipeline = pipeline_factory(settings, store)
        outcome = await pipeline.run(body.job_id)
    except ConfigurationError as exc:
        logger.error("Pipeline not configured | missing=%s", exc.missing)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server not configured", missing=exc.missing)
    except NotFoundError:
        return _error(status.HTTP_404_NOT_FOUND, "Job not found")
    except AlreadyProcessed:
        return JSONResponse(status_code=status.HTTP_200_OK, content={"message": "already processed"})
    except PipelineError as exc:
        logger.error("Pipeline error before processing | job=%s error=%s", body.job_id, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "failed", "jobId": body.job_id, "error": str(exc)},
        )

    return JSONResponse(status_code=outcome.http_status, content=outcome.to_response())
