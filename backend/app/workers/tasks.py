"""
Celery Tasks — Document Indexing

Task: process_job
  Runs DocumentIndexingPipeline for one job id. The pipeline itself owns
  every status/stage write; the task only maps the outcome to a JSON-safe
  result and lets unexpected errors reach Celery's task_failure signal.
  No Celery-level retries: a failed job is terminal, and a lost claim is
  "already processed".

Task: requeue_stale_jobs
  Beat task — re-publishes jobs still queued at stage "uploaded" for more
  than 5 minutes. Covers broker failures between the stage report and the
  original dispatch. Duplicate deliveries are harmless: the claim is a
  compare-and-swap.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from datetime import timedelta
from typing import Any, Callable

from celery import Task

from app.core.config import Settings, get_settings
from app.core.errors import AlreadyProcessed, ConfigurationError, NotFoundError
from app.db.session import isolated_session_factory
from app.services.job_store import JobStore, SqlJobStore
from app.services.pipeline import DocumentIndexingPipeline
from app.workers.celery_app import PROCESS_HARD_TIME_LIMIT, PROCESS_SOFT_TIME_LIMIT, celery_app

logger = logging.getLogger(__name__)

STALE_AFTER   = timedelta(minutes=5)
REQUEUE_LIMIT = 50


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.process_job",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=PROCESS_SOFT_TIME_LIMIT,
    time_limit=PROCESS_HARD_TIME_LIMIT,
)
def process_job(self: Task, *, job_id: str) -> dict[str, Any]:
    return run_async(_process_job_async(job_id))


async def _process_job_async(job_id: str) -> dict[str, Any]:
    async with isolated_session_factory() as session_factory:
        return await run_job(job_id, SqlJobStore(session_factory), get_settings())


async def run_job(
    job_id:           str,
    store:            JobStore,
    settings:         Settings,
    pipeline_factory: Callable[[Settings, JobStore], DocumentIndexingPipeline] = DocumentIndexingPipeline.from_settings,
) -> dict[str, Any]:
    """Run the pipeline and return the same body the HTTP trigger would."""
    try:
        pipeline = pipeline_factory(settings, store)
        outcome = await pipeline.run(job_id)
    except ConfigurationError as exc:
        logger.error("Pipeline not configured | job=%s missing=%s", job_id, exc.missing)
        return {"error": "Server not configured", "missing": exc.missing}
    except NotFoundError:
        logger.warning("Job not found | job=%s", job_id)
        return {"error": "Job not found", "jobId": job_id}
    except AlreadyProcessed:
        return {"message": "already processed", "jobId": job_id}

    return outcome.to_response()


# ---------------------------------------------------------------------------
# Stale-job scanner: runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.requeue_stale_jobs",
    acks_late=True,
    soft_time_limit=25,
    time_limit=30,
)
def requeue_stale_jobs() -> dict[str, int]:
    return run_async(_requeue_stale_jobs_async())


async def _requeue_stale_jobs_async() -> dict[str, int]:
    async with isolated_session_factory() as session_factory:
        return await requeue_jobs(SqlJobStore(session_factory))


async def requeue_jobs(store: JobStore) -> dict[str, int]:
    jobs = await store.list_stale_jobs(older_than=STALE_AFTER, stage="uploaded", limit=REQUEUE_LIMIT)
    for job in jobs:
        process_job.apply_async(kwargs={"job_id": job.id}, countdown=5)
        logger.info("Re-queued stale job | job=%s file=%s", job.id, job.file_name)
    return {"requeued": len(jobs)}
