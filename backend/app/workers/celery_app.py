"""
Celery Application Factory

Runs the indexing pipeline outside the API process.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) works for local dev.
Result backend: Redis (optional — job state lives in PostgreSQL).

Queue topology:
  jobs.ingest    — one task per uploaded document (process_job)
  jobs.requeue   — beat-driven scanner for jobs whose dispatch was lost

Task arguments are logged by Celery; only job ids travel in messages.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from app.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

JOBS_EXCHANGE = Exchange("jobs", type="direct", durable=True)

TASK_QUEUES = (
    Queue("jobs.ingest",  exchange=JOBS_EXCHANGE, routing_key="jobs.ingest",  durable=True),
    Queue("jobs.requeue", exchange=JOBS_EXCHANGE, routing_key="jobs.requeue", durable=True),
)

TASK_ROUTES = {
    "app.workers.tasks.process_job":        {"queue": "jobs.ingest"},
    "app.workers.tasks.requeue_stale_jobs": {"queue": "jobs.requeue"},
}

# Pipeline budget is 50 s; the soft limit leaves room to record the outcome
PROCESS_SOFT_TIME_LIMIT = 55
PROCESS_HARD_TIME_LIMIT = 60

REQUEUE_INTERVAL_SECONDS = 60


# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("document_indexing")

    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="jobs.ingest",
        task_default_exchange="jobs",
        task_default_routing_key="jobs.ingest",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,   # one job at a time per worker process

        # --- Timeouts ---
        task_soft_time_limit=PROCESS_SOFT_TIME_LIMIT,
        task_time_limit=PROCESS_HARD_TIME_LIMIT,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale-job scanner) ---
        beat_schedule={
            "requeue-stale-jobs-every-60s": {
                "task":     "app.workers.tasks.requeue_stale_jobs",
                "schedule": REQUEUE_INTERVAL_SECONDS,
                "options":  {"queue": "jobs.requeue"},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["app.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s job=%s",
        task_id, task.name, (kwargs or {}).get("job_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s job=%s",
        task_id, task.name, state, (kwargs or {}).get("job_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s job=%s error=%s",
        task_id, (kwargs or {}).get("job_id", "-"), exception,
        exc_info=True,
    )
