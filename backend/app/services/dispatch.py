"""
Task dispatch — hands a job to the Celery worker.

The worker import is deferred so the API process never needs a broker
connection at module load time.
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class TaskPublisher:

    async def publish_processing_task(self, job_id: str, countdown: int = 0) -> None:
        """
        Dispatch process_job.apply_async() to the worker.
        Runs in a thread executor so broker I/O never blocks the event loop.
        """
        from app.workers.tasks import process_job

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: process_job.apply_async(
                kwargs={"job_id": str(job_id)},
                countdown=countdown,
            ),
        )
        logger.info("Processing task published | job=%s countdown=%d", job_id, countdown)
