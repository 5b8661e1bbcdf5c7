"""
Pipeline error taxonomy.

    PipelineError
      ├── ConfigurationError      missing secret/env — raised before any job work
      ├── NotFoundError           job id does not exist
      ├── AlreadyProcessed        job is not 'queued' — idempotent no-op, NOT a failure
      ├── UnsupportedTargetError  content type / analysis target mismatch
      ├── ExtractionError         signing, fetch, provider failure, zero text, poll exhaustion
      ├── EmbeddingError          retries exhausted or deadline exceeded
      ├── PersistenceError        job store write failed
      └── StageTransitionError    illegal stage transition (e.g. out of 'failed')

Propagation rules live in app.services.pipeline: extraction-class errors fail
the job, indexing-class errors (EmbeddingError, PersistenceError) are logged
and the job keeps its extracted text.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the indexing pipeline."""


class ConfigurationError(PipelineError):
    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class NotFoundError(PipelineError):
    pass


class AlreadyProcessed(PipelineError):
    """Control-flow signal: the job was claimed (or finished) elsewhere."""

    def __init__(self, job_id: str, status: str | None = None) -> None:
        super().__init__(f"Job {job_id} already processed (status={status})")
        self.job_id = job_id
        self.status = status


class UnsupportedTargetError(PipelineError):
    pass


class ExtractionError(PipelineError):
    pass


class EmbeddingError(PipelineError):
    """
    completed : vectors produced before the failure
    total     : vectors requested
    """

    def __init__(self, message: str, completed: int = 0, total: int = 0) -> None:
        super().__init__(message)
        self.completed = completed
        self.total = total


class PersistenceError(PipelineError):
    pass


class StageTransitionError(PipelineError):
    pass
