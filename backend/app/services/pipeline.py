"""
Document Indexing Pipeline — one job, one invocation
════════════════════════════════════════════════════

Flow (sequential, single budget):

    load job ──► status ≠ queued? ──► AlreadyProcessed (no writes)
       │
    claim (CAS queued → processing, stage=processing)
       │                                     lost race ──► AlreadyProcessed
    extract (deadline = budget) ──► store analysis_results ──► status=completed, stage=extracted
       │  ExtractionError / UnsupportedTargetError / PersistenceError
       │        └──► status=failed, stage=failed, metadata.error
       │
    ≥ 5 s of budget left?  no ──► stop at extracted (indexing_skipped)
       │
    chunk ──► embed (deadline = remaining budget) ──► write rows
       │                                               └──► stage=indexed
       │  EmbeddingError / PersistenceError
       └──► metadata.indexing_error; job stays completed at extracted

Phase ordering is strict: a job never reaches "indexed" without its
extraction result being stored first.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import httpx

from app.core.config import Settings
from app.core.errors import (
    AlreadyProcessed,
    ConfigurationError,
    EmbeddingError,
    ExtractionError,
    NotFoundError,
    PersistenceError,
    UnsupportedTargetError,
)
from app.processing.chunking import SemanticChunker
from app.processing.embeddings import EmbeddingBatcher, build_batcher
from app.processing.extractor import ExtractionEngine, ExtractionResult
from app.services import stage_tracker
from app.services.index_writer import IndexWriter
from app.services.job_store import JobRecord, JobStore
from app.services.stage_tracker import JobStage
from app.storage.signing import AwsCredentials

logger = logging.getLogger(__name__)

PIPELINE_BUDGET_SECONDS     = 50.0
MIN_INDEXING_BUDGET_SECONDS = 5.0


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

@dataclass
class PipelineOutcome:
    """
    Result of one run that got past the claim.

    status         : "completed" | "failed"
    stage          : stage recorded at the end of the run
    chunk_count    : rows written to document_embeddings (0 if not indexed)
    error          : failure reason (status == "failed")
    indexing_error : indexing failure on an otherwise completed job
    unsupported    : True if the failure was an UnsupportedTargetError
    """
    status:         str
    job_id:         str
    stage:          Optional[str]
    chunk_count:    int = 0
    error:          Optional[str] = None
    indexing_error: Optional[str] = None
    unsupported:    bool = False
    elapsed_ms:     float = 0.0

    @property
    def http_status(self) -> int:
        if self.status == "completed":
            return 200
        return 400 if self.unsupported else 500

    def to_response(self) -> dict[str, Any]:
        if self.status == "failed":
            return {"status": "failed", "jobId": self.job_id, "error": self.error}
        body: dict[str, Any] = {
            "status":     "completed",
            "jobId":      self.job_id,
            "stage":      self.stage,
            "chunkCount": self.chunk_count,
        }
        if self.indexing_error:
            body["indexingError"] = self.indexing_error
        return body


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class DocumentIndexingPipeline:
    """
    Usage:
        pipeline = DocumentIndexingPipeline.from_settings(settings, store)
        outcome  = await pipeline.run(job_id)

    Raises (before any job write):
        NotFoundError      job id unknown
        AlreadyProcessed   job not queued, or the claim was lost
    """

    def __init__(
        self,
        store:                JobStore,
        extraction:           ExtractionEngine,
        embedder:             EmbeddingBatcher,
        chunker:              SemanticChunker | None = None,
        index_writer:         IndexWriter | None = None,
        budget_seconds:       float = PIPELINE_BUDGET_SECONDS,
        min_indexing_seconds: float = MIN_INDEXING_BUDGET_SECONDS,
        clock:                Callable[[], float] = time.monotonic,
        now:                  Callable[[], datetime] | None = None,
    ) -> None:
        self._store                = store
        self._extraction           = extraction
        self._embedder             = embedder
        self._chunker              = chunker or SemanticChunker()
        self._writer               = index_writer or IndexWriter(store)
        self._budget_seconds       = budget_seconds
        self._min_indexing_seconds = min_indexing_seconds
        self._clock                = clock
        self._now                  = now

    @classmethod
    def from_settings(
        cls,
        settings:    Settings,
        store:       JobStore,
        http_client: httpx.AsyncClient | None = None,
    ) -> "DocumentIndexingPipeline":
        """
        Raises:
            ConfigurationError: a mandatory setting is missing
        """
        missing = settings.missing_pipeline_config()
        if missing:
            raise ConfigurationError("Server not configured", missing=missing)

        credentials = AwsCredentials(
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            session_token=settings.aws_session_token or None,
        )
        return cls(
            store=store,
            extraction=ExtractionEngine.from_settings(settings, credentials, http_client=http_client),
            embedder=build_batcher(settings),
            chunker=SemanticChunker(
                target_size=settings.chunk_target_size,
                overlap=settings.chunk_overlap,
            ),
            budget_seconds=settings.pipeline_budget_seconds,
            min_indexing_seconds=settings.min_indexing_budget_seconds,
        )

    def _timestamp(self) -> datetime | None:
        return self._now() if self._now else None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, job_id: str) -> PipelineOutcome:
        started  = self._clock()
        deadline = started + self._budget_seconds

        job = await self._store.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if job.status != "queued":
            logger.info("Job already processed | job=%s status=%s", job_id, job.status)
            raise AlreadyProcessed(job_id, job.status)

        metadata = stage_tracker.advance(
            job.metadata,
            JobStage.PROCESSING,
            extra={"processing_started_at": stage_tracker.isoformat(self._timestamp())},
            now=self._timestamp(),
        )
        if not await self._store.claim_job(job_id, metadata):
            logger.info("Job claim lost | job=%s", job_id)
            raise AlreadyProcessed(job_id, "processing")

        logger.info(
            "Pipeline start | job=%s target=%s file=%s type=%s",
            job_id, job.analysis_target, job.file_name, job.file_type,
        )

        # ── Phase 1: extraction (failure fails the job) ──────────────────
        try:
            extraction = await self._extract(job, deadline)
        except (ExtractionError, UnsupportedTargetError, PersistenceError) as exc:
            await self._mark_failed(job_id, metadata, str(exc))
            return PipelineOutcome(
                status="failed",
                job_id=job_id,
                stage=JobStage.FAILED.value,
                error=str(exc),
                unsupported=isinstance(exc, UnsupportedTargetError),
                elapsed_ms=(self._clock() - started) * 1000,
            )
        except Exception as exc:
            logger.exception("Pipeline crashed during extraction | job=%s", job_id)
            await self._mark_failed(job_id, metadata, f"Unexpected error: {exc}")
            raise

        metadata = stage_tracker.advance(
            metadata,
            JobStage.EXTRACTED,
            extra={
                "extracted_at":        stage_tracker.isoformat(self._timestamp()),
                "content_length":      extraction.total_chars,
                "extraction_strategy": extraction.strategy_used,
                "truncated":           extraction.truncated,
            },
            now=self._timestamp(),
        )
        try:
            await self._store.update_job(job_id, status="completed", metadata=metadata)
        except PersistenceError as exc:
            await self._mark_failed(job_id, metadata, str(exc))
            return PipelineOutcome(
                status="failed",
                job_id=job_id,
                stage=JobStage.FAILED.value,
                error=str(exc),
                elapsed_ms=(self._clock() - started) * 1000,
            )

        # ── Phase 2: indexing (failure keeps the extracted text) ─────────
        outcome = await self._index(job_id, extraction.full_text, metadata, deadline)
        outcome.elapsed_ms = (self._clock() - started) * 1000
        logger.info(
            "Pipeline done | job=%s stage=%s chunks=%d elapsed_ms=%.0f",
            job_id, outcome.stage, outcome.chunk_count, outcome.elapsed_ms,
        )
        return outcome

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _extract(self, job: JobRecord, deadline: float) -> ExtractionResult:
        if not job.storage_path:
            raise ExtractionError("Job missing storage path")

        result = await self._extraction.extract(
            key=job.storage_path,
            file_type=job.file_type,
            file_name=job.file_name,
            analysis_target=job.analysis_target,
            deadline=deadline,
            clock=self._clock,
        )
        await self._store.upsert_extraction_result(job.id, result.full_text, result.raw_response)
        return result

    async def _index(
        self,
        job_id:   str,
        text:     str,
        metadata: dict,
        deadline: float,
    ) -> PipelineOutcome:
        remaining = deadline - self._clock()
        if remaining < self._min_indexing_seconds:
            return await self._stop_at_extracted(
                job_id, metadata,
                skipped=f"Insufficient time budget for indexing ({remaining:.1f}s left)",
            )

        chunks = self._chunker.chunk(text, job_id=job_id)
        if not chunks:
            return await self._stop_at_extracted(job_id, metadata, skipped="No text to index")

        try:
            vectors = await self._embedder.embed(
                [chunk.text for chunk in chunks],
                deadline_seconds=deadline - self._clock(),
            )
            if self._clock() >= deadline:
                raise EmbeddingError(
                    "Deadline passed before embeddings could be written",
                    completed=len(vectors),
                    total=len(chunks),
                )
            written = await self._writer.write(job_id, chunks, vectors, self._embedder.model)

            metadata = stage_tracker.advance(
                metadata,
                JobStage.INDEXED,
                extra={
                    "indexed_at":      stage_tracker.isoformat(self._timestamp()),
                    "chunk_count":     written,
                    "embedding_model": self._embedder.model,
                },
                now=self._timestamp(),
            )
            await self._store.update_job(job_id, metadata=metadata)
        except (EmbeddingError, PersistenceError) as exc:
            logger.error("Indexing failed | job=%s error=%s", job_id, exc)
            return await self._stop_at_extracted(job_id, metadata, error=str(exc))

        return PipelineOutcome(
            status="completed",
            job_id=job_id,
            stage=JobStage.INDEXED.value,
            chunk_count=written,
        )

    async def _stop_at_extracted(
        self,
        job_id:   str,
        metadata: dict,
        skipped:  str | None = None,
        error:    str | None = None,
    ) -> PipelineOutcome:
        extra = {"indexing_error": error} if error else {"indexing_skipped": skipped}
        if skipped:
            logger.warning("Indexing skipped | job=%s reason=%s", job_id, skipped)
        try:
            await self._store.update_job(job_id, metadata={**metadata, **extra})
        except PersistenceError as exc:
            logger.error("Could not record indexing outcome | job=%s error=%s", job_id, exc)

        return PipelineOutcome(
            status="completed",
            job_id=job_id,
            stage=JobStage.EXTRACTED.value,
            indexing_error=error,
        )

    async def _mark_failed(self, job_id: str, metadata: dict, reason: str) -> None:
        logger.error("Job failed | job=%s reason=%s", job_id, reason)
        failed = stage_tracker.fail(metadata, reason, now=self._timestamp())
        try:
            await self._store.update_job(job_id, status="failed", metadata=failed)
        except PersistenceError as exc:
            logger.error("Could not mark job failed | job=%s error=%s", job_id, exc)
