"""
Job Store — persistence boundary for the indexing pipeline.

The pipeline depends on the abstract JobStore only; SqlJobStore is the
PostgreSQL implementation (SQLAlchemy 2.x async + asyncpg). Tests use an
in-memory fake with the same contract.

Contract highlights:
  claim_job()                 compare-and-swap: queued → processing; exactly
                              one concurrent caller wins
  upsert_extraction_result()  at most one analysis_results row per job
  replace_embeddings()        delete + insert in ONE transaction, so chunk
                              indices are always 0..n-1 for the job

Every database failure surfaces as PersistenceError.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import PersistenceError
from app.models.jobs import AnalysisResult, DocumentEmbedding, ProcessingJob

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------

@dataclass
class JobRecord:
    id:              str
    file_name:       str
    file_type:       str
    file_size:       int
    storage_path:    str
    analysis_target: str
    status:          str
    metadata:        dict = field(default_factory=dict)
    user_id:         Optional[str] = None
    created_at:      Optional[datetime] = None
    updated_at:      Optional[datetime] = None

    @classmethod
    def from_orm(cls, job: ProcessingJob) -> "JobRecord":
        return cls(
            id=str(job.id),
            file_name=job.file_name,
            file_type=job.file_type,
            file_size=job.file_size,
            storage_path=job.storage_path,
            analysis_target=job.analysis_target,
            status=job.status,
            metadata=dict(job.job_metadata or {}),
            user_id=str(job.user_id) if job.user_id else None,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


@dataclass(frozen=True)
class EmbeddingRow:
    chunk_index:     int
    chunk_text:      str
    embedding:       list[float]
    embedding_model: str
    metadata:        dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Abstract store
# ---------------------------------------------------------------------------

class JobStore(ABC):

    @abstractmethod
    async def get_job(self, job_id: str) -> JobRecord | None:
        """Return the job, or None if it does not exist."""

    @abstractmethod
    async def create_job(
        self,
        *,
        file_name:       str,
        file_type:       str,
        file_size:       int,
        storage_path:    str,
        analysis_target: str,
        metadata:        dict,
        user_id:         str | None = None,
        job_id:          str | None = None,
    ) -> JobRecord:
        """Insert a queued job."""

    @abstractmethod
    async def claim_job(self, job_id: str, metadata: dict) -> bool:
        """Atomically move queued → processing. False if someone else won."""

    @abstractmethod
    async def update_job(
        self,
        job_id:   str,
        *,
        status:   str | None = None,
        metadata: dict | None = None,
    ) -> None:
        """Overwrite status and/or metadata."""

    @abstractmethod
    async def upsert_extraction_result(
        self,
        job_id:       str,
        text:         str,
        raw_response: dict,
    ) -> None:
        """Insert or replace the job's single extraction result."""

    @abstractmethod
    async def replace_embeddings(self, job_id: str, rows: list[EmbeddingRow]) -> int:
        """Replace all embedding rows for the job in one transaction."""

    @abstractmethod
    async def list_stale_jobs(
        self,
        older_than: timedelta,
        stage:      str = "uploaded",
        limit:      int = 50,
    ) -> list[JobRecord]:
        """Queued jobs at `stage` not updated for `older_than`."""


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

def _parse_uuid(job_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(job_id))
    except ValueError:
        return None


class SqlJobStore(JobStore):
    """
    Usage:
        store = SqlJobStore(get_session_factory())
        job = await store.get_job(job_id)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_job(self, job_id: str) -> JobRecord | None:
        key = _parse_uuid(job_id)
        if key is None:
            return None
        try:
            async with self._session_factory() as session:
                job = await session.get(ProcessingJob, key)
                return JobRecord.from_orm(job) if job else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load job {job_id}: {exc}") from exc

    async def create_job(
        self,
        *,
        file_name:       str,
        file_type:       str,
        file_size:       int,
        storage_path:    str,
        analysis_target: str,
        metadata:        dict,
        user_id:         str | None = None,
        job_id:          str | None = None,
    ) -> JobRecord:
        job = ProcessingJob(
            id=_parse_uuid(job_id) if job_id else uuid.uuid4(),
            user_id=_parse_uuid(user_id) if user_id else None,
            file_name=file_name,
            file_type=file_type,
            file_size=file_size,
            storage_path=storage_path,
            analysis_target=analysis_target,
            status="queued",
            job_metadata=metadata,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(job)
                await session.refresh(job)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to register job: {exc}") from exc

        logger.info("Job registered | job=%s target=%s file=%s", job.id, analysis_target, file_name)
        return JobRecord.from_orm(job)

    async def claim_job(self, job_id: str, metadata: dict) -> bool:
        key = _parse_uuid(job_id)
        if key is None:
            return False
        stmt = (
            update(ProcessingJob)
            .where(ProcessingJob.id == key, ProcessingJob.status == "queued")
            .values(status="processing", job_metadata=metadata, updated_at=func.now())
            .returning(ProcessingJob.id)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    claimed = (await session.execute(stmt)).first() is not None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to claim job {job_id}: {exc}") from exc

        logger.info("Job claim | job=%s claimed=%s", job_id, claimed)
        return claimed

    async def update_job(
        self,
        job_id:   str,
        *,
        status:   str | None = None,
        metadata: dict | None = None,
    ) -> None:
        values: dict[str, Any] = {"updated_at": func.now()}
        if status is not None:
            values["status"] = status
        if metadata is not None:
            values["job_metadata"] = metadata

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(ProcessingJob)
                        .where(ProcessingJob.id == _parse_uuid(job_id))
                        .values(**values)
                    )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to update job {job_id}: {exc}") from exc

    async def upsert_extraction_result(
        self,
        job_id:       str,
        text:         str,
        raw_response: dict,
    ) -> None:
        stmt = pg_insert(AnalysisResult).values(
            job_id=_parse_uuid(job_id),
            ocr_text=text,
            textract_response=raw_response,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[AnalysisResult.job_id],
            set_={
                "ocr_text":          stmt.excluded.ocr_text,
                "textract_response": stmt.excluded.textract_response,
                "updated_at":        func.now(),
            },
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to store extraction result for job {job_id}: {exc}") from exc

    async def replace_embeddings(self, job_id: str, rows: list[EmbeddingRow]) -> int:
        key = _parse_uuid(job_id)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(DocumentEmbedding).where(DocumentEmbedding.job_id == key)
                    )
                    if rows:
                        await session.execute(
                            insert(DocumentEmbedding),
                            [
                                {
                                    "job_id":          key,
                                    "chunk_index":     row.chunk_index,
                                    "chunk_text":      row.chunk_text,
                                    "embedding":       row.embedding,
                                    "embedding_model": row.embedding_model,
                                    "chunk_metadata":  row.metadata,
                                }
                                for row in rows
                            ],
                        )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to store embeddings for job {job_id}: {exc}") from exc

        logger.info("Embeddings stored | job=%s rows=%d", job_id, len(rows))
        return len(rows)

    async def list_stale_jobs(
        self,
        older_than: timedelta,
        stage:      str = "uploaded",
        limit:      int = 50,
    ) -> list[JobRecord]:
        cutoff = datetime.now(timezone.utc) - older_than
        stmt = (
            select(ProcessingJob)
            .where(
                ProcessingJob.status == "queued",
                ProcessingJob.job_metadata["job_stage"].astext == stage,
                ProcessingJob.updated_at < cutoff,
            )
            .order_by(ProcessingJob.updated_at)
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                jobs = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to list stale jobs: {exc}") from exc
        return [JobRecord.from_orm(job) for job in jobs]
