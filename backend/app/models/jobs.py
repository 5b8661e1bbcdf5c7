"""
SQLAlchemy ORM Models — Processing Jobs, Extraction Results & Embeddings

Three tables, one job at the center:

    processing_jobs ──1:1── analysis_results
          │
          └──────1:N── document_embeddings   (one row per chunk)

Stage bookkeeping lives in processing_jobs.metadata (JSONB) and is owned by
app.services.stage_tracker; the ORM never interprets it.

Vectors are stored as PostgreSQL REAL[] so the write side needs no
extension; the similarity-search side can cast to its own vector type.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, REAL, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JOB_STATUSES = ("queued", "processing", "completed", "failed")

ANALYSIS_TARGETS = (
    "document-analysis",
    "image-ocr",
    "image-generation",
    "audio-transcription",
)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# ProcessingJob: processing_jobs
# ---------------------------------------------------------------------------

class ProcessingJob(Base):
    """
    One uploaded file on its way from upload → extraction → indexing.

    Status column (coarse, drives claiming):
        queued      — registered, waiting for a worker
        processing  — claimed by exactly one worker
        completed   — text extracted (indexing may still have failed;
                      see metadata.indexing_error)
        failed      — terminal; see metadata.error

    Fine-grained progress is metadata.job_stage + job_stage_history.
    """

    __tablename__ = "processing_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')",
            name="processing_jobs_status_check",
        ),
        Index("idx_processing_jobs_status", "status", "created_at"),
        Index("idx_processing_jobs_user_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    file_name: Mapped[str]    = mapped_column(Text, nullable=False)
    file_type: Mapped[str]    = mapped_column(Text, nullable=False, comment="Declared MIME type")
    file_size: Mapped[int]    = mapped_column(BigInteger, nullable=False, default=0)
    storage_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="S3 object key inside the configured bucket: incoming/<uuid>-<file_name>",
    )
    analysis_target: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="queued",
        server_default="queued",
    )
    job_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessingJob id={self.id} status={self.status} "
            f"target={self.analysis_target} file={self.file_name!r}>"
        )


# ---------------------------------------------------------------------------
# AnalysisResult: analysis_results
# ---------------------------------------------------------------------------

class AnalysisResult(Base):
    """Extracted text plus the raw provider response. At most one per job."""

    __tablename__ = "analysis_results"
    __table_args__ = (
        UniqueConstraint("job_id", name="uq_analysis_results_job_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("processing_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    ocr_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    textract_response: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


# ---------------------------------------------------------------------------
# DocumentEmbedding: document_embeddings
# ---------------------------------------------------------------------------

class DocumentEmbedding(Base):
    """One chunk of a job's text and its embedding vector."""

    __tablename__ = "document_embeddings"
    __table_args__ = (
        UniqueConstraint("job_id", "chunk_index", name="uq_document_embeddings_position"),
        Index("idx_document_embeddings_job_id", "job_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("processing_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int]     = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str]      = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(ARRAY(REAL), nullable=False)
    embedding_model: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="char_position, estimated_tokens",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
