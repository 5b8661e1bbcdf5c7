"""
Processing Jobs — Pydantic Request/Response Schemas

Wire format is camelCase (jobId, fileName, …) for the browser client;
Python attributes stay snake_case. Every model accepts either spelling on
input.

Covers:
  - POST  /api/v1/uploads                 upload registration
  - PATCH /api/v1/jobs/{job_id}/stage     collaborator stage reports
  - POST  /api/v1/jobs/process            pipeline trigger
  - Uniform error envelope {"error": ..., "missing"?: [...], "details"?: [...]}
"""

from __future__ import annotations

import posixpath
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.services.stage_tracker import JobStage

# 500 MB: Textract's async API limit for PDF/TIFF
MAX_FILE_SIZE_BYTES: int = 500 * 1024 * 1024


class AnalysisTarget(str, Enum):
    DOCUMENT_ANALYSIS   = "document-analysis"
    IMAGE_OCR           = "image-ocr"
    IMAGE_GENERATION    = "image-generation"
    AUDIO_TRANSCRIPTION = "audio-transcription"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Upload registration: POST /uploads
# ---------------------------------------------------------------------------

class UploadRegistrationRequest(CamelModel):
    file_name:       str            = Field(..., min_length=1, max_length=255)
    file_type:       str            = Field(..., min_length=1, max_length=255, description="MIME type the client will upload with")
    file_size:       int            = Field(..., ge=0, le=MAX_FILE_SIZE_BYTES)
    analysis_target: AnalysisTarget
    user_id:         Optional[UUID] = None
    metadata:        Optional[dict[str, Any]] = None

    @field_validator("file_name")
    @classmethod
    def strip_directories(cls, value: str) -> str:
        """Keep only the final path segment; the server chooses the prefix."""
        name = posixpath.basename(value.replace("\\", "/")).strip()
        if not name or name in (".", ".."):
            raise ValueError("fileName must name a file")
        return name


class UploadRegistrationResponse(CamelModel):
    job_id:       UUID
    storage_path: str = Field(..., description="S3 key the client must PUT to")
    upload_url:   str = Field(..., description="Presigned PUT URL; Content-Type must equal fileType")
    expires_in:   int = Field(..., description="Upload URL lifetime in seconds")
    message:      str = "Upload registered. Upload file using provided URL."


# ---------------------------------------------------------------------------
# Stage updates: PATCH /jobs/{job_id}/stage
# ---------------------------------------------------------------------------

class StageUpdateRequest(CamelModel):
    stage: JobStage


class StageUpdateResponse(CamelModel):
    job_id:   UUID
    stage:    JobStage
    metadata: dict[str, Any]


# ---------------------------------------------------------------------------
# Trigger: POST /jobs/process
# ---------------------------------------------------------------------------

class ProcessJobRequest(CamelModel):
    job_id: str = Field(..., min_length=1)


class ProcessJobResponse(CamelModel):
    """Success or failure body; which fields are present depends on status."""
    status:         Optional[str] = None
    job_id:         Optional[str] = None
    stage:          Optional[str] = None
    chunk_count:    Optional[int] = None
    error:          Optional[str] = None
    indexing_error: Optional[str] = None
    message:        Optional[str] = None


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str


class ErrorResponse(BaseModel):
    error:   str
    missing: list[str] | None = Field(None, description="Unset configuration variables")
    details: list[ErrorDetail] | None = None

    def body(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
