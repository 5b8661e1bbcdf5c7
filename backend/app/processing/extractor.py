"""
Text Extraction Orchestrator
════════════════════════════

Selects the extraction strategy for a job and runs it.

Strategy selection (first match wins):
  1.  Flat-text content type or extension → FlatTextExtractor
      (whatever the analysis target says — a CSV is never OCR'd)
  2.  Analysis target not extractable     → UnsupportedTargetError
  3.  document-analysis + PDF/TIFF        → MultiPageExtractor
  4.  image/png, image/jpeg or image-ocr  → SingleImageExtractor
  5.  anything else                       → UnsupportedTargetError

Content type comes from the job record; when it is generic
(application/octet-stream or empty) it is guessed from the file name.

This module is the only place that knows about strategy precedence.
The pipeline only sees ExtractionResult.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
from dataclasses import dataclass

import httpx

from app.core.config import Settings
from app.core.errors import UnsupportedTargetError
from app.processing.ocr import (
    MULTI_PAGE_CONTENT_TYPES,
    BaseTextExtractor,
    Clock,
    DocumentRef,
    FlatTextExtractor,
    MultiPageExtractor,
    Sleeper,
    SingleImageExtractor,
)
from app.processing.textract import TextractClient
from app.storage.s3 import S3DocumentFetcher
from app.storage.signing import AwsCredentials

logger = logging.getLogger(__name__)

FLAT_TEXT = "flat-text"
SINGLE_IMAGE = "single-image"
MULTI_PAGE = "multi-page"

FLAT_TEXT_CONTENT_TYPES = frozenset({
    "text/csv",
    "text/tab-separated-values",
    "application/vnd.ms-excel",
    "text/plain",
    "text/markdown",
})
FLAT_TEXT_EXTENSIONS = frozenset({".csv", ".tsv", ".txt", ".md"})

IMAGE_CONTENT_TYPES = frozenset({"image/png", "image/jpeg"})

EXTRACTABLE_TARGETS = frozenset({"document-analysis", "image-ocr"})

_GENERIC_CONTENT_TYPES = frozenset({"", "application/octet-stream", "binary/octet-stream"})

_EXTENSION_OVERRIDES = {
    ".md":   "text/markdown",
    ".tsv":  "text/tab-separated-values",
    ".jpg":  "image/jpeg",
    ".tif":  "image/tiff",
}


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    Extraction output returned to the pipeline.

    full_text      : extracted text, lines joined with "\n"
    raw_response   : provider payload stored in analysis_results
    strategy_used  : "flat-text" | "single-image" | "multi-page"
    content_type   : resolved content type used for selection
    used_ocr       : True if Textract was invoked
    total_chars    : len(full_text)
    elapsed_ms     : extraction wall time (ms)
    line_count     : LINE blocks (0 for flat text)
    truncated      : True if the flat-text cap applied
    """
    full_text:     str
    raw_response:  dict
    strategy_used: str
    content_type:  str
    used_ocr:      bool
    total_chars:   int
    elapsed_ms:    float
    line_count:    int  = 0
    truncated:     bool = False


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def _get_extension(file_name: str) -> str:
    return os.path.splitext(file_name or "")[1].lower()


def resolve_content_type(file_type: str | None, file_name: str | None) -> str:
    """Job content type, or a guess from the extension when it is generic."""
    content_type = (file_type or "").split(";")[0].strip().lower()
    if content_type == "image/jpg":
        content_type = "image/jpeg"
    if content_type not in _GENERIC_CONTENT_TYPES:
        return content_type

    ext = _get_extension(file_name or "")
    if ext in _EXTENSION_OVERRIDES:
        return _EXTENSION_OVERRIDES[ext]
    guessed, _ = mimetypes.guess_type(file_name or "")
    return guessed or "application/octet-stream"


def is_flat_text(content_type: str, file_name: str | None) -> bool:
    return (
        content_type in FLAT_TEXT_CONTENT_TYPES
        or _get_extension(file_name or "") in FLAT_TEXT_EXTENSIONS
    )


def select_strategy(
    content_type:    str,
    file_name:       str | None,
    analysis_target: str | None,
) -> str:
    """
    Return the strategy name for a job.

    Raises:
        UnsupportedTargetError: target not extractable, or no strategy fits
    """
    if is_flat_text(content_type, file_name):
        return FLAT_TEXT

    if analysis_target not in EXTRACTABLE_TARGETS:
        raise UnsupportedTargetError(
            f"Analysis target {analysis_target!r} does not support text extraction"
        )

    if analysis_target == "document-analysis" and content_type in MULTI_PAGE_CONTENT_TYPES:
        return MULTI_PAGE
    if content_type in IMAGE_CONTENT_TYPES or analysis_target == "image-ocr":
        return SINGLE_IMAGE

    raise UnsupportedTargetError(
        f"Content type {content_type!r} is not supported for {analysis_target}"
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ExtractionEngine:
    """
    Builds a fresh strategy per document (strategies are single-use state
    machines) and normalizes the result.

    Usage:
        engine = ExtractionEngine.from_settings(settings, credentials)
        result = await engine.extract(job.storage_path, job.file_type, job.file_name, job.analysis_target)
    """

    def __init__(
        self,
        fetcher:             S3DocumentFetcher,
        textract:            TextractClient,
        flat_text_max_chars: int     = 500_000,
        poll_attempts:       int     = 12,
        initial_poll_delay:  float   = 1.5,
        poll_delay:          float   = 4.0,
        max_results:         int     = 1000,
        sleep:               Sleeper = asyncio.sleep,
    ) -> None:
        self._fetcher             = fetcher
        self._textract            = textract
        self._flat_text_max_chars = flat_text_max_chars
        self._poll_attempts       = poll_attempts
        self._initial_poll_delay  = initial_poll_delay
        self._poll_delay          = poll_delay
        self._max_results         = max_results
        self._sleep               = sleep

    @classmethod
    def from_settings(
        cls,
        settings:    Settings,
        credentials: AwsCredentials,
        http_client: httpx.AsyncClient | None = None,
    ) -> "ExtractionEngine":
        fetcher = S3DocumentFetcher(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            credentials=credentials,
            timeout=settings.http_timeout_seconds,
            http_client=http_client,
        )
        textract = TextractClient(
            region=settings.aws_region,
            credentials=credentials,
            timeout=settings.http_timeout_seconds,
            http_client=http_client,
        )
        return cls(
            fetcher,
            textract,
            flat_text_max_chars=settings.flat_text_max_chars,
            poll_attempts=settings.textract_poll_attempts,
            initial_poll_delay=settings.textract_initial_poll_delay,
            poll_delay=settings.textract_poll_delay,
            max_results=settings.textract_max_results,
        )

    @property
    def bucket(self) -> str:
        return self._fetcher.bucket

    def build_extractor(self, strategy: str) -> BaseTextExtractor:
        if strategy == FLAT_TEXT:
            return FlatTextExtractor(self._fetcher, max_chars=self._flat_text_max_chars)
        if strategy == SINGLE_IMAGE:
            return SingleImageExtractor(self._textract)
        if strategy == MULTI_PAGE:
            return MultiPageExtractor(
                self._textract,
                poll_attempts=self._poll_attempts,
                initial_delay=self._initial_poll_delay,
                poll_delay=self._poll_delay,
                max_results=self._max_results,
                sleep=self._sleep,
            )
        raise ValueError(f"Unknown extraction strategy: {strategy}")

    def select_extractor(
        self,
        file_type:       str | None,
        file_name:       str | None,
        analysis_target: str | None,
    ) -> tuple[BaseTextExtractor, str]:
        """Return (extractor, resolved_content_type) for a job."""
        content_type = resolve_content_type(file_type, file_name)
        strategy = select_strategy(content_type, file_name, analysis_target)
        logger.info(
            "Extractor selected | strategy=%s content_type=%s target=%s",
            strategy, content_type, analysis_target,
        )
        return self.build_extractor(strategy), content_type

    async def extract(
        self,
        key:             str,
        file_type:       str | None,
        file_name:       str | None,
        analysis_target: str | None,
        deadline:        float | None = None,
        clock:           Clock | None = None,
    ) -> ExtractionResult:
        """
        Run the selected strategy. `deadline` is a `clock()` value; provider
        calls and poll waits never run past it.
        """
        extractor, content_type = self.select_extractor(file_type, file_name, analysis_target)
        document = DocumentRef(
            bucket=self._fetcher.bucket,
            key=key,
            content_type=content_type,
            file_name=file_name or "",
        )
        result = await extractor.extract(document, deadline=deadline, clock=clock)

        return ExtractionResult(
            full_text=result.text,
            raw_response=result.raw_response,
            strategy_used=result.strategy_name,
            content_type=content_type,
            used_ocr=result.used_ocr,
            total_chars=result.total_chars,
            elapsed_ms=result.elapsed_ms,
            line_count=result.line_count,
            truncated=result.truncated,
        )
