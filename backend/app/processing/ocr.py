"""
Extraction Strategies  —  Text from Stored Documents
════════════════════════════════════════════════════

Design: Strategy + explicit state machine
─────────────────────────────────────────
Three strategies, selected per job by app.processing.extractor:

  FlatTextExtractor      CSV / TSV / plain text
    - Fetched through a presigned GET and decoded in-process
    - Hard-truncated at FLAT_TEXT_MAX_CHARS (marker appended)
    - No external job, no OCR

  SingleImageExtractor   PNG / JPEG (and single-page scans)
    - One synchronous Textract DetectDocumentText call
    - LINE blocks collected in response order

  MultiPageExtractor     PDF / TIFF
    - StartDocumentTextDetection → JobId
    - Fixed poll schedule: 1.5 s before the first poll, 4 s after that,
      at most 12 polls
    - SUCCEEDED → follow NextToken until exhausted

Deadline: extract() takes an optional monotonic deadline. Every provider
call is given at most the remaining time as its timeout, and a poll wait
that would run past the deadline fails the extraction instead.

Each extractor instance handles one document and walks:

    not-started → submitted → polling → succeeded
                      │           │
                      └───────────┴──► failed

Unlike a best-effort cascade, every failure raises — the job record must
show why extraction stopped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from app.core.errors import ExtractionError, PipelineError, UnsupportedTargetError
from app.processing.textract import TextractClient, line_texts
from app.storage.s3 import S3DocumentFetcher

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

FLAT_TEXT_MAX_CHARS = 500_000
TRUNCATION_MARKER   = "\n\n[... file truncated, showing first 500KB ...]"

POLL_ATTEMPTS       = 12
INITIAL_POLL_DELAY  = 1.5    # seconds
POLL_DELAY          = 4.0
MAX_RESULTS_PER_PAGE = 1000

MULTI_PAGE_CONTENT_TYPES = frozenset({"application/pdf", "image/tiff"})

Sleeper = Callable[[float], Awaitable[Any]]
Clock   = Callable[[], float]


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

class ExtractionState(str, Enum):
    NOT_STARTED = "not-started"
    SUBMITTED   = "submitted"
    POLLING     = "polling"
    SUCCEEDED   = "succeeded"
    FAILED      = "failed"


_ALLOWED_STATE_TRANSITIONS: dict[ExtractionState, frozenset[ExtractionState]] = {
    ExtractionState.NOT_STARTED: frozenset({ExtractionState.SUBMITTED, ExtractionState.FAILED}),
    ExtractionState.SUBMITTED:   frozenset({
        ExtractionState.POLLING, ExtractionState.SUCCEEDED, ExtractionState.FAILED,
    }),
    ExtractionState.POLLING:     frozenset({ExtractionState.SUCCEEDED, ExtractionState.FAILED}),
    ExtractionState.SUCCEEDED:   frozenset(),
    ExtractionState.FAILED:      frozenset(),
}


@dataclass(frozen=True)
class DocumentRef:
    """Where a document lives and what it claims to be."""
    bucket:       str
    key:          str
    content_type: str
    file_name:    str = ""


@dataclass
class ExtractionStrategyResult:
    """
    text          : lines / decoded text joined in reading order
    raw_response  : provider payload persisted alongside the text
    strategy_name : "flat-text" | "single-image" | "multi-page"
    elapsed_ms    : wall-clock time for the strategy (ms)
    line_count    : LINE blocks collected (0 for flat text)
    used_ocr      : True if Textract was invoked
    truncated     : True if flat text hit FLAT_TEXT_MAX_CHARS
    """
    text:          str
    raw_response:  dict
    strategy_name: str
    elapsed_ms:    float = 0.0
    line_count:    int   = 0
    used_ocr:      bool  = False
    truncated:     bool  = False

    @property
    def total_chars(self) -> int:
        return len(self.text)


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseTextExtractor(ABC):
    """
    Template for one-shot extraction.

    Subclasses implement _extract(); extract() owns timing, logging and the
    state machine. One instance per document — state is not reusable.
    """

    def __init__(self) -> None:
        self.state = ExtractionState.NOT_STARTED
        self.state_history: list[ExtractionState] = [self.state]
        self._deadline: float | None = None
        self._clock: Clock = time.monotonic

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging and the stored raw response."""

    @abstractmethod
    async def _extract(self, document: DocumentRef) -> ExtractionStrategyResult:
        """Run the strategy; raise ExtractionError on any failure."""

    def _transition(self, new_state: ExtractionState) -> None:
        if new_state not in _ALLOWED_STATE_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"{self.strategy_name}: illegal extraction transition "
                f"{self.state.value} → {new_state.value}"
            )
        self.state = new_state
        self.state_history.append(new_state)

    def _remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return self._deadline - self._clock()

    def _call_timeout(self, operation: str) -> float | None:
        """Timeout for the next provider call: the time left, or None without a deadline."""
        remaining = self._remaining()
        if remaining is None:
            return None
        if remaining <= 0:
            raise ExtractionError(f"Time budget exhausted before {operation}")
        return remaining

    async def extract(
        self,
        document: DocumentRef,
        deadline: float | None = None,
        clock:    Clock | None = None,
    ) -> ExtractionStrategyResult:
        if self.state is not ExtractionState.NOT_STARTED:
            raise RuntimeError(f"{self.strategy_name} extractor already used")
        self._deadline = deadline
        if clock is not None:
            self._clock = clock

        t0 = time.monotonic()
        try:
            result = await self._extract(document)
        except PipelineError as exc:
            self._transition(ExtractionState.FAILED)
            logger.warning(
                "Extraction failed | strategy=%s key=%s error=%s",
                self.strategy_name, document.key, exc,
            )
            raise
        except Exception:
            self._transition(ExtractionState.FAILED)
            raise

        self._transition(ExtractionState.SUCCEEDED)
        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Extraction | strategy=%s key=%s chars=%d lines=%d elapsed_ms=%.0f",
            self.strategy_name, document.key, result.total_chars,
            result.line_count, result.elapsed_ms,
        )
        return result


# ---------------------------------------------------------------------------
# Strategy 1: flat text
# ---------------------------------------------------------------------------

class FlatTextExtractor(BaseTextExtractor):

    def __init__(self, fetcher: S3DocumentFetcher, max_chars: int = FLAT_TEXT_MAX_CHARS) -> None:
        super().__init__()
        self._fetcher   = fetcher
        self._max_chars = max_chars

    @property
    def strategy_name(self) -> str:
        return "flat-text"

    async def _extract(self, document: DocumentRef) -> ExtractionStrategyResult:
        self._transition(ExtractionState.SUBMITTED)
        text = await self._fetcher.fetch_text(
            document.key, timeout=self._call_timeout("S3 fetch"),
        )

        truncated = len(text) > self._max_chars
        if truncated:
            logger.warning(
                "Flat text truncated | key=%s chars=%d cap=%d",
                document.key, len(text), self._max_chars,
            )
            text = text[: self._max_chars] + TRUNCATION_MARKER

        kind = "csv" if _is_delimited(document) else "text"
        return ExtractionStrategyResult(
            text=text,
            raw_response={"type": kind, "size": len(text)},
            strategy_name=self.strategy_name,
            truncated=truncated,
        )


def _is_delimited(document: DocumentRef) -> bool:
    name = document.file_name.lower()
    return (
        document.content_type in ("text/csv", "text/tab-separated-values", "application/vnd.ms-excel")
        or name.endswith((".csv", ".tsv"))
    )


# ---------------------------------------------------------------------------
# Strategy 2: single image (synchronous Textract)
# ---------------------------------------------------------------------------

class SingleImageExtractor(BaseTextExtractor):

    def __init__(self, textract: TextractClient) -> None:
        super().__init__()
        self._textract = textract

    @property
    def strategy_name(self) -> str:
        return "single-image"

    async def _extract(self, document: DocumentRef) -> ExtractionStrategyResult:
        self._transition(ExtractionState.SUBMITTED)
        response = await self._textract.detect_document_text(
            document.bucket, document.key,
            timeout=self._call_timeout("DetectDocumentText"),
        )

        lines = line_texts(response.get("Blocks"))
        if not lines:
            raise ExtractionError("No text detected in image")

        return ExtractionStrategyResult(
            text="\n".join(lines),
            raw_response=response,
            strategy_name=self.strategy_name,
            line_count=len(lines),
            used_ocr=True,
        )


# ---------------------------------------------------------------------------
# Strategy 3: multi-page (asynchronous Textract job)
# ---------------------------------------------------------------------------

class MultiPageExtractor(BaseTextExtractor):
    """
    Drives Textract's async job protocol.

    The schedule is fixed rather than exponential: a short first wait
    catches small documents, then a steady 4 s cadence keeps the total
    (1.5 + 11 × 4 = 45.5 s) inside the invocation budget.
    """

    def __init__(
        self,
        textract:      TextractClient,
        poll_attempts: int     = POLL_ATTEMPTS,
        initial_delay: float   = INITIAL_POLL_DELAY,
        poll_delay:    float   = POLL_DELAY,
        max_results:   int     = MAX_RESULTS_PER_PAGE,
        sleep:         Sleeper = asyncio.sleep,
    ) -> None:
        super().__init__()
        self._textract      = textract
        self._poll_attempts = poll_attempts
        self._initial_delay = initial_delay
        self._poll_delay    = poll_delay
        self._max_results   = max_results
        self._sleep         = sleep

    @property
    def strategy_name(self) -> str:
        return "multi-page"

    async def _extract(self, document: DocumentRef) -> ExtractionStrategyResult:
        if document.content_type not in MULTI_PAGE_CONTENT_TYPES:
            raise UnsupportedTargetError(
                f"Multi-page extraction does not support content type {document.content_type!r}"
            )

        self._transition(ExtractionState.SUBMITTED)
        started = await self._textract.start_document_text_detection(
            document.bucket, document.key,
            timeout=self._call_timeout("StartDocumentTextDetection"),
        )
        job_id = started.get("JobId")
        if not job_id:
            raise ExtractionError("Textract did not return a JobId")

        logger.info(
            "Textract async job started: %s for s3://%s/%s",
            job_id, document.bucket, document.key,
        )
        self._transition(ExtractionState.POLLING)

        response = await self._poll_until_done(job_id)
        lines, pages = await self._collect_pages(job_id, response)

        if not lines:
            raise ExtractionError("No text extracted from document")

        raw = {
            "JobId":            job_id,
            "JobStatus":        response.get("JobStatus"),
            "DocumentMetadata": response.get("DocumentMetadata"),
            "Warnings":         response.get("Warnings"),
            "PagesFetched":     pages,
            "LineCount":        len(lines),
        }
        return ExtractionStrategyResult(
            text="\n".join(lines),
            raw_response={k: v for k, v in raw.items() if v is not None},
            strategy_name=self.strategy_name,
            line_count=len(lines),
            used_ocr=True,
        )

    async def _poll_until_done(self, job_id: str) -> dict[str, Any]:
        for attempt in range(self._poll_attempts):
            delay = self._initial_delay if attempt == 0 else self._poll_delay
            remaining = self._remaining()
            if remaining is not None and delay >= remaining:
                raise ExtractionError(
                    f"Textract job {job_id} did not finish within the time budget "
                    f"({attempt} polls, {max(remaining, 0.0):.1f}s left)"
                )
            await self._sleep(delay)

            response = await self._textract.get_document_text_detection(
                job_id, max_results=self._max_results,
                timeout=self._call_timeout("GetDocumentTextDetection"),
            )
            status = response.get("JobStatus") or "FAILED"

            if status == "IN_PROGRESS":
                logger.debug("Textract job %s in progress (poll %d)", job_id, attempt + 1)
                continue
            if status in ("SUCCEEDED", "PARTIAL_SUCCESS"):
                if status == "PARTIAL_SUCCESS":
                    logger.warning("Textract job %s partially succeeded", job_id)
                return response

            raise ExtractionError(response.get("StatusMessage") or "Textract reported failure")

        raise ExtractionError(
            f"Textract job {job_id} still in progress after {self._poll_attempts} polls"
        )

    async def _collect_pages(
        self,
        job_id:   str,
        response: dict[str, Any],
    ) -> tuple[list[str], int]:
        """Accumulate LINE text from the first page and every NextToken page."""
        lines = line_texts(response.get("Blocks"))
        pages = 1
        next_token = response.get("NextToken")
        seen_tokens: set[str] = set()

        while next_token:
            if next_token in seen_tokens:
                logger.warning("Textract job %s repeated NextToken, stopping pagination", job_id)
                break
            seen_tokens.add(next_token)

            page = await self._textract.get_document_text_detection(
                job_id, next_token=next_token, max_results=self._max_results,
                timeout=self._call_timeout("GetDocumentTextDetection"),
            )
            lines.extend(line_texts(page.get("Blocks")))
            next_token = page.get("NextToken")
            pages += 1

        return lines, pages
