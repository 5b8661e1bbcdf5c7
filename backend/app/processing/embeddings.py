"""
Embedding Batcher  —  Sequential Batches with Retry & a Deadline
════════════════════════════════════════════════════════════════

Design goals:
  • Batch efficiency: one API call per BATCH_SIZE chunks (default 100)
  • Retry logic: app.core.retry.RetryPolicy is the only retry layer
    (the OpenAI client is built with max_retries=0)
  • Deadline: the whole run shares one wall-clock budget; a batch is not
    started once the budget is gone, and each call times out no later
    than the deadline
  • Ordering: vectors come back in input order, whatever order the
    provider returns them in

Embedding model:
  text-embedding-3-large  → 3072 dims (default; matches the stored schema)

Batching strategy:
  OpenAI API: max 8191 tokens per input, max 2048 inputs per call.
  Batches run strictly one after another with a short pause between them,
  so a single job never bursts the account's rate limit.

Retry policy:
  On RateLimitError        → wait retry-after-ms / retry-after, else backoff
  On auth / bad request    → fail immediately
  On anything else         → exponential backoff (5xx, 409, timeouts,
                             connection errors, vector count mismatch)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from openai import AsyncOpenAI

from app.core.config import Settings
from app.core.errors import EmbeddingError
from app.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE = 100    # texts per OpenAI API call
BATCH_TIMEOUT        = 30.0   # seconds per call
BATCH_PAUSE          = 0.1    # seconds between batches
MAX_RETRIES          = 3
RETRY_BASE_DELAY     = 1.0    # seconds, doubles each retry
RETRY_MAX_DELAY      = 30.0

DEFAULT_MODEL      = "text-embedding-3-large"
DEFAULT_DIMENSIONS = 3072


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingResult:
    """
    vectors      : one vector per input chunk, in chunk order
    model        : embedding model used
    total_chunks : number of chunks embedded
    total_tokens : provider-reported token usage (estimated if absent)
    elapsed_ms   : wall time for all batches
    """
    vectors:      list[list[float]]
    model:        str
    total_chunks: int
    total_tokens: int
    elapsed_ms:   float


# ---------------------------------------------------------------------------
# Batcher
# ---------------------------------------------------------------------------

class EmbeddingBatcher:
    """
    One instance per job run.

    Usage:
        batcher = EmbeddingBatcher(api_key=settings.openai_api_key)
        vectors = await batcher.embed([c.text for c in chunks], deadline_seconds=40)

    `client_factory` exists for tests: any zero-arg callable returning an
    object with `embeddings.create(...)`.
    """

    def __init__(
        self,
        api_key:        str,
        model:          str                 = DEFAULT_MODEL,
        dimensions:     int | None          = DEFAULT_DIMENSIONS,
        batch_size:     int                 = EMBEDDING_BATCH_SIZE,
        batch_timeout:  float               = BATCH_TIMEOUT,
        retry_policy:   RetryPolicy | None  = None,
        batch_pause:    float               = BATCH_PAUSE,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._api_key        = api_key
        self._model          = model
        self._dimensions     = dimensions
        self._batch_size     = batch_size
        self._batch_timeout  = batch_timeout
        self._retry          = retry_policy or RetryPolicy(
            max_retries=MAX_RETRIES,
            base_delay=RETRY_BASE_DELAY,
            max_delay=RETRY_MAX_DELAY,
        )
        self._batch_pause    = batch_pause
        self._client_factory = client_factory
        self._client: Any    = None
        self._tokens_used    = 0

    @property
    def model(self) -> str:
        return self._model

    def _get_client(self) -> Any:
        if self._client is None:
            if self._client_factory is not None:
                self._client = self._client_factory()
            else:
                self._client = AsyncOpenAI(api_key=self._api_key, max_retries=0)
        return self._client

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def embed(
        self,
        texts:            Sequence[str],
        deadline_seconds: float,
    ) -> list[list[float]]:
        """
        Embed `texts` in order.

        Raises:
            EmbeddingError: deadline exceeded, retries exhausted, a
                non-retryable provider error, or a vector count mismatch.
                `completed` holds the number of vectors produced so far.
        """
        if not texts:
            return []

        total    = len(texts)
        t0       = time.monotonic()
        deadline = t0 + deadline_seconds
        batches  = [
            list(texts[i : i + self._batch_size])
            for i in range(0, total, self._batch_size)
        ]
        vectors: list[list[float]] = []

        logger.info(
            "EmbeddingBatcher | texts=%d batches=%d model=%s deadline_s=%.1f",
            total, len(batches), self._model, deadline_seconds,
        )

        for batch_idx, batch in enumerate(batches):
            if batch_idx > 0 and self._batch_pause > 0:
                await asyncio.sleep(self._batch_pause)

            if time.monotonic() >= deadline:
                raise EmbeddingError(
                    f"Embedding deadline of {deadline_seconds:.1f}s exceeded "
                    f"after {len(vectors)}/{total} vectors",
                    completed=len(vectors),
                    total=total,
                )

            try:
                batch_vectors = await self._retry.run(
                    lambda batch=batch, batch_idx=batch_idx: self._call_batch(batch, batch_idx, deadline),
                    label=f"batch={batch_idx}",
                    deadline=deadline,
                )
            except EmbeddingError as exc:
                exc.completed, exc.total = len(vectors), total
                raise
            except Exception as exc:
                raise EmbeddingError(
                    f"Embedding batch {batch_idx} failed: {type(exc).__name__}: {exc}",
                    completed=len(vectors),
                    total=total,
                ) from exc

            vectors.extend(batch_vectors)

        logger.info(
            "EmbeddingBatcher done | vectors=%d tokens=%d elapsed_ms=%.0f",
            len(vectors), self._tokens_used, (time.monotonic() - t0) * 1000,
        )
        return vectors

    async def embed_chunks(self, chunks: list, deadline_seconds: float) -> EmbeddingResult:
        """Embed ChunkResult objects and report usage alongside the vectors."""
        t0 = time.monotonic()
        self._tokens_used = 0
        vectors = await self.embed([c.text for c in chunks], deadline_seconds)
        tokens = self._tokens_used or sum(c.estimated_tokens for c in chunks)
        return EmbeddingResult(
            vectors=vectors,
            model=self._model,
            total_chunks=len(chunks),
            total_tokens=tokens,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )

    # ------------------------------------------------------------------
    # Single API call
    # ------------------------------------------------------------------

    async def _call_batch(
        self,
        batch:     list[str],
        batch_idx: int,
        deadline:  float,
    ) -> list[list[float]]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise EmbeddingError(f"Embedding deadline reached before batch {batch_idx}")
        client = self._get_client()
        kwargs: dict[str, Any] = {"model": self._model, "input": batch}
        if self._dimensions:
            kwargs["dimensions"] = self._dimensions

        t_api = time.monotonic()
        response = await asyncio.wait_for(
            client.embeddings.create(**kwargs),
            timeout=min(self._batch_timeout, remaining),
        )
        api_ms = (time.monotonic() - t_api) * 1000

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(batch):
            raise EmbeddingError(
                f"Embedding batch {batch_idx} returned {len(data)} vectors for {len(batch)} inputs"
            )

        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0
        self._tokens_used += tokens

        logger.debug(
            "OpenAI embeddings | batch=%d size=%d tokens=%d api_ms=%.0f",
            batch_idx, len(batch), tokens, api_ms,
        )
        return [list(item.embedding) for item in data]


# ---------------------------------------------------------------------------
# Module-level convenience function
# ---------------------------------------------------------------------------

def build_batcher(settings: Settings) -> EmbeddingBatcher:
    """EmbeddingBatcher configured from application settings."""
    return EmbeddingBatcher(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        batch_size=settings.embedding_batch_size,
        batch_timeout=settings.embedding_batch_timeout_seconds,
        retry_policy=RetryPolicy(
            max_retries=settings.embedding_max_retries,
            base_delay=RETRY_BASE_DELAY,
            max_delay=RETRY_MAX_DELAY,
        ),
    )
