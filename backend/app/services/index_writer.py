"""
Index Writer — chunks + vectors → document_embeddings rows.

One row per chunk, written through JobStore.replace_embeddings so a re-run
replaces the previous rows instead of appending to them.
"""

from __future__ import annotations

import logging
from typing import Sequence

from app.core.errors import PersistenceError
from app.processing.chunking import ChunkResult
from app.services.job_store import EmbeddingRow, JobStore

logger = logging.getLogger(__name__)


def build_rows(
    chunks:  Sequence[ChunkResult],
    vectors: Sequence[Sequence[float]],
    model:   str,
) -> list[EmbeddingRow]:
    if len(chunks) != len(vectors):
        raise PersistenceError(
            f"Cannot index {len(chunks)} chunks with {len(vectors)} vectors"
        )

    rows: list[EmbeddingRow] = []
    for position, (chunk, vector) in enumerate(zip(chunks, vectors)):
        if chunk.chunk_index != position:
            raise PersistenceError(
                f"Chunk indices must be contiguous from 0; got {chunk.chunk_index} at {position}"
            )
        rows.append(EmbeddingRow(
            chunk_index=chunk.chunk_index,
            chunk_text=chunk.text,
            embedding=[float(x) for x in vector],
            embedding_model=model,
            metadata={
                "char_position":    chunk.offset,
                "estimated_tokens": chunk.estimated_tokens,
            },
        ))
    return rows


class IndexWriter:

    def __init__(self, store: JobStore) -> None:
        self._store = store

    async def write(
        self,
        job_id:  str,
        chunks:  Sequence[ChunkResult],
        vectors: Sequence[Sequence[float]],
        model:   str,
    ) -> int:
        """Persist all rows in one transaction; return the row count."""
        rows = build_rows(chunks, vectors, model)
        try:
            written = await self._store.replace_embeddings(job_id, rows)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Failed to write embeddings for job {job_id}: {exc}") from exc

        logger.info("IndexWriter | job=%s rows=%d model=%s", job_id, written, model)
        return written
