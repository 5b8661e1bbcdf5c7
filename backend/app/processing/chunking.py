"""
Boundary-Preserving Chunker
═══════════════════════════

Walk forward, look back for a boundary
──────────────────────────────────────
  For each window [position, position + target_size):

    1. Tail fits in the window        → emit it, stop
    2. "\n\n" in the last 30 %        → cut after the paragraph break
    3. ". " / "! " / "? " (or before
       a newline) in the last 30 %    → cut after the furthest terminator
    4. space / newline in the last 20 % → cut after the word boundary
    5. nothing                        → hard cut at target_size

  After the first chunk the next window starts `overlap` characters before
  the previous cut, so context carries across the boundary. Progress is
  guaranteed: the position always moves forward by at least one character.

Offsets refer to the untrimmed source text, so chunk.offset plus the
leading whitespace that was trimmed locates the chunk exactly.

Deterministic and pure: same input → same chunks.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_TARGET_SIZE = 2000   # characters (~500 tokens at 4 chars/token)
DEFAULT_OVERLAP     = 150

# Boundary search zones, as fractions of target_size from the window start
SENTENCE_ZONE = 0.7   # paragraph or sentence break must fall after 70 %
WORD_ZONE     = 0.8   # word break must fall after 80 %

CHARS_PER_TOKEN = 4

_SENTENCE_ENDINGS = (". ", "! ", "? ", ".\n", "!\n", "?\n")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkResult:
    """
    A single chunk ready for embedding.

    text             : trimmed chunk content
    offset           : position in the source text where the window began
    estimated_tokens : ceil(len(text) / 4)
    chunk_index      : 0-based, contiguous within a document
    """
    text:             str
    offset:           int
    estimated_tokens: int
    chunk_index:      int

    @property
    def char_count(self) -> int:
        return len(self.text)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


# ---------------------------------------------------------------------------
# Core algorithm
# ---------------------------------------------------------------------------

def _find_break(text: str, position: int, target_size: int) -> int:
    """Return the exclusive end of the chunk starting at `position`."""
    window_end      = position + target_size
    sentence_floor  = position + target_size * SENTENCE_ZONE
    word_floor      = position + target_size * WORD_ZONE

    paragraph = text.rfind("\n\n", position, window_end)
    if paragraph > sentence_floor:
        return paragraph + 2

    best = -1
    for ending in _SENTENCE_ENDINGS:
        idx = text.rfind(ending, position, window_end)
        if idx > sentence_floor:
            best = max(best, idx + len(ending))
    if best > position:
        return best

    word = max(
        text.rfind(" ", position, window_end),
        text.rfind("\n", position, window_end),
    )
    if word > word_floor:
        return word + 1

    return window_end


def chunk_text(
    text:        str,
    target_size: int = DEFAULT_TARGET_SIZE,
    overlap:     int = DEFAULT_OVERLAP,
) -> list[ChunkResult]:
    """
    Split `text` into overlapping, boundary-aligned chunks.

    Raises:
        ValueError: target_size <= 0 or overlap < 0
    """
    if target_size <= 0:
        raise ValueError(f"target_size must be positive, got {target_size}")
    if overlap < 0:
        raise ValueError(f"overlap must be non-negative, got {overlap}")

    if not text or not text.strip():
        return []

    chunks: list[ChunkResult] = []
    position = 0
    iteration = 0
    length = len(text)

    while position < length:
        if length - position <= target_size:
            tail = text[position:].strip()
            if tail:
                chunks.append(ChunkResult(
                    text=tail,
                    offset=position,
                    estimated_tokens=estimate_tokens(tail),
                    chunk_index=len(chunks),
                ))
            break

        end = _find_break(text, position, target_size)
        piece = text[position:end].strip()
        if piece:
            chunks.append(ChunkResult(
                text=piece,
                offset=position,
                estimated_tokens=estimate_tokens(piece),
                chunk_index=len(chunks),
            ))

        if iteration == 0:
            position = end
        else:
            position = max(position + 1, end - overlap)
        iteration += 1

    return chunks


# ---------------------------------------------------------------------------
# Configured wrapper
# ---------------------------------------------------------------------------

class SemanticChunker:
    """
    chunk_text() bound to configured sizes, with per-document logging.

    Usage:
        chunker = SemanticChunker(target_size=2000, overlap=150)
        chunks = chunker.chunk(extracted_text, job_id=str(job.id))
    """

    def __init__(
        self,
        target_size: int = DEFAULT_TARGET_SIZE,
        overlap:     int = DEFAULT_OVERLAP,
    ) -> None:
        if target_size <= 0:
            raise ValueError(f"target_size must be positive, got {target_size}")
        if overlap < 0:
            raise ValueError(f"overlap must be non-negative, got {overlap}")
        self.target_size = target_size
        self.overlap     = overlap

    def chunk(self, text: str, job_id: str = "") -> list[ChunkResult]:
        chunks = chunk_text(text, self.target_size, self.overlap)
        if not chunks:
            logger.warning("SemanticChunker: empty text for job=%s", job_id)
            return chunks

        logger.info(
            "SemanticChunker | job=%s chunks=%d avg_chars=%.0f tokens=%d",
            job_id, len(chunks),
            sum(c.char_count for c in chunks) / len(chunks),
            sum(c.estimated_tokens for c in chunks),
        )
        return chunks
