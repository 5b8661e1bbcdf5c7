"""
Document Processing Package
════════════════════════════

Post-upload indexing pipeline:

  Text Extraction → Chunking → Embedding

Modules
───────
  textract.py   SigV4-signed Textract JSON API client
  ocr.py        Extraction strategies (flat text, single image, multi-page)
  extractor.py  Strategy selection and the ExtractionEngine
  chunking.py   Boundary-preserving chunker with fixed overlap
  embeddings.py Sequential batch embeddings with retry and a deadline

Persistence and stage bookkeeping live in app.services.
"""

from app.processing.chunking import ChunkResult, SemanticChunker, chunk_text
from app.processing.embeddings import EmbeddingBatcher, EmbeddingResult
from app.processing.extractor import ExtractionEngine, ExtractionResult, select_strategy

__all__ = [
    "ChunkResult",
    "SemanticChunker",
    "chunk_text",
    "EmbeddingBatcher",
    "EmbeddingResult",
    "ExtractionEngine",
    "ExtractionResult",
    "select_strategy",
]
