"""
Document Processing Package
════════════════════════════

Turns raw document bytes into stored, embedded chunks:

  Extraction Dispatcher → Format Extractor → Chunker → Embedding Batch Generator

Modules
───────
  progress.py    ProgressSink bands and the cooperative CancellationToken
  extractors.py  Strategy per format (PDF, DOCX, XLSX, plain text)
  ocr.py         Tesseract OCR extractor for image/* documents
  dispatcher.py  MIME / extension resolution and the extractor registry
  chunking.py    Overlapping paragraph → sentence → word chunker
  embeddings.py  Sequential, rate-limited batch embedding + chunk writes

Design principles
─────────────────
  • Every component is stateless and dependency-injected.
  • Blocking library calls run in a thread executor with a bounded timeout.
  • Every step emits structured log lines.
"""

from docpipe.processing.chunking import TextChunker, chunk_text
from docpipe.processing.dispatcher import (
    ExtractionDispatcher,
    ExtractorRegistry,
    build_default_registry,
)
from docpipe.processing.embeddings import (
    ChunkRecord,
    EmbeddingBatchGenerator,
    EmbeddingRunResult,
)
from docpipe.processing.extractors import ExtractedText
from docpipe.processing.progress import CancellationToken, ProgressSink

__all__ = [
    "TextChunker",
    "chunk_text",
    "ExtractionDispatcher",
    "ExtractorRegistry",
    "build_default_registry",
    "ChunkRecord",
    "EmbeddingBatchGenerator",
    "EmbeddingRunResult",
    "ExtractedText",
    "CancellationToken",
    "ProgressSink",
]
