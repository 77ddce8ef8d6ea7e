"""
Overlapping Chunker  —  paragraph → sentence → word fallback
═════════════════════════════════════════════════════════════

Splitting order
───────────────
  1. Normalize whitespace (generic path only; the structure-preserving path
     used for spreadsheets keeps line breaks so rows stay intact)
  2. Paragraphs (blank-line separated), accumulated into a running buffer
     that is flushed when the next unit would exceed chunk_size
  3. A paragraph longer than chunk_size is split at sentence boundaries
     (terminal punctuation followed by whitespace), same accumulate/flush rule
  4. A sentence longer than chunk_size is split into whitespace-delimited
     words; a single word longer than chunk_size is emitted whole
     The last piece of a split unit stays in the running buffer, so the
     units after it keep filling that chunk
  5. Overlap: chunk i (i > 0) is prefixed with the trailing `overlap`
     characters of chunk i-1 *before* its own overlap was applied

Determinism: no randomness, no model calls. Identical (text, chunk_size,
overlap) always produces the identical sequence, which is what makes
chunk_index a stable key for the chunk store.

Example (chunk_size=1000, overlap=200, 2 500 chars of prose):

    base    [ 999 ][ 999 ][ 500 ]
    final   [ 999 ][200|999][200|500]
"""

from __future__ import annotations

import logging
import re

from docpipe.core.errors import ChunkingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_OVERLAP    = 200

_WHITESPACE_RE = re.compile(r"\s+")
_PARAGRAPH_RE  = re.compile(r"\n\s*\n")
_SENTENCE_RE   = re.compile(r"(?<=[.!?])\s+")

_PARAGRAPH_SEP = "\n\n"
_WORD_SEP      = " "

# MIME types whose extracted text is line-structured (one row per line)
_STRUCTURED_MIME_TYPES = frozenset({
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/csv",
})


class TextChunker:
    """
    Stateless overlapping chunker.

    Usage:
        chunker = TextChunker(chunk_size=1000, overlap=200)
        chunks  = chunker.chunk(extracted.text)

    normalize=False keeps newlines inside paragraphs (spreadsheet rows,
    CSV lines). Only the word-level splitter discards them.
    """

    def __init__(
        self,
        chunk_size: int  = DEFAULT_CHUNK_SIZE,
        overlap:    int  = DEFAULT_OVERLAP,
        normalize:  bool = True,
    ) -> None:
        if chunk_size <= 0:
            raise ChunkingError(f"chunk_size must be positive, got {chunk_size}")
        if overlap < 0:
            raise ChunkingError(f"overlap must not be negative, got {overlap}")
        if overlap >= chunk_size:
            raise ChunkingError(
                f"overlap ({overlap}) must be smaller than chunk_size ({chunk_size})"
            )
        self.chunk_size = chunk_size
        self.overlap    = overlap
        self.normalize  = normalize

    def chunk(self, text: str | None) -> list[str | None]:
        # Anything that already fits is returned untouched, including "" and None
        if not text or len(text) <= self.chunk_size:
            return [text]

        if self.normalize:
            prepared   = _WHITESPACE_RE.sub(" ", text).strip()
            paragraphs = [prepared] if prepared else []
        else:
            paragraphs = [p.strip() for p in _PARAGRAPH_RE.split(text) if p.strip()]

        base = self._pack(paragraphs, _PARAGRAPH_SEP, level=0)
        if not base:
            return [text]

        chunks = self.apply_overlap(base, self.overlap)
        logger.debug(
            "Chunker | chars=%d chunks=%d size=%d overlap=%d normalize=%s",
            len(text), len(chunks), self.chunk_size, self.overlap, self.normalize,
        )
        return chunks

    # ------------------------------------------------------------------
    # Accumulate / flush
    # ------------------------------------------------------------------

    def _pack(self, units: list[str], sep: str, level: int) -> list[str]:
        out: list[str] = []
        current = ""

        for unit in units:
            if len(unit) > self.chunk_size:
                if current:
                    out.append(current)
                pieces = self._split_oversized(unit, level)
                # The tail piece stays open so following units can fill it up
                out.extend(pieces[:-1])
                current = pieces[-1]
                continue

            candidate = f"{current}{sep}{unit}" if current else unit
            if len(candidate) > self.chunk_size:
                out.append(current)
                current = unit
            else:
                current = candidate

        if current:
            out.append(current)
        return out

    def _split_oversized(self, unit: str, level: int) -> list[str]:
        if level == 0:
            sentences = [s for s in _SENTENCE_RE.split(unit) if s]
            if len(sentences) > 1:
                return self._pack(sentences, _WORD_SEP, level=1)
            level = 1

        if level == 1:
            words = unit.split()
            if len(words) > 1:
                return self._pack(words, _WORD_SEP, level=2)

        # A single word longer than chunk_size
        return [unit]

    @staticmethod
    def apply_overlap(base: list[str], overlap: int) -> list[str]:
        if overlap <= 0 or len(base) < 2:
            return list(base)
        result = [base[0]]
        for previous, current in zip(base, base[1:]):
            result.append(previous[-overlap:] + current)
        return result


def chunk_text(
    text:       str | None,
    chunk_size: int  = DEFAULT_CHUNK_SIZE,
    overlap:    int  = DEFAULT_OVERLAP,
    normalize:  bool = True,
) -> list[str | None]:
    return TextChunker(chunk_size, overlap, normalize).chunk(text)


def chunker_for(mime_type: str | None, chunk_size: int, overlap: int) -> TextChunker:
    """Structure-preserving chunker for row-oriented formats, generic otherwise."""
    normalized = (mime_type or "").split(";", 1)[0].strip().lower()
    return TextChunker(
        chunk_size=chunk_size,
        overlap=overlap,
        normalize=normalized not in _STRUCTURED_MIME_TYPES,
    )
