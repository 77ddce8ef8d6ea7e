"""
Format Extractors  —  bytes → text, one strategy per document family
═════════════════════════════════════════════════════════════════════

Design: Strategy
────────────────
Every extractor exposes the same two coroutines:

    run(data, progress, cancel)  -> ExtractorOutput   (text + diagnostics)
    extract(data, progress, cancel) -> str            (text only)

and is registered against a type tag in ExtractorRegistry (dispatcher.py).
Callers never branch on the concrete class.

  PyMuPDFExtractor        native PDF text layer, page by page
  ContentStreamPdfExtractor  degraded PDF path: regex scan of content streams,
                           for environments without a PDF renderer
  DocxExtractor           python-docx paragraphs + table cells
  XlsxExtractor           openpyxl, one "Sheet: <name>" section per sheet
  PlainTextExtractor      decode only, no transformation
  ImageOcrExtractor       Tesseract OCR (see ocr.py)

All blocking library calls run in the default thread executor under
asyncio.wait_for(timeout) so a pathological file cannot stall a worker.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from docpipe.core.errors import ExtractionError, PasswordProtectedError
from docpipe.processing.progress import NULL_PROGRESS, CancellationToken, ProgressSink

logger = logging.getLogger(__name__)

# Default ceiling for a single blocking library call (seconds)
DEFAULT_EXTRACTION_TIMEOUT = 120.0

PDF_PLACEHOLDER_TEXT = (
    "This PDF document may contain scanned text or it's protected. "
    "Please use OCR or upload a text-based PDF."
)


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class ExtractorOutput:
    """
    Raw output of a single extractor run.

    text        : extracted text
    page_count  : pages / sheets / frames seen (None when not meaningful)
    confidence  : OCR confidence 0.0–1.0; -1.0 = not applicable
    """
    text:       str
    page_count: int | None = None
    confidence: float = -1.0


@dataclass
class ExtractedText:
    """
    Dispatcher result. Ephemeral: consumed by the chunker, never persisted.
    """
    text:              str
    extraction_method: str
    source_mime_type:  str
    page_count:        int | None = None
    confidence:        float = -1.0
    elapsed_ms:        float = 0.0


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseExtractor(ABC):
    """
    Abstract base for extraction strategies.

    Implementations accept raw bytes (never a file path) and raise
    ExtractionError on failure. Library exceptions are wrapped so the
    original cause stays attached.
    """

    def __init__(self, timeout: float = DEFAULT_EXTRACTION_TIMEOUT) -> None:
        self._timeout = timeout

    @property
    @abstractmethod
    def method_name(self) -> str:
        """Unique name recorded as ExtractedText.extraction_method."""

    @abstractmethod
    async def run(
        self,
        data:     bytes,
        progress: ProgressSink = NULL_PROGRESS,
        cancel:   CancellationToken | None = None,
    ) -> ExtractorOutput:
        """Extract text plus diagnostics from `data`."""

    async def extract(
        self,
        data:     bytes,
        progress: ProgressSink = NULL_PROGRESS,
        cancel:   CancellationToken | None = None,
    ) -> str:
        return (await self.run(data, progress, cancel)).text

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking call in the executor with a bounded timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, fn, *args),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ExtractionError.failed(
                f"{self.method_name} timed out after {self._timeout:.0f}s", exc,
            ) from exc
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError.failed(
                f"{self.method_name} failed: {exc}", exc,
            ) from exc


# ---------------------------------------------------------------------------
# PDF: PyMuPDF (fitz)
# ---------------------------------------------------------------------------

class PyMuPDFExtractor(BaseExtractor):
    """
    Reads the native PDF text layer with PyMuPDF.

    Per page, the word items returned by get_text("words") are joined with a
    single space; pages are joined with a blank line. Pages without a text
    layer are skipped. Encrypted documents raise PasswordProtectedError
    instead of yielding empty text.

    fitz documents are not thread-safe, but each page is read by exactly one
    executor call at a time, sequentially.
    """

    @property
    def method_name(self) -> str:
        return "pymupdf"

    async def run(
        self,
        data:     bytes,
        progress: ProgressSink = NULL_PROGRESS,
        cancel:   CancellationToken | None = None,
    ) -> ExtractorOutput:
        t0  = time.monotonic()
        doc = await self._call(self._open, data)
        try:
            page_count = doc.page_count
            pages: list[str] = []
            for page_index in range(page_count):
                if cancel is not None:
                    cancel.raise_if_cancelled()
                pages.append(await self._call(self._page_text, doc, page_index))
                await progress.report((page_index + 1) / page_count, "pdf_page")
        finally:
            doc.close()

        text = "\n\n".join(p for p in pages if p.strip())
        logger.info(
            "PyMuPDF | pages=%d chars=%d elapsed_ms=%.0f",
            page_count, len(text), (time.monotonic() - t0) * 1000,
        )
        return ExtractorOutput(text=text, page_count=page_count)

    @staticmethod
    def _open(data: bytes):
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        doc = fitz.open(stream=data, filetype="pdf")
        if doc.needs_pass:
            doc.close()
            raise PasswordProtectedError()
        return doc

    @staticmethod
    def _page_text(doc, page_index: int) -> str:
        # "words" → (x0, y0, x1, y1, word, block_no, line_no, word_no)
        words = doc[page_index].get_text("words")
        return " ".join(w[4] for w in words)


# ---------------------------------------------------------------------------
# PDF: degraded content-stream scan
# ---------------------------------------------------------------------------

_STREAM_RE       = re.compile(rb"stream\r?\n(.*?)\r?\nendstream", re.DOTALL)
_TEXT_BLOCK_RE   = re.compile(r"BT(.*?)ET", re.DOTALL)
_SHOW_TEXT_RE    = re.compile(
    r"\(((?:\\.|[^\\)])*)\)\s*Tj"          # (string) Tj
    r"|\[((?:\\.|[^\]])*)\]\s*TJ",         # [(str) -120 (ing)] TJ
    re.DOTALL,
)
_STRING_RE       = re.compile(r"\(((?:\\.|[^\\)])*)\)")
_PRINTABLE_RUN_RE = re.compile(r"[A-Za-z0-9 .,;:!?'\"()\-]{4,}")
_ESCAPE_RE       = re.compile(r"\\([0-7]{1,3}|[nrtbf()\\])")
_WHITESPACE_RE   = re.compile(r"\s+")

_SIMPLE_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", "b": "\b", "f": "\f"}

# Below this many recovered characters the raw-stream scan kicks in
_MIN_OPERATOR_TEXT_CHARS = 100
_MIN_RUN_CHARS = 10


def _unescape_pdf_string(value: str) -> str:
    def _replace(match: re.Match) -> str:
        token = match.group(1)
        if token[0] in "01234567":
            return chr(int(token, 8) & 0xFF)
        return _SIMPLE_ESCAPES.get(token, token)

    return _ESCAPE_RE.sub(_replace, value)


class ContentStreamPdfExtractor(BaseExtractor):
    """
    Regex scan for text-show operators inside PDF content streams.

    Recovers text from simple, text-based PDFs without a renderer:
      1. Inflate each stream (FlateDecode); keep raw bytes if not compressed.
      2. Inside BT … ET blocks collect `(…) Tj` and `[…] TJ` strings.
      3. If fewer than 100 characters came back, also keep printable runs
         longer than 10 characters that contain a letter.

    Never raises for unreadable content: returns PDF_PLACEHOLDER_TEXT.
    """

    @property
    def method_name(self) -> str:
        return "pdf-content-stream"

    async def run(
        self,
        data:     bytes,
        progress: ProgressSink = NULL_PROGRESS,
        cancel:   CancellationToken | None = None,
    ) -> ExtractorOutput:
        text = await self._call(self.scan, data)
        await progress.report(1.0, "pdf_scan")
        return ExtractorOutput(text=text)

    @classmethod
    def scan(cls, data: bytes) -> str:
        streams = [cls._inflate(raw) for raw in _STREAM_RE.findall(data)]
        decoded = [s.decode("latin-1") for s in streams]

        pieces: list[str] = []
        for content in decoded:
            for block in _TEXT_BLOCK_RE.findall(content):
                for single, array in _SHOW_TEXT_RE.findall(block):
                    if array:
                        pieces.append("".join(_STRING_RE.findall(array)))
                    else:
                        pieces.append(single)

        text = " ".join(pieces)

        if len(text) < _MIN_OPERATOR_TEXT_CHARS:
            runs = [
                run
                for content in decoded
                for run in _PRINTABLE_RUN_RE.findall(content)
                if len(run) > _MIN_RUN_CHARS and any(c.isalpha() for c in run)
            ]
            if runs:
                text = f"{text} {' '.join(runs)}"

        text = _WHITESPACE_RE.sub(" ", _unescape_pdf_string(text)).strip()
        if not text:
            logger.warning("PDF content-stream scan recovered no text")
            return PDF_PLACEHOLDER_TEXT
        return text

    @staticmethod
    def _inflate(raw: bytes) -> bytes:
        try:
            return zlib.decompress(raw)
        except zlib.error:
            return raw


# ---------------------------------------------------------------------------
# DOCX: python-docx
# ---------------------------------------------------------------------------

class DocxExtractor(BaseExtractor):
    """Paragraph text, then table rows (cells tab-joined), trimmed."""

    @property
    def method_name(self) -> str:
        return "python-docx"

    async def run(
        self,
        data:     bytes,
        progress: ProgressSink = NULL_PROGRESS,
        cancel:   CancellationToken | None = None,
    ) -> ExtractorOutput:
        text = await self._call(self._extract_sync, data)
        await progress.report(1.0, "docx")
        return ExtractorOutput(text=text)

    @staticmethod
    def _extract_sync(data: bytes) -> str:
        import docx

        document = docx.Document(io.BytesIO(data))
        parts = [p.text for p in document.paragraphs if p.text.strip()]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                if any(cells):
                    parts.append("\t".join(cells))
        return "\n\n".join(parts).strip()


# ---------------------------------------------------------------------------
# XLSX: openpyxl
# ---------------------------------------------------------------------------

class XlsxExtractor(BaseExtractor):
    """
    Sheets in workbook order. Each sheet becomes:

        Sheet: <name>
        <blank line>
        cell<TAB>cell<TAB>cell
        ...

    Empty rows are skipped; sheets are separated by a blank line.
    """

    @property
    def method_name(self) -> str:
        return "openpyxl"

    async def run(
        self,
        data:     bytes,
        progress: ProgressSink = NULL_PROGRESS,
        cancel:   CancellationToken | None = None,
    ) -> ExtractorOutput:
        sections = await self._call(self._extract_sync, data)
        await progress.report(1.0, "xlsx")
        return ExtractorOutput(text="\n\n".join(sections).strip(), page_count=len(sections))

    @staticmethod
    def _extract_sync(data: bytes) -> list[str]:
        import openpyxl

        workbook = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        sections: list[str] = []
        try:
            for sheet in workbook.worksheets:
                lines: list[str] = []
                for row in sheet.iter_rows(values_only=True):
                    cells = ["" if value is None else str(value) for value in row]
                    while cells and not cells[-1].strip():
                        cells.pop()
                    if not cells:
                        continue
                    lines.append("\t".join(cells))
                sections.append(f"Sheet: {sheet.title}\n\n" + "\n".join(lines))
        finally:
            workbook.close()
        return [s.rstrip() for s in sections]


# ---------------------------------------------------------------------------
# Plain text
# ---------------------------------------------------------------------------

class PlainTextExtractor(BaseExtractor):
    """UTF-8 decode with latin-1 fallback. No other transformation."""

    @property
    def method_name(self) -> str:
        return "plain-text"

    async def run(
        self,
        data:     bytes,
        progress: ProgressSink = NULL_PROGRESS,
        cancel:   CancellationToken | None = None,
    ) -> ExtractorOutput:
        text = decode_text(data)
        await progress.report(1.0, "text")
        return ExtractorOutput(text=text)


def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")
