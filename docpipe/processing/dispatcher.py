"""
Extraction Dispatcher
═════════════════════

Single entry point for "bytes → text". Resolves a document type tag from
the declared MIME type (or the filename extension) and hands the bytes to
the extractor registered for that tag.

Type resolution:
  1.  Declared MIME type, unless absent or generic (application/octet-stream)
  2.  Filename extension via _EXTENSION_MIME_TYPES
  3.  Nothing declared and nothing inferred → strict UTF-8 decode as a last
      resort (binary content is rejected)
  4.  Otherwise → ExtractionError(UNSUPPORTED_TYPE)

Registry (tag → extractor):
  pdf   → PyMuPDFExtractor | ContentStreamPdfExtractor
  docx  → DocxExtractor
  xlsx  → XlsxExtractor
  text  → PlainTextExtractor       (every text/* type)
  image → ImageOcrExtractor        (every image/* type)

New formats are added with ExtractorRegistry.register(); the dispatcher
itself never changes. It also performs no text transformation.
"""

from __future__ import annotations

import logging
import os
import time

from docpipe.core.errors import ExtractionError
from docpipe.processing.extractors import (
    BaseExtractor,
    ContentStreamPdfExtractor,
    DocxExtractor,
    ExtractedText,
    PlainTextExtractor,
    PyMuPDFExtractor,
    XlsxExtractor,
)
from docpipe.processing.ocr import ImageOcrExtractor
from docpipe.processing.progress import NULL_PROGRESS, CancellationToken, ProgressSink

logger = logging.getLogger(__name__)

GENERIC_MIME_TYPES: frozenset[str] = frozenset(
    {"application/octet-stream", "binary/octet-stream", ""}
)

_EXTENSION_MIME_TYPES: dict[str, str] = {
    ".pdf":  "application/pdf",
    ".txt":  "text/plain",
    ".csv":  "text/csv",
    ".md":   "text/markdown",
    ".doc":  "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls":  "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png":  "image/png",
    ".gif":  "image/gif",
    ".webp": "image/webp",
    ".tif":  "image/tiff",
    ".tiff": "image/tiff",
    ".bmp":  "image/bmp",
}

# Exact MIME → type tag. text/* and image/* are matched by prefix.
# Legacy OLE2 .doc / .xls stay unmapped: python-docx and openpyxl only read OOXML.
_MIME_TYPE_TAGS: dict[str, str] = {
    "application/pdf": "pdf",
    "application/x-pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/json": "text",
    "application/xml": "text",
}

_PREFIX_TYPE_TAGS: tuple[tuple[str, str], ...] = (
    ("text/", "text"),
    ("image/", "image"),
)


def mime_type_for_filename(filename: str | None) -> str | None:
    if not filename:
        return None
    _, ext = os.path.splitext(filename)
    return _EXTENSION_MIME_TYPES.get(ext.lower())


def type_tag_for_mime(mime_type: str | None) -> str | None:
    if not mime_type:
        return None
    normalized = mime_type.split(";", 1)[0].strip().lower()
    tag = _MIME_TYPE_TAGS.get(normalized)
    if tag:
        return tag
    for prefix, prefix_tag in _PREFIX_TYPE_TAGS:
        if normalized.startswith(prefix):
            return prefix_tag
    return None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ExtractorRegistry:
    """Map from type tag to extractor implementation."""

    def __init__(self) -> None:
        self._extractors: dict[str, BaseExtractor] = {}

    def register(self, tag: str, extractor: BaseExtractor) -> None:
        self._extractors[tag] = extractor

    def get(self, tag: str | None) -> BaseExtractor | None:
        if tag is None:
            return None
        return self._extractors.get(tag)

    def tags(self) -> list[str]:
        return sorted(self._extractors)


def build_default_registry(
    pdf_backend: str = "pymupdf",
    ocr_language: str = "eng",
    timeout: float = 120.0,
) -> ExtractorRegistry:
    registry = ExtractorRegistry()
    if pdf_backend == "content_stream":
        registry.register("pdf", ContentStreamPdfExtractor(timeout=timeout))
    else:
        registry.register("pdf", PyMuPDFExtractor(timeout=timeout))
    registry.register("docx",  DocxExtractor(timeout=timeout))
    registry.register("xlsx",  XlsxExtractor(timeout=timeout))
    registry.register("text",  PlainTextExtractor(timeout=timeout))
    registry.register("image", ImageOcrExtractor(language=ocr_language, timeout=timeout))
    return registry


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class ExtractionDispatcher:
    """
    Stateless dispatcher — pick the extractor, run it, wrap the result.

    Usage:
        dispatcher = ExtractionDispatcher(build_default_registry())
        extracted  = await dispatcher.extract(data, mime_type, filename)
    """

    def __init__(self, registry: ExtractorRegistry) -> None:
        self._registry = registry

    def resolve(self, mime_type: str | None, filename: str | None) -> tuple[str | None, str | None]:
        """Return (resolved_mime_type, type_tag); either may be None."""
        declared = (mime_type or "").split(";", 1)[0].strip().lower()
        if declared and declared not in GENERIC_MIME_TYPES:
            tag = type_tag_for_mime(declared)
            if tag and self._registry.get(tag):
                return declared, tag

        inferred = mime_type_for_filename(filename)
        tag = type_tag_for_mime(inferred)
        if tag and self._registry.get(tag):
            return inferred, tag

        if declared and declared not in GENERIC_MIME_TYPES:
            return declared, None
        return inferred, None

    def check_supported(self, mime_type: str | None, filename: str | None) -> None:
        """
        Raise UNSUPPORTED_TYPE up front when a specific type was declared and
        neither it nor the extension maps to an extractor. Undeclared types
        pass: they still get the plain-text last resort once bytes are read.
        """
        resolved, tag = self.resolve(mime_type, filename)
        if tag is None and resolved is not None:
            raise ExtractionError.unsupported(mime_type, filename)

    async def extract(
        self,
        data:      bytes,
        mime_type: str | None = None,
        filename:  str | None = None,
        progress:  ProgressSink = NULL_PROGRESS,
        cancel:    CancellationToken | None = None,
    ) -> ExtractedText:
        self.check_supported(mime_type, filename)
        resolved, tag = self.resolve(mime_type, filename)
        if tag is None:
            return self._last_resort_text(data, mime_type, filename)

        extractor = self._registry.get(tag)
        t0 = time.monotonic()
        output = await extractor.run(data, progress, cancel)
        elapsed_ms = (time.monotonic() - t0) * 1000

        logger.info(
            "Extraction | method=%s mime=%s chars=%d elapsed_ms=%.0f",
            extractor.method_name, resolved, len(output.text), elapsed_ms,
        )
        return ExtractedText(
            text=output.text,
            extraction_method=extractor.method_name,
            source_mime_type=resolved,
            page_count=output.page_count,
            confidence=output.confidence,
            elapsed_ms=elapsed_ms,
        )

    @staticmethod
    def decodes_as_text(data: bytes) -> bool:
        """True when the bytes qualify for the plain-text last resort."""
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return False
        return "\x00" not in text

    @classmethod
    def _last_resort_text(
        cls,
        data:      bytes,
        mime_type: str | None,
        filename:  str | None,
    ) -> ExtractedText:
        if not cls.decodes_as_text(data):
            raise ExtractionError.unsupported(mime_type, filename)
        text = data.decode("utf-8")

        logger.info(
            "Extraction | method=plain-text-fallback filename=%s chars=%d",
            filename, len(text),
        )
        return ExtractedText(
            text=text,
            extraction_method="plain-text-fallback",
            source_mime_type="text/plain",
        )
