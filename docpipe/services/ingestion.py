"""
Document Ingestion Service

Upload pipeline behind POST /api/v1/documents/upload:
  1. Read the upload with a hard size ceiling
  2. Detect the MIME type (magic bytes first, then extension)
  3. Reject types no extractor is registered for; untyped uploads pass
     only when they decode as UTF-8 text (the plain-text last resort)
  4. Upload bytes to blob storage under documents/<document_id>/<filename>
  5. Insert the documents row (status=pending)
  6. Return the 202 body; the route schedules coordination afterwards

If step 5 fails the blob from step 4 is deleted best-effort; a failed
cleanup is logged and never masks the original error.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone

from fastapi import HTTPException, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from docpipe.models.documents import Document
from docpipe.processing.dispatcher import (
    GENERIC_MIME_TYPES,
    ExtractionDispatcher,
    mime_type_for_filename,
)
from docpipe.schemas.documents import (
    DocumentUploadResponse,
    ProcessingErrors,
    ProcessingStatus,
)
from docpipe.storage.s3 import BlobStorage, document_key

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File type detection
# ---------------------------------------------------------------------------

_MAGIC_BYTES: tuple[tuple[bytes, str], ...] = (
    (b"%PDF",              "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff",      "image/jpeg"),
    (b"GIF87a",            "image/gif"),
    (b"GIF89a",            "image/gif"),
    (b"II*\x00",           "image/tiff"),
    (b"MM\x00*",           "image/tiff"),
)

_ZIP_MAGIC = b"PK\x03\x04"
_OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

_XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def detect_mime_type(filename: str, head: bytes, declared: str | None = None) -> str:
    """
    Magic bytes first, then the filename extension, then the client's
    declared Content-Type. Container formats (ZIP / OLE2) are told apart by
    extension.
    """
    for magic, mime in _MAGIC_BYTES:
        if head.startswith(magic):
            return mime
    if head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return "image/webp"

    ext = _get_extension(filename)
    if head.startswith(_ZIP_MAGIC) and ext in (".xlsx", ".docx"):
        return _XLSX if ext == ".xlsx" else _DOCX
    if head.startswith(_OLE_MAGIC) and ext in (".xls", ".doc"):
        return "application/vnd.ms-excel" if ext == ".xls" else "application/msword"

    inferred = mime_type_for_filename(filename)
    if inferred:
        return inferred

    declared = (declared or "").split(";", 1)[0].strip().lower()
    if declared and declared not in GENERIC_MIME_TYPES:
        return declared
    return "application/octet-stream"


def _get_extension(filename: str) -> str:
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._\-]")


def sanitize_filename(filename: str) -> str:
    """Basename only, OS/S3-safe characters, capped at 200 chars."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = _UNSAFE_CHARS.sub("_", basename)
    return safe[:200] or "upload"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class IngestionService:
    """
    One instance per request; every collaborator is injected.

    Usage:
        service  = IngestionService(db, storage, dispatcher, max_size_bytes)
        response = await service.ingest(file, title, metadata)
    """

    def __init__(
        self,
        db:             AsyncSession,
        storage:        BlobStorage,
        dispatcher:     ExtractionDispatcher,
        max_size_bytes: int,
    ) -> None:
        self._db         = db
        self._storage    = storage
        self._dispatcher = dispatcher
        self._max_size   = max_size_bytes

    async def ingest(
        self,
        file:     UploadFile,
        title:    str | None = None,
        metadata: dict | None = None,
    ) -> DocumentUploadResponse:
        """
        Store the upload and insert a PENDING document.
        Raises HTTPException with a structured ErrorResponse on every error case.
        """
        # ---- Step 1: Read with size guard ------------------------------
        data = await self._read_upload(file)
        original_name = file.filename or "upload"

        # ---- Step 2/3: Detect and validate type ------------------------
        mime = detect_mime_type(original_name, data[:16], file.content_type)
        resolved, tag = self._dispatcher.resolve(mime, original_name)
        # No type at all: accepted only if the plain-text last resort can read it
        untyped_text = resolved is None and self._dispatcher.decodes_as_text(data)
        if tag is None and not untyped_text:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=ProcessingErrors.unsupported_file_type(original_name, mime).model_dump(),
            )

        safe_filename = sanitize_filename(original_name)
        document_id   = uuid.uuid4()
        title         = (title or "").strip() or original_name
        key           = document_key(document_id, safe_filename)

        logger.info(
            "Ingest start | doc=%s file=%s size=%d mime=%s",
            document_id, safe_filename, len(data), mime,
        )

        # ---- Step 4: Blob storage ------------------------------------
        try:
            stored = await self._storage.upload(key, data, mime)
        except Exception as exc:
            logger.exception("Storage upload failed | doc=%s", document_id)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=ProcessingErrors.storage_error(str(exc)).model_dump(),
            ) from exc

        # ---- Step 5: Metadata row ------------------------------------
        doc = Document(
            id=document_id,
            title=title[:500],
            filename=safe_filename,
            file_path=stored.key,
            file_type=mime,
            file_size=len(data),
            status=ProcessingStatus.PENDING.value,
            progress=0.0,
            doc_metadata=dict(metadata or {}),
        )
        try:
            self._db.add(doc)
            await self._db.flush()
        except Exception as exc:
            logger.exception("Document insert failed | doc=%s", document_id)
            await self._cleanup_blob(stored.key)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=ProcessingErrors.storage_error("Could not record document metadata").model_dump(),
            ) from exc

        logger.info("Ingest stored | doc=%s key=%s", document_id, stored.key)
        return DocumentUploadResponse(
            document_id=document_id,
            title=doc.title,
            filename=safe_filename,
            file_path=stored.key,
            file_type=mime,
            file_size=len(data),
            status=ProcessingStatus.PENDING,
            created_at=datetime.now(timezone.utc),
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _read_upload(self, file: UploadFile | None) -> bytes:
        if file is None or not file.filename:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=ProcessingErrors.missing_file().model_dump(),
            )

        data = await file.read()
        if not data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=ProcessingErrors.missing_file().model_dump(),
            )
        if len(data) > self._max_size:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=ProcessingErrors.file_too_large(len(data), self._max_size).model_dump(),
            )
        return data

    async def _cleanup_blob(self, key: str) -> None:
        try:
            await self._storage.delete(key)
        except Exception as exc:
            logger.warning("Best-effort blob cleanup failed | key=%s error=%s", key, exc)
