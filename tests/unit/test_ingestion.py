"""
Unit Tests — IngestionService
══════════════════════════════
All tests:
  • Use mock_db and mock_storage from conftest.py
  • Never touch real PostgreSQL or real S3

Coverage targets:
  ✅ Valid PDF / DOCX / XLSX / TXT / PNG → PENDING document + blob
  ✅ Empty file   → 400 MISSING_FILE
  ✅ Oversized    → 413 FILE_TOO_LARGE
  ✅ Unknown type → 400 UNSUPPORTED_FILE_TYPE (legacy .doc / .xls included)
  ✅ Untyped UTF-8 text accepted, untyped binary rejected
  ✅ S3 failure   → 500 STORAGE_ERROR
  ✅ DB failure   → 500 STORAGE_ERROR + best-effort blob cleanup
  ✅ Magic bytes beat a lying extension / Content-Type
  ✅ Filename sanitization → path traversal stripped
"""

from __future__ import annotations

import io

import pytest
from fastapi import HTTPException, UploadFile
from starlette.datastructures import Headers

from docpipe.models.documents import Document
from docpipe.processing.dispatcher import ExtractionDispatcher, build_default_registry
from docpipe.services.ingestion import IngestionService, detect_mime_type, sanitize_filename

XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def _make_upload_file(filename: str, content: bytes, content_type: str | None = None) -> UploadFile:
    """Build a FastAPI UploadFile backed by an in-memory BytesIO buffer."""
    headers = Headers({"content-type": content_type}) if content_type else None
    return UploadFile(file=io.BytesIO(content), filename=filename, headers=headers)


@pytest.fixture
def make_service(mock_db, mock_storage):
    """Factory: build an IngestionService with injected mocks."""
    def _build(max_size_bytes: int = 1024 * 1024):
        return IngestionService(
            db=mock_db,
            storage=mock_storage,
            dispatcher=ExtractionDispatcher(build_default_registry()),
            max_size_bytes=max_size_bytes,
        )
    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestIngestionServiceHappyPath:

    async def test_valid_pdf_creates_pending_document(
        self, make_service, mock_db, mock_storage, sample_pdf_bytes,
    ):
        resp = await make_service().ingest(
            _make_upload_file("report.pdf", sample_pdf_bytes), title="  Q4 Report  ",
        )

        assert resp.status.value == "pending"
        assert resp.title == "Q4 Report"
        assert resp.file_type == "application/pdf"
        assert resp.file_size == len(sample_pdf_bytes)
        assert resp.file_path == f"documents/{resp.document_id}/report.pdf"
        assert mock_storage.objects[resp.file_path] == sample_pdf_bytes

        row = mock_db.add.call_args.args[0]
        assert isinstance(row, Document)
        assert row.id == resp.document_id
        assert row.status == "pending"
        mock_db.flush.assert_awaited_once()

    @pytest.mark.parametrize(
        "fixture_name, filename, expected",
        [
            ("sample_docx_bytes", "memo.docx", DOCX),
            ("sample_xlsx_bytes", "book.xlsx", XLSX),
            ("sample_png_bytes",  "scan.png",  "image/png"),
        ],
    )
    async def test_supported_formats(self, fixture_name, filename, expected, make_service, request):
        data = request.getfixturevalue(fixture_name)

        resp = await make_service().ingest(_make_upload_file(filename, data))

        assert resp.file_type == expected
        assert resp.title == filename

    async def test_plain_text_and_metadata(self, make_service, mock_db):
        resp = await make_service().ingest(
            _make_upload_file("notes.txt", b"hello world", "text/plain"),
            metadata={"client_processed": True},
        )

        assert resp.file_type == "text/plain"
        assert mock_db.add.call_args.args[0].doc_metadata == {"client_processed": True}


# ─────────────────────────────────────────────────────────────────────────────
# Rejections
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestIngestionServiceRejections:

    async def test_empty_file(self, make_service, mock_storage):
        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(_make_upload_file("empty.pdf", b""))

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["error_code"] == "MISSING_FILE"
        mock_storage.upload.assert_not_called()

    async def test_oversized_file(self, make_service, mock_storage):
        with pytest.raises(HTTPException) as exc_info:
            await make_service(max_size_bytes=10).ingest(_make_upload_file("big.txt", b"x" * 11))

        assert exc_info.value.status_code == 413
        assert exc_info.value.detail["error_code"] == "FILE_TOO_LARGE"
        mock_storage.upload.assert_not_called()

    async def test_zip_archive_is_rejected(self, make_service, mock_storage):
        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(
                _make_upload_file("archive.zip", b"PK\x03\x04rest", "application/zip"),
            )

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["error_code"] == "UNSUPPORTED_FILE_TYPE"
        mock_storage.upload.assert_not_called()

    async def test_opaque_binary_is_rejected(self, make_service, mock_storage):
        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(
                _make_upload_file("blob.bin", b"\x00\x01\x02", "application/x-custom"),
            )

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["error_code"] == "UNSUPPORTED_FILE_TYPE"
        mock_storage.upload.assert_not_called()

    @pytest.mark.parametrize("filename", ["old.doc", "old.xls"])
    async def test_legacy_office_binary_is_rejected(self, filename, make_service, mock_storage):
        ole = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 24

        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(_make_upload_file(filename, ole))

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["error_code"] == "UNSUPPORTED_FILE_TYPE"
        mock_storage.upload.assert_not_called()

    async def test_untyped_binary_is_rejected(self, make_service, mock_storage):
        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(_make_upload_file("payload", b"\x00\x01\x02\xff"))

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["error_code"] == "UNSUPPORTED_FILE_TYPE"
        mock_storage.upload.assert_not_called()

    async def test_untyped_text_is_accepted_for_plain_text_fallback(self, make_service, mock_storage):
        resp = await make_service().ingest(_make_upload_file("README", b"plain notes"))

        assert resp.status.value == "pending"
        assert resp.file_type == "application/octet-stream"
        assert mock_storage.objects[resp.file_path] == b"plain notes"

    async def test_storage_failure(self, make_service, mock_storage, mock_db):
        mock_storage.upload.side_effect = RuntimeError("S3 unavailable")

        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(_make_upload_file("notes.txt", b"hello"))

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail["error_code"] == "STORAGE_ERROR"
        mock_db.add.assert_not_called()

    async def test_database_failure_cleans_up_blob(self, make_service, mock_storage, mock_db):
        mock_db.flush.side_effect = RuntimeError("connection reset")

        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(_make_upload_file("notes.txt", b"hello"))

        assert exc_info.value.status_code == 500
        key = mock_storage.upload.call_args.args[0]
        mock_storage.delete.assert_awaited_once_with(key)

    async def test_failed_cleanup_does_not_mask_error(self, make_service, mock_storage, mock_db):
        mock_db.flush.side_effect = RuntimeError("connection reset")
        mock_storage.delete.side_effect = RuntimeError("S3 unavailable")

        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(_make_upload_file("notes.txt", b"hello"))

        assert exc_info.value.detail["error_code"] == "STORAGE_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestTypeDetection:

    @pytest.mark.parametrize(
        "filename, head, declared, expected",
        [
            ("report.docx", b"%PDF-1.7",                 DOCX,         "application/pdf"),
            ("photo.txt",   b"\x89PNG\r\n\x1a\n....",    "text/plain", "image/png"),
            ("book.xlsx",   b"PK\x03\x04",               None,         XLSX),
            ("memo.docx",   b"PK\x03\x04",               None,         DOCX),
            ("old.xls",     b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", None, "application/vnd.ms-excel"),
            ("old.doc",     b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", None, "application/msword"),
            ("img.webp",    b"RIFF\x00\x00\x00\x00WEBP", None,         "image/webp"),
            ("data.csv",    b"a,b\n1,2",                 None,         "text/csv"),
            ("noext",       b"hello",                    "text/plain", "text/plain"),
            ("noext",       b"hello",                    None,         "application/octet-stream"),
        ],
    )
    def test_detect_mime_type(self, filename, head, declared, expected):
        assert detect_mime_type(filename, head, declared) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("../../etc/passwd", "passwd"),
            ("C:\\Users\\me\\report final.pdf", "report_final.pdf"),
            ("ünïcode.txt", "_n_code.txt"),
            ("", "upload"),
        ],
    )
    def test_sanitize_filename(self, raw, expected):
        assert sanitize_filename(raw) == expected
