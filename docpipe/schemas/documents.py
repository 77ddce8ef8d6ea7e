"""
Document Pipeline — Pydantic Request/Response Schemas

Covers:
  - POST /documents/upload              (202 Accepted)
  - POST /documents/process             privileged server path
  - POST /documents/{id}/process        schedule coordination (202)
  - GET  /documents/{id}/status         latest persisted processing state
  - POST /documents/{id}/cancel
  - POST /auth/token                    short-lived worker token
  - All structured error bodies (400, 404, 409, 413, 422, 500)

Wire format is camelCase (documentId, extractedText, chunksCount, expiresIn);
the Python attribute names stay snake_case via field aliases.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Processing state machine
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: pending → processing → completed | error
    """
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    ERROR      = "error"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Upload: 202 Accepted
# ---------------------------------------------------------------------------

class DocumentUploadResponse(_CamelModel):
    """HTTP 202: the file is stored; processing runs in the background."""
    document_id:       UUID             = Field(..., alias="documentId")
    title:             str
    filename:          str
    file_path:         str              = Field(..., alias="filePath")
    file_type:         str              = Field(..., alias="fileType")
    file_size:         int              = Field(..., alias="fileSize")
    status:            ProcessingStatus = ProcessingStatus.PENDING
    created_at:        datetime         = Field(..., alias="createdAt")


# ---------------------------------------------------------------------------
# Privileged server path: POST /documents/process
# ---------------------------------------------------------------------------

class ProcessDocumentRequest(_CamelModel):
    document_id:    UUID        = Field(..., alias="documentId")
    extracted_text: str | None  = Field(None, alias="extractedText")


class ProcessDocumentResponse(_CamelModel):
    success:      bool
    document_id:  UUID             = Field(..., alias="documentId")
    status:       ProcessingStatus
    chunks_count: int              = Field(0, alias="chunksCount")
    skipped:      bool             = False
    message:      str              = ""


# ---------------------------------------------------------------------------
# Coordination: POST /documents/{id}/process
# ---------------------------------------------------------------------------

class ScheduleProcessingRequest(_CamelModel):
    extracted_text: str | None = Field(None, alias="extractedText")


class ProcessingScheduledResponse(_CamelModel):
    document_id: UUID             = Field(..., alias="documentId")
    status:      ProcessingStatus
    reprocess:   bool             = False
    message:     str              = "Processing scheduled"


class CancelResponse(_CamelModel):
    document_id: UUID = Field(..., alias="documentId")
    cancelled:   bool
    status:      ProcessingStatus


# ---------------------------------------------------------------------------
# Status: GET /documents/{id}/status
# ---------------------------------------------------------------------------

class DocumentStatusResponse(_CamelModel):
    """Polled by clients; always the latest committed state."""
    id:           UUID
    status:       ProcessingStatus
    progress:     float          = Field(0.0, ge=0.0, le=1.0)
    error:        str | None     = None
    chunks_count: int | None     = Field(None, alias="chunksCount")
    processed_at: datetime | None = Field(None, alias="processedAt")
    metadata:     dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Worker token: POST /auth/token
# ---------------------------------------------------------------------------

class WorkerTokenRequest(_CamelModel):
    document_id: UUID = Field(..., alias="documentId")


class WorkerTokenResponse(_CamelModel):
    token:      str
    expires_in: int  = Field(..., alias="expiresIn")
    token_type: str  = Field("bearer", alias="tokenType")


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should branch on `error_code`.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class ProcessingErrors:

    @staticmethod
    def unsupported_file_type(filename: str, detected_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{detected_type}' is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=(
                        f"'{filename}' has an unsupported type '{detected_type}'. "
                        "Allowed: PDF, DOCX, XLSX, text and images."
                    ),
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit_bytes // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required and must not be empty.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def invalid_metadata() -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_METADATA_FORMAT",
            message="metadata must be a valid JSON object string.",
            details=[],
        )

    @staticmethod
    def storage_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message="Failed to store the document. Please retry.",
            details=(
                [ErrorDetail(field=None, message=detail, code="STORAGE_ERROR")]
                if detail
                else []
            ),
        )

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
            details=[],
        )

    @staticmethod
    def already_processing(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="ALREADY_PROCESSING",
            message=f"Document '{document_id}' is already being processed.",
            details=[],
        )

    @staticmethod
    def already_completed(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="ALREADY_COMPLETED",
            message=f"Document '{document_id}' is already processed. Pass reprocess=true to run it again.",
            details=[],
        )

    @staticmethod
    def processing_failed(message: str, code: str = "PROCESSING_FAILED") -> ErrorResponse:
        return ErrorResponse(
            error_code=code,
            message="Document processing failed.",
            details=[ErrorDetail(field=None, message=message, code=code)],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            details=[],
            request_id=request_id,
        )
