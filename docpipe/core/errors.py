"""
Pipeline exception taxonomy.

Every failure the ingestion pipeline can raise derives from PipelineError so
callers (HTTP routes, Celery tasks, the execution coordinator) can catch the
whole family in one place while still branching on the concrete type.

  ExtractionError      bytes → text failed (unsupported type, corrupt input)
  ChunkingError        invalid chunker configuration
  EmbeddingError       provider or persistence failure during a batch
  CoordinationError    worker / token failure, or every execution path failed
  ProcessingCancelled  cooperative cancellation observed at a checkpoint
"""

from __future__ import annotations

from enum import Enum


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class ExtractionErrorKind(str, Enum):
    UNSUPPORTED_TYPE  = "unsupported_type"
    EXTRACTION_FAILED = "extraction_failed"


class ExtractionError(PipelineError):

    def __init__(
        self,
        kind:    ExtractionErrorKind,
        message: str,
        cause:   BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.kind  = kind
        self.cause = cause

    @classmethod
    def unsupported(cls, mime_type: str | None, filename: str | None = None) -> "ExtractionError":
        return cls(
            ExtractionErrorKind.UNSUPPORTED_TYPE,
            f"Unsupported document type: mime={mime_type or '-'} filename={filename or '-'}",
        )

    @classmethod
    def failed(cls, message: str, cause: BaseException | None = None) -> "ExtractionError":
        return cls(ExtractionErrorKind.EXTRACTION_FAILED, message, cause)


class PasswordProtectedError(ExtractionError):
    """Raised instead of returning empty text for encrypted PDFs."""

    def __init__(self, message: str = "PDF is password-protected") -> None:
        super().__init__(ExtractionErrorKind.EXTRACTION_FAILED, message)


# ---------------------------------------------------------------------------
# Chunking / embedding
# ---------------------------------------------------------------------------

class ChunkingError(PipelineError):
    pass


class EmbeddingError(PipelineError):

    def __init__(self, message: str, batch_index: int | None = None) -> None:
        super().__init__(message)
        self.batch_index = batch_index


# ---------------------------------------------------------------------------
# Orchestration / coordination
# ---------------------------------------------------------------------------

class CoordinationError(PipelineError):
    pass


class ProcessingCancelled(PipelineError):

    def __init__(self, message: str = "Processing cancelled") -> None:
        super().__init__(message)


class DocumentNotFoundError(PipelineError):

    def __init__(self, document_id) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class ProcessingConflictError(PipelineError):
    """Another run holds the document, or it is COMPLETED and was not reset."""

    def __init__(self, document_id, status: str | None = None) -> None:
        if status == "completed":
            message = f"Document {document_id} is already completed; request reprocessing to run it again"
        else:
            message = f"Document {document_id} is already being processed"
        super().__init__(message)
        self.document_id = document_id
        self.status      = status
