"""
Document Pipeline API Router

  POST /documents/upload             store file, insert PENDING row, schedule coordination (202)
  POST /documents/process            privileged server path: run the orchestrator inline
  POST /documents/{id}/process       schedule coordination, optionally resetting first (202)
  GET  /documents/{id}/status        latest persisted state
  POST /documents/{id}/cancel        cancel the active run

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. File type detection (magic bytes + extension)         │
  │ 2. Size guard (413)                                      │
  │ 3. Blob upload under documents/<document_id>/            │
  │ 4. DB insert (status=pending)                            │
  │ 5. Coordination scheduled in BackgroundTasks → 202       │
  └─────────────────────────────────────────────────────────┘

Coordination runs after the request transaction has committed, so the
coordinator always finds the new row.
"""

from __future__ import annotations

import json
import logging
from typing import Optional
from uuid import UUID

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Body,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from docpipe.api.dependencies import (
    get_coordinator,
    get_dispatcher,
    get_max_upload_size,
    get_orchestrator,
    get_state_store,
    get_storage,
)
from docpipe.core.errors import (
    DocumentNotFoundError,
    ExtractionError,
    PipelineError,
    ProcessingConflictError,
)
from docpipe.db.session import get_db
from docpipe.processing.dispatcher import ExtractionDispatcher
from docpipe.schemas.documents import (
    CancelResponse,
    DocumentStatusResponse,
    DocumentUploadResponse,
    ErrorResponse,
    ProcessDocumentRequest,
    ProcessDocumentResponse,
    ProcessingErrors,
    ProcessingScheduledResponse,
    ProcessingStatus,
    ScheduleProcessingRequest,
)
from docpipe.services.coordinator import ExecutionCoordinator, coordinate_in_background
from docpipe.services.ingestion import IngestionService
from docpipe.services.orchestrator import ProcessingOrchestrator
from docpipe.services.state import STATUS_COMPLETED, STATUS_PROCESSING, DocumentStateStore
from docpipe.storage.s3 import BlobStorage

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Processing"],
)


def _not_found(document_id: UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=ProcessingErrors.document_not_found(document_id).model_dump(),
    )


def _conflict(document_id: UUID, current_status: str | None = None) -> HTTPException:
    error = (
        ProcessingErrors.already_completed(document_id)
        if current_status == STATUS_COMPLETED
        else ProcessingErrors.already_processing(document_id)
    )
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error.model_dump())


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document for processing",
    responses={
        400: {"model": ErrorResponse, "description": "Missing file, unsupported type or bad metadata"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
        500: {"model": ErrorResponse, "description": "Storage failure"},
    },
)
async def upload_document(
    background_tasks: BackgroundTasks,
    file:        UploadFile      = File(..., description="PDF, DOCX, XLSX, text or image"),
    title:       Optional[str]   = Form(None, max_length=500),
    metadata:    Optional[str]   = Form(None, description="Optional JSON object string"),
    db:          AsyncSession           = Depends(get_db),
    storage:     BlobStorage            = Depends(get_storage),
    dispatcher:  ExtractionDispatcher   = Depends(get_dispatcher),
    coordinator: ExecutionCoordinator   = Depends(get_coordinator),
    max_size:    int                    = Depends(get_max_upload_size),
) -> JSONResponse:
    parsed_metadata: dict | None = None
    if metadata:
        try:
            parsed_metadata = json.loads(metadata)
        except json.JSONDecodeError:
            parsed_metadata = None
        if not isinstance(parsed_metadata, dict):
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content=ProcessingErrors.invalid_metadata().model_dump(mode="json"),
            )

    service = IngestionService(db=db, storage=storage, dispatcher=dispatcher, max_size_bytes=max_size)
    result = await service.ingest(file=file, title=title, metadata=parsed_metadata)

    background_tasks.add_task(coordinate_in_background, coordinator, result.document_id)

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=result.model_dump(mode="json", by_alias=True),
        headers={
            "X-Document-ID": str(result.document_id),
            "Location":      f"/api/v1/documents/{result.document_id}/status",
        },
    )


# ---------------------------------------------------------------------------
# POST /documents/process: privileged server path
# ---------------------------------------------------------------------------

@router.post(
    "/process",
    response_model=ProcessDocumentResponse,
    summary="Run the processing pipeline inline",
    responses={
        404: {"model": ErrorResponse, "description": "Unknown document"},
        409: {"model": ErrorResponse, "description": "A run is already in progress"},
        422: {"model": ErrorResponse, "description": "Extraction or embedding failed (persisted as error)"},
    },
)
async def process_document_inline(
    body:         ProcessDocumentRequest,
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    try:
        if body.extracted_text is not None:
            outcome = await orchestrator.process_text(body.document_id, body.extracted_text)
        else:
            outcome = await orchestrator.process_document(body.document_id)
    except DocumentNotFoundError:
        raise _not_found(body.document_id)
    except ProcessingConflictError as exc:
        raise _conflict(body.document_id, exc.status)
    except ExtractionError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=ProcessingErrors.processing_failed(exc.message, exc.kind.value.upper()).model_dump(),
        )
    except PipelineError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=ProcessingErrors.processing_failed(exc.message).model_dump(),
        )

    response = ProcessDocumentResponse(
        success=True,
        document_id=outcome.document_id,
        status=ProcessingStatus(outcome.status),
        chunks_count=outcome.chunks_count,
        skipped=outcome.skipped,
        message="Processing skipped: document was pre-processed" if outcome.skipped
        else f"Processed {outcome.chunks_count} chunks",
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=response.model_dump(mode="json", by_alias=True))


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/process: schedule coordination
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/process",
    response_model=ProcessingScheduledResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Schedule (re-)processing of a stored document",
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def schedule_processing(
    document_id:      UUID,
    background_tasks: BackgroundTasks,
    reprocess:        bool = Query(False, description="Reset to pending and drop previous chunks first"),
    body:             Optional[ScheduleProcessingRequest] = Body(None),
    orchestrator:     ProcessingOrchestrator = Depends(get_orchestrator),
    coordinator:      ExecutionCoordinator   = Depends(get_coordinator),
    state_store:      DocumentStateStore     = Depends(get_state_store),
) -> JSONResponse:
    doc = await state_store.get(document_id)
    if doc is None:
        raise _not_found(document_id)
    if doc.status == STATUS_PROCESSING or coordinator.is_active(document_id):
        raise _conflict(document_id)
    if doc.status == STATUS_COMPLETED and not reprocess:
        raise _conflict(document_id, doc.status)

    if reprocess:
        try:
            await orchestrator.reset_for_reprocessing(document_id)
        except DocumentNotFoundError:
            raise _not_found(document_id)
        except ProcessingConflictError:
            raise _conflict(document_id)

    extracted_text = body.extracted_text if body is not None else None
    background_tasks.add_task(coordinate_in_background, coordinator, document_id, extracted_text)
    logger.info("Processing scheduled | doc=%s reprocess=%s", document_id, reprocess)

    response = ProcessingScheduledResponse(
        document_id=document_id,
        status=ProcessingStatus.PENDING if reprocess else ProcessingStatus(doc.status),
        reprocess=reprocess,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=response.model_dump(mode="json", by_alias=True),
        headers={"Location": f"/api/v1/documents/{document_id}/status"},
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    response_model_by_alias=True,
    summary="Poll processing status",
    responses={404: {"model": ErrorResponse}},
)
async def get_document_status(
    document_id: UUID,
    state_store: DocumentStateStore = Depends(get_state_store),
) -> DocumentStatusResponse:
    doc = await state_store.get(document_id)
    if doc is None:
        raise _not_found(document_id)

    return DocumentStatusResponse(
        id=doc.id,
        status=ProcessingStatus(doc.status),
        progress=doc.progress,
        error=doc.error_message,
        chunks_count=doc.chunks_count,
        processed_at=doc.processed_at,
        metadata=doc.metadata,
    )


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/cancel",
    response_model=CancelResponse,
    response_model_by_alias=True,
    summary="Cancel the active processing run",
    responses={404: {"model": ErrorResponse}},
)
async def cancel_processing(
    document_id:  UUID,
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
    coordinator:  ExecutionCoordinator   = Depends(get_coordinator),
    state_store:  DocumentStateStore     = Depends(get_state_store),
) -> CancelResponse:
    doc = await state_store.get(document_id)
    if doc is None:
        raise _not_found(document_id)

    cancelled = await coordinator.cancel(document_id)
    if not cancelled and doc.status == STATUS_PROCESSING:
        # Run owned by another process: its completion write is guarded on
        # status=processing, so persisting ERROR here stops it from finishing
        await orchestrator.mark_cancelled(document_id)
        cancelled = True

    current = await state_store.get(document_id)
    return CancelResponse(
        document_id=document_id,
        cancelled=cancelled,
        status=ProcessingStatus(current.status if current else doc.status),
    )
