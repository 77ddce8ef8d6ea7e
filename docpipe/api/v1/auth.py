"""
POST /api/v1/auth/token

Issues the short-lived, document-bound token a worker redeems during `init`.
Provider credentials never leave the server: the token only proves that the
bearer may process one specific document until it expires.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from docpipe.api.dependencies import get_state_store
from docpipe.auth.token import create_worker_token
from docpipe.core.errors import CoordinationError
from docpipe.schemas.documents import (
    ErrorResponse,
    ProcessingErrors,
    WorkerTokenRequest,
    WorkerTokenResponse,
)
from docpipe.services.state import DocumentStateStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Worker Auth"])


@router.post(
    "/token",
    response_model=WorkerTokenResponse,
    response_model_by_alias=True,
    summary="Issue a short-lived worker token for one document",
    responses={
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def issue_worker_token(
    body:        WorkerTokenRequest,
    state_store: DocumentStateStore = Depends(get_state_store),
) -> WorkerTokenResponse:
    if await state_store.get(body.document_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=ProcessingErrors.document_not_found(body.document_id).model_dump(),
        )

    try:
        issued = create_worker_token(body.document_id)
    except CoordinationError as exc:
        logger.error("Worker token issue failed | doc=%s error=%s", body.document_id, exc.message)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=ProcessingErrors.processing_failed(exc.message, "TOKEN_ERROR").model_dump(),
        )

    return WorkerTokenResponse(token=issued.token, expires_in=issued.expires_in)
