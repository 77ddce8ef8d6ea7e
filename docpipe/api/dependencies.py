"""
FastAPI dependencies for the pipeline routes.

Long-lived collaborators (orchestrator, coordinator) are built once in the
application lifespan and read from app.state; tests swap them with
app.dependency_overrides.
"""

from __future__ import annotations

from functools import lru_cache

from fastapi import Request

from docpipe.processing.dispatcher import ExtractionDispatcher
from docpipe.services.coordinator import ExecutionCoordinator
from docpipe.services.orchestrator import ProcessingOrchestrator
from docpipe.services.state import DocumentStateStore
from docpipe.storage.s3 import BlobStorage


def get_orchestrator(request: Request) -> ProcessingOrchestrator:
    return request.app.state.orchestrator


def get_coordinator(request: Request) -> ExecutionCoordinator:
    return request.app.state.coordinator


def get_dispatcher(request: Request) -> ExtractionDispatcher:
    return request.app.state.dispatcher


@lru_cache(maxsize=1)
def get_storage() -> BlobStorage:
    from docpipe.storage.s3 import build_blob_storage

    return build_blob_storage()


@lru_cache(maxsize=1)
def get_state_store() -> DocumentStateStore:
    return DocumentStateStore()


def get_max_upload_size() -> int:
    from docpipe.core.config import settings

    return settings.max_upload_size_bytes
