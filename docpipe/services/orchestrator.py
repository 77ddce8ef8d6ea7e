"""
Processing Orchestrator  —  per-document state machine
═══════════════════════════════════════════════════════

    PENDING ──start(CAS)──► PROCESSING(0.0)
                               │  extraction          0.0 → 0.3
                               │  chunking                  0.3
                               │  embedding batches   0.3 → 0.9
                               │  finalize            0.9 → 1.0
                               ▼
                 COMPLETED(1.0, processed_at)   or   ERROR(message, processed_at)

  • Entering PROCESSING is a compare-and-swap from PENDING or ERROR; a second
    concurrent run fails with ProcessingConflictError instead of racing, and a
    COMPLETED document only runs again after reset_for_reprocessing().
  • Progress writes go through a MonotonicProgressSink and a SQL guard, so a
    poller never sees progress move backwards.
  • Every failure is persisted as ERROR *and* re-raised to the caller.
  • Documents flagged `skip_server_processing` / `client_processed` go straight
    to COMPLETED without extraction or embedding.

Collaborators are injected: state store, chunk store, blob storage,
extraction dispatcher and embedding generator. Only build_orchestrator()
reads application settings.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass

from docpipe.core.errors import (
    DocumentNotFoundError,
    ExtractionError,
    PipelineError,
    ProcessingCancelled,
    ProcessingConflictError,
)
from docpipe.processing.chunking import chunker_for
from docpipe.processing.dispatcher import ExtractionDispatcher
from docpipe.processing.embeddings import EmbeddingBatchGenerator
from docpipe.processing.extractors import ExtractedText
from docpipe.processing.progress import (
    NULL_PROGRESS,
    CancellationToken,
    MonotonicProgressSink,
    ProgressSink,
)
from docpipe.services.state import (
    STATUS_COMPLETED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    DocumentSnapshot,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Milestones (document-level progress scale)
# ---------------------------------------------------------------------------

EXTRACTION_END = 0.3
EMBEDDING_END  = 0.9

CANCELLED_MESSAGE   = "Processing cancelled"
NO_TEXT_MESSAGE     = "No text could be extracted"
SKIP_FLAGS          = ("skip_server_processing", "client_processed")
PROVIDED_TEXT_METHOD = "provided-text"


@dataclass
class ProcessingOutcome:
    document_id:       uuid.UUID
    status:            str
    chunks_count:      int
    skipped:           bool = False
    extraction_method: str | None = None
    elapsed_ms:        float = 0.0


class _PersistingProgressSink(ProgressSink):
    """Writes every report to the state store, then relays it to the caller's sink."""

    def __init__(self, state_store, document_id: uuid.UUID, relay: ProgressSink) -> None:
        self._state       = state_store
        self._document_id = document_id
        self._relay       = relay

    async def report(self, progress: float, stage: str = "") -> None:
        await self._state.update_progress(self._document_id, progress)
        await self._relay.report(progress, stage)


class ProcessingOrchestrator:
    """
    Sequences extraction → chunking → embedding for one document per call.

    Usage:
        orchestrator = ProcessingOrchestrator(state, chunks, storage, dispatcher, embedder)
        outcome      = await orchestrator.process_document(document_id)
    """

    def __init__(
        self,
        state_store,
        chunk_store,
        storage,
        dispatcher:    ExtractionDispatcher,
        embedder:      EmbeddingBatchGenerator,
        chunk_size:    int = 1000,
        chunk_overlap: int = 200,
    ) -> None:
        self._state         = state_store
        self._chunks        = chunk_store
        self._storage       = storage
        self._dispatcher    = dispatcher
        self._embedder      = embedder
        self._chunk_size    = chunk_size
        self._chunk_overlap = chunk_overlap

    @property
    def dispatcher(self) -> ExtractionDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def process_document(
        self,
        document_id: uuid.UUID,
        progress:    ProgressSink = NULL_PROGRESS,
        cancel:      CancellationToken | None = None,
    ) -> ProcessingOutcome:
        """Full run from blob storage: download, extract, chunk, embed."""
        doc = await self._load(document_id)
        if self._should_skip(doc):
            return await self._complete_skipped(doc)

        # Reject a type nobody can extract before touching processing state
        self._dispatcher.check_supported(doc.file_type, doc.filename)

        async def extract(sink: ProgressSink, token: CancellationToken | None) -> ExtractedText:
            data = await self._storage.download(doc.file_path)
            if token is not None:
                token.raise_if_cancelled()
            return await self._dispatcher.extract(
                data, doc.file_type, doc.filename, progress=sink, cancel=token,
            )

        return await self._run(doc, extract, progress, cancel)

    async def process_text(
        self,
        document_id: uuid.UUID,
        text:        str,
        progress:    ProgressSink = NULL_PROGRESS,
        cancel:      CancellationToken | None = None,
    ) -> ProcessingOutcome:
        """Run with text already extracted by an upstream collaborator."""
        doc = await self._load(document_id)
        if self._should_skip(doc):
            return await self._complete_skipped(doc)

        async def extract(sink: ProgressSink, token: CancellationToken | None) -> ExtractedText:
            await sink.report(1.0, "text_provided")
            return ExtractedText(
                text=text,
                extraction_method=PROVIDED_TEXT_METHOD,
                source_mime_type=doc.file_type,
            )

        return await self._run(doc, extract, progress, cancel)

    async def mark_cancelled(self, document_id: uuid.UUID) -> None:
        await self._state.mark_error(document_id, CANCELLED_MESSAGE)

    async def record_failure(self, document_id: uuid.UUID, message: str) -> bool:
        """
        Persist ERROR for a document no run ever picked up (still PENDING).

        Documents in PROCESSING belong to another run, and ERROR / COMPLETED
        were written by the run that finished them; all three are left alone.
        """
        return await self._state.mark_error(document_id, message, expected_status=STATUS_PENDING)

    async def release_abandoned_run(self, document_id: uuid.UUID, message: str) -> bool:
        """
        PROCESSING → ERROR for a run that was killed or lost (revoked worker,
        crashed task), so the next execution path can take the document.
        """
        return await self._state.mark_error(document_id, message, expected_status=STATUS_PROCESSING)

    async def reset_for_reprocessing(self, document_id: uuid.UUID) -> None:
        """Explicit re-processing request: PENDING, progress 0, prior chunks removed."""
        if not await self._state.reset(document_id):
            doc = await self._load(document_id)
            raise ProcessingConflictError(doc.id)
        deleted = await self._chunks.delete_chunks(document_id)
        logger.info("Reprocess reset | doc=%s chunks_deleted=%d", document_id, deleted)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _run(self, doc: DocumentSnapshot, extract, progress: ProgressSink, cancel) -> ProcessingOutcome:
        t0 = time.monotonic()
        if not await self._state.try_start(doc.id):
            raise ProcessingConflictError(doc.id, doc.status)

        sink = MonotonicProgressSink(_PersistingProgressSink(self._state, doc.id, progress))

        try:
            await sink.report(0.0, "started")
            # The winning run owns the chunk rows: clear leftovers from failed runs
            await self._chunks.delete_chunks(doc.id)

            # ── Extraction ───────────────────────────────────────────
            extracted = await extract(sink.scaled(0.0, EXTRACTION_END), cancel)
            if not extracted.text or not extracted.text.strip():
                raise ExtractionError.failed(NO_TEXT_MESSAGE)
            await self._state.merge_metadata(doc.id, self._extraction_metadata(extracted))
            await sink.report(EXTRACTION_END, "extracted")
            self._checkpoint(cancel)

            # ── Chunking ─────────────────────────────────────────────
            chunker = chunker_for(extracted.source_mime_type, self._chunk_size, self._chunk_overlap)
            chunks = [c for c in chunker.chunk(extracted.text) if c and c.strip()]
            logger.info(
                "Chunked | doc=%s chunks=%d method=%s",
                doc.id, len(chunks), extracted.extraction_method,
            )
            self._checkpoint(cancel)

            # ── Embedding ────────────────────────────────────────────
            await self._embedder.embed_and_store(
                doc.id,
                chunks,
                progress=sink.scaled(EXTRACTION_END, EMBEDDING_END),
                cancel=cancel,
                extra_metadata={"extraction_method": extracted.extraction_method},
            )
            await sink.report(EMBEDDING_END, "finalizing")
            self._checkpoint(cancel)

            # ── Finalize ─────────────────────────────────────────────
            if not await self._state.mark_completed(doc.id, len(chunks)):
                # Someone else (a cancel request) already moved the document on
                raise ProcessingCancelled()

        except PipelineError as exc:
            await self._fail(doc.id, exc.message)
            raise
        except asyncio.CancelledError:
            await self._fail(doc.id, CANCELLED_MESSAGE)
            raise
        except Exception as exc:
            await self._fail(doc.id, f"{type(exc).__name__}: {exc}")
            raise

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Processing complete | doc=%s chunks=%d method=%s elapsed_ms=%.0f",
            doc.id, len(chunks), extracted.extraction_method, elapsed_ms,
        )
        return ProcessingOutcome(
            document_id=doc.id,
            status=STATUS_COMPLETED,
            chunks_count=len(chunks),
            extraction_method=extracted.extraction_method,
            elapsed_ms=elapsed_ms,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, document_id: uuid.UUID) -> DocumentSnapshot:
        doc = await self._state.get(document_id)
        if doc is None:
            raise DocumentNotFoundError(document_id)
        return doc

    @staticmethod
    def _should_skip(doc: DocumentSnapshot) -> bool:
        return any(bool(doc.metadata.get(flag)) for flag in SKIP_FLAGS)

    async def _complete_skipped(self, doc: DocumentSnapshot) -> ProcessingOutcome:
        if not await self._state.complete_skipped(doc.id):
            raise ProcessingConflictError(doc.id)
        logger.info("Processing skipped | doc=%s reason=pre-processed upstream", doc.id)
        return ProcessingOutcome(
            document_id=doc.id,
            status=STATUS_COMPLETED,
            chunks_count=doc.chunks_count or 0,
            skipped=True,
        )

    @staticmethod
    def _checkpoint(cancel: CancellationToken | None) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()

    @staticmethod
    def _extraction_metadata(extracted: ExtractedText) -> dict:
        meta = {
            "extraction_method": extracted.extraction_method,
            "source_mime_type":  extracted.source_mime_type,
        }
        if extracted.page_count is not None:
            meta["page_count"] = extracted.page_count
        if extracted.confidence >= 0:
            meta["ocr_confidence"] = extracted.confidence
        return meta

    async def _fail(self, document_id: uuid.UUID, message: str) -> None:
        try:
            await self._state.mark_error(document_id, message)
        except Exception:
            # The original failure is re-raised by the caller either way
            logger.exception("Failed to persist ERROR state | doc=%s", document_id)


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------

def build_orchestrator(api_key: str | None = None) -> ProcessingOrchestrator:
    """Wire a production orchestrator from application settings."""
    from docpipe.core.config import settings
    from docpipe.processing.dispatcher import build_default_registry
    from docpipe.processing.embeddings import build_embedding_provider
    from docpipe.services.state import ChunkStore, DocumentStateStore
    from docpipe.storage.s3 import build_blob_storage

    chunk_store = ChunkStore()
    return ProcessingOrchestrator(
        state_store=DocumentStateStore(),
        chunk_store=chunk_store,
        storage=build_blob_storage(),
        dispatcher=ExtractionDispatcher(
            build_default_registry(
                pdf_backend=settings.pdf_backend,
                ocr_language=settings.ocr_language,
                timeout=settings.extraction_timeout_seconds,
            )
        ),
        embedder=EmbeddingBatchGenerator(
            provider=build_embedding_provider(api_key),
            chunk_store=chunk_store,
            batch_size=settings.embedding_batch_size,
            batch_delay=settings.embedding_batch_delay_seconds,
            request_timeout=settings.embedding_request_timeout_seconds,
        ),
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
    )
