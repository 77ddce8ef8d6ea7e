"""
Processing-state and chunk repositories.

Every processing-state transition is ONE UPDATE statement that touches only
the processing columns, committed in its own short transaction. There is no
read-merge-write of the metadata blob: flag patches use the JSONB `||`
operator inside the same UPDATE.

Guards (all enforced in SQL, not in Python):

    try_start          status IN ('pending', 'error')  compare-and-swap; COMPLETED
                                                       needs an explicit reset()
    update_progress    status = 'processing' AND progress <= :p
    mark_completed     status = 'processing'           a cancelled run cannot
                                                       flip ERROR back
    complete_skipped   status <> 'processing'
    reset              status <> 'processing'
"""

from __future__ import annotations

import logging
import uuid
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from sqlalchemy import delete, func, insert, literal, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from docpipe.models.documents import Document, DocumentChunk
from docpipe.processing.embeddings import ChunkRecord

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

STATUS_PENDING    = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED  = "completed"
STATUS_ERROR      = "error"

STARTABLE_STATUSES = (STATUS_PENDING, STATUS_ERROR)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_session_factory() -> AbstractAsyncContextManager[AsyncSession]:
    from docpipe.db.session import get_admin_db

    return get_admin_db()


@dataclass
class DocumentSnapshot:
    """Read-only copy of a documents row, detached from any session."""
    id:            uuid.UUID
    title:         str
    filename:      str
    file_path:     str
    file_type:     str
    file_size:     int
    status:        str
    progress:      float
    error_message: str | None = None
    chunks_count:  int | None = None
    processed_at:  datetime | None = None
    metadata:      dict = field(default_factory=dict)

    @classmethod
    def from_model(cls, doc: Document) -> "DocumentSnapshot":
        return cls(
            id=doc.id,
            title=doc.title,
            filename=doc.filename,
            file_path=doc.file_path,
            file_type=doc.file_type,
            file_size=doc.file_size,
            status=doc.status,
            progress=doc.progress,
            error_message=doc.error_message,
            chunks_count=doc.chunks_count,
            processed_at=doc.processed_at,
            metadata=dict(doc.doc_metadata or {}),
        )


# ---------------------------------------------------------------------------
# Document processing state
# ---------------------------------------------------------------------------

class DocumentStateStore:
    """
    Atomic processing-state transitions on the documents table.

    Usage:
        store = DocumentStateStore()            # background sessions
        if not await store.try_start(doc_id):
            raise ProcessingConflictError(doc_id)
    """

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory or _default_session_factory

    async def get(self, document_id: uuid.UUID) -> DocumentSnapshot | None:
        async with self._session_factory() as session:
            doc = await session.get(Document, document_id)
            return DocumentSnapshot.from_model(doc) if doc is not None else None

    async def try_start(self, document_id: uuid.UUID) -> bool:
        """PENDING/ERROR → PROCESSING(0). False if a run is active, the document is done or the row is missing."""
        stmt = (
            update(Document)
            .where(Document.id == document_id, Document.status.in_(STARTABLE_STATUSES))
            .values(
                status=STATUS_PROCESSING,
                progress=0.0,
                error_message=None,
                chunks_count=None,
                processed_at=None,
            )
            .returning(Document.id)
        )
        won = await self._execute_returning(stmt)
        logger.info("State | doc=%s transition=start won=%s", document_id, won)
        return won

    async def update_progress(self, document_id: uuid.UUID, progress: float) -> bool:
        progress = min(max(progress, 0.0), 1.0)
        stmt = (
            update(Document)
            .where(
                Document.id == document_id,
                Document.status == STATUS_PROCESSING,
                Document.progress <= progress,
            )
            .values(progress=progress)
            .returning(Document.id)
        )
        return await self._execute_returning(stmt)

    async def mark_completed(self, document_id: uuid.UUID, chunks_count: int) -> bool:
        stmt = (
            update(Document)
            .where(Document.id == document_id, Document.status == STATUS_PROCESSING)
            .values(
                status=STATUS_COMPLETED,
                progress=1.0,
                error_message=None,
                chunks_count=chunks_count,
                processed_at=_utcnow(),
            )
            .returning(Document.id)
        )
        done = await self._execute_returning(stmt)
        logger.info(
            "State | doc=%s transition=completed chunks=%d applied=%s",
            document_id, chunks_count, done,
        )
        return done

    async def complete_skipped(self, document_id: uuid.UUID) -> bool:
        """Short-circuit straight to COMPLETED for externally pre-processed documents."""
        stmt = (
            update(Document)
            .where(Document.id == document_id, Document.status != STATUS_PROCESSING)
            .values({
                Document.status:        STATUS_COMPLETED,
                Document.progress:      1.0,
                Document.error_message: None,
                Document.processed_at:  _utcnow(),
                Document.doc_metadata:  self._merged({"server_processing_skipped": True}),
            })
            .returning(Document.id)
        )
        done = await self._execute_returning(stmt)
        logger.info("State | doc=%s transition=completed_skipped applied=%s", document_id, done)
        return done

    async def mark_error(
        self,
        document_id:     uuid.UUID,
        message:         str,
        expected_status: str | None = None,
    ) -> bool:
        """Any state → ERROR, or only from `expected_status` when given."""
        stmt = update(Document).where(Document.id == document_id)
        if expected_status is not None:
            stmt = stmt.where(Document.status == expected_status)
        stmt = (
            stmt
            .values(
                status=STATUS_ERROR,
                error_message=message,
                processed_at=_utcnow(),
            )
            .returning(Document.id)
        )
        done = await self._execute_returning(stmt)
        logger.warning("State | doc=%s transition=error message=%s", document_id, message)
        return done

    async def reset(self, document_id: uuid.UUID) -> bool:
        """Explicit re-processing request: back to PENDING with a clean slate."""
        stmt = (
            update(Document)
            .where(Document.id == document_id, Document.status != STATUS_PROCESSING)
            .values(
                status=STATUS_PENDING,
                progress=0.0,
                error_message=None,
                chunks_count=None,
                processed_at=None,
            )
            .returning(Document.id)
        )
        done = await self._execute_returning(stmt)
        logger.info("State | doc=%s transition=reset applied=%s", document_id, done)
        return done

    async def merge_metadata(self, document_id: uuid.UUID, patch: dict) -> bool:
        stmt = (
            update(Document)
            .where(Document.id == document_id)
            .values({Document.doc_metadata: self._merged(patch)})
            .returning(Document.id)
        )
        return await self._execute_returning(stmt)

    async def list_stale_pending(self, older_than: timedelta) -> list[uuid.UUID]:
        cutoff = _utcnow() - older_than
        stmt = (
            select(Document.id)
            .where(Document.status == STATUS_PENDING, Document.created_at < cutoff)
            .order_by(Document.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ------------------------------------------------------------------

    @staticmethod
    def _merged(patch: dict):
        return Document.doc_metadata.op("||", return_type=JSONB)(literal(patch, JSONB))

    async def _execute_returning(self, stmt) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None


# ---------------------------------------------------------------------------
# Chunk store
# ---------------------------------------------------------------------------

class ChunkStore:
    """document_chunks writer: one multi-row INSERT per embedding batch."""

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory or _default_session_factory

    async def insert_chunks(self, document_id: uuid.UUID, records: Sequence[ChunkRecord]) -> None:
        if not records:
            return
        rows = [
            {
                "document_id":    document_id,
                "chunk_index":    record.chunk_index,
                "content":        record.content,
                "embedding":      record.embedding,
                "chunk_metadata": record.metadata,
            }
            for record in records
        ]
        async with self._session_factory() as session:
            await session.execute(insert(DocumentChunk), rows)
        logger.debug(
            "ChunkStore | doc=%s inserted=%d first_index=%d",
            document_id, len(rows), records[0].chunk_index,
        )

    async def delete_chunks(self, document_id: uuid.UUID) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
            )
            deleted = result.rowcount or 0
        if deleted:
            logger.info("ChunkStore | doc=%s deleted=%d", document_id, deleted)
        return deleted

    async def count_chunks(self, document_id: uuid.UUID) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(DocumentChunk)
                .where(DocumentChunk.document_id == document_id)
            )
            return int(result.scalar_one())
