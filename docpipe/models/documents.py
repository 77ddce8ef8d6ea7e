"""
SQLAlchemy ORM Models — Documents & Document Chunks

Using SQLAlchemy mapped classes (2.x style) for full async support.

Processing state lives in dedicated columns (status, progress,
error_message, chunks_count, processed_at) so every transition can be a
single atomic UPDATE. The `metadata` JSONB column carries free-form flags
such as client_processed / skip_server_processing / extraction_method.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from upload → extraction → chunk embedding.

    State machine (status column):
        pending    — file stored, processing not yet started (or reset for reprocessing)
        processing — one run is extracting / embedding; progress in [0, 1]
        completed  — every chunk embedded and stored
        error      — terminal failure or cancellation (see error_message)

    At most one run holds a document in 'processing': the transition into
    it is a compare-and-swap on this column.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'error')",
            name="documents_status_check",
        ),
        CheckConstraint(
            "progress >= 0 AND progress <= 1",
            name="documents_progress_range",
        ),
        Index("idx_documents_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    title: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="User-provided display title",
    )
    filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Original sanitized filename provided by the client",
    )
    file_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Blob storage key: documents/<doc_id>/<filename>",
    )
    file_type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Declared or inferred MIME type",
    )
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Processing state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="pending",
        server_default="pending",
    )
    progress: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        server_default="0",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='error'",
    )
    chunks_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    chunks: Mapped[list["DocumentChunk"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentChunk.chunk_index",
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} status={self.status} "
            f"progress={self.progress:.2f} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model: document_chunks (single canonical chunk store)
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """
    One embedded text chunk of a Document.

    chunk_index is contiguous 0..total_chunks-1 per document and encodes
    reading order. Rows are written in batches and never updated.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_position"),
        Index("idx_document_chunks_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str]     = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[list[float]]] = mapped_column(ARRAY(Float), nullable=True)
    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="{chunk_index, total_chunks, ...}",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    document: Mapped[Document] = relationship(back_populates="chunks")

    def __repr__(self) -> str:
        return f"<DocumentChunk doc={self.document_id} index={self.chunk_index}>"
