"""
Unit Tests — DocumentStateStore & ChunkStore SQL
═════════════════════════════════════════════════
The guards live in the WHERE clauses, so every statement the stores build is
captured by a recording session and compiled with the PostgreSQL dialect.
No database is required.

  ✅ try_start        status IN ('pending', 'error'), clean slate in SET
  ✅ update_progress  status = 'processing' AND progress <= :p, value clamped
  ✅ mark_completed   only from 'processing'
  ✅ mark_error       unguarded, or guarded on expected_status
  ✅ complete_skipped / reset refuse 'processing'
  ✅ merge_metadata   JSONB || patch, no read-merge-write
  ✅ list_stale_pending, chunk insert / delete / count
  ✅ get() detaches a DocumentSnapshot from the ORM row
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from docpipe.models.documents import Document
from docpipe.processing.embeddings import ChunkRecord
from docpipe.services.state import ChunkStore, DocumentSnapshot, DocumentStateStore

DOC_ID = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")


class _RecordingSession:
    """AsyncSession stand-in: keeps every executed statement and its params."""

    def __init__(self, returned_id=DOC_ID, rowcount: int = 0, scalar: int = 0, ids=()) -> None:
        self.executed: list[tuple] = []
        self.row = None
        self._returned_id = returned_id
        self._rowcount = rowcount
        self._scalar = scalar
        self._ids = list(ids)

    async def execute(self, stmt, params=None):
        self.executed.append((stmt, params))
        result = MagicMock()
        result.scalar_one_or_none.return_value = self._returned_id
        result.rowcount = self._rowcount
        result.scalar_one.return_value = self._scalar
        result.scalars.return_value.all.return_value = self._ids
        return result

    async def get(self, model, key):
        return self.row


def _factory(session: _RecordingSession):
    @asynccontextmanager
    async def _session():
        yield session
    return _session


def _compiled(session: _RecordingSession, index: int = -1):
    stmt, _ = session.executed[index]
    compiled = stmt.compile(dialect=postgresql.dialect())
    return str(compiled), compiled.params


def _where(sql: str) -> str:
    return sql.split(" WHERE ", 1)[1]


def _set(sql: str) -> str:
    return sql.split(" SET ", 1)[1].split(" WHERE ", 1)[0]


@pytest.fixture
def session() -> _RecordingSession:
    return _RecordingSession()


@pytest.fixture
def store(session) -> DocumentStateStore:
    return DocumentStateStore(session_factory=_factory(session))


# ─────────────────────────────────────────────────────────────────────────────
# Transitions
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestStateTransitions:

    async def test_try_start_only_from_pending_or_error(self, store, session):
        assert await store.try_start(DOC_ID) is True

        sql, params = _compiled(session)
        assert sql.startswith("UPDATE documents SET ")
        assert "documents.status IN" in _where(sql)
        assert list(params["status_1"]) == ["pending", "error"]
        assert params["status"] == "processing"
        assert params["progress"] == 0.0
        assert params["error_message"] is None
        assert params["chunks_count"] is None
        assert sql.endswith("RETURNING documents.id")

    async def test_try_start_lost_race(self):
        session = _RecordingSession(returned_id=None)
        store = DocumentStateStore(session_factory=_factory(session))

        assert await store.try_start(DOC_ID) is False

    async def test_update_progress_is_monotonic_in_sql(self, store, session):
        await store.update_progress(DOC_ID, 1.7)

        sql, params = _compiled(session)
        where = _where(sql)
        assert "documents.status = %(status_1)s" in where
        assert "documents.progress <= %(progress_1)s" in where
        assert params["status_1"] == "processing"
        assert params["progress_1"] == 1.0
        assert "progress=%(progress)s" in _set(sql)
        assert "status=" not in _set(sql)

    async def test_mark_completed_requires_processing(self, store, session):
        await store.mark_completed(DOC_ID, 4)

        sql, params = _compiled(session)
        assert "documents.status = %(status_1)s" in _where(sql)
        assert params["status_1"] == "processing"
        assert params["status"] == "completed"
        assert params["progress"] == 1.0
        assert params["chunks_count"] == 4
        assert params["processed_at"] is not None

    async def test_mark_error_unguarded(self, store, session):
        await store.mark_error(DOC_ID, "Processing cancelled")

        sql, params = _compiled(session)
        assert "documents.status" not in _where(sql)
        assert params["status"] == "error"
        assert params["error_message"] == "Processing cancelled"

    async def test_mark_error_with_expected_status(self, store, session):
        await store.mark_error(DOC_ID, "worker lost", expected_status="processing")

        sql, params = _compiled(session)
        assert "documents.status = %(status_1)s" in _where(sql)
        assert params["status_1"] == "processing"

    @pytest.mark.parametrize("method", ["complete_skipped", "reset"])
    async def test_guarded_against_active_run(self, method, store, session):
        await getattr(store, method)(DOC_ID)

        sql, params = _compiled(session)
        assert "documents.status != %(status_1)s" in _where(sql)
        assert params["status_1"] == "processing"

    async def test_complete_skipped_flags_metadata(self, store, session):
        await store.complete_skipped(DOC_ID)

        sql, params = _compiled(session)
        assert "documents.metadata ||" in _set(sql)
        assert params["param_1"] == {"server_processing_skipped": True}
        assert params["status"] == "completed"

    async def test_merge_metadata_is_single_update(self, store, session):
        await store.merge_metadata(DOC_ID, {"extraction_method": "pymupdf"})

        assert len(session.executed) == 1
        sql, params = _compiled(session)
        assert "metadata=" in _set(sql)
        assert "documents.metadata ||" in _set(sql)
        assert "status=" not in _set(sql)
        assert params["param_1"] == {"extraction_method": "pymupdf"}


# ─────────────────────────────────────────────────────────────────────────────
# Reads
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestStateReads:

    async def test_get_returns_detached_snapshot(self, store, session):
        session.row = Document(
            id=DOC_ID,
            title="Report",
            filename="report.pdf",
            file_path=f"documents/{DOC_ID}/report.pdf",
            file_type="application/pdf",
            file_size=1024,
            status="completed",
            progress=1.0,
            chunks_count=3,
            doc_metadata={"page_count": 2},
        )

        snapshot = await store.get(DOC_ID)

        assert isinstance(snapshot, DocumentSnapshot)
        assert snapshot.status == "completed"
        assert snapshot.chunks_count == 3
        assert snapshot.metadata == {"page_count": 2}
        snapshot.metadata["mutated"] = True
        assert session.row.doc_metadata == {"page_count": 2}

    async def test_get_missing(self, store):
        assert await store.get(DOC_ID) is None

    async def test_list_stale_pending(self):
        stale = [uuid.uuid4(), uuid.uuid4()]
        session = _RecordingSession(ids=stale)
        store = DocumentStateStore(session_factory=_factory(session))

        assert await store.list_stale_pending(timedelta(minutes=5)) == stale

        sql, params = _compiled(session)
        assert "documents.status = %(status_1)s" in sql
        assert "documents.created_at < %(created_at_1)s" in sql
        assert sql.endswith("ORDER BY documents.created_at")
        assert params["status_1"] == "pending"


# ─────────────────────────────────────────────────────────────────────────────
# Chunk store
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestChunkStore:

    async def test_insert_is_one_multi_row_statement(self):
        session = _RecordingSession()
        records = [
            ChunkRecord(chunk_index=i, content=f"chunk {i}", embedding=[0.1, 0.2], metadata={"chunk_index": i})
            for i in range(3)
        ]

        await ChunkStore(session_factory=_factory(session)).insert_chunks(DOC_ID, records)

        assert len(session.executed) == 1
        stmt, rows = session.executed[0]
        assert str(stmt.compile(dialect=postgresql.dialect())).startswith("INSERT INTO document_chunks")
        assert [row["chunk_index"] for row in rows] == [0, 1, 2]
        assert all(row["document_id"] == DOC_ID for row in rows)
        assert rows[1]["chunk_metadata"] == {"chunk_index": 1}

    async def test_insert_nothing_skips_the_database(self):
        session = _RecordingSession()

        await ChunkStore(session_factory=_factory(session)).insert_chunks(DOC_ID, [])

        assert session.executed == []

    async def test_delete_returns_rowcount(self):
        session = _RecordingSession(rowcount=4)

        deleted = await ChunkStore(session_factory=_factory(session)).delete_chunks(DOC_ID)

        sql, _ = _compiled(session)
        assert deleted == 4
        assert sql.startswith("DELETE FROM document_chunks WHERE document_chunks.document_id")

    async def test_count(self):
        session = _RecordingSession(scalar=7)

        assert await ChunkStore(session_factory=_factory(session)).count_chunks(DOC_ID) == 7
        sql, _ = _compiled(session)
        assert "count(*)" in sql
