"""
Unit Tests — SqlDocumentStore & UsageRecorder
══════════════════════════════════════════════
Both take a session factory; here it yields an AsyncMock session, so no
PostgreSQL is needed.

Coverage targets:
  ✅ Rows cross the store boundary as DocumentRecord
  ✅ insert_chunks sends one executemany with plain-value rows
  ✅ SQLAlchemy errors surface as StorageError naming the operation
  ✅ Usage upsert parameters; failure → StorageError
  ✅ Background usage failures are logged and dropped
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from docembed.core.exceptions import StorageError
from docembed.db.store import SqlDocumentStore
from docembed.observability.usage import UsageRecorder
from docembed.schemas.documents import (
    ChunkRecord,
    ChunkType,
    EmbeddingStatus,
    ExtractionStatus,
)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_session():
    session = MagicMock()
    session.get     = AsyncMock(return_value=None)
    session.execute = AsyncMock()
    return session


@pytest.fixture
def session_factory(mock_session):
    @asynccontextmanager
    async def _factory():
        yield mock_session
    return _factory


def _db_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


def _chunk(document_id, tenant_id, index: int) -> ChunkRecord:
    return ChunkRecord(
        document_id=document_id,
        tenant_id=tenant_id,
        chunk_index=index,
        chunk_text=f"Chunk {index}: inspect the heat exchanger for cracks and corrosion.",
        embedding=[0.1, 0.2, 0.3],
        token_count=17,
        chunk_type=ChunkType.SPECIFICATION,
        equipment_type="furnace",
    )


# ─────────────────────────────────────────────────────────────────────────────
# SqlDocumentStore
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestSqlDocumentStore:

    async def test_get_document_maps_row_to_record(
        self, session_factory, mock_session, test_document_id, test_tenant_id,
    ):
        mock_session.get.return_value = SimpleNamespace(
            id=test_document_id,
            tenant_id=test_tenant_id,
            name="Furnace Manual",
            extracted_text="Some text",
            extraction_status="completed",
            embedding_status="pending",
            category="manual",
            equipment_types=None,
            updated_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )

        doc = await SqlDocumentStore(session_factory).get_document(test_document_id)

        assert doc.id == test_document_id
        assert doc.extraction_status == ExtractionStatus.COMPLETED
        assert doc.embedding_status == EmbeddingStatus.PENDING
        assert doc.equipment_types == []
        assert doc.primary_equipment_type is None
        assert doc.is_ready_for_embedding

    async def test_get_document_missing_returns_none(self, session_factory):
        assert await SqlDocumentStore(session_factory).get_document(uuid.uuid4()) is None

    async def test_insert_chunks_executemany(
        self, session_factory, mock_session, test_document_id, test_tenant_id,
    ):
        chunks = [_chunk(test_document_id, test_tenant_id, i) for i in range(3)]

        written = await SqlDocumentStore(session_factory).insert_chunks(chunks)

        assert written == 3
        mock_session.execute.assert_awaited_once()
        _, rows = mock_session.execute.await_args.args
        assert [r["chunk_index"] for r in rows] == [0, 1, 2]
        assert rows[0]["chunk_type"] == "specification"
        assert rows[0]["equipment_type"] == "furnace"
        assert rows[0]["tenant_id"] == test_tenant_id

    async def test_insert_empty_batch_is_noop(self, session_factory, mock_session):
        assert await SqlDocumentStore(session_factory).insert_chunks([]) == 0
        mock_session.execute.assert_not_awaited()

    async def test_delete_returns_rowcount(self, session_factory, mock_session, test_document_id):
        mock_session.execute.return_value = SimpleNamespace(rowcount=4)
        assert await SqlDocumentStore(session_factory).delete_chunks(test_document_id) == 4

    async def test_count_chunks(self, session_factory, mock_session, test_document_id):
        result = MagicMock()
        result.scalar_one.return_value = 9
        mock_session.execute.return_value = result
        assert await SqlDocumentStore(session_factory).count_chunks(test_document_id) == 9

    @pytest.mark.parametrize("operation,expected", [
        ("delete_chunks",        "Failed to delete existing chunks"),
        ("set_embedding_status", "Failed to update embedding status"),
        ("count_chunks",         "Failed to count chunks"),
    ])
    async def test_sqlalchemy_error_becomes_storage_error(
        self, session_factory, mock_session, test_document_id, operation, expected,
    ):
        mock_session.execute.side_effect = _db_error()
        store = SqlDocumentStore(session_factory)

        args = (test_document_id, EmbeddingStatus.FAILED) if operation == "set_embedding_status" \
            else (test_document_id,)
        with pytest.raises(StorageError) as exc_info:
            await getattr(store, operation)(*args)

        assert exc_info.value.message.startswith(expected)

    async def test_insert_error_becomes_storage_error(
        self, session_factory, mock_session, test_document_id, test_tenant_id,
    ):
        mock_session.execute.side_effect = _db_error()

        with pytest.raises(StorageError) as exc_info:
            await SqlDocumentStore(session_factory).insert_chunks(
                [_chunk(test_document_id, test_tenant_id, 0)]
            )

        assert exc_info.value.message.startswith("Failed to insert chunks")

    async def test_claim_stale_pending_locks_and_touches_rows(
        self, session_factory, mock_session, test_document_id,
    ):
        result = MagicMock()
        result.scalars.return_value.all.return_value = [test_document_id]
        mock_session.execute.return_value = result
        cutoff = datetime(2025, 1, 1, tzinfo=timezone.utc)

        claimed = await SqlDocumentStore(session_factory).claim_stale_pending(cutoff, limit=10)

        assert claimed == [test_document_id]
        stmt = mock_session.execute.await_args.args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert sql.startswith("UPDATE documents SET updated_at=")
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "RETURNING documents.id" in sql

    async def test_claim_error_becomes_storage_error(self, session_factory, mock_session):
        mock_session.execute.side_effect = _db_error()

        with pytest.raises(StorageError) as exc_info:
            await SqlDocumentStore(session_factory).claim_stale_pending(datetime.now(timezone.utc))

        assert exc_info.value.message.startswith("Failed to claim stale documents")


# ─────────────────────────────────────────────────────────────────────────────
# UsageRecorder
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestUsageRecorder:

    async def test_track_usage_upserts(self, session_factory, mock_session, test_tenant_id):
        await UsageRecorder(session_factory).track_usage(
            tenant_id=test_tenant_id,
            model="text-embedding-3-small",
            total_tokens=1024,
            chunk_count=3,
            month_year="2025-01",
        )

        _, params = mock_session.execute.await_args.args
        assert params == {
            "tenant_id":    str(test_tenant_id),
            "model":        "text-embedding-3-small",
            "month_year":   "2025-01",
            "total_tokens": 1024,
            "chunk_count":  3,
        }

    async def test_month_defaults_to_current(self, session_factory, mock_session, test_tenant_id):
        await UsageRecorder(session_factory).track_usage(test_tenant_id, "m", 1, 1)

        _, params = mock_session.execute.await_args.args
        assert params["month_year"] == datetime.now().strftime("%Y-%m")

    async def test_track_usage_failure_raises_storage_error(
        self, session_factory, mock_session, test_tenant_id,
    ):
        mock_session.execute.side_effect = _db_error()

        with pytest.raises(StorageError):
            await UsageRecorder(session_factory).track_usage(test_tenant_id, "m", 1, 1)

    async def test_background_recording_completes(
        self, session_factory, mock_session, test_tenant_id,
    ):
        recorder = UsageRecorder(session_factory)

        recorder.record_in_background(test_tenant_id, "m", 10, 2)
        await recorder.drain()

        mock_session.execute.assert_awaited_once()
        assert recorder.pending == 0

    async def test_background_failure_is_logged_and_dropped(
        self, session_factory, mock_session, test_tenant_id, caplog,
    ):
        mock_session.execute.side_effect = _db_error()
        recorder = UsageRecorder(session_factory)

        with caplog.at_level(logging.WARNING, logger="docembed.observability.usage"):
            task = recorder.record_in_background(test_tenant_id, "m", 10, 2)
            await recorder.drain()

        assert task.done()
        assert recorder.pending == 0
        assert any("usage" in r.getMessage().lower() for r in caplog.records)
