"""
Unit Tests — DocumentStore
═══════════════════════════
The session factory is replaced by one yielding an AsyncMock session, so the
SQL itself is not executed; these tests pin the Python-side translation.

Coverage:
  ✅ insert_embeddings serializes chunk_metadata to JSON, one executemany
  ✅ insert_embeddings with no rows → no session opened
  ✅ match_embeddings forwards params and decodes jsonb returned as text
  ✅ save_state writes the flattened state columns plus extra fields
  ✅ adjust_user_stats creates a profile, floors at zero, rounds MB
  ✅ claim_for_processing: single UPDATE … WHERE ocr_status IN … RETURNING id
  ✅ reset_to_pending refuses a recently touched processing row
"""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from docvault.db.store import DocumentStore
from docvault.models.documents import UserProfile
from docvault.processing.state import Completed

DOC_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")
OWNER  = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


def _store(session: AsyncMock) -> DocumentStore:
    opened = []

    @asynccontextmanager
    async def _scope():
        opened.append(session)
        yield session

    store = DocumentStore(session_factory=_scope)
    store.opened = opened
    return store


def _session(rows: list[dict] | None = None, profile=None) -> AsyncMock:
    result = MagicMock()
    result.mappings.return_value.all.return_value = rows or []
    session = AsyncMock()
    session.execute = AsyncMock(return_value=result)
    session.get = AsyncMock(return_value=profile)
    session.add = MagicMock()
    return session


@pytest.mark.unit
class TestEmbeddingRows:

    async def test_insert_serializes_metadata(self):
        session = _session()
        store = _store(session)
        rows = [
            {"document_id": DOC_ID, "content_chunk": "a", "chunk_index": 0, "chunk_type": "text",
             "chunk_metadata": {"importance": "high"}, "embedding": "[0.1]", "tokens_count": 1},
            {"document_id": DOC_ID, "content_chunk": "b", "chunk_index": 1, "chunk_type": "text",
             "chunk_metadata": None, "embedding": "[0.2]", "tokens_count": 1},
        ]

        assert await store.insert_embeddings(rows) == 2

        params = session.execute.await_args.args[1]
        assert json.loads(params[0]["chunk_metadata"]) == {"importance": "high"}
        assert params[1]["chunk_metadata"] == "{}"
        assert session.execute.await_count == 1

    async def test_insert_nothing(self):
        session = _session()
        store = _store(session)
        assert await store.insert_embeddings([]) == 0
        assert store.opened == []

    async def test_match_decodes_jsonb_text(self):
        session = _session(rows=[
            {"document_id": DOC_ID, "chunk_metadata": '{"importance": "low"}', "similarity": 0.9},
            {"document_id": DOC_ID, "chunk_metadata": {"importance": "high"}, "similarity": 0.8},
        ])
        store = _store(session)

        rows = await store.match_embeddings("[0.1]", match_threshold=0.65, match_count=20, owner_id=OWNER)

        assert rows[0]["chunk_metadata"] == {"importance": "low"}
        assert rows[1]["chunk_metadata"] == {"importance": "high"}
        assert session.execute.await_args.args[1] == {
            "query_embedding": "[0.1]",
            "match_threshold": 0.65,
            "match_count":     20,
            "user_id":         OWNER,
        }


@pytest.mark.unit
class TestDocumentWrites:

    async def test_save_state_flattens(self):
        store = _store(_session())
        store.update_document = AsyncMock()

        await store.save_state(DOC_ID, Completed(text="clean", confidence=0.9), title="Invoice")

        kwargs = store.update_document.await_args.kwargs
        assert store.update_document.await_args.args == (DOC_ID,)
        assert kwargs["ocr_status"] == "completed"
        assert kwargs["processed_text"] == "clean"
        assert kwargs["ocr_confidence_score"] == Decimal("0.9")
        assert kwargs["error_message"] is None
        assert kwargs["title"] == "Invoice"


@pytest.mark.unit
class TestUserStats:

    async def test_creates_profile(self):
        session = _session(profile=None)
        store = _store(session)

        await store.adjust_user_stats(OWNER, 1, 2.04)

        profile = session.add.call_args.args[0]
        assert isinstance(profile, UserProfile)
        assert profile.document_count == 1
        assert profile.storage_used_mb == Decimal("2.0")

    async def test_floors_at_zero(self):
        profile = UserProfile(user_id=OWNER, document_count=0, storage_used_mb=Decimal("0.3"))
        session = _session(profile=profile)
        store = _store(session)

        await store.adjust_user_stats(OWNER, -1, -5.0)

        assert profile.document_count == 0
        assert profile.storage_used_mb == Decimal("0.0")
        session.add.assert_not_called()


@pytest.mark.unit
class TestStatusTransitions:

    def _sql(self, session: AsyncMock) -> str:
        stmt = session.execute.await_args.args[0]
        return str(stmt.compile(dialect=postgresql.dialect()))

    async def test_claim_is_one_conditional_update(self):
        session = _session()
        session.execute.return_value.scalar_one_or_none.return_value = DOC_ID
        store = _store(session)

        assert await store.claim_for_processing(DOC_ID) is True

        sql = self._sql(session)
        assert sql.startswith("UPDATE documents SET ")
        assert "ocr_status=%(ocr_status)s" in sql
        assert "documents.ocr_status IN" in sql
        assert "RETURNING documents.id" in sql
        assert session.execute.await_count == 1

    async def test_claim_lost(self):
        session = _session()
        session.execute.return_value.scalar_one_or_none.return_value = None
        store = _store(session)

        assert await store.claim_for_processing(DOC_ID) is False

    async def test_reset_guards_processing_rows(self):
        session = _session()
        session.execute.return_value.scalar_one_or_none.return_value = None
        store = _store(session)

        assert await store.reset_to_pending(DOC_ID, stale_processing_minutes=15) is False

        sql = self._sql(session)
        assert "documents.ocr_status !=" in sql
        assert "documents.updated_at <" in sql
        assert "RETURNING documents.id" in sql
