"""
Unit Tests — BatchEmbeddingOrchestrator
════════════════════════════════════════
Uses fake_store (in-memory embedding table) and mock_generator from
conftest.py; sleep is an AsyncMock so batch delays cost nothing.

Coverage targets:
  ✅ 12 chunks → 3 batches of ≤5, delay awaited exactly twice
  ✅ Rows carry importance / document_type / title / chunk_index / total_chunks
  ✅ Rerun replaces rows instead of appending (count unchanged)
  ✅ A failing chunk is skipped, its batch-mates persist
  ✅ An insert failure loses only that batch, later batches still run
  ✅ Zero chunks → nothing inserted, no sleep
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from docvault.processing.chunking import TaggedChunk
from docvault.processing.embeddings import BatchEmbeddingOrchestrator, DocumentMetadata


def _chunks(n: int) -> list[TaggedChunk]:
    return [
        TaggedChunk(index=i, text=f"chunk number {i}", importance="high" if i < 2 else "medium", token_est=4)
        for i in range(n)
    ]


@pytest.fixture
def doc_id() -> uuid.UUID:
    return uuid.UUID("aaaaaaaa-0000-0000-0000-000000000001")


@pytest.mark.unit
class TestEmbedAll:

    async def test_batches_and_delays(self, fake_store, mock_generator, doc_id):
        sleep = AsyncMock()
        orchestrator = BatchEmbeddingOrchestrator(fake_store, mock_generator, sleep=sleep)

        result = await orchestrator.embed_all(doc_id, _chunks(12))

        assert result.persisted == 12
        assert result.total_chunks == 12
        assert result.batches == 3
        assert result.failed_chunks == []
        assert fake_store.insert_embeddings.await_count == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.5)
        assert mock_generator.embed.await_count == 12

    async def test_row_metadata(self, fake_store, mock_generator, doc_id):
        orchestrator = BatchEmbeddingOrchestrator(fake_store, mock_generator, sleep=AsyncMock())

        await orchestrator.embed_all(
            doc_id, _chunks(3), DocumentMetadata(document_type="Invoice/Receipt", title="ACME"),
        )

        rows = fake_store.memory.embeddings[doc_id]
        assert [r["chunk_index"] for r in rows] == [0, 1, 2]
        first = rows[0]
        assert first["content_chunk"] == "chunk number 0"
        assert first["chunk_type"] == "text"
        assert first["tokens_count"] == 4
        assert first["embedding"].startswith("[0.01,")
        assert first["chunk_metadata"] == {
            "importance":    "high",
            "document_type": "Invoice/Receipt",
            "title":         "ACME",
            "chunk_index":   0,
            "total_chunks":  3,
        }

    async def test_rerun_replaces_rows(self, fake_store, mock_generator, doc_id):
        orchestrator = BatchEmbeddingOrchestrator(fake_store, mock_generator, sleep=AsyncMock())

        await orchestrator.embed_all(doc_id, _chunks(7))
        second = await orchestrator.embed_all(doc_id, _chunks(7))

        assert second.replaced == 7
        assert second.persisted == 7
        assert await fake_store.count_embeddings(doc_id) == 7

    async def test_failing_chunk_is_skipped(self, fake_store, mock_generator, doc_id):
        async def _embed(text):
            if text == "chunk number 3":
                raise RuntimeError("rate limited")
            return [0.2] * 1536

        mock_generator.embed.side_effect = _embed
        orchestrator = BatchEmbeddingOrchestrator(fake_store, mock_generator, sleep=AsyncMock())

        result = await orchestrator.embed_all(doc_id, _chunks(6))

        assert result.persisted == 5
        assert result.failed_chunks == [3]
        stored = sorted(r["chunk_index"] for r in fake_store.memory.embeddings[doc_id])
        assert stored == [0, 1, 2, 4, 5]

    async def test_insert_failure_loses_one_batch(self, fake_store, mock_generator, doc_id):
        real_insert = fake_store.insert_embeddings.side_effect
        calls = {"n": 0}

        async def _insert(rows):
            calls["n"] += 1
            if calls["n"] == 2:
                raise ConnectionError("db blip")
            return await real_insert(rows)

        fake_store.insert_embeddings.side_effect = _insert
        orchestrator = BatchEmbeddingOrchestrator(fake_store, mock_generator, sleep=AsyncMock())

        result = await orchestrator.embed_all(doc_id, _chunks(12))

        assert result.persisted == 7
        assert result.failed_chunks == [5, 6, 7, 8, 9]
        assert result.success_rate == pytest.approx(7 / 12)

    async def test_no_chunks(self, fake_store, mock_generator, doc_id):
        sleep = AsyncMock()
        orchestrator = BatchEmbeddingOrchestrator(fake_store, mock_generator, sleep=sleep)

        result = await orchestrator.embed_all(doc_id, [])

        assert result.persisted == 0
        assert result.batches == 0
        fake_store.insert_embeddings.assert_not_awaited()
        sleep.assert_not_awaited()
        fake_store.delete_embeddings.assert_awaited_once_with(doc_id)

    def test_rejects_zero_batch_size(self, fake_store, mock_generator):
        with pytest.raises(ValueError):
            BatchEmbeddingOrchestrator(fake_store, mock_generator, batch_size=0)
