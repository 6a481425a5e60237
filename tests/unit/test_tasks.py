"""
Unit Tests — Celery tasks
══════════════════════════
The task bodies are exercised through their async halves; apply_async and
ExtractionPipeline.from_settings are patched so no broker or provider is used.

Coverage targets:
  ✅ process_document result dict: status, elapsed_ms, embeddings, failed_step
  ✅ requeue_stale_documents re-publishes only stale pending documents
  ✅ failed and fresh pending documents are never re-queued
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docvault.processing.embeddings import EmbeddingResult
from docvault.processing.extractor import ExtractionPipeline, PipelineOutcome
from docvault.workers import tasks


@pytest.mark.unit
class TestProcessDocument:

    async def test_completed_result(self, document_id):
        pipeline = MagicMock(spec=ExtractionPipeline)
        pipeline.run = AsyncMock(return_value=PipelineOutcome(
            document_id=document_id,
            status="completed",
            embeddings=EmbeddingResult(persisted=12, total_chunks=12),
            elapsed_ms=1234.56,
        ))

        with patch.object(ExtractionPipeline, "from_settings", return_value=pipeline):
            result = await tasks._process_document_async(document_id)

        pipeline.run.assert_awaited_once_with(document_id)
        assert result == {
            "status":      "completed",
            "document_id": str(document_id),
            "elapsed_ms":  1234.6,
            "embeddings":  12,
        }

    async def test_failed_result(self, document_id):
        pipeline = MagicMock(spec=ExtractionPipeline)
        pipeline.run = AsyncMock(return_value=PipelineOutcome(
            document_id=document_id, status="failed", failed_step="ocr",
        ))

        with patch.object(ExtractionPipeline, "from_settings", return_value=pipeline):
            result = await tasks._process_document_async(document_id)

        assert result["status"] == "failed"
        assert result["failed_step"] == "ocr"
        assert "embeddings" not in result


@pytest.mark.unit
class TestRequeueStale:

    async def test_only_stale_pending(self, fake_store, make_document):
        long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
        stale   = make_document(ocr_status="pending", uploaded_at=long_ago)
        fresh   = make_document(ocr_status="pending")
        failed  = make_document(ocr_status="failed", uploaded_at=long_ago)
        for doc in (stale, fresh, failed):
            fake_store.memory.documents[doc.id] = doc

        with patch.object(tasks.process_document, "apply_async") as apply_async:
            result = await tasks._requeue_stale_documents_async(store=fake_store)

        assert result == {"requeued": 1}
        apply_async.assert_called_once_with(
            kwargs={"document_id": str(stale.id)}, countdown=5,
        )

    async def test_nothing_stale(self, fake_store):
        with patch.object(tasks.process_document, "apply_async") as apply_async:
            result = await tasks._requeue_stale_documents_async(store=fake_store)

        assert result == {"requeued": 0}
        apply_async.assert_not_called()
