"""
Integration Tests — /api/v1 over ASGI
══════════════════════════════════════
Requests go through the real FastAPI app, middleware and exception handlers;
the store, S3, publisher and JWT check are overridden in conftest.py.

Coverage targets:
  ✅ POST /documents/upload → 202 pending document, task published
  ✅ Unsupported type → 400 envelope with error_code + X-Request-ID
  ✅ Missing multipart field → 422 VALIDATION_ERROR
  ✅ GET /documents/ newest first, GET /documents/stats
  ✅ GET /documents/{id} of another owner → 404 DOCUMENT_NOT_FOUND
  ✅ POST /documents/{id}/retry → 202 pending; 409 DOCUMENT_BUSY while processing
  ✅ DELETE /documents/{id} → 204, then 404
  ✅ POST /search → ranked hits with parent documents
  ✅ Blank query → 400 EMPTY_QUERY; provider unconfigured → 503
  ✅ No bearer token → 401/403 envelope
  ✅ /health liveness
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from docvault.core.exceptions import ConfigurationError

PDF = ("invoice.pdf", b"%PDF-1.4 integration test body", "application/pdf")


async def _upload(client, file=PDF):
    return await client.post("/api/v1/documents/upload", files={"file": file})


@pytest.mark.integration
class TestDocumentsApi:

    async def test_upload(self, async_client, owner_id, mock_publisher):
        resp = await _upload(async_client)

        assert resp.status_code == 202
        body = resp.json()
        assert body["ocr_status"] == "pending"
        assert body["user_id"] == str(owner_id)
        assert body["original_filename"] == "invoice.pdf"
        assert body["mime_type"] == "application/pdf"
        assert body["storage_path"].startswith(f"{owner_id}/")
        mock_publisher.publish_processing_task.assert_awaited_once()
        assert "X-Request-ID" in resp.headers

    async def test_upload_unsupported_type(self, async_client):
        resp = await _upload(async_client, ("tool.exe", b"MZ", "application/x-msdownload"))

        assert resp.status_code == 400
        body = resp.json()
        assert body["error_code"] == "UNSUPPORTED_FILE_TYPE"
        assert body["request_id"] == resp.headers["X-Request-ID"]

    async def test_upload_without_file_field(self, async_client):
        resp = await async_client.post("/api/v1/documents/upload", data={"other": "x"})
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

    async def test_list_and_stats(self, async_client):
        first = (await _upload(async_client)).json()
        second = (await _upload(async_client, ("notes.txt", b"plain text", "text/plain"))).json()

        listing = await async_client.get("/api/v1/documents/")
        stats = await async_client.get("/api/v1/documents/stats")

        assert listing.status_code == 200
        assert listing.json()["total"] == 2
        assert {d["id"] for d in listing.json()["documents"]} == {first["id"], second["id"]}
        assert stats.status_code == 200
        assert stats.json()["total_documents"] == 2
        assert stats.json()["processed_documents"] == 0

    async def test_get_other_owner_is_404(self, async_client, fake_store, make_document, other_owner_id):
        doc = make_document(user_id=other_owner_id)
        fake_store.memory.documents[doc.id] = doc

        resp = await async_client.get(f"/api/v1/documents/{doc.id}")

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "DOCUMENT_NOT_FOUND"

    async def test_get_invalid_id_is_422(self, async_client):
        resp = await async_client.get("/api/v1/documents/not-a-uuid")
        assert resp.status_code == 422

    async def test_retry(self, async_client, fake_store, make_document, mock_publisher):
        doc = make_document(ocr_status="failed", error_message="OcrProcessingError: bad scan")
        fake_store.memory.documents[doc.id] = doc

        resp = await async_client.post(f"/api/v1/documents/{doc.id}/retry")

        assert resp.status_code == 202
        assert resp.json()["ocr_status"] == "pending"
        assert resp.json()["error_message"] is None
        mock_publisher.publish_processing_task.assert_awaited_once_with(doc.id)

    async def test_retry_while_processing(self, async_client, fake_store, make_document, mock_publisher):
        doc = make_document(ocr_status="processing", updated_at=datetime.now(timezone.utc))
        fake_store.memory.documents[doc.id] = doc

        resp = await async_client.post(f"/api/v1/documents/{doc.id}/retry")

        assert resp.status_code == 409
        assert resp.json()["error_code"] == "DOCUMENT_BUSY"
        assert "X-Request-ID" in resp.headers
        mock_publisher.publish_processing_task.assert_not_awaited()

    async def test_delete(self, async_client, mock_storage):
        doc = (await _upload(async_client)).json()

        resp = await async_client.delete(f"/api/v1/documents/{doc['id']}")
        again = await async_client.get(f"/api/v1/documents/{doc['id']}")

        assert resp.status_code == 204
        assert resp.content == b""
        assert again.status_code == 404
        mock_storage.remove.assert_awaited_once_with(doc["storage_path"])


@pytest.mark.integration
class TestSearchApi:

    async def test_ranked_results(self, async_client, fake_store, make_document):
        doc = make_document(ocr_status="completed", processed_text="Total due: 100 EUR")
        fake_store.memory.documents[doc.id] = doc
        fake_store.memory.matches = [
            {
                "id": doc.id, "document_id": doc.id, "content_chunk": "Thanks for your business",
                "chunk_index": 3, "chunk_metadata": {"importance": "low"}, "similarity": 0.82,
            },
            {
                "id": doc.id, "document_id": doc.id, "content_chunk": "Total due: 100 EUR",
                "chunk_index": 0, "chunk_metadata": {"importance": "high"}, "similarity": 0.80,
            },
        ]

        resp = await async_client.post("/api/v1/search", json={"query": "  total due  ", "limit": 5})

        assert resp.status_code == 200
        body = resp.json()
        assert body["query"] == "total due"
        assert body["total"] == 2
        assert [hit["chunk_index"] for hit in body["results"]] == [0, 3]
        assert body["results"][0]["score"] == pytest.approx(1.2)
        assert body["results"][0]["document"]["id"] == str(doc.id)

    async def test_blank_query(self, async_client):
        resp = await async_client.post("/api/v1/search", json={"query": "   "})
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "EMPTY_QUERY"

    async def test_limit_out_of_range(self, async_client):
        resp = await async_client.post("/api/v1/search", json={"query": "q", "limit": 0})
        assert resp.status_code == 422

    async def test_provider_not_configured(self, async_client, mock_generator):
        mock_generator.embed.side_effect = ConfigurationError("OPENAI_API_KEY is not configured")

        resp = await async_client.post("/api/v1/search", json={"query": "total"})

        assert resp.status_code == 503
        assert resp.json()["error_code"] == "SEARCH_UNAVAILABLE"


@pytest.mark.integration
class TestAuthAndOps:

    async def test_missing_bearer(self, async_client, app_with_overrides):
        from docvault.auth.token import get_current_user
        app_with_overrides.dependency_overrides.pop(get_current_user)

        resp = await async_client.get("/api/v1/documents/")

        assert resp.status_code in (401, 403)
        assert "error_code" in resp.json()

    async def test_health(self, async_client):
        resp = await async_client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
