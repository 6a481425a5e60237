"""
Document Service

Owner-scoped operations behind /api/v1/documents:

  upload   validate → S3 put → insert row (pending) → bump stats → publish task
  list     newest first
  get      another owner's id reads as not found
  delete   embeddings → row → blob (best effort) → decrement stats
  stats    total / processed (completed + fallback) / storage MB
  retry    reset to pending → republish (idempotent; 409 while processing)

Invariants enforced here:
  - The owner id always comes from the verified JWT, never the request body.
  - The object key is built server-side: <owner_id>/<epoch_ms>.<ext>.
  - If the row insert fails, the just-uploaded blob is removed again.
  - A publish failure is not an upload failure: the row stays `pending` and
    the requeue_stale_documents beat task picks it up.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid

from fastapi import HTTPException, status

from docvault.core.exceptions import DocumentNotFoundError
from docvault.db.store import UserStats
from docvault.models.documents import Document
from docvault.schemas.documents import ALLOWED_CONTENT_TYPES, DocumentErrors
from docvault.storage.s3 import build_storage_path, file_extension

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def _sanitize_filename(filename: str) -> str:
    """Strip path components and replace unsafe characters."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\- ]", "_", basename).strip()
    return safe[:200] or "upload"


class DocumentService:
    """
    Stateless service object — one instance per request.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        store,                          # DocumentStore
        storage,                        # S3BlobStorage
        publisher: "TaskPublisher",
        max_upload_bytes: int = 50 * BYTES_PER_MB,
        stale_processing_minutes: int = 15,
    ) -> None:
        self._store            = store
        self._storage          = storage
        self._publisher        = publisher
        self._max_upload_bytes = max_upload_bytes
        self._stale_processing_minutes = stale_processing_minutes

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(
        self,
        owner_id:     uuid.UUID,
        filename:     str | None,
        content_type: str | None,
        data:         bytes,
    ) -> Document:
        if not filename or not data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=DocumentErrors.missing_file().model_dump(),
            )

        mime_type = (content_type or "").split(";", 1)[0].strip().lower()
        if mime_type not in ALLOWED_CONTENT_TYPES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=DocumentErrors.unsupported_file_type(filename, mime_type or "unknown").model_dump(),
            )

        if len(data) > self._max_upload_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=DocumentErrors.file_too_large(len(data), self._max_upload_bytes).model_dump(),
            )

        original = _sanitize_filename(filename)
        path = build_storage_path(owner_id, original)

        logger.info(
            "Upload start | user=%s file=%s size=%d type=%s",
            owner_id, original, len(data), mime_type,
        )

        # ---- Blob ------------------------------------------------------
        try:
            await self._storage.upload(path, data, mime_type)
        except Exception as exc:
            logger.exception("S3 upload failed | user=%s path=%s", owner_id, path)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=DocumentErrors.storage_error(str(exc)).model_dump(),
            )

        # ---- Row -------------------------------------------------------
        try:
            doc = await self._store.create_document(
                user_id=owner_id,
                filename=path.rsplit("/", 1)[-1],
                original_filename=original,
                file_type=file_extension(original) or "bin",
                mime_type=mime_type,
                file_size_bytes=len(data),
                storage_path=path,
                ocr_status="pending",
            )
        except Exception as exc:
            logger.exception("Document insert failed, removing blob | user=%s path=%s", owner_id, path)
            try:
                await self._storage.remove(path)
            except Exception:
                logger.exception("Orphan blob cleanup failed | path=%s", path)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=DocumentErrors.storage_error(str(exc)).model_dump(),
            )

        await self._store.adjust_user_stats(owner_id, 1, len(data) / BYTES_PER_MB)
        await self._publish(doc.id)
        return doc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_documents(self, owner_id: uuid.UUID) -> list[Document]:
        return await self._store.list_documents(owner_id)

    async def get_document(self, owner_id: uuid.UUID, document_id: uuid.UUID) -> Document:
        doc = await self._store.get_document(document_id, owner_id=owner_id)
        if doc is None:
            raise DocumentNotFoundError(document_id)
        return doc

    async def get_stats(self, owner_id: uuid.UUID) -> UserStats:
        return await self._store.get_user_stats(owner_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def delete_document(self, owner_id: uuid.UUID, document_id: uuid.UUID) -> None:
        doc = await self.get_document(owner_id, document_id)

        await self._store.delete_embeddings(doc.id)
        await self._store.delete_document(doc.id)
        try:
            await self._storage.remove(doc.storage_path)
        except Exception as exc:
            logger.error(
                "Blob delete failed | doc=%s path=%s error=%s",
                doc.id, doc.storage_path, exc,
            )

        await self._store.adjust_user_stats(
            owner_id, -1, -(doc.file_size_bytes or 0) / BYTES_PER_MB,
        )
        logger.info("Document deleted | doc=%s user=%s", doc.id, owner_id)

    async def retry_processing(self, owner_id: uuid.UUID, document_id: uuid.UUID) -> Document:
        """
        Operator retry: reset to pending and republish. Safe to repeat.

        A document a worker is still processing is refused with 409; only a
        `processing` row idle for stale_processing_minutes can be reset.
        """
        doc = await self.get_document(owner_id, document_id)
        previous = doc.ocr_status
        if not await self._store.reset_to_pending(doc.id, self._stale_processing_minutes):
            logger.warning("Retry refused, document is processing | doc=%s", doc.id)
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=DocumentErrors.document_busy(doc.id).model_dump(),
            )
        await self._publish(doc.id)
        logger.info("Retry queued | doc=%s previous_status=%s", doc.id, previous)
        return await self.get_document(owner_id, document_id)

    async def _publish(self, document_id: uuid.UUID) -> None:
        try:
            await self._publisher.publish_processing_task(document_id)
        except Exception as exc:
            logger.error(
                "Failed to publish processing task | doc=%s error=%s", document_id, exc,
            )


# ---------------------------------------------------------------------------
# Task publisher: thin abstraction over Celery send_task
# Injected into DocumentService so it can be mocked in tests.
# ---------------------------------------------------------------------------

class TaskPublisher:
    """
    Sends the document processing task to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_processing_task(self, document_id: uuid.UUID) -> None:
        from docvault.workers.celery_app import celery_app

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: celery_app.send_task(
                "docvault.workers.tasks.process_document",
                kwargs={"document_id": str(document_id)},
                countdown=2,
            ),
        )
        logger.info("Processing task published | doc=%s", document_id)
