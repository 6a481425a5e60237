"""
Composed FastAPI Dependencies

Route handlers import from here — never from db/store, storage/s3 or
services directly. This is the single wiring point for the request context,
and the set of keys tests override via app.dependency_overrides.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from docvault.auth.token import TokenPayload, get_current_user
from docvault.db.store import DocumentStore
from docvault.rag.ranker import RetrievalRanker
from docvault.services.documents import DocumentService, TaskPublisher
from docvault.storage.s3 import S3BlobStorage


def get_store() -> DocumentStore:
    return DocumentStore()


def get_storage() -> S3BlobStorage:
    return S3BlobStorage.from_settings()


def get_publisher() -> TaskPublisher:
    return TaskPublisher()


def get_document_service(
    store:     Annotated[DocumentStore, Depends(get_store)],
    storage:   Annotated[S3BlobStorage, Depends(get_storage)],
    publisher: Annotated[TaskPublisher, Depends(get_publisher)],
) -> DocumentService:
    from docvault.core.config import settings

    return DocumentService(
        store=store,
        storage=storage,
        publisher=publisher,
        max_upload_bytes=settings.max_upload_bytes,
        stale_processing_minutes=settings.stale_processing_minutes,
    )


def get_ranker(
    store: Annotated[DocumentStore, Depends(get_store)],
) -> RetrievalRanker:
    return RetrievalRanker.from_settings(store)


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentUser = Annotated[TokenPayload,    Depends(get_current_user)]
Documents   = Annotated[DocumentService, Depends(get_document_service)]
Ranker      = Annotated[RetrievalRanker, Depends(get_ranker)]
