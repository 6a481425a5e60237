"""
Celery Tasks — Document Processing

Task: process_document
  Runs ExtractionPipeline.run for one document:
  Processing → download → signed URL → OCR → reformat → classify
  → Completed / Fallback / Failed → chunk + embed

  Document-fatal errors are persisted as ocr_status=failed inside the
  pipeline; the task itself never retries. A failed document is only
  reprocessed through the explicit retry endpoint.

Task: requeue_stale_documents
  Beat task — re-publishes documents stuck in `pending` longer than
  STALE_PENDING_MINUTES (lost broker messages). `failed` documents are
  never touched.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from docvault.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docvault.workers.tasks.process_document",
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(document_id: str) -> dict[str, Any]:
    return run_async(_process_document_async(uuid.UUID(document_id)))


async def _process_document_async(document_id: uuid.UUID) -> dict[str, Any]:
    from docvault.processing.extractor import ExtractionPipeline

    pipeline = ExtractionPipeline.from_settings()
    outcome = await pipeline.run(document_id)

    result: dict[str, Any] = {
        "status":      outcome.status,
        "document_id": str(document_id),
        "elapsed_ms":  round(outcome.elapsed_ms, 1),
    }
    if outcome.failed_step:
        result["failed_step"] = outcome.failed_step
    if outcome.embeddings is not None:
        result["embeddings"] = outcome.embeddings.persisted
    return result


# ---------------------------------------------------------------------------
# Stale-pending scanner: runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docvault.workers.tasks.requeue_stale_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stale_documents() -> dict[str, int]:
    return run_async(_requeue_stale_documents_async())


async def _requeue_stale_documents_async(store=None) -> dict[str, int]:
    from docvault.core.config import settings
    from docvault.db.store import DocumentStore

    store = store or DocumentStore()
    stale = await store.find_stale_pending(settings.stale_pending_minutes)

    for doc in stale:
        process_document.apply_async(
            kwargs={"document_id": str(doc.id)},
            countdown=5,
        )
        logger.info("Re-queued stale document | doc=%s user=%s", doc.id, doc.user_id)

    return {"requeued": len(stale)}
