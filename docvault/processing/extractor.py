"""
Extraction Pipeline
═══════════════════

Drives one document from `pending` to a terminal state:

  load → claim → download → signed URL → OCR (submit + poll, merge)
       → reformat → classify → persist Completed / Fallback → chunk + embed

The claim is a single conditional UPDATE (pending/failed → processing), so
only one run at a time owns a document and its embedding rows.

Status policy
─────────────
  reformat succeeded or skipped (too short)   → Completed(text, confidence)
  reformat failed / empty reply               → Fallback(merged OCR text, confidence)
  any document-fatal error after the claim    → Failed(reason), no embeddings

Embedding runs after the terminal state is saved. A failure there is logged
and never reverts the document's status.

Errors never escape run(). Once claimed, every exception is logged with
doc/step/message and persisted as ocr_status=failed so nothing is left in
`processing`. A store error during load or claim is logged and reported as
status=failed, step=load; the row is left untouched since it was never claimed.

All collaborators are injected; build the production wiring with
ExtractionPipeline.from_settings().
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from docvault.core.exceptions import (
    ConfigurationError,
    OcrProcessingError,
    PollTimeoutError,
)
from docvault.processing.chunking import TextChunker
from docvault.processing.embeddings import (
    BatchEmbeddingOrchestrator,
    DocumentMetadata,
    EmbeddingResult,
)
from docvault.processing.ocr import EdenAiOcrClient, OcrResult
from docvault.processing.reformat import (
    Classification,
    DocumentClassifier,
    TextReformatter,
)
from docvault.processing.state import (
    Completed,
    DocumentState,
    Failed,
    Fallback,
)

logger = logging.getLogger(__name__)

SIGNED_URL_TTL_SECONDS = 3600

# Expected document-fatal errors; anything else is logged with a traceback
_KNOWN_FAILURES = (
    FileNotFoundError,
    OcrProcessingError,
    PollTimeoutError,
    ConfigurationError,
)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class PipelineOutcome:
    """
    status          : completed | fallback | failed | not_found | skipped
    state           : terminal DocumentState (None for not_found / skipped)
    failed_step     : step name when status == failed
    embeddings      : EmbeddingResult, None when embedding did not run or raised
    classification  : Classification, None when disabled or failed
    elapsed_ms      : wall time of the run
    """
    document_id:    uuid.UUID
    status:         str
    state:          Optional[DocumentState] = None
    failed_step:    Optional[str] = None
    embeddings:     Optional[EmbeddingResult] = None
    classification: Optional[Classification] = None
    elapsed_ms:     float = 0.0


class _StepFailure(Exception):
    """Carries the failing step name alongside the original exception."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"{step}: {cause}")
        self.step  = step
        self.cause = cause


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class ExtractionPipeline:
    """
    Usage:
        pipeline = ExtractionPipeline(store, storage, ocr, reformatter, orchestrator)
        outcome  = await pipeline.run(document_id)
    """

    def __init__(
        self,
        store,                                  # DocumentStore
        storage,                                # S3BlobStorage
        ocr:            EdenAiOcrClient,
        reformatter:    TextReformatter,
        orchestrator:   BatchEmbeddingOrchestrator,
        chunker:        TextChunker | None = None,
        classifier:     DocumentClassifier | None = None,
        signed_url_ttl: int = SIGNED_URL_TTL_SECONDS,
    ) -> None:
        self._store          = store
        self._storage        = storage
        self._ocr            = ocr
        self._reformatter    = reformatter
        self._orchestrator   = orchestrator
        self._chunker        = chunker or TextChunker()
        self._classifier     = classifier
        self._signed_url_ttl = signed_url_ttl

    @classmethod
    def from_settings(cls, store=None) -> "ExtractionPipeline":
        """Production wiring: S3, Eden AI, OpenAI embeddings, ChatOpenAI."""
        from docvault.core.config import settings
        from docvault.db.store import DocumentStore
        from docvault.processing.embeddings import EmbeddingGenerator
        from docvault.storage.s3 import S3BlobStorage

        store = store or DocumentStore()
        orchestrator = BatchEmbeddingOrchestrator(
            store=store,
            generator=EmbeddingGenerator.from_settings(),
            batch_size=settings.embedding_batch_size,
            batch_delay=settings.embedding_batch_delay_seconds,
        )
        return cls(
            store=store,
            storage=S3BlobStorage.from_settings(),
            ocr=EdenAiOcrClient.from_settings(),
            reformatter=TextReformatter.from_settings(),
            orchestrator=orchestrator,
            chunker=TextChunker(
                target_tokens=settings.chunk_target_tokens,
                overlap_tokens=settings.chunk_overlap_tokens,
                importance_keywords=settings.importance_keywords,
            ),
            classifier=DocumentClassifier.from_settings() if settings.classification_enabled else None,
            signed_url_ttl=settings.signed_url_ttl_seconds,
        )

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def run(self, document_id: uuid.UUID) -> PipelineOutcome:
        t0 = time.monotonic()

        try:
            doc = await self._store.get_document(document_id)
            if doc is None:
                logger.error("Document not found | doc=%s", document_id)
                return PipelineOutcome(document_id=document_id, status="not_found")

            if not await self._store.claim_for_processing(document_id):
                logger.warning(
                    "Document not claimable (status=%s), skipping | doc=%s",
                    doc.ocr_status, document_id,
                )
                return PipelineOutcome(document_id=document_id, status="skipped")
        except Exception:
            # Nothing was claimed, so the row keeps whatever status it had
            logger.exception("Could not load or claim document | doc=%s step=load", document_id)
            return PipelineOutcome(
                document_id=document_id,
                status="failed",
                failed_step="load",
                elapsed_ms=(time.monotonic() - t0) * 1000,
            )

        logger.info("Extraction started | doc=%s path=%s", document_id, doc.storage_path)

        try:
            state, ocr, classification = await self._extract(document_id, doc.storage_path)
        except _StepFailure as failure:
            return await self._fail(document_id, failure, t0)

        outcome = PipelineOutcome(
            document_id=document_id,
            status=state.status,
            state=state,
            classification=classification,
        )

        # ── Index for search; never reverts the saved status ─────────────
        metadata = DocumentMetadata(
            document_type=classification.document_type if classification else None,
            title=classification.title if classification else None,
        )
        try:
            chunks = self._chunker.chunk_with_importance(state.text)
            outcome.embeddings = await self._orchestrator.embed_all(document_id, chunks, metadata)
        except Exception:
            logger.exception("Embedding step failed | doc=%s step=embed", document_id)

        outcome.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Extraction complete | doc=%s status=%s confidence=%.2f embeddings=%s elapsed_ms=%.0f",
            document_id, state.status, ocr.confidence,
            outcome.embeddings.persisted if outcome.embeddings else 0,
            outcome.elapsed_ms,
        )
        return outcome

    async def retry(self, document_id: uuid.UUID) -> PipelineOutcome:
        """Explicit operator retry: reset to pending and run from scratch."""
        logger.info("Retry requested | doc=%s", document_id)
        if not await self._store.reset_to_pending(document_id):
            logger.warning("Retry refused, a run still holds the document | doc=%s", document_id)
            return PipelineOutcome(document_id=document_id, status="skipped")
        return await self.run(document_id)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _extract(
        self,
        document_id:  uuid.UUID,
        storage_path: str,
    ) -> tuple[DocumentState, OcrResult, Optional[Classification]]:
        step = "download"
        try:
            data = await self._storage.download(storage_path)
            if not data:
                raise FileNotFoundError(f"Empty blob: {storage_path}")
            logger.info("Downloaded | doc=%s bytes=%d", document_id, len(data))

            step = "signed_url"
            signed = await self._storage.create_signed_url(storage_path, self._signed_url_ttl)

            step = "ocr"
            ocr = await self._ocr.extract(signed.url, document_id=document_id)

            step = "reformat"
            reformat = await self._reformatter.reformat(ocr.text, document_id=document_id)
            if reformat.reformatted or reformat.reason == "too_short":
                state: DocumentState = Completed(text=reformat.text, confidence=ocr.confidence)
            else:
                state = Fallback(text=reformat.text, confidence=ocr.confidence)

            step = "classify"
            classification = None
            if self._classifier is not None:
                classification = await self._classifier.classify(state.text, document_id=document_id)

            step = "persist"
            await self._store.save_state(
                document_id, state, **_document_fields(ocr, classification),
            )
        except Exception as exc:
            raise _StepFailure(step, exc) from exc

        return state, ocr, classification

    async def _fail(
        self,
        document_id: uuid.UUID,
        failure:     _StepFailure,
        t0:          float,
    ) -> PipelineOutcome:
        cause = failure.cause
        reason = f"{type(cause).__name__}: {cause}"

        if isinstance(cause, _KNOWN_FAILURES):
            logger.error(
                "Extraction failed | doc=%s step=%s error=%s",
                document_id, failure.step, reason,
            )
        else:
            logger.exception(
                "Extraction failed unexpectedly | doc=%s step=%s", document_id, failure.step,
                exc_info=cause,
            )

        state = Failed(reason=reason)
        try:
            await self._store.save_state(document_id, state)
        except Exception:
            logger.exception("Could not persist failed state | doc=%s", document_id)

        return PipelineOutcome(
            document_id=document_id,
            status="failed",
            state=state,
            failed_step=failure.step,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _document_fields(ocr: OcrResult, classification: Optional[Classification]) -> dict:
    """Extra document columns written alongside the terminal state."""
    if classification is not None:
        return {
            "document_type":  classification.document_type,
            "title":          classification.title,
            "extracted_data": {
                **classification.structured_data,
                "classification_confidence": classification.confidence,
            },
        }
    if ocr.entities:
        return {"extracted_data": {"entities": ocr.entities}}
    return {}
