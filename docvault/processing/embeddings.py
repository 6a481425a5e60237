"""
Embedding Generator & Batch Orchestrator
══════════════════════════════════════════

EmbeddingGenerator
──────────────────
  embed(text) → list[float] (1536 dims, text-embedding-3-small)

  Primary path : openai.AsyncOpenAI embeddings.create(model, input, dimensions)
  Fallback     : direct POST {base_url}/embeddings with the same model via httpx
  Errors       : EmptyInputError   — blank text (no network call)
                 ConfigurationError — no API key (no network call)
                 EmbeddingError     — both paths failed / returned nothing

BatchEmbeddingOrchestrator
──────────────────────────
  embed_all(document_id, chunks, metadata) → EmbeddingResult

  1. Delete every existing embedding row for the document (replace, not append)
  2. Partition chunks into batches of BATCH_SIZE (default 5)
  3. Within a batch, embed all chunks concurrently; a failing chunk yields
     None (logged, not retried) and never aborts the batch
  4. Bulk-insert the batch's successful rows, vector as "[v1,v2,...]" literal
  5. Sleep BATCH_DELAY (default 0.5s) before the next batch — never after the
     last. Batches are strictly sequential.

  An insert failure loses that batch only; earlier batches stay persisted and
  later batches still run. Nothing is rolled back.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import httpx

from docvault.core.exceptions import ConfigurationError, EmbeddingError, EmptyInputError
from docvault.processing.chunking import TaggedChunk, estimate_tokens
from docvault.processing.polling import Sleep

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_MODEL      = "text-embedding-3-small"
EMBEDDING_DIMENSIONS = 1536
BATCH_SIZE           = 5
BATCH_DELAY_SECONDS  = 0.5
FALLBACK_TIMEOUT     = 30.0


def format_vector(vector: Sequence[float]) -> str:
    """Bracketed literal accepted by the pgvector `vector` input function."""
    return "[" + ",".join(repr(float(v)) for v in vector) + "]"


# ---------------------------------------------------------------------------
# Embedding generator
# ---------------------------------------------------------------------------

class EmbeddingGenerator:
    """
    One text in, one vector out.

    The OpenAI SDK client is created lazily and may be injected (tests,
    custom retry settings). `transport` is passed to the fallback httpx client.
    """

    def __init__(
        self,
        api_key:    str,
        model:      str = EMBEDDING_MODEL,
        dimensions: int = EMBEDDING_DIMENSIONS,
        base_url:   str = "https://api.openai.com/v1",
        client:     Any = None,
        transport:  httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key    = api_key
        self._model      = model
        self._dimensions = dimensions
        self._base_url   = base_url.rstrip("/")
        self._client     = client
        self._transport  = transport

    @classmethod
    def from_settings(cls) -> "EmbeddingGenerator":
        from docvault.core.config import settings
        return cls(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            base_url=settings.openai_base_url,
        )

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise EmptyInputError("Cannot embed empty text")
        if not self._api_key:
            raise ConfigurationError("OPENAI_API_KEY is not configured")

        try:
            return await self._embed_primary(text)
        except Exception as exc:
            logger.warning(
                "Primary embedding path failed, using direct call | model=%s error=%s %s",
                self._model, type(exc).__name__, exc,
            )

        try:
            vector = await self._embed_direct(text)
        except Exception as exc:
            raise EmbeddingError(f"Embedding failed on both paths: {exc}") from exc
        if not vector:
            raise EmbeddingError("Direct embedding call returned an empty vector")
        return vector

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _sdk_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def _embed_primary(self, text: str) -> list[float]:
        response = await self._sdk_client().embeddings.create(
            model=self._model,
            input=text,
            dimensions=self._dimensions,
        )
        vector = list(response.data[0].embedding) if response.data else []
        if not vector:
            raise ValueError("empty embedding from SDK client")
        return vector

    async def _embed_direct(self, text: str) -> list[float]:
        async with httpx.AsyncClient(
            timeout=FALLBACK_TIMEOUT,
            transport=self._transport,
        ) as client:
            resp = await client.post(
                f"{self._base_url}/embeddings",
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"model": self._model, "input": text},
            )
            resp.raise_for_status()
            payload = resp.json()

        data = payload.get("data") or []
        return list(data[0].get("embedding") or []) if data else []


# ---------------------------------------------------------------------------
# Batch orchestrator
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentMetadata:
    """Document-level fields copied into every chunk's metadata."""
    document_type: Optional[str] = None
    title:         Optional[str] = None


@dataclass
class EmbeddingResult:
    """
    persisted      : rows successfully inserted (the orchestrator's return count)
    total_chunks   : chunks offered
    failed_chunks  : indices whose embedding or insert failed
    replaced       : rows deleted before embedding
    batches        : number of batches run
    elapsed_ms     : wall time
    """
    persisted:     int
    total_chunks:  int
    replaced:      int = 0
    batches:       int = 0
    elapsed_ms:    float = 0.0
    failed_chunks: list[int] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.total_chunks == 0:
            return 1.0
        return self.persisted / self.total_chunks


class BatchEmbeddingOrchestrator:
    """
    Usage:
        orchestrator = BatchEmbeddingOrchestrator(store, generator)
        result = await orchestrator.embed_all(doc_id, tagged_chunks, DocumentMetadata(...))
    """

    def __init__(
        self,
        store,                      # DocumentStore
        generator:   EmbeddingGenerator,
        batch_size:  int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY_SECONDS,
        sleep:       Sleep = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._store       = store
        self._generator   = generator
        self._batch_size  = batch_size
        self._batch_delay = batch_delay
        self._sleep       = sleep

    async def embed_all(
        self,
        document_id: uuid.UUID,
        chunks:      Sequence[TaggedChunk],
        metadata:    DocumentMetadata | None = None,
    ) -> EmbeddingResult:
        metadata = metadata or DocumentMetadata()
        t0 = time.monotonic()

        replaced = await self._store.delete_embeddings(document_id)

        batches = [
            chunks[i : i + self._batch_size]
            for i in range(0, len(chunks), self._batch_size)
        ]
        logger.info(
            "Embedding | doc=%s chunks=%d batches=%d replaced=%d",
            document_id, len(chunks), len(batches), replaced,
        )

        persisted = 0
        failed: list[int] = []
        total = len(chunks)

        for batch_idx, batch in enumerate(batches):
            vectors = await asyncio.gather(
                *(self._embed_one(document_id, chunk) for chunk in batch)
            )

            rows: list[dict] = []
            for chunk, vector in zip(batch, vectors):
                if vector is None:
                    failed.append(chunk.index)
                    continue
                rows.append(self._build_row(document_id, chunk, vector, metadata, total))

            if rows:
                try:
                    persisted += await self._store.insert_embeddings(rows)
                except Exception as exc:
                    logger.error(
                        "Embedding insert failed | doc=%s batch=%d rows=%d error=%s",
                        document_id, batch_idx, len(rows), exc,
                    )
                    failed.extend(row["chunk_index"] for row in rows)

            if batch_idx < len(batches) - 1:
                await self._sleep(self._batch_delay)

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Embedding done | doc=%s persisted=%d failed=%d elapsed_ms=%.0f",
            document_id, persisted, len(failed), elapsed_ms,
        )

        return EmbeddingResult(
            persisted=persisted,
            total_chunks=total,
            replaced=replaced,
            batches=len(batches),
            elapsed_ms=elapsed_ms,
            failed_chunks=sorted(failed),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _embed_one(self, document_id: uuid.UUID, chunk: TaggedChunk) -> list[float] | None:
        try:
            return await self._generator.embed(chunk.text)
        except Exception as exc:
            logger.warning(
                "Chunk embedding failed | doc=%s chunk=%d error=%s",
                document_id, chunk.index, exc,
            )
            return None

    @staticmethod
    def _build_row(
        document_id: uuid.UUID,
        chunk:       TaggedChunk,
        vector:      list[float],
        metadata:    DocumentMetadata,
        total:       int,
    ) -> dict:
        return {
            "document_id":   document_id,
            "content_chunk": chunk.text,
            "chunk_index":   chunk.index,
            "chunk_type":    "text",
            "chunk_metadata": {
                "importance":    chunk.importance,
                "document_type": metadata.document_type,
                "title":         metadata.title,
                "chunk_index":   chunk.index,
                "total_chunks":  total,
            },
            "embedding":     format_vector(vector),
            "tokens_count":  estimate_tokens(chunk.text),
        }
