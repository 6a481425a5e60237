"""
DocumentStore — the row-store boundary.

Every pipeline component that touches Postgres receives a DocumentStore in
its constructor; nothing imports the engine directly. Each public method runs
in its own short transaction (get_session_scope), so a failure in one step
never holds a transaction open across a network call to OCR or the LLM.

Vector values cross this boundary as bracketed literals ("[0.1,0.2,...]")
and are CAST to `vector` in SQL, so no driver-level vector codec is needed.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Sequence

from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from docvault.models.documents import (
    PROCESSED_STATUSES,
    RUNNABLE_STATUSES,
    Document,
    DocumentEmbedding,
    UserProfile,
)
from docvault.processing.state import DocumentState, Pending, Processing, state_to_columns

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

_INSERT_EMBEDDING_SQL = text(
    """
    INSERT INTO document_embeddings
        (document_id, content_chunk, chunk_index, chunk_type,
         chunk_metadata, embedding, tokens_count)
    VALUES
        (:document_id, :content_chunk, :chunk_index, :chunk_type,
         CAST(:chunk_metadata AS jsonb), CAST(:embedding AS vector), :tokens_count)
    """
)

_MATCH_EMBEDDINGS_SQL = text(
    """
    SELECT *
    FROM search_document_embeddings(
        CAST(:query_embedding AS vector),
        :match_threshold,
        :match_count,
        :user_id
    )
    """
)


@dataclass(frozen=True)
class UserStats:
    total_documents:     int
    processed_documents: int     # ocr_status in (completed, fallback)
    storage_used_mb:     float


class DocumentStore:
    """Async CRUD over documents, document_embeddings and user_profiles."""

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        if session_factory is None:
            from docvault.db.session import get_session_scope
            session_factory = get_session_scope
        self._session_scope = session_factory

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get_document(
        self,
        document_id: uuid.UUID,
        owner_id:    uuid.UUID | None = None,
    ) -> Document | None:
        """Fetch one document; when owner_id is given, another owner's row reads as None."""
        stmt = select(Document).where(Document.id == document_id)
        if owner_id is not None:
            stmt = stmt.where(Document.user_id == owner_id)
        async with self._session_scope() as db:
            result = await db.execute(stmt)
            return result.scalars().first()

    async def list_documents(self, owner_id: uuid.UUID) -> list[Document]:
        async with self._session_scope() as db:
            result = await db.execute(
                select(Document)
                .where(Document.user_id == owner_id)
                .order_by(Document.uploaded_at.desc())
            )
            return list(result.scalars().all())

    async def create_document(self, **fields: Any) -> Document:
        doc = Document(**fields)
        async with self._session_scope() as db:
            db.add(doc)
            await db.flush()
            await db.refresh(doc)
        logger.info(
            "Document created | doc=%s user=%s path=%s",
            doc.id, doc.user_id, doc.storage_path,
        )
        return doc

    async def update_document(self, document_id: uuid.UUID, **fields: Any) -> None:
        async with self._session_scope() as db:
            await db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(**fields)
            )

    async def save_state(
        self,
        document_id: uuid.UUID,
        state:       DocumentState,
        **extra:     Any,
    ) -> None:
        """Persist a DocumentState (plus any extra columns) onto the row."""
        columns = state_to_columns(state)
        columns.update(extra)
        await self.update_document(document_id, **columns)
        logger.debug("State saved | doc=%s status=%s", document_id, columns["ocr_status"])

    async def claim_for_processing(self, document_id: uuid.UUID) -> bool:
        """
        pending/failed → processing as one conditional UPDATE.

        False when the row is missing, already claimed by another run or in a
        terminal success state. Two workers racing on one id cannot both win.
        """
        async with self._session_scope() as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.ocr_status.in_(RUNNABLE_STATUSES),
                )
                .values(**state_to_columns(Processing()))
                .returning(Document.id)
            )
            claimed = result.scalar_one_or_none() is not None
        logger.debug("Claim | doc=%s claimed=%s", document_id, claimed)
        return claimed

    async def reset_to_pending(
        self,
        document_id:              uuid.UUID,
        stale_processing_minutes: int = 15,
    ) -> bool:
        """
        Any status → pending, except a `processing` row touched within the
        last `stale_processing_minutes` (a run still owns it).
        """
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=stale_processing_minutes)
        async with self._session_scope() as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    or_(Document.ocr_status != "processing", Document.updated_at < cutoff),
                )
                .values(**state_to_columns(Pending()))
                .returning(Document.id)
            )
            return result.scalar_one_or_none() is not None

    async def delete_document(self, document_id: uuid.UUID) -> None:
        async with self._session_scope() as db:
            await db.execute(delete(Document).where(Document.id == document_id))

    async def get_documents_by_ids(self, ids: Sequence[uuid.UUID]) -> list[Document]:
        if not ids:
            return []
        async with self._session_scope() as db:
            result = await db.execute(select(Document).where(Document.id.in_(list(ids))))
            return list(result.scalars().all())

    async def find_stale_pending(self, older_than_minutes: int, limit: int = 50) -> list[Document]:
        """Documents that were uploaded but never picked up by a worker."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
        async with self._session_scope() as db:
            result = await db.execute(
                select(Document)
                .where(Document.ocr_status == "pending", Document.uploaded_at < cutoff)
                .order_by(Document.uploaded_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def delete_embeddings(self, document_id: uuid.UUID) -> int:
        async with self._session_scope() as db:
            result = await db.execute(
                delete(DocumentEmbedding).where(DocumentEmbedding.document_id == document_id)
            )
            return result.rowcount or 0

    async def insert_embeddings(self, rows: Sequence[dict]) -> int:
        """
        Bulk insert embedding rows.

        Each row: document_id, content_chunk, chunk_index, chunk_type,
        chunk_metadata (dict), embedding ("[v1,...]" literal), tokens_count.
        """
        if not rows:
            return 0
        params = [
            {**row, "chunk_metadata": json.dumps(row.get("chunk_metadata") or {})}
            for row in rows
        ]
        async with self._session_scope() as db:
            await db.execute(_INSERT_EMBEDDING_SQL, params)
        return len(params)

    async def count_embeddings(self, document_id: uuid.UUID) -> int:
        async with self._session_scope() as db:
            result = await db.execute(
                select(func.count())
                .select_from(DocumentEmbedding)
                .where(DocumentEmbedding.document_id == document_id)
            )
            return int(result.scalar_one())

    async def match_embeddings(
        self,
        query_embedding: str,
        match_threshold: float,
        match_count:     int,
        owner_id:        uuid.UUID,
    ) -> list[dict]:
        """
        Nearest-neighbour query via search_document_embeddings().
        Rows come back ordered by cosine distance, each with `similarity`.
        """
        async with self._session_scope() as db:
            result = await db.execute(
                _MATCH_EMBEDDINGS_SQL,
                {
                    "query_embedding": query_embedding,
                    "match_threshold": match_threshold,
                    "match_count":     match_count,
                    "user_id":         owner_id,
                },
            )
            rows = [dict(row) for row in result.mappings().all()]

        for row in rows:
            # raw SQL results carry jsonb as text
            if isinstance(row.get("chunk_metadata"), str):
                row["chunk_metadata"] = json.loads(row["chunk_metadata"])
        return rows

    # ------------------------------------------------------------------
    # User stats
    # ------------------------------------------------------------------

    async def get_user_stats(self, owner_id: uuid.UUID) -> UserStats:
        async with self._session_scope() as db:
            total = await db.execute(
                select(func.count()).select_from(Document).where(Document.user_id == owner_id)
            )
            processed = await db.execute(
                select(func.count())
                .select_from(Document)
                .where(
                    Document.user_id == owner_id,
                    Document.ocr_status.in_(PROCESSED_STATUSES),
                )
            )
            profile = await db.get(UserProfile, owner_id)

        return UserStats(
            total_documents=int(total.scalar_one()),
            processed_documents=int(processed.scalar_one()),
            storage_used_mb=float(profile.storage_used_mb) if profile else 0.0,
        )

    async def adjust_user_stats(
        self,
        owner_id:    uuid.UUID,
        count_delta: int,
        mb_delta:    float,
    ) -> None:
        """Apply deltas to the owner's counters, floored at zero, MB rounded to 0.1."""
        async with self._session_scope() as db:
            profile = await db.get(UserProfile, owner_id, with_for_update=True)
            if profile is None:
                profile = UserProfile(
                    user_id=owner_id,
                    document_count=0,
                    storage_used_mb=Decimal("0"),
                )
                db.add(profile)

            profile.document_count = max(0, (profile.document_count or 0) + count_delta)
            used = max(0.0, float(profile.storage_used_mb or 0) + mb_delta)
            profile.storage_used_mb = Decimal(str(round(used, 1)))

        logger.debug(
            "User stats adjusted | user=%s count_delta=%d mb_delta=%.2f",
            owner_id, count_delta, mb_delta,
        )
