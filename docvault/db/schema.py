"""
Schema bootstrap — pgvector extension, tables, and the similarity function.

The search function mirrors the cosine convention used everywhere else:
similarity = 1 - (embedding <=> query). Only documents whose extraction
finished (completed or fallback) are searchable.
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from docvault.models.documents import Base

logger = logging.getLogger(__name__)

SEARCH_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION search_document_embeddings(
    query_embedding vector(1536),
    match_threshold float,
    match_count     int,
    p_user_id       uuid
)
RETURNS TABLE (
    id             uuid,
    document_id    uuid,
    content_chunk  text,
    chunk_index    int,
    chunk_type     text,
    chunk_metadata jsonb,
    tokens_count   int,
    created_at     timestamptz,
    similarity     float
)
LANGUAGE sql STABLE
AS $$
    SELECT
        e.id,
        e.document_id,
        e.content_chunk,
        e.chunk_index,
        e.chunk_type,
        e.chunk_metadata,
        e.tokens_count,
        e.created_at,
        1 - (e.embedding <=> query_embedding) AS similarity
    FROM document_embeddings e
    JOIN documents d ON d.id = e.document_id
    WHERE d.user_id = p_user_id
      AND d.ocr_status IN ('completed', 'fallback')
      AND 1 - (e.embedding <=> query_embedding) > match_threshold
    ORDER BY e.embedding <=> query_embedding
    LIMIT match_count;
$$;
"""


async def init_schema(engine: AsyncEngine) -> None:
    """Idempotent: safe to run on every deploy."""
    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(text(SEARCH_FUNCTION_SQL))
    logger.info("Schema ready | tables=%s", sorted(Base.metadata.tables))
