"""
Retrieval Ranker — importance-weighted semantic search

  1. Embed the query (EmbeddingGenerator)
  2. search_document_embeddings() → up to 2×limit candidates above threshold,
     owner-scoped, ordered by cosine distance
  3. Optional document-type filter; if it empties the set, it is dropped
  4. score = similarity × weight[importance]   (high 1.5, medium 1.0, low 0.7)
     stable sort descending, so equal scores keep the similarity-query order
  5. Truncate to limit, attach parent documents (one IN query)

Every result is scoped to the owner: the stored function filters by user_id
and only returns chunks of completed / fallback documents.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from docvault.core.exceptions import EmptyInputError
from docvault.processing.embeddings import EmbeddingGenerator, format_vector

logger = logging.getLogger(__name__)

DEFAULT_IMPORTANCE_WEIGHTS: dict[str, float] = {
    "high":   1.5,
    "medium": 1.0,
    "low":    0.7,
}
DEFAULT_LIMIT     = 10
DEFAULT_THRESHOLD = 0.65
CANDIDATE_FACTOR  = 2


@dataclass
class SearchResult:
    document:    Any            # Document ORM row
    chunk:       str
    chunk_index: int
    importance:  str
    similarity:  float          # raw 1 - cosine_distance
    score:       float          # similarity × importance weight


class RetrievalRanker:
    """
    Usage:
        ranker  = RetrievalRanker(store, generator)
        results = await ranker.search("what is the total amount", owner_id)
    """

    def __init__(
        self,
        store,                                       # DocumentStore
        generator: EmbeddingGenerator,
        weights:   Mapping[str, float] | None = None,
    ) -> None:
        self._store     = store
        self._generator = generator
        self._weights   = dict(weights or DEFAULT_IMPORTANCE_WEIGHTS)

    @classmethod
    def from_settings(cls, store) -> "RetrievalRanker":
        from docvault.core.config import settings
        return cls(
            store=store,
            generator=EmbeddingGenerator.from_settings(),
            weights=settings.importance_weights,
        )

    async def search(
        self,
        query:         str,
        owner_id:      uuid.UUID,
        limit:         int = DEFAULT_LIMIT,
        threshold:     float = DEFAULT_THRESHOLD,
        document_type: Optional[str] = None,
    ) -> list[SearchResult]:
        query = (query or "").strip()
        if not query:
            raise EmptyInputError("Search query must not be empty")
        if limit < 1:
            return []

        vector = await self._generator.embed(query)
        candidates = await self._store.match_embeddings(
            format_vector(vector),
            match_threshold=threshold,
            match_count=limit * CANDIDATE_FACTOR,
            owner_id=owner_id,
        )

        candidates = filter_by_document_type(candidates, document_type)

        scored = [(self.weighted_score(row), row) for row in candidates]
        scored.sort(key=lambda pair: pair[0], reverse=True)   # stable
        top = scored[:limit]

        documents = await self._store.get_documents_by_ids(
            list({row["document_id"] for _, row in top})
        )
        by_id = {doc.id: doc for doc in documents}

        results: list[SearchResult] = []
        for score, row in top:
            doc = by_id.get(row["document_id"])
            if doc is None:
                continue
            results.append(SearchResult(
                document=doc,
                chunk=row["content_chunk"],
                chunk_index=row.get("chunk_index", 0),
                importance=importance_of(row),
                similarity=float(row["similarity"]),
                score=score,
            ))

        logger.info(
            "Search | user=%s candidates=%d returned=%d filter=%s",
            owner_id, len(candidates), len(results), document_type,
        )
        return results

    def weighted_score(self, row: Mapping[str, Any]) -> float:
        weight = self._weights.get(importance_of(row), self._weights.get("medium", 1.0))
        return float(row["similarity"]) * weight


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def importance_of(row: Mapping[str, Any]) -> str:
    metadata = row.get("chunk_metadata") or {}
    return metadata.get("importance") or "medium"


def filter_by_document_type(
    candidates:    list[dict],
    document_type: Optional[str],
) -> list[dict]:
    """Narrow to one document type; never narrows to nothing."""
    if not document_type:
        return candidates

    wanted = document_type.strip().lower()
    filtered = [
        row for row in candidates
        if str((row.get("chunk_metadata") or {}).get("document_type") or "").lower() == wanted
    ]
    if not filtered and candidates:
        logger.info(
            "Document-type filter matched nothing, using unfiltered candidates | type=%s",
            document_type,
        )
        return candidates
    return filtered
