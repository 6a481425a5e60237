"""
Search API Router
POST /api/v1/search

Semantic search over the caller's processed documents, re-ranked by chunk
importance. Errors:
  400 EMPTY_QUERY         blank query (after trimming)
  503 SEARCH_UNAVAILABLE  embedding provider not configured
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status

from docvault.auth.dependencies import CurrentUser, Ranker
from docvault.schemas.documents import (
    DocumentResponse,
    ErrorResponse,
    SearchHit,
    SearchRequest,
    SearchResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])


@router.post(
    "/search",
    response_model=SearchResponse,
    status_code=status.HTTP_200_OK,
    summary="Semantic search across the caller's documents",
    responses={
        400: {"model": ErrorResponse, "description": "Empty query"},
        401: {"model": ErrorResponse},
        503: {"model": ErrorResponse, "description": "Search provider not configured"},
    },
)
async def search_documents(
    body:   SearchRequest,
    user:   CurrentUser,
    ranker: Ranker,
) -> SearchResponse:
    results = await ranker.search(
        body.query,
        owner_id=user.owner_id,
        limit=body.limit,
        threshold=body.threshold,
        document_type=body.document_type,
    )
    return SearchResponse(
        query=body.query,
        results=[
            SearchHit(
                document=DocumentResponse.model_validate(r.document),
                chunk=r.chunk,
                chunk_index=r.chunk_index,
                importance=r.importance,
                similarity=r.similarity,
                score=r.score,
            )
            for r in results
        ],
        total=len(results),
    )
