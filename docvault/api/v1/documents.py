"""
Documents API Router
/api/v1/documents

  POST   /upload              multipart `file` → 202 + document (pending)
  GET    /                    owner's documents, newest first
  GET    /stats               total / processed / storage MB
  GET    /{document_id}       single document
  POST   /{document_id}/retry reset to pending + requeue → 202
  DELETE /{document_id}       embeddings, row and blob → 204

The owner id is always the verified JWT `sub`; another owner's document id
answers 404, never 403, so ids cannot be probed.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, File, Response, UploadFile, status

from docvault.auth.dependencies import CurrentUser, Documents
from docvault.schemas.documents import (
    DocumentListResponse,
    DocumentResponse,
    ErrorResponse,
    UserStatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=DocumentResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document for OCR and indexing",
    description=(
        "Accepts PDF, JPEG, PNG, TIFF, WEBP or TXT files up to 50 MB. "
        "Returns 202 immediately; extraction runs in a background worker. "
        "Poll GET /documents/{id} for ocr_status."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Missing file or unsupported type"},
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        500: {"model": ErrorResponse, "description": "Storage error"},
    },
)
async def upload_document(
    user:    CurrentUser,
    service: Documents,
    file:    UploadFile = File(..., description="Document file"),
) -> DocumentResponse:
    data = await file.read()
    doc = await service.upload(
        owner_id=user.owner_id,
        filename=file.filename,
        content_type=file.content_type,
        data=data,
    )
    return DocumentResponse.model_validate(doc)


# ---------------------------------------------------------------------------
# GET /documents/
# ---------------------------------------------------------------------------

@router.get(
    "/",
    response_model=DocumentListResponse,
    summary="List the caller's documents",
    responses={401: {"model": ErrorResponse}},
)
async def list_documents(user: CurrentUser, service: Documents) -> DocumentListResponse:
    docs = await service.list_documents(user.owner_id)
    return DocumentListResponse(
        documents=[DocumentResponse.model_validate(d) for d in docs],
        total=len(docs),
    )


# ---------------------------------------------------------------------------
# GET /documents/stats
# ---------------------------------------------------------------------------

@router.get(
    "/stats",
    response_model=UserStatsResponse,
    summary="Document counts and storage used",
    responses={401: {"model": ErrorResponse}},
)
async def get_stats(user: CurrentUser, service: Documents) -> UserStatsResponse:
    stats = await service.get_stats(user.owner_id)
    return UserStatsResponse(
        total_documents=stats.total_documents,
        processed_documents=stats.processed_documents,
        storage_used_mb=stats.storage_used_mb,
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentResponse,
    summary="Fetch one document",
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_document(
    document_id: UUID,
    user:        CurrentUser,
    service:     Documents,
) -> DocumentResponse:
    doc = await service.get_document(user.owner_id, document_id)
    return DocumentResponse.model_validate(doc)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/retry
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/retry",
    response_model=DocumentResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Reprocess a document from scratch",
    description=(
        "Resets ocr_status to pending and requeues extraction. Safe to repeat. "
        "Refused with 409 while a worker is processing the document."
    ),
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Document is still processing"},
    },
)
async def retry_document(
    document_id: UUID,
    user:        CurrentUser,
    service:     Documents,
) -> DocumentResponse:
    doc = await service.retry_processing(user.owner_id, document_id)
    return DocumentResponse.model_validate(doc)


# ---------------------------------------------------------------------------
# DELETE /documents/{document_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a document, its embeddings and its file",
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def delete_document(
    document_id: UUID,
    user:        CurrentUser,
    service:     Documents,
) -> Response:
    await service.delete_document(user.owner_id, document_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
