"""
Document & Search — Pydantic Request/Response Schemas

Covers:
  - Document rows returned by /api/v1/documents/*
  - Per-user stats (GET /documents/stats)
  - Semantic search request/response (POST /search)
  - The uniform error envelope and its factories

All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Allowed MIME types: enforced before touching S3
# ---------------------------------------------------------------------------

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "image/jpeg",
        "image/png",
        "image/webp",
        "image/tiff",
        "text/plain",
    }
)


# ---------------------------------------------------------------------------
# OCR state machine
# ---------------------------------------------------------------------------

class OcrStatus(str, Enum):
    """
    Maps to documents.ocr_status.
    Transitions: pending → processing → completed | fallback | failed
    """
    PENDING     = "pending"
    PROCESSING  = "processing"
    COMPLETED   = "completed"
    FALLBACK    = "fallback"     # text kept, reformat pass failed
    FAILED      = "failed"


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                   UUID
    user_id:              UUID
    filename:             str
    original_filename:    str
    file_type:            Optional[str] = None
    mime_type:            str
    file_size_bytes:      int
    storage_path:         str
    title:                Optional[str] = None
    document_type:        Optional[str] = None
    extracted_data:       Optional[dict[str, Any]] = None
    ocr_status:           OcrStatus
    ocr_confidence_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    processed_text:       Optional[str] = None
    error_message:        Optional[str] = None
    uploaded_at:          Optional[datetime] = None
    processed_at:         Optional[datetime] = None


class DocumentListResponse(BaseModel):
    documents: list[DocumentResponse]
    total:     int


class UserStatsResponse(BaseModel):
    total_documents:     int
    processed_documents: int
    storage_used_mb:     float


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class SearchRequest(BaseModel):
    query:         str             = Field(..., max_length=2000)
    limit:         int             = Field(10, ge=1, le=50)
    threshold:     float           = Field(0.65, ge=0.0, le=1.0)
    document_type: Optional[str]   = Field(None, max_length=100)

    @field_validator("query")
    @classmethod
    def strip_query(cls, value: str) -> str:
        return value.strip()


class SearchHit(BaseModel):
    document:    DocumentResponse
    chunk:       str
    chunk_index: int
    importance:  str
    similarity:  float
    score:       float


class SearchResponse(BaseModel):
    query:   str
    results: list[SearchHit]
    total:   int


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class DocumentErrors:
    """Factories for every documented error case."""

    @staticmethod
    def document_not_found(document_id: Any) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
        )

    @staticmethod
    def document_busy(document_id: Any) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_BUSY",
            message=f"Document '{document_id}' is still being processed; retry once it finishes.",
        )

    @staticmethod
    def unsupported_file_type(filename: str, content_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{content_type}' is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=(
                        f"'{filename}' has an unsupported type '{content_type}'. "
                        "Allowed: PDF, images (JPEG, PNG, WEBP, TIFF), TXT."
                    ),
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required and must not be empty.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit_bytes // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def empty_query() -> ErrorResponse:
        return ErrorResponse(
            error_code="EMPTY_QUERY",
            message="Search query must not be empty.",
            details=[ErrorDetail(field="query", message="Provide a non-blank query.", code="EMPTY_QUERY")],
        )

    @staticmethod
    def storage_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message="Failed to store the document. Please retry.",
            details=(
                [ErrorDetail(field=None, message=detail, code="STORAGE_ERROR")]
                if detail
                else []
            ),
        )

    @staticmethod
    def search_unavailable() -> ErrorResponse:
        return ErrorResponse(
            error_code="SEARCH_UNAVAILABLE",
            message="Semantic search is not configured on this server.",
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
