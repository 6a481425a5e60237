"""
SQLAlchemy ORM Models — Documents, Embeddings & User Stats

Using SQLAlchemy 2.x mapped classes for full async support. The embedding
column is a pgvector `vector(1536)`; similarity search goes through the
search_document_embeddings() stored function (see db/schema.py), never
through client-side distance computation.

Ownership: every row is reachable from documents.user_id. The store layer
(db/store.py) always filters by owner — the ORM models do not.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

EMBEDDING_DIMENSIONS = 1536

OCR_STATUSES = ("pending", "processing", "completed", "failed", "fallback")
PROCESSED_STATUSES = ("completed", "fallback")
# Statuses a worker may claim; completed/fallback documents are reset by retry first
RUNNABLE_STATUSES = ("pending", "failed")


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded file, from upload → OCR → reformat → embedding.

    State machine (ocr_status column):
        pending    — blob stored, extraction not yet started
        processing — extraction pipeline running
        completed  — text extracted (and reformatted, or too short to need it)
        fallback   — text extracted, reformat failed; raw OCR text kept
        failed     — document-fatal error (see error_message)

    processed_text is non-null only in completed / fallback.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "ocr_status IN ('pending', 'processing', 'completed', 'failed', 'fallback')",
            name="documents_ocr_status_check",
        ),
        CheckConstraint(
            "ocr_confidence_score IS NULL "
            "OR (ocr_confidence_score >= 0 AND ocr_confidence_score <= 1)",
            name="documents_confidence_range_check",
        ),
        Index("idx_documents_user_id",     "user_id"),
        Index("idx_documents_user_status", "user_id", "ocr_status"),
        Index("idx_documents_uploaded_at", "uploaded_at"),
    )

    # Primary key
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    # Owner: the auth provider's subject id; never supplied by the client body
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    # Blob reference
    filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Server-generated object name: <epoch_ms>.<ext>",
    )
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(Text, nullable=False, comment="Lower-case extension")
    mime_type: Mapped[str] = mapped_column(Text, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Object key in the documents bucket: <user_id>/<epoch_ms>.<ext>",
    )

    # Classification output
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_data: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)

    # Extraction state machine
    ocr_status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="pending",
        server_default="pending",
    )
    ocr_confidence_score: Mapped[Optional[Decimal]] = mapped_column(Numeric(4, 3), nullable=True)
    processed_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when ocr_status='failed'",
    )

    # Timestamps
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} user={self.user_id} "
            f"status={self.ocr_status} file={self.original_filename!r}>"
        )


# ---------------------------------------------------------------------------
# DocumentEmbedding model: document_embeddings
# ---------------------------------------------------------------------------

class DocumentEmbedding(Base):
    """
    One embedded chunk of a Document's processed text.

    Rows for a document are replaced wholesale on every successful
    (re)processing run: delete-then-insert, never append.
    """

    __tablename__ = "document_embeddings"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_embeddings_position"),
        Index("idx_document_embeddings_document_id", "document_id"),
        Index(
            "idx_document_embeddings_vector",
            "embedding",
            postgresql_using="ivfflat",
            postgresql_with={"lists": 100},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    content_chunk: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int]   = mapped_column(Integer, nullable=False)
    chunk_type: Mapped[str]    = mapped_column(Text, nullable=False, default="text", server_default="text")
    chunk_metadata: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="{importance, document_type, title, chunk_index, total_chunks}",
    )
    embedding: Mapped[list[float]] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)
    tokens_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<DocumentEmbedding doc={self.document_id} chunk={self.chunk_index}>"


# ---------------------------------------------------------------------------
# UserProfile model: user_profiles (per-owner usage counters)
# ---------------------------------------------------------------------------

class UserProfile(Base):
    """Running document count and storage usage for one owner."""

    __tablename__ = "user_profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    document_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    storage_used_mb: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0"),
        server_default="0",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
