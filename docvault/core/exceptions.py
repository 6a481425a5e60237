"""
Error taxonomy for the ingestion-to-retrieval pipeline.

  Caller-fatal   — ConfigurationError, EmptyInputError
                   raised immediately, no fallback
  Document-fatal — FileNotFoundError (builtin), OcrProcessingError, OcrTimeoutError
                   caught at the pipeline boundary, persisted as ocr_status=failed
  Transient      — single-chunk embedding failures, OCR poll blips, reformat errors
                   handled locally and never surface as exceptions
"""

from __future__ import annotations


class DocVaultError(Exception):
    """Base class for all application errors."""


class ConfigurationError(DocVaultError):
    """A required provider credential or endpoint is not configured."""


class EmptyInputError(DocVaultError, ValueError):
    """Blank text was passed where content is required."""


class EmbeddingError(DocVaultError):
    """Both the primary and the direct-call embedding paths failed."""


class PollTimeoutError(DocVaultError, TimeoutError):
    """poll_until() hit its attempt ceiling without a result."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class OcrProcessingError(DocVaultError):
    """The OCR provider rejected the job or reported it as failed."""


class OcrTimeoutError(PollTimeoutError):
    """The OCR job did not reach a terminal state within the poll ceiling."""


class DocumentNotFoundError(DocVaultError, LookupError):
    """No document with this id exists for the requesting owner."""

    def __init__(self, document_id) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id
