"""
DocumentState — the extraction state machine as a tagged union.

    Pending → Processing → Completed{text, confidence}
                         → Fallback{text, confidence}
                         → Failed{reason}

The application layer only ever handles these values. The flat row
representation (ocr_status + processed_text + …) exists only at the storage
boundary, via state_to_columns() / state_from_row().
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Union


@dataclass(frozen=True)
class Pending:
    status = "pending"


@dataclass(frozen=True)
class Processing:
    status = "processing"


@dataclass(frozen=True)
class Completed:
    text:       str
    confidence: float
    status = "completed"


@dataclass(frozen=True)
class Fallback:
    """Text extracted, but the reformat pass failed — raw OCR text kept."""
    text:       str
    confidence: float
    status = "fallback"


@dataclass(frozen=True)
class Failed:
    reason: str
    status = "failed"


DocumentState = Union[Pending, Processing, Completed, Fallback, Failed]


def is_processed(state: DocumentState) -> bool:
    return isinstance(state, (Completed, Fallback))


def state_to_columns(state: DocumentState, now: datetime | None = None) -> dict[str, Any]:
    """
    Flatten a state into documents-table column values.

    processed_text is cleared for every non-terminal-success state so a
    reprocessing run never leaves stale text behind.
    """
    now = now or datetime.now(timezone.utc)

    if isinstance(state, (Completed, Fallback)):
        return {
            "ocr_status":           state.status,
            "processed_text":       state.text,
            "ocr_confidence_score": _confidence(state.confidence),
            "processed_at":         now,
            "error_message":        None,
        }
    if isinstance(state, Failed):
        return {
            "ocr_status":     "failed",
            "processed_text": None,
            "processed_at":   now,
            "error_message":  state.reason,
        }
    if isinstance(state, (Pending, Processing)):
        return {
            "ocr_status":     state.status,
            "processed_text": None,
            "processed_at":   None,
            "error_message":  None,
        }
    raise TypeError(f"Unknown document state: {state!r}")


def state_from_row(row: Any) -> DocumentState:
    """Rebuild the state from anything with the document columns as attributes."""
    status = row.ocr_status
    confidence = float(row.ocr_confidence_score) if row.ocr_confidence_score is not None else 0.0

    if status == "completed":
        return Completed(text=row.processed_text or "", confidence=confidence)
    if status == "fallback":
        return Fallback(text=row.processed_text or "", confidence=confidence)
    if status == "failed":
        return Failed(reason=row.error_message or "unknown error")
    if status == "processing":
        return Processing()
    if status == "pending":
        return Pending()
    raise ValueError(f"Unknown ocr_status: {status!r}")


def _confidence(value: float) -> Decimal:
    # NUMERIC(4,3), clamped to [0, 1]
    clamped = min(1.0, max(0.0, float(value)))
    return Decimal(str(round(clamped, 3)))
