"""
OCR Client — Eden AI asynchronous job API
══════════════════════════════════════════

The provider never receives file bytes from us: we hand it a short-lived
signed URL, submit an async job, and poll until the job is terminal.

    POST {endpoint}                 {providers, language, file_url, extract_* flags}
                                    → {public_id}
    GET  {endpoint}/{public_id}     → {status: queued|processing|finished|failed,
                                       results: {<provider>: {...}}, error}

Polling: every `poll_interval` seconds, at most `max_attempts` times
(defaults 10s × 30 = 5 minutes). A poll request that fails at the HTTP level
is a transient blip — counted as an attempt, never fatal on its own.

Outcomes:
  finished → OcrResult (merged text, confidence, entities)
  failed   → OcrProcessingError(provider message)
  ceiling  → OcrTimeoutError

Text merge (per provider result, first provider that yields anything wins):
  raw_text → data.text → per-segment texts (data.texts / pages) →
  serialized tables → serialized metadata
Empty and duplicate fragments are dropped; the rest are joined by blank lines.
If nothing at all is extracted, NO_TEXT_PLACEHOLDER is returned as the text.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from docvault.core.exceptions import (
    ConfigurationError,
    OcrProcessingError,
    OcrTimeoutError,
)
from docvault.processing.polling import Sleep, poll_until

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIDENCE   = 0.8    # provider returned text but no score
NO_TEXT_CONFIDENCE   = 0.5
ENTITY_CONFIDENCE    = 0.5

NO_TEXT_PLACEHOLDER = (
    "No text could be extracted from this document. "
    "The document might be image-based or have security restrictions."
)

TERMINAL_SUCCESS = "finished"
TERMINAL_FAILURE = "failed"

# Extraction options sent with every job
EXTRACTION_FLAGS: dict[str, Any] = {
    "text_detection_mode": "accurate",
    "extract_layout":      True,
    "extract_tables":      True,
    "extract_figures":     True,
    "extract_headers":     True,
    "extract_footnotes":   True,
    "extract_metadata":    True,
}


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class OcrResult:
    """
    text        : merged text, or NO_TEXT_PLACEHOLDER
    confidence  : provider score in [0, 1]
    entities    : [{text, description, confidence}, ...]
    provider    : provider key the text came from ("" when nothing extracted)
    job_id      : provider public_id
    placeholder : True when no fragment was found
    """
    text:        str
    confidence:  float
    job_id:      str
    provider:    str = ""
    entities:    list[dict] = field(default_factory=list)
    placeholder: bool = False


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class EdenAiOcrClient:
    """
    Usage:
        client = EdenAiOcrClient(api_key=..., endpoint=...)
        result = await client.extract(signed_url, document_id=doc_id)
    """

    def __init__(
        self,
        api_key:       str,
        endpoint:      str = "https://api.edenai.run/v2/ocr/ocr_async",
        provider:      str = "mistral",
        language:      str = "en",
        poll_interval: float = 10.0,
        max_attempts:  int = 30,
        timeout:       float = 30.0,
        transport:     httpx.AsyncBaseTransport | None = None,
        sleep:         Sleep | None = None,
    ) -> None:
        self._api_key       = api_key
        self._endpoint      = endpoint.rstrip("/")
        self._provider      = provider
        self._language      = language
        self._poll_interval = poll_interval
        self._max_attempts  = max_attempts
        self._timeout       = timeout
        self._transport     = transport
        self._sleep         = sleep

    @classmethod
    def from_settings(cls) -> "EdenAiOcrClient":
        from docvault.core.config import settings
        return cls(
            api_key=settings.eden_ai_api_key,
            endpoint=settings.eden_ai_ocr_async_endpoint,
            provider=settings.ocr_provider,
            language=settings.ocr_language,
            poll_interval=settings.ocr_poll_interval_seconds,
            max_attempts=settings.ocr_max_poll_attempts,
            timeout=settings.ocr_request_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def extract(self, file_url: str, document_id: Any = None) -> OcrResult:
        """Submit a job for `file_url` and wait for its terminal state."""
        job_id = await self.submit(file_url)
        logger.info("OCR job submitted | doc=%s job=%s", document_id, job_id)
        return await self.wait_for_result(job_id, document_id=document_id)

    async def submit(self, file_url: str) -> str:
        if not self._api_key:
            raise ConfigurationError("EDEN_AI_API_KEY is not configured")

        body = {
            "providers": self._provider,
            "language":  self._language,
            "file_url":  file_url,
            **EXTRACTION_FLAGS,
        }
        async with self._http() as client:
            resp = await client.post(self._endpoint, json=body)

        if resp.status_code >= 400:
            raise OcrProcessingError(
                f"OCR submit rejected ({resp.status_code}): {resp.text[:500]}"
            )

        public_id = resp.json().get("public_id")
        if not public_id:
            raise OcrProcessingError("OCR submit returned no job id")
        return public_id

    async def wait_for_result(self, job_id: str, document_id: Any = None) -> OcrResult:
        async def _check() -> Optional[OcrResult]:
            return await self._poll_once(job_id, document_id)

        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        return await poll_until(
            _check,
            interval=self._poll_interval,
            max_attempts=self._max_attempts,
            retry_on=(httpx.HTTPError, ValueError),
            timeout_error=OcrTimeoutError,
            label=f"ocr job {job_id}",
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )

    async def _poll_once(self, job_id: str, document_id: Any) -> Optional[OcrResult]:
        async with self._http() as client:
            resp = await client.get(f"{self._endpoint}/{job_id}")
            resp.raise_for_status()
            payload = resp.json()

        status = payload.get("status")
        logger.debug("OCR poll | doc=%s job=%s status=%s", document_id, job_id, status)

        if status == TERMINAL_FAILURE:
            raise OcrProcessingError(
                f"OCR job {job_id} failed: {_error_message(payload.get('error'))}"
            )
        if status != TERMINAL_SUCCESS:
            return None

        result = parse_results(payload.get("results") or {}, job_id)
        logger.info(
            "OCR finished | doc=%s job=%s provider=%s chars=%d confidence=%.2f placeholder=%s",
            document_id, job_id, result.provider, len(result.text),
            result.confidence, result.placeholder,
        )
        return result


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def parse_results(results: dict, job_id: str = "") -> OcrResult:
    """Build an OcrResult from the provider-keyed `results` object."""
    for provider, provider_result in results.items():
        if not isinstance(provider_result, dict):
            continue
        text = merge_fragments(collect_fragments(provider_result))
        if not text:
            if provider_result.get("error"):
                logger.warning(
                    "OCR provider returned no text | provider=%s error=%s",
                    provider, _error_message(provider_result.get("error")),
                )
            continue

        data = provider_result.get("data") or {}
        confidence = provider_result.get("confidence") or data.get("confidence") or DEFAULT_CONFIDENCE
        return OcrResult(
            text=text,
            confidence=float(confidence),
            job_id=job_id,
            provider=provider,
            entities=_entities(data),
        )

    logger.warning("OCR produced no text | job=%s providers=%s", job_id, list(results))
    return OcrResult(
        text=NO_TEXT_PLACEHOLDER,
        confidence=NO_TEXT_CONFIDENCE,
        job_id=job_id,
        placeholder=True,
    )


def collect_fragments(provider_result: dict) -> list[str]:
    """Fragments in priority order: raw → structured → segments → tables → metadata."""
    data = provider_result.get("data") or {}
    fragments: list[str] = []

    fragments.append(_as_text(provider_result.get("raw_text")))
    fragments.append(_as_text(data.get("text") or provider_result.get("text")))

    segments = data.get("texts") or provider_result.get("pages") or []
    for segment in segments:
        if isinstance(segment, dict):
            fragments.append(_as_text(segment.get("text") or segment.get("content")))
        else:
            fragments.append(_as_text(segment))

    tables = data.get("tables") or provider_result.get("tables")
    if tables:
        fragments.append(json.dumps(tables, ensure_ascii=False, default=str))

    metadata = data.get("metadata") or provider_result.get("metadata")
    if metadata:
        fragments.append(json.dumps(metadata, ensure_ascii=False, default=str))

    return fragments


def merge_fragments(fragments: list[str]) -> str:
    """Join non-empty, distinct fragments with blank lines, preserving order."""
    seen: set[str] = set()
    kept: list[str] = []
    for fragment in fragments:
        cleaned = (fragment or "").strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        kept.append(cleaned)
    return "\n\n".join(kept)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n\n".join(_as_text(v) for v in value)
    return str(value)


def _entities(data: dict) -> list[dict]:
    return [
        {
            "text":        entity.get("value") or entity.get("text"),
            "description": entity.get("label") or entity.get("type"),
            "confidence":  entity.get("confidence") or ENTITY_CONFIDENCE,
        }
        for entity in data.get("entities") or []
        if isinstance(entity, dict)
    ]


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error or "Unknown error")
