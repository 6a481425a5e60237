"""
LLM post-processing of OCR text — reformat & classify

TextReformatter
  One chat call that turns raw OCR output into clean prose while keeping every
  word, number and symbol. Never raises: on error or an empty reply the merged
  OCR text is returned unchanged with reformatted=False, and the pipeline
  records the document as `fallback` instead of `completed`.

DocumentClassifier
  One chat call that assigns a category from a fixed list and pulls
  structured fields (title, parties, amounts, dates …) as JSON. Never raises:
  any failure returns None and leaves the document's status untouched.

Both are LCEL chains (prompt | llm | StrOutputParser) so any LangChain chat
model — or a fake one in tests — can be injected.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate

logger = logging.getLogger(__name__)

MIN_REFORMAT_CHARS = 50

DOCUMENT_CATEGORIES: tuple[str, ...] = (
    "Invoice/Receipt",
    "Resume/CV",
    "Contract/Agreement",
    "Medical Record",
    "Financial Statement",
    "Legal Document",
    "Academic Paper",
    "Report",
    "Letter/Email",
    "ID Document",
    "Certificate",
    "Other",
)

REFORMAT_SYSTEM_PROMPT = """You clean up text produced by OCR.

Rules:
- Preserve every word, number and symbol from the input. Do not summarize,
  omit, shorten, translate or reinterpret anything.
- Fix characters typically confused by OCR (e.g. 0/O, 1/l/I, rn/m) only when
  the correct reading is unambiguous from context.
- Add punctuation and paragraph breaks where the layout was lost.
- Keep lists, tables and headings recognisable as plain text.
- Output only the cleaned text, with no commentary."""

CLASSIFY_SYSTEM_PROMPT = """You classify documents and extract their key fields.

Choose documentType from exactly one of:
{categories}

Reply with JSON only, in this shape:
{{"documentType": "<category>", "confidence": <0..1>, "structuredData": {{"title": "<short title>", ...}}}}

structuredData holds the fields that matter for this category (names, dates,
amounts, parties, identifiers). Always include a short "title"."""

_DOCUMENT_TYPE_RE = re.compile(r'"documentType"\s*:\s*"([^"]+)"')
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


# ---------------------------------------------------------------------------
# LLM factory
# ---------------------------------------------------------------------------

def get_llm(max_tokens: int, temperature: float):
    """Return the configured chat model (ChatOpenAI)."""
    from langchain_openai import ChatOpenAI

    from docvault.core.config import settings

    return ChatOpenAI(
        model=settings.llm_model,
        api_key=settings.openai_api_key,
        temperature=temperature,
        max_tokens=max_tokens,
    )


# ---------------------------------------------------------------------------
# Reformatter
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReformatResult:
    text:        str
    reformatted: bool
    reason:      str = ""     # too_short | llm_error | empty_response


class TextReformatter:

    def __init__(self, llm: Any, min_chars: int = MIN_REFORMAT_CHARS) -> None:
        self._min_chars = min_chars
        prompt = ChatPromptTemplate.from_messages([
            ("system", REFORMAT_SYSTEM_PROMPT),
            ("human",  "{text}"),
        ])
        self._chain = prompt | llm | StrOutputParser()

    @classmethod
    def from_settings(cls) -> "TextReformatter":
        from docvault.core.config import settings
        return cls(
            llm=get_llm(settings.reformat_max_tokens, settings.reformat_temperature),
            min_chars=settings.reformat_min_chars,
        )

    async def reformat(self, text: str, document_id: Any = None) -> ReformatResult:
        if len(text.strip()) <= self._min_chars:
            return ReformatResult(text=text, reformatted=False, reason="too_short")

        try:
            output = await self._chain.ainvoke({"text": text})
        except Exception as exc:
            logger.warning("Reformat failed | doc=%s error=%s", document_id, exc)
            return ReformatResult(text=text, reformatted=False, reason="llm_error")

        output = (output or "").strip()
        if not output:
            logger.warning("Reformat returned empty text | doc=%s", document_id)
            return ReformatResult(text=text, reformatted=False, reason="empty_response")

        logger.info(
            "Reformat ok | doc=%s chars_in=%d chars_out=%d",
            document_id, len(text), len(output),
        )
        return ReformatResult(text=output, reformatted=True)

    @property
    def min_chars(self) -> int:
        return self._min_chars


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Classification:
    document_type:   str
    confidence:      float
    title:           Optional[str] = None
    structured_data: dict = field(default_factory=dict)


class DocumentClassifier:

    def __init__(self, llm: Any) -> None:
        prompt = ChatPromptTemplate.from_messages([
            ("system", CLASSIFY_SYSTEM_PROMPT),
            ("human",  "{text}"),
        ]).partial(categories="\n".join(f"- {c}" for c in DOCUMENT_CATEGORIES))
        self._chain = prompt | llm | StrOutputParser()

    @classmethod
    def from_settings(cls) -> "DocumentClassifier":
        from docvault.core.config import settings
        return cls(llm=get_llm(settings.classify_max_tokens, settings.classify_temperature))

    async def classify(self, text: str, document_id: Any = None) -> Classification | None:
        if not text.strip():
            return None
        try:
            output = await self._chain.ainvoke({"text": text})
        except Exception as exc:
            logger.warning("Classification failed | doc=%s error=%s", document_id, exc)
            return None

        result = parse_classification(output or "")
        if result is None:
            logger.warning("Classification unparseable | doc=%s", document_id)
        else:
            logger.info(
                "Classified | doc=%s type=%s confidence=%.2f",
                document_id, result.document_type, result.confidence,
            )
        return result


def parse_classification(output: str) -> Classification | None:
    """Parse the model's JSON reply; fall back to a regex over documentType."""
    cleaned = _FENCE_RE.sub("", output.strip()).strip()
    try:
        payload = json.loads(cleaned)
    except ValueError:
        match = _DOCUMENT_TYPE_RE.search(output)
        if not match:
            return None
        return Classification(
            document_type=normalize_category(match.group(1)),
            confidence=0.5,
        )

    if not isinstance(payload, dict):
        return None

    data = payload.get("structuredData")
    data = data if isinstance(data, dict) else {}
    title = data.get("title") or data.get("name")
    try:
        confidence = float(payload.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5

    return Classification(
        document_type=normalize_category(str(payload.get("documentType", "Other"))),
        confidence=min(1.0, max(0.0, confidence)),
        title=str(title) if title else None,
        structured_data=data,
    )


def normalize_category(value: str) -> str:
    wanted = value.strip().lower()
    for category in DOCUMENT_CATEGORIES:
        if category.lower() == wanted:
            return category
    return "Other"
