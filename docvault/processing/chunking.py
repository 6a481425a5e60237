"""
Text Chunker  —  Cascading Strategy Segmentation
══════════════════════════════════════════════════

Splits normalized document text into overlapping segments sized for the
embedding model. Token counts are estimated at 1 token ≈ 4 characters, so no
tokenizer dependency is needed.

Strategy cascade (first success wins)
─────────────────────────────────────
  1. structural   LangChain RecursiveCharacterTextSplitter over the separator
                  priority list  \\n\\n  \\n  ". "  "! "  "? "  ;  :  " "  ""
                  chunk ≈ target×4 chars, overlap ≈ overlap×4 chars
  2. paragraphs   split on blank lines; only used when > 3 paragraphs exist,
                  each paragraph capped at 1500 chars (200 overlap on overflow)
  3. sentences    sliding window of 5 sentences, 2-sentence overlap
  4. windows      fixed character stride, 1000 chars / 200 overlap

Each strategy returns a list of chunks, or None when it does not apply. A
strategy that raises is logged and skipped. The combinator is first_success().

Oversize policy (single pass, applied to every strategy's output)
─────────────────────────────────────────────────────────────────
  • Single-chunk guard: when the whole document collapsed into ≤ 1 chunk but
    the text is longer than one target chunk, re-chunk with paragraphs →
    sentences.
  • Size bound: any chunk longer than target×5 chars is re-split with the
    structural splitter at half size / half overlap; if that fails, or still
    leaves oversized pieces, fixed windows of target×3 chars with an
    overlap×2 char overlap are used. No emitted chunk exceeds target×5 chars.

Termination: every window loop advances by (size − overlap), forced ≥ 1.
"""

from __future__ import annotations

import logging
import math
import re
import unicodedata
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from langchain_text_splitters import RecursiveCharacterTextSplitter

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

CHARS_PER_TOKEN = 4

DEFAULT_TARGET_TOKENS  = 500
DEFAULT_OVERLAP_TOKENS = 200

STRUCTURAL_SEPARATORS = ["\n\n", "\n", ". ", "! ", "? ", ";", ":", " ", ""]

OVERSIZE_FACTOR = 5          # max chunk chars = target_tokens × 5

# Paragraph strategy
MIN_PARAGRAPHS          = 3      # strictly more than this many to apply
PARAGRAPH_MAX_CHARS     = 1500
PARAGRAPH_OVERLAP_CHARS = 200

# Sentence-window strategy
SENTENCE_WINDOW  = 5
SENTENCE_OVERLAP = 2

# Last-resort fixed windows
FIXED_WINDOW_CHARS  = 1000
FIXED_OVERLAP_CHARS = 200

DEFAULT_IMPORTANCE_KEYWORDS: tuple[str, ...] = (
    "total", "summary", "conclusion", "agreement", "important",
)

_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE  = re.compile(r"[.!?]+")

Strategy = Callable[[str], Optional[list[str]]]


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TaggedChunk:
    """A chunk ready for embedding."""
    index:      int     # 0-based ordering within the document
    text:       str
    importance: str     # high | medium | low
    token_est:  int     # ceil(len(text) / 4)


# ---------------------------------------------------------------------------
# Combinator
# ---------------------------------------------------------------------------

def first_success(
    strategies: Sequence[tuple[str, Strategy]],
    text: str,
) -> list[str]:
    """
    Try each (name, strategy) in order; return the first non-empty result.
    Strategies that raise are logged and skipped. Returns [] if none apply.
    """
    for name, strategy in strategies:
        try:
            chunks = strategy(text)
        except Exception as exc:
            logger.warning("Chunk strategy failed | strategy=%s error=%s", name, exc)
            continue
        chunks = _clean(chunks or [])
        if chunks:
            logger.debug("Chunk strategy | strategy=%s chunks=%d", name, len(chunks))
            return chunks
    return []


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

class TextChunker:
    """
    Stateless, deterministic text chunker.

    Usage:
        chunker = TextChunker(target_tokens=500, overlap_tokens=200)
        pieces  = chunker.chunk(processed_text)          # list[str]
        tagged  = chunker.chunk_with_importance(processed_text)
    """

    def __init__(
        self,
        target_tokens:  int = DEFAULT_TARGET_TOKENS,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
        importance_keywords: Iterable[str] = DEFAULT_IMPORTANCE_KEYWORDS,
    ) -> None:
        if target_tokens <= 0:
            raise ValueError("target_tokens must be positive")
        self.target_tokens  = target_tokens
        self.overlap_tokens = max(0, overlap_tokens)
        self.importance_keywords = tuple(k.lower() for k in importance_keywords)

    @property
    def target_chars(self) -> int:
        return self.target_tokens * CHARS_PER_TOKEN

    @property
    def overlap_chars(self) -> int:
        return self.overlap_tokens * CHARS_PER_TOKEN

    @property
    def max_chars(self) -> int:
        return self.target_tokens * OVERSIZE_FACTOR

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def chunk(self, text: str) -> list[str]:
        """Split text into ordered, trimmed, non-empty chunks."""
        text = normalize_text(text)
        if not text:
            return []

        chunks = first_success(
            [
                ("structural", self._structural),
                ("paragraphs", self._paragraphs),
                ("sentences",  _sentence_windows),
                ("windows",    self._last_resort_windows),
            ],
            text,
        )

        if len(chunks) <= 1 and len(text) > self.target_chars:
            # Whole document collapsed into one piece; force a finer split
            forced = first_success(
                [
                    ("paragraphs", _paragraph_segments),
                    ("sentences",  _sentence_windows),
                ],
                text,
            )
            if len(forced) > 1:
                chunks = forced

        final: list[str] = []
        for piece in chunks:
            if len(piece) > self.max_chars:
                final.extend(self._resplit_oversized(piece))
            else:
                final.append(piece)

        logger.info(
            "TextChunker | chars=%d chunks=%d avg_chars=%.0f",
            len(text), len(final),
            sum(len(c) for c in final) / max(1, len(final)),
        )
        return final

    def chunk_with_importance(self, text: str) -> list[TaggedChunk]:
        return tag_importance(self.chunk(text), self.importance_keywords)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _structural(self, text: str) -> list[str]:
        return structural_split(text, self.target_chars, self.overlap_chars)

    def _paragraphs(self, text: str) -> list[str] | None:
        paragraphs = _clean(_PARAGRAPH_RE.split(text))
        if len(paragraphs) <= MIN_PARAGRAPHS:
            return None
        capped: list[str] = []
        for para in paragraphs:
            if len(para) > PARAGRAPH_MAX_CHARS:
                capped.extend(char_windows(para, PARAGRAPH_MAX_CHARS, PARAGRAPH_OVERLAP_CHARS))
            else:
                capped.append(para)
        return capped

    def _last_resort_windows(self, text: str) -> list[str]:
        return char_windows(text, FIXED_WINDOW_CHARS, FIXED_OVERLAP_CHARS)

    # ------------------------------------------------------------------
    # Size enforcement
    # ------------------------------------------------------------------

    def _resplit_oversized(self, piece: str) -> list[str]:
        """Break one chunk longer than max_chars into pieces that fit."""
        half_size    = max(1, self.target_chars // 2)
        half_overlap = self.overlap_chars // 2
        window_size    = self.target_tokens * 3
        window_overlap = self.overlap_tokens * 2

        parts = first_success(
            [("structural_half", lambda t: structural_split(t, half_size, half_overlap))],
            piece,
        )
        if not parts or any(len(p) > self.max_chars for p in parts):
            parts = _clean(char_windows(piece, window_size, window_overlap))

        logger.debug(
            "Oversized chunk re-split | chars=%d parts=%d", len(piece), len(parts),
        )
        return parts


# ---------------------------------------------------------------------------
# Splitting primitives
# ---------------------------------------------------------------------------

def structural_split(text: str, chunk_size: int, chunk_overlap: int) -> list[str]:
    """
    Recursive separator-priority split. Raises ValueError (from LangChain)
    when chunk_overlap > chunk_size.
    """
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        separators=STRUCTURAL_SEPARATORS,
        length_function=len,
    )
    return splitter.split_text(text)


def char_windows(text: str, size: int, overlap: int) -> list[str]:
    """Fixed-stride character windows; stride = size − overlap, never < 1."""
    size = max(1, size)
    advance = max(1, size - max(0, overlap))
    windows: list[str] = []
    start = 0
    while start < len(text):
        windows.append(text[start : start + size])
        if start + size >= len(text):
            break
        start += advance
    return windows


def _paragraph_segments(text: str) -> list[str] | None:
    segments = _clean(_PARAGRAPH_RE.split(text))
    return segments if len(segments) > 1 else None


def _sentence_windows(text: str) -> list[str] | None:
    """
    Sliding window of SENTENCE_WINDOW sentences advancing by
    SENTENCE_WINDOW − SENTENCE_OVERLAP, joined with ". " plus a final period.
    """
    sentences = [s.strip() for s in _SENTENCE_RE.split(text) if s.strip()]
    if not sentences:
        return None

    advance = max(1, SENTENCE_WINDOW - SENTENCE_OVERLAP)
    windows: list[str] = []
    start = 0
    while start < len(sentences):
        group = sentences[start : start + SENTENCE_WINDOW]
        windows.append(". ".join(group) + ".")
        if start + SENTENCE_WINDOW >= len(sentences):
            break
        start += advance
    return windows


# ---------------------------------------------------------------------------
# Importance tagging
# ---------------------------------------------------------------------------

def classify_importance(
    index: int,
    total: int,
    text:  str,
    keywords: Iterable[str] = DEFAULT_IMPORTANCE_KEYWORDS,
) -> str:
    """
    First two chunks → high; last two → low; otherwise medium.
    Any keyword (case-insensitive substring) promotes to high.
    """
    if index < 2:
        importance = "high"
    elif index >= total - 2:
        importance = "low"
    else:
        importance = "medium"

    lowered = text.lower()
    if any(keyword.lower() in lowered for keyword in keywords):
        importance = "high"
    return importance


def tag_importance(
    chunks: Sequence[str],
    keywords: Iterable[str] = DEFAULT_IMPORTANCE_KEYWORDS,
) -> list[TaggedChunk]:
    keywords = tuple(keywords)
    total = len(chunks)
    return [
        TaggedChunk(
            index=idx,
            text=chunk,
            importance=classify_importance(idx, total, chunk, keywords),
            token_est=estimate_tokens(chunk),
        )
        for idx, chunk in enumerate(chunks)
    ]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def normalize_text(text: str) -> str:
    """
    Normalize Unicode, replace invisible spacing characters, collapse excess
    blank lines. Preserves paragraph breaks (double newlines).
    """
    if not text:
        return ""
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[\u00a0\u200b\u200c\u200d\ufeff]", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    lines = [line.rstrip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def _clean(chunks: Iterable[str]) -> list[str]:
    """Trim every chunk and drop empty / whitespace-only ones."""
    return [c.strip() for c in chunks if c and c.strip()]
