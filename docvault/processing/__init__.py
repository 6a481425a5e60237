"""
Document Processing Package
════════════════════════════

Post-upload ingestion pipeline:

  OCR → Reformat → Chunking → Embedding → pgvector rows

Modules
───────
  polling.py     Generic poll-until utility (fake-clock testable)
  ocr.py         Eden AI async OCR client and fragment merge
  reformat.py    LLM reformat pass and document classifier
  state.py       DocumentState tagged union and row translation
  chunking.py    Cascading-strategy chunker with importance tagging
  embeddings.py  Embedding generator and batch orchestrator
  extractor.py   The pipeline that drives a document to a terminal state

Every collaborator is constructed explicitly and injected; nothing here holds
a module-level client.
"""

from docvault.processing.chunking import TaggedChunk, TextChunker
from docvault.processing.embeddings import (
    BatchEmbeddingOrchestrator,
    DocumentMetadata,
    EmbeddingGenerator,
    EmbeddingResult,
)
from docvault.processing.extractor import ExtractionPipeline, PipelineOutcome

__all__ = [
    "TaggedChunk",
    "TextChunker",
    "BatchEmbeddingOrchestrator",
    "DocumentMetadata",
    "EmbeddingGenerator",
    "EmbeddingResult",
    "ExtractionPipeline",
    "PipelineOutcome",
]
