"""Shared data structures for the chunk store and the distillation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from .vectors import EmbeddingVector


@dataclass(frozen=True)
class Chunk:
    """Smallest retrievable unit of text with its embedding."""

    id: int
    document_id: str
    text: str
    embedding: EmbeddingVector
    position: int
    token_estimate: int
    section: str | None = None

    @property
    def byte_size(self) -> int:
        return len(self.text.encode("utf-8"))


@dataclass(frozen=True)
class DocumentSummary:
    document_id: str
    chunk_count: int
    total_bytes: int


@dataclass(frozen=True)
class StoreStats:
    document_count: int
    chunk_count: int
    total_bytes: int
    dimension: int


class DuplicatePolicy(str, Enum):
    """What to do when a document that is already indexed is added again."""

    REPLACE = "replace"
    REJECT = "reject"


@dataclass(frozen=True)
class DistillationCandidate:
    """A chunk travelling through the distillation stages with its scores.

    ``working_text`` starts as the chunk text and may shrink (compression,
    truncation); the originating ``chunk`` never changes.
    """

    chunk: Chunk
    vector_score: float
    keyword_score: float = 0.0
    combined_score: float = 0.0
    working_text: str | None = None
    token_estimate: int | None = None

    @property
    def chunk_id(self) -> int:
        return self.chunk.id

    @property
    def text(self) -> str:
        return self.chunk.text if self.working_text is None else self.working_text

    @property
    def tokens(self) -> int:
        return self.chunk.token_estimate if self.token_estimate is None else self.token_estimate

    def with_text(self, text: str, token_estimate: int) -> "DistillationCandidate":
        return replace(self, working_text=text, token_estimate=token_estimate)


@dataclass(frozen=True)
class DroppedCandidate:
    """Record of a candidate removed from a query because a stage failed on it."""

    chunk_id: int
    document_id: str
    stage: str
    reason: str


__all__ = [
    "Chunk",
    "DocumentSummary",
    "StoreStats",
    "DuplicatePolicy",
    "DistillationCandidate",
    "DroppedCandidate",
]
