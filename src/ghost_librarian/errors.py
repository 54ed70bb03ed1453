"""Error taxonomy shared by the store, the distillation pipeline and the provider adapters."""

from __future__ import annotations

from pathlib import Path


class GhostLibrarianError(Exception):
    """Base class for every error raised by the library."""


class DimensionMismatch(GhostLibrarianError, ValueError):
    """Raised when an embedding's length disagrees with the expected dimension."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {actual}")


class CorruptStore(GhostLibrarianError):
    """Raised when a persisted snapshot cannot be parsed or is internally inconsistent."""

    def __init__(self, path: str | Path | None, reason: str) -> None:
        self.path = str(path) if path is not None else None
        self.reason = reason
        location = f"'{self.path}'" if self.path else "<memory>"
        super().__init__(f"Store snapshot {location} is corrupt: {reason}")


class UnknownDocument(GhostLibrarianError, LookupError):
    """Raised when a lookup targets a document that is not indexed."""

    def __init__(self, document_id: str) -> None:
        self.document_id = document_id
        super().__init__(f"Document '{document_id}' is not indexed")


class DuplicateDocument(GhostLibrarianError):
    """Raised when a document is re-added while the reject policy is in force."""

    def __init__(self, document_id: str) -> None:
        self.document_id = document_id
        super().__init__(f"Document '{document_id}' is already indexed")


class UnsupportedDocument(GhostLibrarianError, ValueError):
    """Raised when a file cannot be turned into fragments."""


class EmbeddingUnavailable(GhostLibrarianError, RuntimeError):
    """Raised when the embedding provider cannot produce a vector."""


class GenerationUnavailable(GhostLibrarianError, RuntimeError):
    """Raised when the generation provider cannot be reached or fails mid-stream."""


__all__ = [
    "GhostLibrarianError",
    "DimensionMismatch",
    "CorruptStore",
    "UnknownDocument",
    "DuplicateDocument",
    "UnsupportedDocument",
    "EmbeddingUnavailable",
    "GenerationUnavailable",
]
