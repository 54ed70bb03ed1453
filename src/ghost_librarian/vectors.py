"""Fixed-dimension embedding vectors and similarity math."""

from __future__ import annotations

import math
from typing import Iterable, Iterator

import numpy as np

from .errors import DimensionMismatch

DEFAULT_DIMENSION = 384


class EmbeddingVector:
    """Immutable float32 vector with cosine-similarity helpers.

    The underlying array is marked read-only so a vector can be shared between
    the store snapshot and concurrent search workers without copying.
    """

    __slots__ = ("_values", "_norm")

    def __init__(self, values: Iterable[float] | np.ndarray) -> None:
        if not isinstance(values, np.ndarray):
            values = list(values)
        array = np.array(values, dtype=np.float32).reshape(-1)
        if not np.all(np.isfinite(array)):
            raise ValueError("Embedding values must be finite numbers")
        array.setflags(write=False)
        self._values = array
        self._norm = float(np.linalg.norm(array.astype(np.float64)))

    @classmethod
    def zeros(cls, dimension: int) -> "EmbeddingVector":
        return cls(np.zeros(dimension, dtype=np.float32))

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def dimension(self) -> int:
        return int(self._values.shape[0])

    @property
    def norm(self) -> float:
        return self._norm

    def dot(self, other: "EmbeddingVector") -> float:
        self.require_dimension(other.dimension)
        return float(np.dot(self._values.astype(np.float64), other._values.astype(np.float64)))

    def cosine(self, other: "EmbeddingVector") -> float:
        """Cosine similarity in [-1, 1]; 0 when either vector has zero norm."""
        return cosine_similarity(self, other)

    def require_dimension(self, expected: int) -> None:
        if self.dimension != expected:
            raise DimensionMismatch(expected=expected, actual=self.dimension)

    def to_list(self) -> list[float]:
        return [float(value) for value in self._values]

    def __len__(self) -> int:
        return self.dimension

    def __iter__(self) -> Iterator[float]:
        return (float(value) for value in self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EmbeddingVector):
            return NotImplemented
        return self.dimension == other.dimension and bool(np.array_equal(self._values, other._values))

    def __hash__(self) -> int:
        return hash(self._values.tobytes())

    def __repr__(self) -> str:
        preview = ", ".join(f"{value:.3f}" for value in self._values[:3])
        suffix = ", ..." if self.dimension > 3 else ""
        return f"EmbeddingVector(dim={self.dimension}, [{preview}{suffix}])"


def cosine_similarity(a: EmbeddingVector, b: EmbeddingVector) -> float:
    if a.dimension != b.dimension:
        raise DimensionMismatch(expected=a.dimension, actual=b.dimension)
    if a.norm == 0.0 or b.norm == 0.0:
        return 0.0
    score = a.dot(b) / (a.norm * b.norm)
    if math.isnan(score):
        return 0.0
    # rounding can push parallel vectors a hair past 1
    return max(-1.0, min(1.0, score))


def as_embedding(value: EmbeddingVector | Iterable[float]) -> EmbeddingVector:
    if isinstance(value, EmbeddingVector):
        return value
    return EmbeddingVector(value)


__all__ = ["DEFAULT_DIMENSION", "EmbeddingVector", "as_embedding", "cosine_similarity"]
