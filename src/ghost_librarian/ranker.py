"""Hybrid reranking of search hits: vector similarity blended with TF-IDF keyword overlap."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections import Counter
from typing import Iterable, Sequence

from .models import DistillationCandidate
from .search import SearchHit
from .text import extract_terms, tokenize

DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_KEYWORD_WEIGHT = 0.3


class Reranker(ABC):
    """Interface for reordering search hits into distillation candidates."""

    @abstractmethod
    def rank(self, query: str, hits: Iterable[SearchHit]) -> list[DistillationCandidate]:
        """Return candidates ordered best first."""


def rescale_cosine(score: float) -> float:
    """Map a cosine score from [-1, 1] onto [0, 1]."""
    return min(1.0, max(0.0, (score + 1.0) / 2.0))


def keyword_scores(query_terms: Sequence[str], texts: Sequence[str]) -> list[float]:
    """TF-IDF overlap of ``query_terms`` with each text, normalized by the best score.

    Document frequencies are taken across ``texts`` (the current candidate
    set); idf is smoothed so a term present everywhere still counts a little.
    """
    if not query_terms or not texts:
        return [0.0] * len(texts)

    token_counts = [Counter(tokenize(text)) for text in texts]
    total = len(texts)
    idf = {
        term: math.log((1 + total) / (1 + sum(1 for counts in token_counts if term in counts))) + 1.0
        for term in query_terms
    }

    raw: list[float] = []
    for counts in token_counts:
        length = sum(counts.values())
        if length == 0:
            raw.append(0.0)
            continue
        raw.append(sum(counts[term] / length * idf[term] for term in query_terms))

    best = max(raw)
    if best <= 0.0:
        return [0.0] * len(raw)
    return [score / best for score in raw]


class HybridRanker(Reranker):
    """Blends rescaled cosine similarity with keyword relevance.

    ``combined = vector_weight * vector_score + keyword_weight * keyword_score``;
    ties fall back to chunk position and then chunk id so the order is stable.
    """

    def __init__(
        self,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
    ) -> None:
        self._vector_weight = vector_weight
        self._keyword_weight = keyword_weight

    def rank(self, query: str, hits: Iterable[SearchHit]) -> list[DistillationCandidate]:  # noqa: D401
        hits = list(hits)
        keywords = keyword_scores(extract_terms(query), [hit.chunk.text for hit in hits])

        candidates: list[DistillationCandidate] = []
        for hit, keyword_score in zip(hits, keywords):
            vector_score = rescale_cosine(hit.score)
            candidates.append(
                DistillationCandidate(
                    chunk=hit.chunk,
                    vector_score=vector_score,
                    keyword_score=keyword_score,
                    combined_score=self._vector_weight * vector_score + self._keyword_weight * keyword_score,
                )
            )

        candidates.sort(key=lambda candidate: (-candidate.combined_score, candidate.chunk.position, candidate.chunk.id))
        return candidates


__all__ = [
    "DEFAULT_KEYWORD_WEIGHT",
    "DEFAULT_VECTOR_WEIGHT",
    "HybridRanker",
    "Reranker",
    "keyword_scores",
    "rescale_cosine",
]
