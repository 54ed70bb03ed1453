"""Near-duplicate removal among ranked candidates."""

from __future__ import annotations

import logging
from typing import Sequence

from .models import DistillationCandidate
from .vectors import cosine_similarity

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_THRESHOLD = 0.85


class RedundancyReducer:
    """Drops a candidate when a surviving higher-ranked one is at least ``threshold`` similar."""

    def __init__(self, threshold: float = DEFAULT_DEDUP_THRESHOLD) -> None:
        self._threshold = threshold

    @property
    def threshold(self) -> float:
        return self._threshold

    def reduce(self, candidates: Sequence[DistillationCandidate]) -> list[DistillationCandidate]:
        survivors: list[DistillationCandidate] = []
        for candidate in candidates:
            duplicate_of = next(
                (
                    kept
                    for kept in survivors
                    if cosine_similarity(kept.chunk.embedding, candidate.chunk.embedding) >= self._threshold
                ),
                None,
            )
            if duplicate_of is None:
                survivors.append(candidate)
            else:
                logger.debug("Chunk %d is redundant with chunk %d", candidate.chunk_id, duplicate_of.chunk_id)
        return survivors


__all__ = ["DEFAULT_DEDUP_THRESHOLD", "RedundancyReducer"]
