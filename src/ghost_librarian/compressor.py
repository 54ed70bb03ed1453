"""Per-candidate lossy compression that keeps negations intact."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

from .models import DistillationCandidate, DroppedCandidate
from .text import DEFAULT_CHARS_PER_TOKEN, compress_text, estimate_tokens

logger = logging.getLogger(__name__)

STAGE = "compress"


@dataclass(frozen=True)
class CompressionOutcome:
    kept: list[DistillationCandidate] = field(default_factory=list)
    dropped: list[DroppedCandidate] = field(default_factory=list)


class Compressor:
    """Shortens candidate text; embeddings and scores are left untouched."""

    def __init__(
        self,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
        transform: Callable[[str], str] = compress_text,
    ) -> None:
        self._chars_per_token = chars_per_token
        self._transform = transform

    def compress(self, text: str) -> str:
        return self._transform(text)

    def compress_candidate(self, candidate: DistillationCandidate) -> DistillationCandidate:
        compressed = self.compress(candidate.text)
        return candidate.with_text(compressed, estimate_tokens(compressed, self._chars_per_token))

    def compress_all(self, candidates: Sequence[DistillationCandidate]) -> CompressionOutcome:
        """Compress every candidate, recording (not raising) per-candidate failures."""
        outcome = CompressionOutcome()
        for candidate in candidates:
            try:
                compressed = self.compress_candidate(candidate)
            except Exception as exc:  # one bad fragment must not sink the query
                self._drop(outcome, candidate, f"{type(exc).__name__}: {exc}")
                continue
            if not compressed.text:
                self._drop(outcome, candidate, "empty after compression")
                continue
            outcome.kept.append(compressed)
        return outcome

    @staticmethod
    def _drop(outcome: CompressionOutcome, candidate: DistillationCandidate, reason: str) -> None:
        logger.warning("Dropping chunk %d from '%s': %s", candidate.chunk_id, candidate.chunk.document_id, reason)
        outcome.dropped.append(
            DroppedCandidate(
                chunk_id=candidate.chunk_id,
                document_id=candidate.chunk.document_id,
                stage=STAGE,
                reason=reason,
            )
        )


__all__ = ["CompressionOutcome", "Compressor"]
