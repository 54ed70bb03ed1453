"""Greedy, rank-ordered packing of candidates into a token budget."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from .models import DistillationCandidate
from .text import DEFAULT_CHARS_PER_TOKEN, estimate_tokens, truncate_to_chars

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_BUDGET = 3000
BLOCK_SEPARATOR = "\n\n"


def citation_label(document_id: str, section: str | None = None) -> str:
    """Prefix written before each block so answers can cite their source."""
    if section:
        return f"[{document_id} | {section}] "
    return f"[{document_id}] "


@dataclass(frozen=True)
class PackedChunk:
    chunk_id: int
    document_id: str
    text: str
    token_estimate: int
    combined_score: float
    truncated: bool = False
    section: str | None = None

    def render(self) -> str:
        return citation_label(self.document_id, self.section) + self.text


@dataclass(frozen=True)
class PackedContext:
    """Chunks selected for the generation step, in rank order.

    ``total_tokens`` is the estimate of the rendered ``context``, citation
    labels and separators included.
    """

    items: tuple[PackedChunk, ...]
    total_tokens: int
    budget: int

    @property
    def context(self) -> str:
        return BLOCK_SEPARATOR.join(item.render() for item in self.items)

    @property
    def texts(self) -> list[str]:
        return [item.text for item in self.items]

    @property
    def source_chunk_ids(self) -> list[int]:
        return [item.chunk_id for item in self.items]

    def __len__(self) -> int:
        return len(self.items)


class BudgetPacker:
    """Walks candidates best first and keeps them while they fit.

    Every candidate is charged for the block it adds to the context: its
    citation label, its text and the separator before it. Rank order is
    authoritative: packing stops at the first candidate that does not fit
    instead of skipping ahead to smaller ones. The only overflow case is a
    first candidate larger than the whole budget, which is truncated to fit.
    """

    def __init__(self, budget: int = DEFAULT_CONTEXT_BUDGET, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> None:
        if budget < 1:
            raise ValueError("budget must be at least 1 token")
        self._budget = budget
        self._chars_per_token = chars_per_token

    @property
    def budget(self) -> int:
        return self._budget

    def pack(self, candidates: Sequence[DistillationCandidate], budget: int | None = None) -> PackedContext:
        limit = self._budget if budget is None else budget
        if limit < 1:
            raise ValueError("budget must be at least 1 token")

        packed: list[PackedChunk] = []
        context = ""
        for index, candidate in enumerate(candidates):
            block = self._packed(candidate, candidate.text)
            extended = block.render() if not packed else context + BLOCK_SEPARATOR + block.render()
            if self._estimate(extended) <= limit:
                packed.append(block)
                context = extended
                continue
            if index == 0:
                label = citation_label(block.document_id, block.section)
                text = truncate_to_chars(candidate.text, limit * self._chars_per_token - len(label))
                if text:
                    block = self._packed(candidate, text, truncated=True)
                    packed.append(block)
                    context = block.render()
                logger.debug(
                    "First candidate (%d tokens) truncated to %d tokens",
                    candidate.tokens,
                    self._estimate(context),
                )
            break

        used = self._estimate(context)
        logger.debug("Packed %d of %d candidates into %d/%d tokens", len(packed), len(candidates), used, limit)
        return PackedContext(items=tuple(packed), total_tokens=used, budget=limit)

    def _estimate(self, text: str) -> int:
        return estimate_tokens(text, self._chars_per_token)

    def _packed(self, candidate: DistillationCandidate, text: str, truncated: bool = False) -> PackedChunk:
        chunk = candidate.chunk
        return PackedChunk(
            chunk_id=candidate.chunk_id,
            document_id=chunk.document_id,
            text=text,
            token_estimate=self._estimate(citation_label(chunk.document_id, chunk.section) + text),
            combined_score=candidate.combined_score,
            truncated=truncated,
            section=chunk.section,
        )


__all__ = [
    "BLOCK_SEPARATOR",
    "DEFAULT_CONTEXT_BUDGET",
    "BudgetPacker",
    "PackedChunk",
    "PackedContext",
    "citation_label",
]
