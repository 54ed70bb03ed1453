"""Query-time distillation: search -> rank -> dedup -> compress -> pack."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from .compressor import Compressor
from .config import DistillationConfig
from .dedup import RedundancyReducer
from .models import DroppedCandidate
from .packer import BudgetPacker, PackedContext
from .providers import EmbeddingProvider
from .ranker import HybridRanker
from .search import SimilaritySearch
from .store import ChunkStore
from .vectors import EmbeddingVector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DistillResult:
    """Packed context for one query plus the bookkeeping shown to users."""

    context: str
    source_chunk_ids: list[int]
    packed: PackedContext
    original_tokens: int
    distilled_tokens: int
    compression_ratio: float
    chunks_retrieved: int
    chunks_after_dedup: int
    dropped: list[DroppedCandidate] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.source_chunk_ids

    @classmethod
    def empty(cls, budget: int) -> "DistillResult":
        return cls(
            context="",
            source_chunk_ids=[],
            packed=PackedContext(items=(), total_tokens=0, budget=budget),
            original_tokens=0,
            distilled_tokens=0,
            compression_ratio=0.0,
            chunks_retrieved=0,
            chunks_after_dedup=0,
        )


class ContextDistiller:
    """Runs the distillation stages against a chunk store.

    The store is read through one snapshot per query, so a concurrent ingest
    never shows up half-applied in a result.
    """

    def __init__(
        self,
        store: ChunkStore,
        embedder: EmbeddingProvider,
        config: DistillationConfig | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config or DistillationConfig()
        self._search = SimilaritySearch(store, shards=self._config.search_shards)
        self._ranker = HybridRanker(self._config.vector_weight, self._config.keyword_weight)
        self._reducer = RedundancyReducer(self._config.dedup_threshold)
        self._compressor = Compressor(chars_per_token=self._config.chars_per_token)
        self._packer = BudgetPacker(self._config.context_budget, chars_per_token=self._config.chars_per_token)

    @property
    def config(self) -> DistillationConfig:
        return self._config

    def distill(self, query: str, budget: int | None = None) -> DistillResult:
        if len(self._store) == 0:
            logger.debug("Store is empty; nothing to distill for %r", query)
            return DistillResult.empty(self._config.context_budget if budget is None else budget)
        return self.distill_embedding(query, self._embedder.embed(query), budget)

    def distill_embedding(
        self,
        query: str,
        query_embedding: EmbeddingVector | Sequence[float],
        budget: int | None = None,
    ) -> DistillResult:
        limit = self._config.context_budget if budget is None else budget
        if limit < 1:
            raise ValueError("budget must be at least 1 token")

        hits = self._search.search(query_embedding, self._config.top_k)
        if not hits:
            return DistillResult.empty(limit)

        ranked = self._ranker.rank(query, hits)
        unique = self._reducer.reduce(ranked)
        outcome = self._compressor.compress_all(unique)
        packed = self._packer.pack(outcome.kept, limit)

        original_tokens = sum(candidate.chunk.token_estimate for candidate in unique)
        distilled_tokens = packed.total_tokens
        ratio = max(0.0, 1.0 - distilled_tokens / original_tokens) if original_tokens else 0.0
        logger.debug(
            "Distilled %r: %d retrieved, %d after dedup, %d packed, %d -> %d tokens",
            query,
            len(hits),
            len(unique),
            len(packed),
            original_tokens,
            distilled_tokens,
        )
        return DistillResult(
            context=packed.context,
            source_chunk_ids=packed.source_chunk_ids,
            packed=packed,
            original_tokens=original_tokens,
            distilled_tokens=distilled_tokens,
            compression_ratio=ratio,
            chunks_retrieved=len(hits),
            chunks_after_dedup=len(unique),
            dropped=list(outcome.dropped),
        )


__all__ = ["ContextDistiller", "DistillResult"]
