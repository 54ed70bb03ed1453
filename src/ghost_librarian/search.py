"""Brute-force cosine top-k search with a sharded, thread-parallel fan-out."""

from __future__ import annotations

import heapq
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Sequence

from .errors import DimensionMismatch
from .models import Chunk
from .store import ChunkStore
from .vectors import EmbeddingVector, as_embedding, cosine_similarity

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 20
MAX_DEFAULT_SHARDS = 8


@dataclass(frozen=True)
class SearchHit:
    chunk: Chunk
    score: float

    @property
    def chunk_id(self) -> int:
        return self.chunk.id


def _rank_key(hit: SearchHit) -> tuple[float, int]:
    # descending score, then ascending id (insertion order)
    return (-hit.score, hit.chunk.id)


def shard_top_k(chunks: Sequence[Chunk], query: EmbeddingVector, k: int) -> list[SearchHit]:
    """Score one shard and return its local top-k, best first."""
    hits = (SearchHit(chunk=chunk, score=cosine_similarity(query, chunk.embedding)) for chunk in chunks)
    return heapq.nsmallest(k, hits, key=_rank_key)


def merge_top_k(partials: Iterable[Sequence[SearchHit]], k: int) -> list[SearchHit]:
    """Combine shard-local results into the global top-k with the same ordering rule."""
    return heapq.nsmallest(k, (hit for partial in partials for hit in partial), key=_rank_key)


def partition(chunks: Sequence[Chunk], shards: int) -> list[Sequence[Chunk]]:
    """Split ``chunks`` into at most ``shards`` disjoint contiguous slices."""
    if not chunks:
        return []
    shards = max(1, min(shards, len(chunks)))
    size, remainder = divmod(len(chunks), shards)
    slices: list[Sequence[Chunk]] = []
    start = 0
    for index in range(shards):
        end = start + size + (1 if index < remainder else 0)
        slices.append(chunks[start:end])
        start = end
    return slices


def search_chunks(
    chunks: Sequence[Chunk],
    query_embedding: EmbeddingVector | Sequence[float],
    k: int = DEFAULT_TOP_K,
    *,
    shards: int = 1,
    dimension: int | None = None,
    executor: ThreadPoolExecutor | None = None,
) -> list[SearchHit]:
    """Pure top-k search over an immutable chunk sequence.

    The result is the same for every ``shards`` value; sharding only changes
    how the work is spread across threads.
    """
    query = as_embedding(query_embedding)
    if dimension is not None and query.dimension != dimension:
        raise DimensionMismatch(expected=dimension, actual=query.dimension)
    if k <= 0 or not chunks:
        return []

    parts = partition(chunks, shards)
    if len(parts) == 1:
        return shard_top_k(parts[0], query, k)

    if executor is not None:
        partials = list(executor.map(lambda part: shard_top_k(part, query, k), parts))
    else:
        with ThreadPoolExecutor(max_workers=len(parts), thread_name_prefix="ghost-search") as pool:
            partials = list(pool.map(lambda part: shard_top_k(part, query, k), parts))
    return merge_top_k(partials, k)


def default_shard_count() -> int:
    return max(1, min(MAX_DEFAULT_SHARDS, os.cpu_count() or 1))


class SimilaritySearch:
    """Searches the current snapshot of a chunk store."""

    def __init__(self, store: ChunkStore, shards: int | None = None) -> None:
        if shards is not None and shards < 1:
            raise ValueError("shards must be at least 1")
        self._store = store
        self._shards = shards or default_shard_count()

    @property
    def shards(self) -> int:
        return self._shards

    def search(
        self,
        query_embedding: EmbeddingVector | Sequence[float],
        k: int = DEFAULT_TOP_K,
        *,
        shards: int | None = None,
    ) -> list[SearchHit]:
        snapshot = self._store.all_chunks()
        hits = search_chunks(
            snapshot.chunks,
            query_embedding,
            k,
            shards=shards or self._shards,
            dimension=snapshot.dimension,
        )
        logger.debug("Search over %d chunks returned %d hits (k=%d)", len(snapshot), len(hits), k)
        return hits


__all__ = [
    "DEFAULT_TOP_K",
    "SearchHit",
    "SimilaritySearch",
    "default_shard_count",
    "merge_top_k",
    "partition",
    "search_chunks",
    "shard_top_k",
]
