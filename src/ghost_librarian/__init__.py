"""Local retrieval and context distillation for small language models."""

from .compressor import CompressionOutcome, Compressor
from .config import DistillationConfig, LibrarianSettings
from .dedup import RedundancyReducer
from .errors import (
    CorruptStore,
    DimensionMismatch,
    DuplicateDocument,
    EmbeddingUnavailable,
    GenerationUnavailable,
    GhostLibrarianError,
    UnknownDocument,
    UnsupportedDocument,
)
from .ingest import IngestReport, Ingestor, ParagraphSplitter, read_document
from .models import Chunk, DistillationCandidate, DocumentSummary, DroppedCandidate, DuplicatePolicy, StoreStats
from .packer import BudgetPacker, PackedChunk, PackedContext
from .pipeline import ContextDistiller, DistillResult
from .providers import (
    FastEmbedProvider,
    OllamaEmbeddingProvider,
    OllamaGenerator,
    OpenAIGenerator,
    build_embedder_from_env,
    build_generator_from_env,
)
from .ranker import HybridRanker, Reranker
from .search import SearchHit, SimilaritySearch, search_chunks
from .store import ChunkStore, StoreSnapshot
from .vectors import EmbeddingVector, cosine_similarity

__version__ = "0.1.0"

__all__ = [
    "BudgetPacker",
    "Chunk",
    "ChunkStore",
    "CompressionOutcome",
    "Compressor",
    "ContextDistiller",
    "CorruptStore",
    "DimensionMismatch",
    "DistillResult",
    "DistillationCandidate",
    "DistillationConfig",
    "DocumentSummary",
    "DroppedCandidate",
    "DuplicateDocument",
    "DuplicatePolicy",
    "EmbeddingUnavailable",
    "EmbeddingVector",
    "FastEmbedProvider",
    "GenerationUnavailable",
    "GhostLibrarianError",
    "HybridRanker",
    "IngestReport",
    "Ingestor",
    "LibrarianSettings",
    "OllamaEmbeddingProvider",
    "OllamaGenerator",
    "OpenAIGenerator",
    "PackedChunk",
    "PackedContext",
    "ParagraphSplitter",
    "RedundancyReducer",
    "Reranker",
    "SearchHit",
    "SimilaritySearch",
    "StoreSnapshot",
    "StoreStats",
    "UnknownDocument",
    "UnsupportedDocument",
    "build_embedder_from_env",
    "build_generator_from_env",
    "cosine_similarity",
    "read_document",
    "search_chunks",
    "__version__",
]
