"""Embedded chunk store: insert, delete-by-document, enumerate, persist and reload."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections import defaultdict
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Iterator, Literal, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import CorruptStore, DimensionMismatch, DuplicateDocument, UnknownDocument
from .models import Chunk, DocumentSummary, DuplicatePolicy, StoreStats
from .text import DEFAULT_CHARS_PER_TOKEN, estimate_tokens
from .vectors import DEFAULT_DIMENSION, EmbeddingVector, as_embedding

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = 1

# (text, embedding, position) with an optional trailing section heading.
FragmentInput = (
    tuple[str, "EmbeddingVector | Sequence[float]", int]
    | tuple[str, "EmbeddingVector | Sequence[float]", int, "str | None"]
)


class ChunkRecordModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: int = Field(ge=0)
    document_id: str = Field(min_length=1)
    text: str
    embedding: list[float]
    position: int = Field(ge=0)
    token_estimate: int = Field(ge=0)
    section: str | None = None


class StoreSnapshotModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    format_version: Literal[1]
    dimension: int
    next_id: int = Field(ge=0)
    chunks: list[ChunkRecordModel] = Field(default_factory=list)


class StoreSnapshot:
    """Immutable view of the store at one point in time.

    Iterating yields chunks in ascending id (insertion) order and every call to
    ``iter()`` starts a fresh scan, so concurrent searches can share a snapshot.
    """

    def __init__(self, dimension: int, chunks: Iterable[Chunk], next_id: int) -> None:
        ordered = tuple(sorted(chunks, key=lambda chunk: chunk.id))
        grouped: dict[str, list[Chunk]] = defaultdict(list)
        for chunk in ordered:
            grouped[chunk.document_id].append(chunk)

        self._assign(
            dimension,
            next_id,
            ordered,
            {chunk.id: chunk for chunk in ordered},
            {document_id: tuple(sorted(members, key=_document_order)) for document_id, members in grouped.items()},
        )

    def _assign(
        self,
        dimension: int,
        next_id: int,
        ordered: tuple[Chunk, ...],
        by_id: dict[int, Chunk],
        documents: dict[str, tuple[Chunk, ...]],
    ) -> None:
        self.dimension = dimension
        self.next_id = next_id
        self._ordered = ordered
        self._by_id = MappingProxyType(by_id)
        self._documents = MappingProxyType(documents)

    @classmethod
    def empty(cls, dimension: int) -> "StoreSnapshot":
        return cls(dimension=dimension, chunks=(), next_id=0)

    def with_appended(self, chunk: Chunk) -> "StoreSnapshot":
        """Return a new snapshot with ``chunk`` added after every existing chunk.

        Only the group of ``chunk.document_id`` is rebuilt; the groups of all
        other documents are shared with this snapshot.
        """
        if chunk.id < self.next_id:
            raise ValueError(f"chunk id {chunk.id} is below next_id {self.next_id}")
        group = tuple(sorted((*self._documents.get(chunk.document_id, ()), chunk), key=_document_order))
        snapshot = object.__new__(type(self))
        snapshot._assign(
            self.dimension,
            chunk.id + 1,
            (*self._ordered, chunk),
            {**self._by_id, chunk.id: chunk},
            {**self._documents, chunk.document_id: group},
        )
        return snapshot

    @property
    def chunks(self) -> tuple[Chunk, ...]:
        return self._ordered

    @property
    def documents(self) -> Mapping[str, tuple[Chunk, ...]]:
        return self._documents

    def get(self, chunk_id: int) -> Chunk | None:
        return self._by_id.get(chunk_id)

    def __iter__(self) -> Iterator[Chunk]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def to_serializable(self) -> dict:
        return {
            "format_version": SNAPSHOT_FORMAT_VERSION,
            "dimension": self.dimension,
            "next_id": self.next_id,
            "chunks": [
                {
                    "id": chunk.id,
                    "document_id": chunk.document_id,
                    "text": chunk.text,
                    "embedding": chunk.embedding.to_list(),
                    "position": chunk.position,
                    "token_estimate": chunk.token_estimate,
                    "section": chunk.section,
                }
                for chunk in self._ordered
            ],
        }

    @classmethod
    def from_serializable(
        cls,
        data: dict | str | bytes,
        *,
        expected_dimension: int | None = None,
        source: str | Path | None = None,
    ) -> "StoreSnapshot":
        """Validate a decoded or raw JSON payload and build a snapshot from it.

        Raises ``CorruptStore`` on any inconsistency; nothing is returned partially.
        """
        try:
            if isinstance(data, (str, bytes)):
                model = StoreSnapshotModel.model_validate_json(data)
            else:
                model = StoreSnapshotModel.model_validate(data)
        except ValidationError as exc:
            raise CorruptStore(source, f"invalid snapshot structure ({exc.error_count()} error(s)): {exc}") from exc

        if model.dimension <= 0:
            raise CorruptStore(source, f"dimension must be positive, found {model.dimension}")
        if expected_dimension is not None and model.dimension != expected_dimension:
            raise CorruptStore(
                source, f"snapshot dimension {model.dimension} does not match expected {expected_dimension}"
            )

        chunks: list[Chunk] = []
        seen_ids: set[int] = set()
        seen_positions: set[tuple[str, int]] = set()
        for record in model.chunks:
            if record.id in seen_ids:
                raise CorruptStore(source, f"duplicate chunk id {record.id}")
            if record.id >= model.next_id:
                raise CorruptStore(source, f"chunk id {record.id} is not below next_id {model.next_id}")
            if len(record.embedding) != model.dimension:
                raise CorruptStore(
                    source,
                    f"chunk {record.id} has {len(record.embedding)} embedding values, expected {model.dimension}",
                )
            slot = (record.document_id, record.position)
            if slot in seen_positions:
                raise CorruptStore(
                    source, f"duplicate position {record.position} in document '{record.document_id}'"
                )
            try:
                embedding = EmbeddingVector(record.embedding)
            except ValueError as exc:
                raise CorruptStore(source, f"chunk {record.id} has an invalid embedding: {exc}") from exc

            seen_ids.add(record.id)
            seen_positions.add(slot)
            chunks.append(
                Chunk(
                    id=record.id,
                    document_id=record.document_id,
                    text=record.text,
                    embedding=embedding,
                    position=record.position,
                    token_estimate=record.token_estimate,
                    section=record.section,
                )
            )

        return cls(dimension=model.dimension, chunks=chunks, next_id=model.next_id)


class ChunkStore:
    """Single-process store of chunks and their embeddings.

    Writers (insert, add/delete document, persist) serialize on one lock and
    publish a new immutable ``StoreSnapshot`` with a single reference swap.
    Readers never lock: they pick up whichever snapshot is current and see it
    whole.
    """

    def __init__(
        self,
        dimension: int = DEFAULT_DIMENSION,
        *,
        path: str | Path | None = None,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
    ) -> None:
        if dimension <= 0:
            raise ValueError(f"Store dimension must be positive, got {dimension}")
        self._lock = threading.RLock()
        self._snapshot = StoreSnapshot.empty(dimension)
        self._path = Path(path) if path is not None else None
        self._chars_per_token = chars_per_token

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        path: str | Path,
        *,
        dimension: int | None = None,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
    ) -> "ChunkStore":
        """Rebuild a store from a persisted snapshot file."""
        store_path = Path(path)
        try:
            raw = store_path.read_bytes()
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise CorruptStore(store_path, f"unreadable: {exc}") from exc

        snapshot = StoreSnapshot.from_serializable(raw, expected_dimension=dimension, source=store_path)
        store = cls(snapshot.dimension, path=store_path, chars_per_token=chars_per_token)
        store._snapshot = snapshot
        logger.info(
            "Loaded %d chunks across %d documents from %s",
            len(snapshot),
            len(snapshot.documents),
            store_path,
        )
        return store

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        dimension: int = DEFAULT_DIMENSION,
        recover: bool = False,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
    ) -> "ChunkStore":
        """Load the store at ``path`` or start an empty one bound to it.

        A corrupt snapshot is re-raised unless ``recover`` is set, in which case
        the caller has chosen to start over with an empty store.
        """
        store_path = Path(path)
        if not store_path.exists():
            logger.info("No store at %s; starting empty (dimension=%d)", store_path, dimension)
            return cls(dimension, path=store_path, chars_per_token=chars_per_token)
        try:
            return cls.load(store_path, dimension=dimension, chars_per_token=chars_per_token)
        except CorruptStore as exc:
            if not recover:
                raise
            logger.warning("Discarding corrupt store at %s and starting empty: %s", store_path, exc.reason)
            return cls(dimension, path=store_path, chars_per_token=chars_per_token)

    # ------------------------------------------------------------------
    # Read API (lock-free)
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> int:
        return self._snapshot.dimension

    @property
    def path(self) -> Path | None:
        return self._path

    def snapshot(self) -> StoreSnapshot:
        return self._snapshot

    def all_chunks(self) -> StoreSnapshot:
        """Restartable, finite sequence of every chunk in insertion order."""
        return self._snapshot

    def get_chunk(self, chunk_id: int) -> Chunk | None:
        return self._snapshot.get(chunk_id)

    def has_document(self, document_id: str) -> bool:
        return document_id in self._snapshot.documents

    def get_document(self, document_id: str) -> tuple[Chunk, ...]:
        chunks = self._snapshot.documents.get(document_id)
        if chunks is None:
            raise UnknownDocument(document_id)
        return chunks

    def list_documents(self) -> list[DocumentSummary]:
        documents = self._snapshot.documents
        return [
            DocumentSummary(
                document_id=document_id,
                chunk_count=len(chunks),
                total_bytes=sum(chunk.byte_size for chunk in chunks),
            )
            for document_id, chunks in sorted(documents.items())
        ]

    def stats(self) -> StoreStats:
        snapshot = self._snapshot
        return StoreStats(
            document_count=len(snapshot.documents),
            chunk_count=len(snapshot),
            total_bytes=sum(chunk.byte_size for chunk in snapshot),
            dimension=snapshot.dimension,
        )

    def __len__(self) -> int:
        return len(self._snapshot)

    # ------------------------------------------------------------------
    # Write API (single writer)
    # ------------------------------------------------------------------

    def insert(
        self,
        document_id: str,
        text: str,
        embedding: EmbeddingVector | Sequence[float],
        position: int,
        section: str | None = None,
    ) -> int:
        """Append one chunk and return its id."""
        vector = self._checked_embedding(embedding)
        _require_document_id(document_id)
        _require_position(position)
        with self._lock:
            current = self._snapshot
            chunk = self._build_chunk(current.next_id, document_id, text, vector, position, section)
            self._snapshot = current.with_appended(chunk)
        logger.debug("Inserted chunk %d for '%s' at position %d", chunk.id, document_id, position)
        return chunk.id

    def add_document(
        self,
        document_id: str,
        fragments: Iterable[FragmentInput],
        policy: DuplicatePolicy = DuplicatePolicy.REPLACE,
    ) -> list[int]:
        """Insert every fragment of a document in one mutation.

        All fragments are validated before anything is committed. Under
        ``REPLACE`` an existing chunk set for the document is swapped out in the
        same mutation; under ``REJECT`` ``DuplicateDocument`` is raised.
        """
        _require_document_id(document_id)
        policy = DuplicatePolicy(policy)
        prepared: list[tuple[str, EmbeddingVector, int, str | None]] = []
        positions: set[int] = set()
        for fragment in fragments:
            text, embedding, position, *rest = fragment
            section = rest[0] if rest else None
            _require_position(position)
            if position in positions:
                raise ValueError(f"Duplicate position {position} for document '{document_id}'")
            positions.add(position)
            prepared.append((text, self._checked_embedding(embedding), position, section))
        if not prepared:
            raise ValueError(f"Document '{document_id}' has no fragments to add")

        with self._lock:
            current = self._snapshot
            existing = current.documents.get(document_id, ())
            if existing and policy is DuplicatePolicy.REJECT:
                raise DuplicateDocument(document_id)

            kept = [chunk for chunk in current.chunks if chunk.document_id != document_id]
            next_id = current.next_id
            added: list[Chunk] = []
            for text, vector, position, section in prepared:
                added.append(self._build_chunk(next_id, document_id, text, vector, position, section))
                next_id += 1
            self._snapshot = StoreSnapshot(current.dimension, (*kept, *added), next_id)

        if existing:
            logger.info("Replaced '%s': %d chunks -> %d chunks", document_id, len(existing), len(added))
        else:
            logger.info("Added '%s' with %d chunks", document_id, len(added))
        return [chunk.id for chunk in added]

    def delete_document(self, document_id: str) -> int:
        """Remove every chunk of ``document_id``; unknown ids remove nothing."""
        with self._lock:
            current = self._snapshot
            removed = len(current.documents.get(document_id, ()))
            if removed:
                remaining = [chunk for chunk in current.chunks if chunk.document_id != document_id]
                self._snapshot = StoreSnapshot(current.dimension, remaining, current.next_id)
        if removed:
            logger.info("Deleted %d chunks for '%s'", removed, document_id)
        else:
            logger.debug("Delete of unknown document '%s' ignored", document_id)
        return removed

    def persist(self, path: str | Path | None = None) -> Path:
        """Atomically write the current snapshot to ``path`` (or the bound path)."""
        target = Path(path) if path is not None else self._path
        if target is None:
            raise ValueError("No path given and the store is not bound to a file")

        with self._lock:
            payload = json.dumps(self._snapshot.to_serializable(), ensure_ascii=False)
            _atomic_write(target, payload)
            if self._path is None:
                self._path = target
        logger.info("Persisted %d chunks to %s", len(self._snapshot), target)
        return target

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _checked_embedding(self, embedding: EmbeddingVector | Sequence[float]) -> EmbeddingVector:
        vector = as_embedding(embedding)
        if vector.dimension != self.dimension:
            raise DimensionMismatch(expected=self.dimension, actual=vector.dimension)
        return vector

    def _build_chunk(
        self,
        chunk_id: int,
        document_id: str,
        text: str,
        vector: EmbeddingVector,
        position: int,
        section: str | None = None,
    ) -> Chunk:
        return Chunk(
            id=chunk_id,
            document_id=document_id,
            text=text,
            embedding=vector,
            position=position,
            token_estimate=estimate_tokens(text, self._chars_per_token),
            section=section,
        )


def _document_order(chunk: Chunk) -> tuple[int, int]:
    return chunk.position, chunk.id


def _require_document_id(document_id: str) -> None:
    if not isinstance(document_id, str) or not document_id:
        raise ValueError("document_id must be a non-empty string")


def _require_position(position: int) -> None:
    if isinstance(position, bool) or not isinstance(position, int) or position < 0:
        raise ValueError(f"position must be a non-negative integer, got {position!r}")


def _atomic_write(target: Path, payload: str) -> None:
    """Write to a sibling temp file, fsync it, then rename it over ``target``."""
    target.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=target.parent,
        prefix=f".{target.name}.",
        suffix=".tmp",
        delete=False,
    )
    try:
        with handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(handle.name, target)
    except BaseException:
        Path(handle.name).unlink(missing_ok=True)
        raise
    _fsync_directory(target.parent)


def _fsync_directory(directory: Path) -> None:
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


__all__ = [
    "ChunkStore",
    "StoreSnapshot",
    "StoreSnapshotModel",
    "ChunkRecordModel",
    "SNAPSHOT_FORMAT_VERSION",
]
