"""Document reading, splitting and batched embedding into the chunk store."""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import EmbeddingUnavailable, UnsupportedDocument
from .models import DuplicatePolicy
from .providers import EmbeddingProvider
from .store import ChunkStore
from .text import DEFAULT_CHARS_PER_TOKEN, estimate_tokens, normalize, split_sections

try:  # pragma: no cover - optional
    import pdfplumber
except ImportError:  # pragma: no cover
    pdfplumber = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIXES = frozenset({".md", ".markdown"})
TEXT_SUFFIXES = MARKDOWN_SUFFIXES | {".txt", ".text", ".rst"}
PDF_SUFFIX = ".pdf"
SUPPORTED_SUFFIXES = TEXT_SUFFIXES | {PDF_SUFFIX}
DEFAULT_CHUNK_SIZE = 2000
DEFAULT_BATCH_SIZE = 32

PARAGRAPH_BREAK_RE = re.compile(r"\n\s*\n")
SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")


class DocumentSplitter(Protocol):
    def split(self, text: str) -> list[tuple[str, int]]:  # pragma: no cover - interface
        """Return ``(fragment, position)`` pairs with unique ascending positions."""


@dataclass(frozen=True)
class IngestReport:
    document_id: str
    chunk_count: int
    token_estimate: int


def read_document(path: str | Path) -> str:
    """Read a document from disk as plain text.

    Text formats are decoded as UTF-8 and PDFs go through ``pdfplumber`` page
    by page; anything else raises ``UnsupportedDocument``.
    """
    document_path = Path(path)
    suffix = document_path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        supported = ", ".join(sorted(SUPPORTED_SUFFIXES))
        raise UnsupportedDocument(f"Unsupported file type '{document_path.suffix}'. Supported: {supported}")
    if suffix == PDF_SUFFIX:
        return _read_pdf(document_path)
    return document_path.read_text(encoding="utf-8", errors="replace")


def _read_pdf(path: Path) -> str:
    if pdfplumber is None:
        raise UnsupportedDocument(
            f"Cannot read '{path.name}': PDF support needs pdfplumber (pip install ghost-librarian[pdf])"
        )
    try:
        with pdfplumber.open(path) as pdf:
            raw_pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as exc:  # pdfminer has its own exception hierarchy
        raise UnsupportedDocument(f"Cannot read '{path.name}' as PDF: {exc}") from exc
    pages = [text for text in (unicodedata.normalize("NFKC", raw).strip() for raw in raw_pages) if text]
    if not pages:
        raise UnsupportedDocument(f"'{path.name}' has no extractable text (scanned PDF?)")
    logger.debug("Extracted %d text pages from %s", len(pages), path)
    return "\n\n".join(pages)


class ParagraphSplitter(DocumentSplitter):
    """Packs blank-line separated paragraphs into fragments of at most ``chunk_size`` characters.

    A paragraph longer than ``chunk_size`` is broken on sentence boundaries,
    and a sentence that is still too long on word boundaries.
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self._chunk_size = chunk_size

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    def split(self, text: str) -> list[tuple[str, int]]:  # noqa: D401
        fragments: list[str] = []
        current = ""
        for paragraph in PARAGRAPH_BREAK_RE.split(text):
            paragraph = paragraph.strip()
            if not paragraph:
                continue
            for piece in self._fit(paragraph):
                if current and len(current) + 2 + len(piece) > self._chunk_size:
                    fragments.append(current)
                    current = piece
                else:
                    current = f"{current}\n\n{piece}" if current else piece
        if current:
            fragments.append(current)
        return [(fragment, position) for position, fragment in enumerate(fragments)]

    def _fit(self, paragraph: str) -> list[str]:
        if len(paragraph) <= self._chunk_size:
            return [paragraph]
        pieces: list[str] = []
        for sentence in SENTENCE_END_RE.split(paragraph):
            if len(sentence) <= self._chunk_size:
                pieces.append(sentence)
            else:
                pieces.extend(self._split_words(sentence))
        return self._merge(pieces, " ")

    def _split_words(self, sentence: str) -> list[str]:
        pieces: list[str] = []
        for word in sentence.split():
            # a single word longer than the limit is cut hard
            while len(word) > self._chunk_size:
                pieces.append(word[: self._chunk_size])
                word = word[self._chunk_size :]
            if word:
                pieces.append(word)
        return self._merge(pieces, " ")

    def _merge(self, pieces: list[str], joiner: str) -> list[str]:
        merged: list[str] = []
        current = ""
        for piece in pieces:
            if current and len(current) + len(joiner) + len(piece) > self._chunk_size:
                merged.append(current)
                current = piece
            else:
                current = f"{current}{joiner}{piece}" if current else piece
        if current:
            merged.append(current)
        return merged


class Ingestor:
    """Reads, splits and embeds documents, then commits them to the store in one mutation."""

    def __init__(
        self,
        store: ChunkStore,
        embedder: EmbeddingProvider,
        splitter: DocumentSplitter | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._store = store
        self._embedder = embedder
        self._splitter = splitter or ParagraphSplitter()
        self._batch_size = batch_size
        self._chars_per_token = chars_per_token

    def ingest_file(self, path: str | Path, policy: DuplicatePolicy = DuplicatePolicy.REPLACE) -> IngestReport:
        document_path = Path(path)
        return self.ingest_text(
            document_path.name,
            read_document(document_path),
            policy,
            sections=document_path.suffix.lower() in MARKDOWN_SUFFIXES,
        )

    def ingest_text(
        self,
        document_id: str,
        text: str,
        policy: DuplicatePolicy = DuplicatePolicy.REPLACE,
        *,
        sections: bool = True,
    ) -> IngestReport:
        """Split, embed and commit ``text`` as ``document_id``.

        With ``sections`` set, Markdown headings start new fragments and each
        fragment remembers the heading it sits under.
        """
        cleaned = normalize(text)
        if not cleaned:
            raise UnsupportedDocument(f"Document '{document_id}' is empty after normalization")

        parts = split_sections(cleaned) if sections else [(None, cleaned)]
        fragments: list[tuple[str, str | None]] = []
        for heading, body in parts:
            fragments.extend((fragment, heading) for fragment, _ in self._splitter.split(body))
        if not fragments:
            raise UnsupportedDocument(f"Document '{document_id}' produced no fragments")

        texts = [fragment for fragment, _ in fragments]
        embeddings = []
        for start in range(0, len(texts), self._batch_size):
            batch = texts[start : start + self._batch_size]
            embeddings.extend(self._embedder.embed_batch(batch))
            logger.debug("Embedded %d/%d fragments of '%s'", len(embeddings), len(texts), document_id)
        if len(embeddings) != len(texts):
            raise EmbeddingUnavailable(
                f"Embedder returned {len(embeddings)} vectors for {len(texts)} fragments of '{document_id}'"
            )

        chunk_ids = self._store.add_document(
            document_id,
            [
                (fragment, embedding, position, heading)
                for position, ((fragment, heading), embedding) in enumerate(zip(fragments, embeddings))
            ],
            policy=policy,
        )
        report = IngestReport(
            document_id=document_id,
            chunk_count=len(chunk_ids),
            token_estimate=sum(estimate_tokens(fragment, self._chars_per_token) for fragment in texts),
        )
        logger.info("Ingested '%s': %d chunks, ~%d tokens", document_id, report.chunk_count, report.token_estimate)
        return report


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_CHUNK_SIZE",
    "SUPPORTED_SUFFIXES",
    "DocumentSplitter",
    "IngestReport",
    "Ingestor",
    "MARKDOWN_SUFFIXES",
    "ParagraphSplitter",
    "read_document",
]
