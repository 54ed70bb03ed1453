"""Embedding and generation provider adapters (Ollama HTTP, fastembed, OpenAI-compatible)."""

from __future__ import annotations

import logging
from typing import Iterator, Protocol, Sequence

import requests
from pydantic import BaseModel, Field, ValidationError

from .config import LibrarianSettings
from .errors import DimensionMismatch, EmbeddingUnavailable, GenerationUnavailable
from .vectors import DEFAULT_DIMENSION, EmbeddingVector

try:  # pragma: no cover - optional at test time
    from fastembed import TextEmbedding
except ImportError:  # pragma: no cover
    TextEmbedding = None  # type: ignore[misc]

try:  # pragma: no cover - optional
    from openai import OpenAI, OpenAIError
except ImportError:  # pragma: no cover
    OpenAI = None  # type: ignore[misc]
    OpenAIError = None  # type: ignore[misc]

_OPENAI_ERRORS: tuple[type[BaseException], ...] = (OpenAIError,) if OpenAIError is not None else ()

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are Ghost Librarian, a careful research assistant. Answer strictly from the supplied context. "
    "If the context does not contain the answer, say that plainly instead of guessing. "
    "Quote the relevant passage when it helps, keep the answer short and factual, "
    "and point out any contradictions you notice in the context."
)

DEFAULT_OLLAMA_EMBED_MODEL = "all-minilm"
DEFAULT_FASTEMBED_MODEL = "intfloat/multilingual-e5-small"
DEFAULT_GENERATION_MODEL = "llama3"
GENERATION_TEMPERATURE = 0.1
GENERATION_MAX_TOKENS = 1024


def build_prompt(query: str, context: str) -> str:
    return (
        f"CONTEXT:\n{context}\n\n---\nQUESTION: {query}\n\n"
        "Give a precise answer based only on the context above."
    )


# ----------------------------------------------------------------------
# Protocols
# ----------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    """Turns text into fixed-dimension vectors."""

    @property
    def dimension(self) -> int:  # pragma: no cover - interface
        ...

    def embed(self, text: str) -> EmbeddingVector:  # pragma: no cover - interface
        ...

    def embed_batch(self, texts: Sequence[str]) -> list[EmbeddingVector]:  # pragma: no cover - interface
        ...


class GenerationProvider(Protocol):
    """Produces an answer from a query and a packed context."""

    def stream(self, query: str, context: str, *, model: str | None = None) -> Iterator[str]:  # pragma: no cover
        ...

    def generate(self, query: str, context: str, *, model: str | None = None) -> str:  # pragma: no cover
        ...


# ----------------------------------------------------------------------
# Response payloads
# ----------------------------------------------------------------------


class OllamaEmbedResponse(BaseModel):
    embeddings: list[list[float]]


class OllamaGenerateChunk(BaseModel):
    response: str = ""
    done: bool = False
    error: str | None = None


class OllamaModelInfo(BaseModel):
    name: str


class OllamaTagsResponse(BaseModel):
    models: list[OllamaModelInfo] = Field(default_factory=list)


def _checked_vectors(rows: Sequence[Sequence[float]], dimension: int) -> list[EmbeddingVector]:
    vectors = [EmbeddingVector(row) for row in rows]
    for vector in vectors:
        if vector.dimension != dimension:
            raise DimensionMismatch(expected=dimension, actual=vector.dimension)
    return vectors


# ----------------------------------------------------------------------
# Embeddings
# ----------------------------------------------------------------------


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeddings from a local Ollama server's ``/api/embed`` endpoint."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str | None = None,
        dimension: int = DEFAULT_DIMENSION,
        *,
        timeout: float = 120.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model or DEFAULT_OLLAMA_EMBED_MODEL
        self._dimension = dimension
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> EmbeddingVector:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[EmbeddingVector]:  # noqa: D401
        if not texts:
            return []
        try:
            response = self._session.post(
                f"{self._base_url}/api/embed",
                json={"model": self._model, "input": list(texts)},
                timeout=self._timeout,
            )
            response.raise_for_status()
            payload = OllamaEmbedResponse.model_validate_json(response.content)
        except requests.RequestException as exc:
            raise EmbeddingUnavailable(f"Ollama embedding request failed: {exc}") from exc
        except ValidationError as exc:
            raise EmbeddingUnavailable(f"Ollama returned an unexpected embedding payload: {exc}") from exc

        if len(payload.embeddings) != len(texts):
            raise EmbeddingUnavailable(
                f"Ollama returned {len(payload.embeddings)} embeddings for {len(texts)} inputs"
            )
        return _checked_vectors(payload.embeddings, self._dimension)


class FastEmbedProvider(EmbeddingProvider):
    """In-process ONNX embeddings through the optional ``fastembed`` package."""

    def __init__(self, model: str | None = None, dimension: int = DEFAULT_DIMENSION) -> None:
        if TextEmbedding is None:  # pragma: no cover
            raise ImportError("fastembed package is required to use FastEmbedProvider (pip install ghost-librarian[local])")
        self._model_name = model or DEFAULT_FASTEMBED_MODEL
        self._dimension = dimension
        try:
            self._model = TextEmbedding(model_name=self._model_name)
        except Exception as exc:  # pragma: no cover - model download/runtime failures
            raise EmbeddingUnavailable(f"Could not load embedding model '{self._model_name}': {exc}") from exc

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> EmbeddingVector:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[EmbeddingVector]:  # noqa: D401
        if not texts:
            return []
        try:
            rows = list(self._model.embed(list(texts)))
        except Exception as exc:  # pragma: no cover - runtime failures inside onnxruntime
            raise EmbeddingUnavailable(f"Embedding generation failed: {exc}") from exc
        return _checked_vectors(rows, self._dimension)


# ----------------------------------------------------------------------
# Generation
# ----------------------------------------------------------------------


class OllamaGenerator(GenerationProvider):
    """Streams completions from Ollama's ``/api/generate`` endpoint."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str | None = None,
        *,
        timeout: float = 120.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model or DEFAULT_GENERATION_MODEL
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def model(self) -> str:
        return self._model

    def stream(self, query: str, context: str, *, model: str | None = None) -> Iterator[str]:
        request_body = {
            "model": model or self._model,
            "prompt": build_prompt(query, context),
            "system": SYSTEM_PROMPT,
            "stream": True,
            "options": {"temperature": GENERATION_TEMPERATURE, "num_predict": GENERATION_MAX_TOKENS},
        }
        try:
            with self._session.post(
                f"{self._base_url}/api/generate",
                json=request_body,
                stream=True,
                timeout=self._timeout,
            ) as response:
                response.raise_for_status()
                for line in response.iter_lines():
                    if not line:
                        continue
                    chunk = OllamaGenerateChunk.model_validate_json(line)
                    if chunk.error:
                        raise GenerationUnavailable(f"Ollama reported an error: {chunk.error}")
                    if chunk.response:
                        yield chunk.response
                    if chunk.done:
                        break
        except requests.RequestException as exc:
            raise GenerationUnavailable(
                f"Failed to reach Ollama at {self._base_url}. Is it running? (ollama serve): {exc}"
            ) from exc
        except ValidationError as exc:
            raise GenerationUnavailable(f"Ollama streamed an unexpected payload: {exc}") from exc

    def generate(self, query: str, context: str, *, model: str | None = None) -> str:
        return "".join(self.stream(query, context, model=model))

    def list_models(self) -> list[str]:
        try:
            response = self._session.get(f"{self._base_url}/api/tags", timeout=self._timeout)
            response.raise_for_status()
            payload = OllamaTagsResponse.model_validate_json(response.content)
        except requests.RequestException as exc:
            raise GenerationUnavailable(f"Failed to list Ollama models: {exc}") from exc
        except ValidationError as exc:
            raise GenerationUnavailable(f"Ollama returned an unexpected model list: {exc}") from exc
        return [item.name for item in payload.models]

    def health_check(self) -> bool:
        try:
            self.list_models()
        except GenerationUnavailable as exc:
            logger.debug("Ollama health check failed: %s", exc)
            return False
        return True


class OpenAIGenerator(GenerationProvider):
    """Generator for OpenAI-compatible chat endpoints (hosted or local servers)."""

    def __init__(self, model: str | None = None, *, base_url: str | None = None, client=None) -> None:
        if client is None:
            if OpenAI is None:  # pragma: no cover
                raise ImportError("openai package is required to use OpenAIGenerator")
            client = OpenAI(base_url=base_url) if base_url else OpenAI()
        self._client = client
        self._model = model or DEFAULT_GENERATION_MODEL

    @property
    def model(self) -> str:
        return self._model

    def stream(self, query: str, context: str, *, model: str | None = None) -> Iterator[str]:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(query, context)},
        ]
        try:
            response = self._client.chat.completions.create(
                model=model or self._model,
                messages=messages,
                temperature=GENERATION_TEMPERATURE,
                max_tokens=GENERATION_MAX_TOKENS,
                stream=True,
            )
            for event in response:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                if delta:
                    yield delta
        except _OPENAI_ERRORS as exc:
            raise GenerationUnavailable(f"OpenAI-compatible generation failed: {exc}") from exc

    def generate(self, query: str, context: str, *, model: str | None = None) -> str:
        return "".join(self.stream(query, context, model=model))

    def list_models(self) -> list[str]:
        try:
            return [item.id for item in self._client.models.list()]
        except _OPENAI_ERRORS as exc:
            raise GenerationUnavailable(f"Failed to list models: {exc}") from exc

    def health_check(self) -> bool:
        try:
            self.list_models()
        except GenerationUnavailable as exc:
            logger.debug("OpenAI-compatible health check failed: %s", exc)
            return False
        return True


# ----------------------------------------------------------------------
# Factories
# ----------------------------------------------------------------------


def build_embedder_from_env(settings: LibrarianSettings | None = None) -> EmbeddingProvider:
    settings = settings or LibrarianSettings.from_env()
    if settings.embed_provider == "ollama":
        return OllamaEmbeddingProvider(
            settings.ollama_url,
            model=settings.embed_model,
            dimension=settings.dimension,
            timeout=settings.request_timeout,
        )
    if settings.embed_provider == "fastembed":
        return FastEmbedProvider(model=settings.embed_model, dimension=settings.dimension)
    raise ValueError("Unsupported GHOST_EMBED_PROVIDER. Expected one of: fastembed, ollama.")


def build_generator_from_env(settings: LibrarianSettings | None = None) -> GenerationProvider:
    settings = settings or LibrarianSettings.from_env()
    if settings.generation_provider == "ollama":
        return OllamaGenerator(settings.ollama_url, model=settings.model, timeout=settings.request_timeout)
    if settings.generation_provider == "openai":
        return OpenAIGenerator(model=settings.model, base_url=settings.openai_base_url)
    raise ValueError("Unsupported GHOST_LLM_PROVIDER. Expected one of: ollama, openai.")


__all__ = [
    "SYSTEM_PROMPT",
    "EmbeddingProvider",
    "GenerationProvider",
    "OllamaEmbeddingProvider",
    "FastEmbedProvider",
    "OllamaGenerator",
    "OpenAIGenerator",
    "build_embedder_from_env",
    "build_generator_from_env",
    "build_prompt",
]
