import pytest

from ghost_librarian.store import ChunkStore
from ghost_librarian.text import tokenize
from ghost_librarian.vectors import EmbeddingVector

VOCABULARY = ("sky", "blue", "color", "ocean", "water", "banana", "yellow", "fruit", "grass", "green")

SKY_FRAGMENTS = [
    ("The sky is blue on a clear day.", 0),
    ("Ocean water reflects the color of the sky.", 1),
]
FRUIT_FRAGMENTS = [("A banana is a yellow fruit.", 0)]


class VocabularyEmbedder:
    """Bag-of-words embedder over a fixed vocabulary; unknown words are ignored."""

    def __init__(self, vocabulary=VOCABULARY):
        self._index = {word: position for position, word in enumerate(vocabulary)}
        self.calls: list[list[str]] = []

    @property
    def dimension(self) -> int:
        return len(self._index)

    def embed(self, text):
        return self.embed_batch([text])[0]

    def embed_batch(self, texts):
        self.calls.append(list(texts))
        return [self._vector(text) for text in texts]

    def _vector(self, text):
        values = [0.0] * self.dimension
        for token in tokenize(text):
            if token in self._index:
                values[self._index[token]] += 1.0
        return EmbeddingVector(values)


class StubGenerator:
    def __init__(self, tokens=("The sky ", "is blue.")):
        self.tokens = list(tokens)
        self.requests: list[tuple[str, str, str | None]] = []

    def stream(self, query, context, *, model=None):
        self.requests.append((query, context, model))
        yield from self.tokens

    def generate(self, query, context, *, model=None):
        return "".join(self.stream(query, context, model=model))

    def health_check(self):
        return True

    def list_models(self):
        return ["stub-model"]


@pytest.fixture()
def embedder():
    return VocabularyEmbedder()


@pytest.fixture()
def store(embedder):
    return ChunkStore(dimension=embedder.dimension)


def add_fragments(store, embedder, document_id, fragments, **kwargs):
    return store.add_document(
        document_id,
        [(text, embedder.embed(text), position) for text, position in fragments],
        **kwargs,
    )


@pytest.fixture()
def sky_store(store, embedder):
    add_fragments(store, embedder, "sky.md", SKY_FRAGMENTS)
    add_fragments(store, embedder, "fruit.md", FRUIT_FRAGMENTS)
    return store
