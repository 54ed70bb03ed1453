import json
from types import SimpleNamespace

import pytest
import requests

from ghost_librarian.config import LibrarianSettings
from ghost_librarian.errors import DimensionMismatch, EmbeddingUnavailable, GenerationUnavailable
from ghost_librarian.providers import (
    SYSTEM_PROMPT,
    OllamaEmbeddingProvider,
    OllamaGenerator,
    OpenAIGenerator,
    build_embedder_from_env,
    build_generator_from_env,
)


class FakeResponse:
    def __init__(self, payload=None, lines=(), status=200):
        self.content = json.dumps(payload).encode("utf-8") if payload is not None else b""
        self._lines = [json.dumps(line).encode("utf-8") if isinstance(line, dict) else line for line in lines]
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_lines(self):
        return iter(self._lines)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        return self._respond("POST", url, kwargs)

    def get(self, url, **kwargs):
        return self._respond("GET", url, kwargs)

    def _respond(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def test_ollama_embeddings_are_posted_in_one_batch():
    session = FakeSession(FakeResponse({"embeddings": [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]}))
    provider = OllamaEmbeddingProvider("http://localhost:11434/", model="all-minilm", dimension=3, session=session)

    vectors = provider.embed_batch(["first", "second"])

    assert [vector.to_list() for vector in vectors] == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "http://localhost:11434/api/embed")
    assert kwargs["json"] == {"model": "all-minilm", "input": ["first", "second"]}


def test_ollama_embedding_dimension_is_checked():
    session = FakeSession(FakeResponse({"embeddings": [[1.0, 0.0]]}))
    provider = OllamaEmbeddingProvider(dimension=3, session=session)

    with pytest.raises(DimensionMismatch):
        provider.embed("text")


@pytest.mark.parametrize(
    "session",
    [
        FakeSession(error=requests.ConnectionError("refused")),
        FakeSession(FakeResponse({"error": "model not found"}, status=404)),
        FakeSession(FakeResponse({"unexpected": []})),
        FakeSession(FakeResponse({"embeddings": []})),
    ],
    ids=["connection", "http-error", "bad-payload", "count-mismatch"],
)
def test_ollama_embedding_failures_raise_embedding_unavailable(session):
    provider = OllamaEmbeddingProvider(dimension=3, session=session)

    with pytest.raises(EmbeddingUnavailable):
        provider.embed("text")


def test_empty_batch_makes_no_request():
    session = FakeSession(error=AssertionError("should not be called"))

    assert OllamaEmbeddingProvider(session=session).embed_batch([]) == []


def test_ollama_generator_streams_tokens_until_done():
    lines = [{"response": "The sky "}, b"", {"response": "is blue."}, {"response": "", "done": True}, {"response": "late"}]
    session = FakeSession(FakeResponse(lines=lines))
    generator = OllamaGenerator(model="llama3", session=session)

    tokens = list(generator.stream("What color is the sky?", "[sky.md] sky blue"))

    assert tokens == ["The sky ", "is blue."]
    body = session.calls[0][2]["json"]
    assert body["model"] == "llama3"
    assert body["system"] == SYSTEM_PROMPT
    assert body["stream"] is True
    assert "[sky.md] sky blue" in body["prompt"]
    assert body["options"] == {"temperature": 0.1, "num_predict": 1024}


def test_ollama_generator_model_can_be_overridden_per_call():
    session = FakeSession(FakeResponse(lines=[{"response": "ok", "done": True}]))

    answer = OllamaGenerator(session=session).generate("q", "ctx", model="mistral")

    assert answer == "ok"
    assert session.calls[0][2]["json"]["model"] == "mistral"


def test_ollama_generator_surfaces_stream_errors():
    session = FakeSession(FakeResponse(lines=[{"error": "out of memory"}]))

    with pytest.raises(GenerationUnavailable):
        OllamaGenerator(session=session).generate("q", "ctx")


def test_ollama_generator_connection_failure():
    session = FakeSession(error=requests.ConnectionError("refused"))

    with pytest.raises(GenerationUnavailable):
        list(OllamaGenerator(session=session).stream("q", "ctx"))


def test_health_check_and_model_listing():
    session = FakeSession(FakeResponse({"models": [{"name": "llama3:latest"}, {"name": "phi3:mini"}]}))
    generator = OllamaGenerator("http://localhost:11434", session=session)

    assert generator.health_check() is True
    assert generator.list_models() == ["llama3:latest", "phi3:mini"]
    assert session.calls[0][1] == "http://localhost:11434/api/tags"


def test_health_check_reports_unreachable_server():
    generator = OllamaGenerator(session=FakeSession(error=requests.ConnectionError("refused")))

    assert generator.health_check() is False


def test_openai_generator_streams_deltas():
    events = [
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="Blue"))]),
        SimpleNamespace(choices=[]),
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None))]),
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=" sky"))]),
    ]
    recorded = {}

    def create(**kwargs):
        recorded.update(kwargs)
        return iter(events)

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    answer = OpenAIGenerator(model="local-model", client=client).generate("q", "ctx")

    assert answer == "Blue sky"
    assert recorded["model"] == "local-model"
    assert recorded["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert recorded["stream"] is True


def test_factories_follow_settings():
    settings = LibrarianSettings(embed_provider="ollama", dimension=3, ollama_port=9999, model="phi3")

    embedder = build_embedder_from_env(settings)
    generator = build_generator_from_env(settings)

    assert isinstance(embedder, OllamaEmbeddingProvider)
    assert embedder.dimension == 3
    assert isinstance(generator, OllamaGenerator)
    assert generator.model == "phi3"
