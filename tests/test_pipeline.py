import pytest

from conftest import FRUIT_FRAGMENTS, SKY_FRAGMENTS
from ghost_librarian.config import DistillationConfig
from ghost_librarian.errors import DimensionMismatch
from ghost_librarian.pipeline import ContextDistiller
from ghost_librarian.ranker import HybridRanker
from ghost_librarian.search import SimilaritySearch
from ghost_librarian.text import compress_text, estimate_tokens

QUERY = "What color is the sky?"


def _rendered_tokens(document_id, texts):
    return estimate_tokens("\n\n".join(f"[{document_id}] {compress_text(text)}" for text in texts))


def test_sky_question_ranks_banana_last(sky_store, embedder):
    result = ContextDistiller(sky_store, embedder, DistillationConfig(context_budget=1000)).distill(QUERY)

    reflects, blue = (chunk.id for chunk in sky_store.get_document("sky.md")[::-1])
    banana = sky_store.get_document("fruit.md")[0].id
    assert result.source_chunk_ids == [reflects, blue, banana]
    assert result.chunks_retrieved == 3
    assert result.chunks_after_dedup == 3
    assert result.context.startswith("[sky.md] ")
    assert result.context.splitlines()[-1].startswith("[fruit.md] ")
    assert result.dropped == []


def test_single_document_sky_scenario(store, embedder):
    fragments = [("The sky is blue.", 0), ("The sky is not blue at night.", 1), ("Bananas are yellow.", 2)]
    blue, night, bananas = store.add_document(
        "sky.md", [(text, embedder.embed(text), position) for text, position in fragments]
    )
    distiller = ContextDistiller(store, embedder)

    hits = SimilaritySearch(store).search(embedder.embed("what color is the sky"), k=3)
    assert hits[0].chunk_id in {blue, night}
    ranked = HybridRanker().rank("what color is the sky", hits)
    assert ranked[-1].chunk_id == bananas
    assert min(c.keyword_score for c in ranked if c.chunk_id != bananas) > ranked[-1].keyword_score

    roomy = distiller.distill("what color is the sky", budget=50)
    assert roomy.source_chunk_ids[0] == blue
    assert "sky" in roomy.context

    tight = distiller.distill("what color is the sky", budget=_rendered_tokens("sky.md", ["The sky is blue."]))
    assert tight.source_chunk_ids == [blue]
    assert "bananas" not in tight.context.lower()


def test_tight_budget_excludes_the_irrelevant_chunk(sky_store, embedder):
    budget = _rendered_tokens("sky.md", [text for text, _ in SKY_FRAGMENTS])

    result = ContextDistiller(sky_store, embedder).distill(QUERY, budget=budget)

    assert "banana" not in result.context.lower()
    assert len(result.source_chunk_ids) == 2
    assert result.distilled_tokens == estimate_tokens(result.context) <= budget
    assert result.packed.budget == budget


def test_token_accounting(sky_store, embedder):
    result = ContextDistiller(sky_store, embedder).distill(QUERY)

    original = sum(estimate_tokens(text) for text, _ in SKY_FRAGMENTS + FRUIT_FRAGMENTS)
    assert result.original_tokens == original
    assert result.distilled_tokens == result.packed.total_tokens == estimate_tokens(result.context)
    assert result.distilled_tokens <= result.original_tokens
    assert result.compression_ratio == pytest.approx(max(0.0, 1.0 - result.distilled_tokens / original))


def test_distilled_tokens_match_the_rendered_context(store, embedder):
    store.add_document("a-very-long-document-name-for-citation.md", [("sky.", embedder.embed("sky"), 0)])
    distiller = ContextDistiller(store, embedder)

    for budget in (1, 11, 12, 50):
        result = distiller.distill("sky", budget=budget)

        assert result.distilled_tokens == estimate_tokens(result.context)
        assert result.distilled_tokens <= budget


def test_duplicate_chunks_collapse_to_one(store, embedder):
    text = "The sky is blue."
    store.add_document("a.md", [(text, embedder.embed(text), 0)])
    store.add_document("b.md", [(text, embedder.embed(text), 0)])

    result = ContextDistiller(store, embedder).distill("blue sky")

    assert result.chunks_retrieved == 2
    assert result.chunks_after_dedup == 1
    assert result.context == "[a.md] sky blue."


def test_empty_store_yields_empty_result_without_embedding(store, embedder):
    result = ContextDistiller(store, embedder).distill(QUERY)

    assert result.is_empty
    assert result.context == ""
    assert result.compression_ratio == 0.0
    assert embedder.calls == []


def test_top_k_limits_retrieved_chunks(sky_store, embedder):
    result = ContextDistiller(sky_store, embedder, DistillationConfig(top_k=1)).distill(QUERY)

    assert result.chunks_retrieved == 1
    assert len(result.source_chunk_ids) == 1


def test_distill_embedding_checks_dimension(sky_store, embedder):
    distiller = ContextDistiller(sky_store, embedder)

    with pytest.raises(DimensionMismatch):
        distiller.distill_embedding(QUERY, [1.0, 0.0])


def test_results_do_not_depend_on_shard_count(sky_store, embedder):
    results = [
        ContextDistiller(sky_store, embedder, DistillationConfig(search_shards=shards)).distill(QUERY)
        for shards in (1, 2, 3)
    ]

    assert len({tuple(result.source_chunk_ids) for result in results}) == 1
    assert len({result.context for result in results}) == 1
