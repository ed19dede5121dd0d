"""
Tests do SemanticSearchService
==============================

Busca por lente, híbrida, multi-estágio, cross-modal, filtrada e vizinhança de posts,
incluindo a degradação para o fallback por palavras-chave.
"""

import pytest

from conftest import NOW, FakeVectorStore, RecordingEmbedder, post_hits
from feedreco.config import FeedRecoConfig
from feedreco.errors import InvalidQuery, MalformedFilter
from feedreco.index.filters import in_range, match, time_range_condition
from feedreco.index.vector_store import VectorHit
from feedreco.retriever.semantic_search import KEYWORD_FALLBACK_REASON, SemanticSearchService


def make_service(cfg, store, clock, vector_store=None, embedder=None):
    return SemanticSearchService(
        vector_store=vector_store or FakeVectorStore({"posts": post_hits()}),
        embedder=embedder or RecordingEmbedder(),
        store=store,
        cfg=cfg,
        clock=clock,
    )


# ============================================================================
# semantic_search
# ============================================================================

@pytest.mark.asyncio
async def test_deep_dive_search(cfg, store, clock, vector_store, embedder):
    service = make_service(cfg, store, clock, vector_store, embedder)

    results = await service.semantic_search("quantum computing", "deep-dive", {"limit": 3})

    assert [r.entity_id for r in results] == ["p1"]
    assert results[0].search_type == "semantic"
    assert results[0].reason
    assert 0.0 <= results[0].relevance_score <= 1.0

    text, kind = embedder.texts[0]
    assert text.startswith("Comprehensive, in-depth exploration of quantum computing.")
    assert kind == "query"

    call = vector_store.ops("dense")[0]
    assert call["limit"] == 6
    assert call["score_threshold"] == 0.7
    assert in_range("contentLength", gte=300) in call["filter"].must
    assert match("type", "post") in call["filter"].must


@pytest.mark.asyncio
async def test_default_week_window(cfg, store, clock, vector_store):
    service = make_service(cfg, store, clock, vector_store)

    await service.semantic_search("rust", "top")

    flt = vector_store.ops("dense")[0]["filter"]
    assert time_range_condition("week", int(NOW * 1000)) in flt.must


@pytest.mark.asyncio
async def test_explicit_threshold_and_category(cfg, store, clock, vector_store):
    service = make_service(cfg, store, clock, vector_store)

    results = await service.semantic_search(
        "rust", "new", {"scoreThreshold": 0.78, "categoryId": "c2", "timeRange": "all"}
    )

    assert [r.entity_id for r in results][:1] == ["p9"]
    assert {r.payload["categoryId"] for r in results} == {"c2"}
    call = vector_store.ops("dense")[0]
    assert call["score_threshold"] == 0.78
    assert all(c.key != "createdAtTs" for c in call["filter"].must)


@pytest.mark.asyncio
async def test_store_not_ready_uses_keyword_fallback(cfg, store, clock, embedder):
    service = make_service(cfg, store, clock, FakeVectorStore(ready=False), embedder)

    results = await service.semantic_search("quantum computing", "trending")

    assert [r.entity_id for r in results] == ["p1"]
    assert results[0].search_type == "fallback"
    assert results[0].reason == KEYWORD_FALLBACK_REASON
    assert embedder.texts == []


@pytest.mark.asyncio
async def test_no_providers_uses_keyword_fallback(cfg, store, clock, vector_store):
    service = make_service(cfg, store, clock, vector_store, RecordingEmbedder(has_providers=False))

    results = await service.semantic_search("rust", "top", {"limit": 2})

    assert [r.entity_id for r in results] == ["p3", "p9"]
    assert all(r.search_type == "fallback" for r in results)
    assert results[0].score > results[1].score
    assert vector_store.calls == []


@pytest.mark.asyncio
async def test_dense_failure_uses_keyword_fallback(cfg, store, clock, vector_store):
    vector_store.failing = {"dense"}
    service = make_service(cfg, store, clock, vector_store)

    results = await service.semantic_search("sourdough", "top")

    assert [r.entity_id for r in results] == ["p6"]
    assert results[0].search_type == "fallback"


@pytest.mark.asyncio
async def test_configured_lens_threshold_filters_results(store, clock):
    vs = FakeVectorStore({"posts": post_hits()})
    cfg = FeedRecoConfig(EMBED_DIM=8, MULTIMODAL_DIM=4, SPARSE_DIM=1000, LENS_SCORE_THRESHOLDS={"top": 0.91})
    service = make_service(cfg, store, clock, vs)

    results = await service.semantic_search("quantum rust", "top")

    assert vs.ops("dense")[0]["score_threshold"] == 0.91
    assert {r.entity_id for r in results} == {"p8", "p9"}


@pytest.mark.asyncio
async def test_keyword_fallback_honours_time_range(cfg, store, clock):
    service = make_service(cfg, store, clock, FakeVectorStore(ready=False))

    week = await service.semantic_search("quantum", "top", {"timeRange": "week"})
    day = await service.semantic_search("quantum", "top", {"timeRange": "day"})

    assert [r.entity_id for r in week] == ["p1", "p2", "p10", "p8"]
    assert [r.entity_id for r in day] == ["p1", "p2", "p10"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "query, lens, options",
    [
        ("rust", "controversial", None),
        ("   ", "top", None),
        ("rust", "top", {"limit": 0}),
        ("rust", "top", {"timeRange": "fortnight"}),
        ("rust", "top", {"unknownOption": 1}),
    ],
)
async def test_invalid_input_raises(cfg, store, clock, query, lens, options):
    service = make_service(cfg, store, clock)

    with pytest.raises(InvalidQuery):
        await service.semantic_search(query, lens, options)


@pytest.mark.asyncio
async def test_malformed_filter_raises(cfg, store, clock):
    service = make_service(cfg, store, clock)

    with pytest.raises(MalformedFilter):
        await service.semantic_search("rust", "top", {"filters": {"must": "type=post"}})


# ============================================================================
# hybrid_search
# ============================================================================

@pytest.mark.asyncio
async def test_hybrid_search_passes_weights_and_sparse(cfg, store, clock, vector_store):
    service = make_service(cfg, store, clock, vector_store)

    results = await service.hybrid_search("rust runtimes", {"denseWeight": 0.5, "sparseWeight": 0.5, "limit": 3})

    assert [r.entity_id for r in results] == ["p8", "p9", "p1"]
    assert all(r.search_type == "hybrid" for r in results)
    call = vector_store.ops("hybrid")[0]
    assert call["weights"] == (0.5, 0.5)
    assert call["fusion"] == "rrf"
    assert call["filter"] is None
    assert not call["sparse"].is_empty


@pytest.mark.asyncio
async def test_hybrid_search_unknown_collection(cfg, store, clock):
    service = make_service(cfg, store, clock)

    with pytest.raises(InvalidQuery):
        await service.hybrid_search("rust", {"collections": ["polls"]})


@pytest.mark.asyncio
async def test_hybrid_search_rejects_zero_weights(cfg, store, clock):
    service = make_service(cfg, store, clock)

    with pytest.raises(InvalidQuery):
        await service.hybrid_search("rust", {"denseWeight": 0, "sparseWeight": 0})


@pytest.mark.asyncio
async def test_hybrid_search_across_collections(cfg, store, clock, vector_store):
    vector_store.hits["comments"] = [
        VectorHit(entity_id="cm1", score=0.99, payload={"type": "comment", "id": "cm1", "content": "rust"})
    ]
    service = make_service(cfg, store, clock, vector_store)

    results = await service.hybrid_search("rust", {"collections": ["posts", "comments"], "limit": 4})

    ids = [r.entity_id for r in results]
    assert ids[:2] == ["p8", "cm1"]
    assert len(ids) == 4
    assert {c["collection"] for c in vector_store.ops("hybrid")} == {"posts", "comments"}


# ============================================================================
# multi_stage_search
# ============================================================================

@pytest.mark.asyncio
async def test_multi_stage_default_candidate_limit(cfg, store, clock, vector_store):
    service = make_service(cfg, store, clock, vector_store)

    results = await service.multi_stage_search("rust", {"limit": 2})

    assert [r.entity_id for r in results] == ["p8", "p9"]
    assert results[0].search_type == "multi_stage"
    call = vector_store.ops("multi_stage")[0]
    assert call["candidate_limit"] == 10
    assert call["final_limit"] == 2


@pytest.mark.asyncio
async def test_multi_stage_candidate_limit_must_cover_limit(cfg, store, clock):
    service = make_service(cfg, store, clock)

    with pytest.raises(InvalidQuery):
        await service.multi_stage_search("rust", {"limit": 10, "candidateLimit": 5})


# ============================================================================
# cross_modal_search
# ============================================================================

def _multimodal_store():
    hit = VectorHit(entity_id="m1", score=0.9, payload={"type": "post", "id": "m1", "title": "Circuit diagram"})
    return FakeVectorStore({"multimodal_content": [hit]})


@pytest.mark.asyncio
async def test_cross_modal_text_query(cfg, store, clock, embedder):
    vs = _multimodal_store()
    service = make_service(cfg, store, clock, vs, embedder)

    results = await service.cross_modal_search("circuit diagram", "text")

    assert [r.entity_id for r in results] == ["m1"]
    call = vs.ops("dense")[0]
    assert call["using"] == "text"
    assert len(call["vector"]) == cfg.MULTIMODAL_DIM
    assert embedder.texts == [("circuit diagram", "query")]


@pytest.mark.asyncio
async def test_cross_modal_image_query(cfg, store, clock, embedder):
    vs = _multimodal_store()
    service = make_service(cfg, store, clock, vs, embedder)

    results = await service.cross_modal_search(b"\x89PNG fake image", "image")

    assert [r.entity_id for r in results] == ["m1"]
    assert embedder.images == [b"\x89PNG fake image"]
    assert vs.ops("dense")[0]["using"] == "image"


@pytest.mark.asyncio
async def test_cross_modal_invalid_modality(cfg, store, clock):
    service = make_service(cfg, store, clock, _multimodal_store())

    with pytest.raises(InvalidQuery):
        await service.cross_modal_search("diagram", "audio")
    with pytest.raises(InvalidQuery):
        await service.cross_modal_search(b"", "image")


@pytest.mark.asyncio
async def test_cross_modal_image_not_ready_returns_empty(cfg, store, clock):
    service = make_service(cfg, store, clock, FakeVectorStore(ready=False))

    assert await service.cross_modal_search(b"bytes", "image") == []


# ============================================================================
# multi_vector_search
# ============================================================================

@pytest.mark.asyncio
async def test_multi_vector_search(cfg, store, clock, embedder):
    vs = _multimodal_store()
    service = make_service(cfg, store, clock, vs, embedder)

    results = await service.multi_vector_search(
        "circuit diagram", {"vectors": ["text", "document", "text"], "fusionMethod": "dbsf"}
    )

    assert [r.entity_id for r in results] == ["m1"]
    assert results[0].search_type == "multi_vector"
    call = vs.ops("multi_vector")[0]
    assert call["collection"] == "multimodal_content"
    assert list(call["vectors"]) == ["text", "document"]
    assert all(len(v) == cfg.MULTIMODAL_DIM for v in call["vectors"].values())
    assert call["fusion"] == "dbsf"
    assert call["score_threshold"] == 0.6


@pytest.mark.asyncio
async def test_multi_vector_search_degrades(cfg, store, clock):
    not_ready = make_service(cfg, store, clock, FakeVectorStore(ready=False))
    failing_vs = _multimodal_store()
    failing_vs.failing = {"multi_vector"}
    failing = make_service(cfg, store, clock, failing_vs)

    assert [r.search_type for r in await not_ready.multi_vector_search("sourdough")] == ["fallback"]
    assert [r.entity_id for r in await failing.multi_vector_search("sourdough")] == ["p6"]
    with pytest.raises(InvalidQuery):
        await failing.multi_vector_search("sourdough", {"vectors": ["audio"]})


# ============================================================================
# vector_search_with_filters
# ============================================================================

@pytest.mark.asyncio
async def test_filtered_search_sorted_by_new(cfg, store, clock, vector_store):
    service = make_service(cfg, store, clock, vector_store)

    results = await service.vector_search_with_filters("rust", {"types": ["post"], "sortBy": "new", "limit": 3})

    assert [r.entity_id for r in results] == ["p1", "p9", "p8"]
    assert all(r.search_type == "filtered" for r in results)
    assert vector_store.ops("dense")[0]["score_threshold"] == 0.5


@pytest.mark.asyncio
async def test_filtered_search_fans_out_per_type(cfg, store, clock, vector_store):
    service = make_service(cfg, store, clock, vector_store)

    await service.vector_search_with_filters("rust", {"types": ["post", "comment", "user"]})

    assert [c["collection"] for c in vector_store.ops("dense")] == ["posts", "comments", "users"]


# ============================================================================
# Vizinhança de post / categoria
# ============================================================================

@pytest.mark.asyncio
async def test_find_similar_posts_excludes_source(cfg, store, clock, vector_store):
    service = make_service(cfg, store, clock, vector_store)

    results = await service.find_similar_posts("p8", limit=3)

    assert [r.entity_id for r in results] == ["p9", "p1", "p2"]
    assert all(r.search_type == "similar" for r in results)


@pytest.mark.asyncio
async def test_find_similar_posts_fallback_same_category(cfg, store, clock):
    service = make_service(cfg, store, clock, FakeVectorStore(ready=False))

    results = await service.find_similar_posts("p3", limit=3)

    assert [r.entity_id for r in results] == ["p9", "p4", "p5"]
    assert results[0].search_type == "fallback"


@pytest.mark.asyncio
async def test_find_similar_posts_unknown_post(cfg, store, clock):
    service = make_service(cfg, store, clock)

    assert await service.find_similar_posts("nope") == []
    with pytest.raises(InvalidQuery):
        await service.find_similar_posts("p1", limit=0)


@pytest.mark.asyncio
async def test_recommend_posts_for_category(cfg, store, clock, vector_store, embedder):
    service = make_service(cfg, store, clock, vector_store, embedder)

    results = await service.recommend_posts_for_category("cooking")

    assert [r.entity_id for r in results] == ["p6"]
    assert embedder.texts[0][0] == "Cooking Recipes and kitchen tips"


@pytest.mark.asyncio
async def test_recommend_posts_for_unknown_category(cfg, store, clock):
    service = make_service(cfg, store, clock)

    assert await service.recommend_posts_for_category("gardening") == []
    with pytest.raises(InvalidQuery):
        await service.recommend_posts_for_category("  ")


@pytest.mark.asyncio
async def test_is_store_ready(cfg, store, clock):
    assert await make_service(cfg, store, clock).is_store_ready()
    assert not await make_service(cfg, store, clock, FakeVectorStore(ready=False)).is_store_ready()
