"""
Tests do VectorStoreAdapter com o AsyncQdrantClient simulado (AsyncMock)
e a checagem de prontidão via httpx.MockTransport.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import numpy as np
import pytest
from qdrant_client import models
from qdrant_client.http.models import QueryResponse

from feedreco.errors import ProviderUnavailable
from feedreco.index.collections import DENSE, DENSE_COARSE, SPARSE, PointIdRegistry, default_collections
from feedreco.index.filters import FilterSpec, match
from feedreco.index.sparse import SparseVector, query_sparse_vector
from feedreco.index.vector_store import VectorStoreAdapter
from feedreco.text import positive_hash


def _point(pid, entity_id, score, **payload):
    body = {"id": entity_id, "type": "post", **payload} if entity_id is not None else None
    return models.ScoredPoint(id=pid, version=0, score=score, payload=body)


def _response(*points):
    return QueryResponse(points=list(points))


@pytest.fixture
def client():
    return AsyncMock()


@pytest.fixture
def adapter(cfg, client):
    return VectorStoreAdapter(client, url="http://qdrant.test", definitions=default_collections(cfg))


def _ready_client(status: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/readyz"
        return httpx.Response(status)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ============================================================================
# Prontidão e coleções
# ============================================================================

@pytest.mark.asyncio
async def test_is_ready(cfg, client):
    async with _ready_client(200) as http:
        adapter = VectorStoreAdapter(client, url="http://qdrant.test/", definitions=[], http_client=http)
        assert await adapter.is_ready()

    async with _ready_client(503) as http:
        adapter = VectorStoreAdapter(client, url="http://qdrant.test", definitions=[], http_client=http)
        assert not await adapter.is_ready()


@pytest.mark.asyncio
async def test_is_ready_false_on_connection_error(client):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        adapter = VectorStoreAdapter(client, url="http://qdrant.test", definitions=[], http_client=http)
        assert not await adapter.is_ready()


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [httpx.InvalidURL("bad url"), ValueError("bad port")])
async def test_is_ready_false_on_malformed_url(client, error):
    def handler(request: httpx.Request) -> httpx.Response:
        raise error

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        adapter = VectorStoreAdapter(client, url="http://qdrant.test", definitions=[], http_client=http)
        assert not await adapter.is_ready()


@pytest.mark.asyncio
async def test_ensure_collections_creates_missing(cfg, client):
    client.get_collections.return_value = SimpleNamespace(collections=[])

    async with _ready_client() as http:
        adapter = VectorStoreAdapter(client, url="http://qdrant.test", definitions=default_collections(cfg),
                                     http_client=http)
        assert await adapter.ensure_collections()

    created = [c.kwargs["collection_name"] for c in client.create_collection.await_args_list]
    assert created == ["posts", "comments", "categories", "users", "multimodal_content", "user_recommendations"]

    posts_kwargs = client.create_collection.await_args_list[0].kwargs
    assert posts_kwargs["vectors_config"][DENSE].size == 8
    assert posts_kwargs["vectors_config"][DENSE_COARSE].size == 4
    assert SPARSE in posts_kwargs["sparse_vectors_config"]


@pytest.mark.asyncio
async def test_ensure_collections_skipped_when_not_ready(cfg, client):
    async with _ready_client(503) as http:
        adapter = VectorStoreAdapter(client, url="http://qdrant.test", definitions=default_collections(cfg),
                                     http_client=http)
        assert not await adapter.ensure_collections()

    client.get_collections.assert_not_awaited()
    client.create_collection.assert_not_awaited()


@pytest.mark.asyncio
async def test_validate_collection_reports_drift(cfg, adapter, client):
    client.get_collection.return_value = SimpleNamespace(
        config=SimpleNamespace(params=SimpleNamespace(vectors={DENSE: SimpleNamespace(size=4)}, sparse_vectors={}))
    )

    problems = await adapter.validate_collection(adapter.definition("posts"))

    assert "vector 'dense' has size 4, expected 8" in problems
    assert "missing named vector 'dense_coarse'" in problems
    assert "missing sparse vector 'sparse'" in problems
    client.create_collection.assert_not_awaited()


# ============================================================================
# Escrita
# ============================================================================

@pytest.mark.asyncio
async def test_upsert_fits_dimension_and_derives_coarse_vector(adapter, client):
    ok = await adapter.upsert("posts", "p1", {DENSE: [1.0, 2.0, 3.0]}, {"type": "post"})

    assert ok
    point = client.upsert.await_args.kwargs["points"][0]
    assert point.id == positive_hash("p1")
    assert len(point.vector[DENSE]) == 8
    assert point.vector[DENSE][3:] == [0.0] * 5
    assert len(point.vector[DENSE_COARSE]) == 4
    assert np.isclose(np.linalg.norm(point.vector[DENSE_COARSE]), 1.0, atol=1e-5)
    assert point.payload == {"type": "post", "id": "p1"}


@pytest.mark.asyncio
async def test_upsert_truncates_long_vectors_and_skips_empty_sparse(adapter, client):
    await adapter.upsert("posts", "42", {DENSE: list(range(1, 13)), SPARSE: SparseVector((), ())})

    point = client.upsert.await_args.kwargs["points"][0]
    assert point.id == 42
    assert point.vector[DENSE] == [float(i) for i in range(1, 9)]
    assert SPARSE not in point.vector


@pytest.mark.asyncio
async def test_upsert_failure_returns_false(adapter, client):
    client.upsert.side_effect = RuntimeError("qdrant down")

    assert not await adapter.upsert("posts", "p1", {DENSE: [0.1] * 8})


@pytest.mark.asyncio
async def test_delete_uses_point_id(adapter, client):
    assert await adapter.delete("comments", "cm1")

    selector = client.delete.await_args.kwargs["points_selector"]
    assert selector.points == [positive_hash("cm1")]


@pytest.mark.asyncio
async def test_retrieve_payloads(adapter, client):
    client.retrieve.return_value = [SimpleNamespace(id=positive_hash("p1"), payload={"id": "p1", "title": "Hi"})]

    payloads = await adapter.retrieve_payloads("posts", ["p1"])

    assert payloads == {"p1": {"id": "p1", "title": "Hi"}}
    assert await adapter.retrieve_payloads("posts", []) == {}


@pytest.mark.asyncio
async def test_retrieve_failure_raises_provider_unavailable(adapter, client):
    client.retrieve.side_effect = RuntimeError("boom")

    with pytest.raises(ProviderUnavailable):
        await adapter.retrieve_payloads("posts", ["p1"])


# ============================================================================
# Busca
# ============================================================================

@pytest.mark.asyncio
async def test_search_dense(adapter, client):
    client.query_points.return_value = _response(_point(7, "p1", 0.91))

    hits = await adapter.search_dense(
        "posts", [1.0] * 8, limit=5, score_threshold=0.6, filter=FilterSpec(must=[match("type", "post")])
    )

    kwargs = client.query_points.await_args.kwargs
    assert kwargs["collection_name"] == "posts"
    assert kwargs["using"] == DENSE
    assert len(kwargs["query"]) == 8
    assert kwargs["score_threshold"] == 0.6
    assert isinstance(kwargs["query_filter"], models.Filter)
    assert [(h.entity_id, h.score, h.point_id) for h in hits] == [("p1", 0.91, 7)]


@pytest.mark.asyncio
async def test_hit_without_payload_id_maps_back_to_external_id(adapter, client):
    await adapter.upsert("posts", "abc", {DENSE: [0.1] * 8})
    client.query_points.return_value = _response(_point(positive_hash("abc"), None, 0.5))

    hits = await adapter.search_dense("posts", [0.1] * 8, limit=1)

    assert hits[0].entity_id == "abc"


@pytest.mark.asyncio
async def test_search_failure_raises_provider_unavailable(adapter, client):
    client.query_points.side_effect = RuntimeError("timeout")

    with pytest.raises(ProviderUnavailable):
        await adapter.search_dense("posts", [0.1] * 8, limit=3)


@pytest.mark.asyncio
async def test_hybrid_server_side_uses_prefetch_and_rrf(adapter, client):
    client.query_points.return_value = _response(_point(1, "p2", 0.03))

    hits = await adapter.search_hybrid("posts", [0.1] * 8, query_sparse_vector("rust async", 1000), limit=5)

    kwargs = client.query_points.await_args.kwargs
    assert len(kwargs["prefetch"]) == 2
    assert kwargs["prefetch"][0].using == DENSE
    assert kwargs["prefetch"][0].limit == 10
    assert kwargs["prefetch"][1].using == SPARSE
    assert kwargs["query"] == models.FusionQuery(fusion=models.Fusion.RRF)
    assert [h.entity_id for h in hits] == ["p2"]


@pytest.mark.asyncio
async def test_hybrid_falls_back_to_dense_on_failure(adapter, client):
    client.query_points.side_effect = [RuntimeError("fusion unsupported"), _response(_point(1, "p1", 0.8))]

    hits = await adapter.search_hybrid("posts", [0.1] * 8, query_sparse_vector("rust async", 1000), limit=5)

    assert client.query_points.await_count == 2
    second = client.query_points.await_args_list[1].kwargs
    assert second["using"] == DENSE
    assert "prefetch" not in second
    assert [h.entity_id for h in hits] == ["p1"]


@pytest.mark.asyncio
async def test_hybrid_with_empty_sparse_is_dense_only(adapter, client):
    client.query_points.return_value = _response(_point(1, "p1", 0.8))

    await adapter.search_hybrid("posts", [0.1] * 8, SparseVector((), ()), limit=5)

    assert client.query_points.await_count == 1
    assert client.query_points.await_args.kwargs["using"] == DENSE


@pytest.mark.asyncio
async def test_hybrid_with_weights_fuses_on_client(adapter, client):
    async def fake_query(collection_name, **kwargs):
        if kwargs["using"] == DENSE:
            return _response(_point(1, "p1", 0.9), _point(2, "p2", 0.5))
        return _response(_point(2, "p2", 0.8), _point(3, "p3", 0.3))

    client.query_points.side_effect = fake_query

    hits = await adapter.search_hybrid(
        "posts", [0.1] * 8, query_sparse_vector("rust async", 1000), limit=3, weights=(0.7, 0.3)
    )

    assert client.query_points.await_count == 2
    assert [h.entity_id for h in hits] == ["p2", "p1", "p3"]


@pytest.mark.asyncio
async def test_multi_stage_search(adapter, client):
    client.query_points.side_effect = [
        _response(_point(1, None, 0.7), _point(2, None, 0.6)),
        _response(_point(2, "p2", 0.93)),
    ]

    hits = await adapter.multi_stage_search(
        "posts", [0.5] * 8, candidate_limit=50, final_limit=10, filter=FilterSpec(must=[match("type", "post")])
    )

    first, second = (c.kwargs for c in client.query_points.await_args_list)
    assert first["using"] == DENSE_COARSE
    assert len(first["query"]) == 4
    assert first["limit"] == 50
    assert first["with_payload"] is False

    assert second["using"] == DENSE
    assert second["limit"] == 10
    has_id = second["query_filter"].must[0]
    assert isinstance(has_id, models.HasIdCondition)
    assert has_id.has_id == [1, 2]
    assert second["query_filter"].must[1].key == "type"
    assert [h.entity_id for h in hits] == ["p2"]


@pytest.mark.asyncio
async def test_multi_stage_without_candidates(adapter, client):
    client.query_points.return_value = _response()

    assert await adapter.multi_stage_search("posts", [0.5] * 8, candidate_limit=20, final_limit=5) == []
    assert client.query_points.await_count == 1


# ============================================================================
# Multi-vetor
# ============================================================================

def _by_vector(text_points, document_points):
    async def fake_query(collection_name, **kwargs):
        if "prefetch" in kwargs:
            raise RuntimeError("fused query unsupported")
        points = text_points if kwargs["using"] == "text" else document_points
        return _response(*points)

    return fake_query


@pytest.mark.asyncio
async def test_multi_vector_server_side_uses_one_prefetch_per_vector(adapter, client):
    client.query_points.return_value = _response(_point(1, "m1", 0.5))

    hits = await adapter.multi_vector_search(
        "multimodal_content", {"text": [0.1] * 4, "document": [0.2] * 4}, limit=5, fusion="dbsf"
    )

    kwargs = client.query_points.await_args.kwargs
    assert [p.using for p in kwargs["prefetch"]] == ["text", "document"]
    assert all(p.limit == 10 for p in kwargs["prefetch"])
    assert kwargs["query"] == models.FusionQuery(fusion=models.Fusion.DBSF)
    assert [h.entity_id for h in hits] == ["m1"]


@pytest.mark.asyncio
async def test_multi_vector_fusion_reorders_results(cfg, client):
    adapter = VectorStoreAdapter(
        client, url="http://qdrant.test", definitions=default_collections(cfg), fusion_location="client"
    )
    client.query_points.side_effect = _by_vector(
        [_point(1, "m1", 0.9), _point(2, "m2", 0.8)],
        [_point(2, "m2", 0.9), _point(3, "m3", 0.7)],
    )

    text_only = await adapter.multi_vector_search("multimodal_content", {"text": [0.1] * 4}, limit=3)
    fused = await adapter.multi_vector_search(
        "multimodal_content", {"text": [0.1] * 4, "document": [0.2] * 4}, limit=3
    )

    assert [h.entity_id for h in text_only] == ["m1", "m2"]
    assert [h.entity_id for h in fused] == ["m2", "m1", "m3"]
    assert fused[0].score == pytest.approx(1 / 62 + 1 / 61)


@pytest.mark.asyncio
async def test_multi_vector_falls_back_to_client_fusion(adapter, client):
    client.query_points.side_effect = _by_vector([_point(1, "m1", 0.9)], [_point(3, "m3", 0.8)])

    hits = await adapter.multi_vector_search(
        "multimodal_content", {"text": [0.1] * 4, "document": [0.2] * 4}, limit=5
    )

    assert client.query_points.await_count == 3
    assert [h.entity_id for h in hits] == ["m1", "m3"]


@pytest.mark.asyncio
async def test_multi_vector_without_vectors(adapter, client):
    assert await adapter.multi_vector_search("multimodal_content", {}, limit=5) == []
    assert client.query_points.await_count == 0


# ============================================================================
# Ids de pontos
# ============================================================================

def test_point_id_hash_strategy_and_collisions():
    registry = PointIdRegistry("hash")

    assert registry.point_id("123") == 123
    a = registry.point_id("Aa", "posts")
    b = registry.point_id("BB", "posts")

    assert a == b
    assert registry.collisions == 1
    assert registry.external_id(a, "posts") == "Aa"


def test_point_id_uuid_strategy_is_deterministic():
    first = PointIdRegistry("uuid").point_id("p1", "posts")
    second = PointIdRegistry("uuid").point_id("p1", "posts")

    assert isinstance(first, str)
    assert first == second
    assert PointIdRegistry("uuid").point_id("Aa") != PointIdRegistry("uuid").point_id("BB")


def test_point_id_registry_is_bounded_lru():
    registry = PointIdRegistry("hash", max_entries=2)

    a = registry.point_id("a", "posts")
    b = registry.point_id("b", "posts")
    assert registry.external_id(a, "posts") == "a"
    registry.point_id("c", "posts")

    assert len(registry) == 2
    assert registry.external_id(b, "posts") is None
    assert registry.external_id(a, "posts") == "a"
