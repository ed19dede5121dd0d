"""Tests do banco relacional em memória e do carregamento de dataset."""

import json

import pytest

from feedreco.store import EntityFilter, InMemoryRelationalStore, load_store_from_file
from schemas.payloads import PostPayload


@pytest.mark.asyncio
async def test_get_entity(store):
    post = await store.get_entity("post", "p3")

    assert post["title"] == "Rust async runtimes"
    assert await store.get_entity("post", "nope") is None


@pytest.mark.asyncio
async def test_query_text_contains_is_case_insensitive(store):
    rows = await store.query_entities("post", EntityFilter(text_contains="QUANTUM"), order_by="createdAt desc")

    assert [r["id"] for r in rows] == ["p1", "p2", "p10", "p8"]


@pytest.mark.asyncio
async def test_query_filters_and_limit(store):
    f = EntityFilter(category_ids=["c1", "c2"], exclude_user_id="u2", exclude_ids=["p2"])

    rows = await store.query_entities("post", f, order_by="createdAt desc", limit=2)

    assert [r["id"] for r in rows] == ["p9", "p4"]


@pytest.mark.asyncio
async def test_query_by_slug(store):
    rows = await store.query_entities("category", EntityFilter(slug="rust"))

    assert [r["id"] for r in rows] == ["c2"]


@pytest.mark.asyncio
async def test_unknown_entity_type_and_order(store):
    with pytest.raises(ValueError):
        await store.query_entities("poll")
    with pytest.raises(ValueError):
        await store.query_entities("post", order_by="title desc")


@pytest.mark.asyncio
async def test_user_profile_carries_post_category(store):
    activity = await store.get_user_profile("u1")

    assert activity.has_history
    assert [p["id"] for p in activity.posts] == ["p5"]
    assert {v["postId"]: v["categoryId"] for v in activity.votes} == {"p1": "c1", "p3": "c2"}
    assert activity.comments[0]["categoryId"] == "c1"
    assert activity.bookmarks[0]["categoryId"] == "c2"


@pytest.mark.asyncio
async def test_unknown_user_has_no_profile(store):
    assert await store.get_user_profile("ghost") is None


def test_from_dict_rejects_non_list_tables():
    with pytest.raises(ValueError):
        InMemoryRelationalStore.from_dict({"posts": {"id": "p1"}})


def test_load_store_from_file(tmp_path):
    path = tmp_path / "forum.json"
    path.write_text(json.dumps({"posts": [{"id": "p1", "title": "hello"}]}), encoding="utf-8")

    store = load_store_from_file(path)

    assert [p["id"] for p in store.posts] == ["p1"]
    assert store.snapshot()["comment"] == []


def test_load_store_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_store_from_file(tmp_path / "missing.json")

    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        load_store_from_file(bad)

    arr = tmp_path / "arr.json"
    arr.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_store_from_file(arr)


@pytest.mark.asyncio
async def test_relations_given_as_plain_ids():
    store = InMemoryRelationalStore.from_dict({
        "posts": [{"id": "x1", "title": "Loose post", "category": "c9", "user": "u7", "createdAt": 1_700_000_000}],
    })

    by_category = await store.query_entities("post", EntityFilter(category_id="c9"))
    by_author = await store.query_entities("post", EntityFilter(user_id="u7"))

    assert [r["id"] for r in by_category] == ["x1"]
    assert [r["id"] for r in by_author] == ["x1"]
    assert PostPayload.from_source(by_category[0]).categoryId == "c9"
    assert PostPayload.from_source(by_category[0]).userId == "u7"
