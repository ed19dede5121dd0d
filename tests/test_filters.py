"""Tests dos filtros de payload, janela temporal e vetores esparsos."""

import pytest
from qdrant_client import models

from feedreco.errors import InvalidQuery, MalformedFilter
from feedreco.index.filters import (
    DAY_MS,
    FilterSpec,
    any_of,
    in_range,
    match,
    time_range_condition,
    time_range_lower_bound_ms,
)
from feedreco.index.sparse import query_sparse_vector, ratings_sparse_vector

NOW_MS = 1_700_000_000_000


# ============================================================================
# Janela temporal
# ============================================================================

def test_week_lower_bound():
    assert time_range_lower_bound_ms("week", NOW_MS) == NOW_MS - 7 * 24 * 60 * 60 * 1000


@pytest.mark.parametrize("time_range, days", [("day", 1), ("month", 30), ("year", 365)])
def test_other_lower_bounds(time_range, days):
    assert time_range_lower_bound_ms(time_range, NOW_MS) == NOW_MS - days * DAY_MS


def test_all_has_no_lower_bound():
    assert time_range_lower_bound_ms("all", NOW_MS) is None
    assert time_range_lower_bound_ms(None, NOW_MS) is None
    assert time_range_condition("all", NOW_MS) is None


def test_unknown_time_range_is_malformed():
    with pytest.raises(MalformedFilter):
        time_range_lower_bound_ms("fortnight", NOW_MS)


def test_time_range_condition_is_in_seconds():
    cond = time_range_condition("week", NOW_MS)

    assert cond.key == "createdAtTs"
    assert cond.gte == (NOW_MS - 7 * DAY_MS) // 1000


# ============================================================================
# FilterSpec
# ============================================================================

def test_flat_mapping_goes_to_must():
    spec = FilterSpec.from_mapping({"categoryId": "c1", "userId": ["u1", "u2"], "voteCount": {"gte": 10}})

    assert spec.must == [match("categoryId", "c1"), any_of("userId", ["u1", "u2"]), in_range("voteCount", gte=10)]
    assert spec.should == [] and spec.must_not == []


def test_structured_mapping():
    spec = FilterSpec.from_mapping({
        "must": [{"key": "type", "match": {"value": "post"}}],
        "must_not": [{"key": "userId", "match": {"any": ["u9"]}}],
    })

    assert spec.matches({"type": "post", "userId": "u1"})
    assert not spec.matches({"type": "post", "userId": "u9"})
    assert not spec.matches({"type": "comment", "userId": "u1"})


@pytest.mark.parametrize(
    "data",
    [
        ["categoryId"],
        {"must": "type=post"},
        {"must": [{"match": {"value": "post"}}]},
        {"must": [{"key": "type", "match": {"regex": "p.*"}}]},
        {"must": [], "filter": []},
        {"voteCount": {"between": [1, 2]}},
        {"voteCount": {"gte": "ten"}},
    ],
)
def test_malformed_filters_raise(data):
    with pytest.raises(MalformedFilter):
        FilterSpec.from_mapping(data)


def test_malformed_filter_is_an_invalid_query():
    assert issubclass(MalformedFilter, InvalidQuery)


def test_merge_does_not_mutate():
    base = FilterSpec(must=[match("type", "post")])
    merged = base.merge(FilterSpec(must=[match("isHot", True)], must_not=[match("userId", "u1")]))

    assert len(base.must) == 1
    assert len(merged.must) == 2
    assert merged.must_not == [match("userId", "u1")]


def test_local_matching_rules():
    assert in_range("contentLength", gte=300).matches({"contentLength": 450})
    assert not in_range("contentLength", gte=300).matches({"contentLength": 120})
    assert not in_range("contentLength", gte=300).matches({"contentLength": True})
    assert match("topics", "rust").matches({"topics": ["rust", "async"]})
    assert any_of("categoryId", ["c1", "c2"]).matches({"categoryId": "c2"})
    assert not any_of("categoryId", ["c1", "c2"]).matches({})


def test_should_requires_one_match():
    spec = FilterSpec(should=[match("categoryId", "c1"), match("categoryId", "c2")])

    assert spec.matches({"categoryId": "c2"})
    assert not spec.matches({"categoryId": "c3"})


def test_to_qdrant():
    spec = FilterSpec(
        must=[match("type", "post"), in_range("createdAtTs", gte=100)],
        must_not=[any_of("userId", ["u1"])],
    )

    qfilter = spec.to_qdrant()

    assert isinstance(qfilter, models.Filter)
    assert qfilter.must[0].match == models.MatchValue(value="post")
    assert qfilter.must[1].range.gte == 100
    assert qfilter.must_not[0].match == models.MatchAny(any=["u1"])
    assert qfilter.should is None
    assert FilterSpec().to_qdrant() is None


# ============================================================================
# Vetores esparsos
# ============================================================================

def test_query_sparse_vector_has_unique_sorted_indices():
    vec = query_sparse_vector("rust async rust runtime", 2 ** 31)

    assert list(vec.indices) == sorted(set(vec.indices))
    assert len(vec.indices) == 3
    assert max(vec.values) == 1.0


def test_short_terms_produce_empty_sparse_vector():
    assert query_sparse_vector("a of", 1000).is_empty


def test_ratings_sparse_vector_single_rating_keeps_sign():
    vec = ratings_sparse_vector({"42": 0.8}, 1000)

    assert vec.as_dict() == {42: 1.0}


def test_ratings_sparse_vector_is_z_normalized():
    vec = ratings_sparse_vector({"1": 1.0, "2": 3.0}, 1000)

    assert vec.as_dict() == {1: -1.0, 2: 1.0}
