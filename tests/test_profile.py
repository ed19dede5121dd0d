"""Tests do perfil de interação derivado do histórico do usuário."""

import pytest

from conftest import NOW
from feedreco.recommender.profile import Interaction, UserInteractionProfile, build_interaction_profile
from feedreco.store import UserActivity


@pytest.mark.asyncio
async def test_profile_from_history(store):
    activity = await store.get_user_profile("u1")

    profile = build_interaction_profile(activity)

    types = sorted(i.type for i in profile.interactions)
    assert types == ["bookmark", "comment", "like", "like"]
    # c2: post próprio (1.0) + like (0.5) + bookmark (1.0); c1: comment (0.8) + like (0.5)
    assert profile.category_preferences["c2"] == pytest.approx(1.0)
    assert profile.category_preferences["c1"] == pytest.approx(1.3 / 2.5)
    assert profile.top_categories(2) == ["c2", "c1"]
    assert profile.interests == ["ai", "programming"]
    assert profile.seen_post_ids == {"p1", "p2", "p3", "p4", "p5"}
    assert profile.activity_level == "low"
    assert profile.expertise == []


def test_negative_vote_counts_as_view():
    activity = UserActivity(
        user_id="u9",
        user={"id": "u9"},
        votes=[{"postId": "p1", "value": -1, "categoryId": "c1"}],
    )

    profile = build_interaction_profile(activity)

    assert profile.interactions[0].type == "view"
    assert profile.interactions[0].weight == 1.0
    assert profile.category_preferences == {"c1": 1.0}


def test_expertise_markers_and_activity_level():
    posts = [{"id": f"p{i}", "categoryId": "c1", "content": "x" * 1200} for i in range(25)]
    activity = UserActivity(user_id="u9", user={"id": "u9"}, posts=posts)

    profile = build_interaction_profile(activity)

    assert profile.expertise == ["content_creator", "detailed_writer"]
    assert profile.activity_level == "medium"


def test_ratings_decay_with_age():
    profile = UserInteractionProfile(
        user_id="u1",
        interactions=[
            Interaction(post_id="p1", type="bookmark", timestamp=int(NOW)),
            Interaction(post_id="p2", type="like", timestamp=int(NOW) - 86400),
            Interaction(post_id="p2", type="view", timestamp=int(NOW) - 86400),
        ],
    )

    ratings = profile.ratings(now_ts=NOW, decay_factor=0.5)

    assert ratings["p1"] == pytest.approx(1.0)
    assert ratings["p2"] == pytest.approx((0.5 + 0.1) * 0.5)


def test_own_post_category_as_plain_id():
    activity = UserActivity(user_id="u9", posts=[{"id": "x1", "category": "c9"}, {"id": "x2", "category": {"id": "c8"}}])

    profile = build_interaction_profile(activity)

    assert profile.category_preferences == {"c9": 1.0, "c8": 1.0}
