"""Tests das lentes: templates, fragmentos de filtro e relevância."""

import pytest

from feedreco.config import FeedRecoConfig
from feedreco.errors import InvalidQuery
from feedreco.index.filters import FilterSpec, in_range, match
from feedreco.retriever.lenses import (
    LENS_SIGNALS,
    SCORE_THRESHOLDS,
    TEMPLATES,
    Lens,
    LensSettings,
    keyword_overlap,
    lens_fragment,
    lens_profile,
    new_signal,
    parse_lens,
    relevance_score,
)

NOW = 1_700_000_000.0


def test_every_lens_has_template_threshold_and_signal():
    for lens in Lens:
        assert "{query}" in TEMPLATES[lens]
        assert 0.0 < SCORE_THRESHOLDS[lens] < 1.0
        assert lens in LENS_SIGNALS


def test_deep_dive_rewrite():
    profile = lens_profile("deep-dive")

    rewritten = profile.rewrite("  quantum computing ")

    assert rewritten == (
        "Comprehensive, in-depth exploration of quantum computing. "
        "Detailed analysis, research insights, and thorough explanations."
    )
    assert profile.score_threshold == 0.7


def test_parse_lens_accepts_enum_and_case_insensitive_string():
    assert parse_lens(Lens.TOP) is Lens.TOP
    assert parse_lens(" Expert-Picks ") is Lens.EXPERT_PICKS


def test_unknown_lens_raises():
    with pytest.raises(InvalidQuery):
        lens_profile("controversial")


def test_lens_fragments():
    assert lens_fragment(Lens.EXCITING).must == [match("isHot", True)]
    assert lens_fragment(Lens.DEEP_DIVE).must == [in_range("contentLength", gte=300)]
    assert lens_fragment(Lens.TRENDING).must == [in_range("trendingScore", gte=0.5)]
    assert lens_fragment(Lens.NEW).is_empty
    assert isinstance(lens_fragment(Lens.TOP), FilterSpec)


def test_lens_fragment_reads_config():
    cfg = FeedRecoConfig(DEEP_DIVE_MIN_CONTENT_LENGTH=800)

    assert lens_fragment(Lens.DEEP_DIVE, cfg).must == [in_range("contentLength", gte=800)]


def test_keyword_overlap_weights_title_first():
    payload = {"title": "Quantum computing basics", "content": "nothing related"}

    assert keyword_overlap("quantum computing", payload) == pytest.approx(0.4)
    assert keyword_overlap("quantum computing", {"content": "Quantum computing for all"}) == pytest.approx(0.3)
    assert keyword_overlap("a", payload) == 0.0


def test_keyword_overlap_is_accent_insensitive():
    assert keyword_overlap("computação", {"title": "Computacao quântica"}) == pytest.approx(0.4)


def test_relevance_combines_keywords_and_lens_signal():
    payload = {"title": "Quantum computing basics", "voteCount": 100, "viewCount": 2000}

    score = relevance_score("quantum computing", payload, Lens.TOP, now_ts=NOW)

    # 0.6 * 0.4 (título) + 0.4 * (0.5 votos + 0.3 views)
    assert score == pytest.approx(0.56)


def test_relevance_is_bounded():
    payload = {
        "title": "rust rust", "content": "rust", "categoryName": "rust", "username": "rust",
        "isHot": True, "trendingScore": 5.0, "viewCount": 10_000,
    }

    assert relevance_score("rust", payload, Lens.TRENDING, now_ts=NOW) == 1.0
    assert relevance_score("nothing", {}, Lens.AI_RECOMMENDED, now_ts=NOW) == 0.0


def test_new_signal_decays_with_age():
    assert new_signal({"createdAtTs": int(NOW)}, NOW) == pytest.approx(0.7)
    assert new_signal({"createdAtTs": int(NOW) - 10 * 86400}, NOW) == 0.0
    assert new_signal({}, NOW) == 0.0


def test_lens_settings_read_config_overrides():
    cfg = FeedRecoConfig(LENS_SCORE_THRESHOLDS={"top": 0.91, "deep-dive": 0.5}, NEW_RECENCY_HORIZON_DAYS=1.0)

    settings = LensSettings.from_config(cfg)
    two_days_old = {"createdAtTs": int(NOW) - 2 * 86400}

    assert settings.threshold(Lens.TOP) == 0.91
    assert lens_profile("deep-dive", cfg).score_threshold == 0.5
    assert settings.threshold(Lens.TRENDING) == SCORE_THRESHOLDS[Lens.TRENDING]
    assert settings.signal(Lens.NEW)(two_days_old, NOW) == 0.0
    assert new_signal(two_days_old, NOW) > 0.0


def test_lens_settings_reject_unknown_lens():
    with pytest.raises(InvalidQuery):
        LensSettings.from_config(FeedRecoConfig(LENS_SCORE_THRESHOLDS={"controversial": 0.5}))
