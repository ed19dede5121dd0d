# feedreco/retriever/lenses.py
"""
Lentes de busca ("prompt steering") - FeedReco

Cada lente é uma intenção de recuperação nomeada e define:
- um template de reescrita que embute a consulta crua numa frase mais longa, para
  enviesar o embedding na direção da intenção;
- um threshold de score próprio (sobrescrevível via LENS_SCORE_THRESHOLDS);
- um fragmento de filtro de payload (ex.: "exciting" exige isHot; "deep-dive" exige
  conteúdo com tamanho mínimo);
- uma estratégia de relevância (função pura) escolhida por tabela de despacho.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Mapping, Optional, Union

from feedreco.errors import InvalidQuery
from feedreco.index.filters import FilterSpec, in_range, match
from feedreco.text import query_terms, tokenize
from schemas.payloads import created_at_ts


class Lens(str, Enum):
    TRENDING = "trending"
    EXCITING = "exciting"
    DEEP_DIVE = "deep-dive"
    NEW = "new"
    TOP = "top"
    AI_RECOMMENDED = "ai-recommended"
    RISING = "rising"
    EXPERT_PICKS = "expert-picks"


TEMPLATES: Dict[Lens, str] = {
    Lens.TRENDING: "What's buzzing right now in {query}? Popular recent updates and viral discussions.",
    Lens.EXCITING: "Thrilling, high-impact stories about {query}. Edge-of-your-seat developments and breakthrough moments.",
    Lens.DEEP_DIVE: "Comprehensive, in-depth exploration of {query}. Detailed analysis, research insights, and thorough explanations.",
    Lens.NEW: "Latest developments and fresh perspectives on {query}. Recent discoveries and emerging trends.",
    Lens.TOP: "Highest quality content about {query}. Best discussions, expert insights, and most valuable information.",
    Lens.AI_RECOMMENDED: "AI-curated personalized content about {query}. Intelligent recommendations based on user interests.",
    Lens.RISING: "Fast-growing discussions gaining momentum in {query}. Emerging topics with increasing engagement.",
    Lens.EXPERT_PICKS: "Expert-curated content about {query}. Professional insights from verified specialists and thought leaders.",
}

SCORE_THRESHOLDS: Dict[Lens, float] = {
    Lens.TRENDING: 0.65,
    Lens.EXCITING: 0.6,
    Lens.DEEP_DIVE: 0.7,
    Lens.NEW: 0.5,
    Lens.TOP: 0.72,
    Lens.AI_RECOMMENDED: 0.6,
    Lens.RISING: 0.6,
    Lens.EXPERT_PICKS: 0.72,
}

PHRASES: Dict[Lens, str] = {
    Lens.TRENDING: "trending now",
    Lens.EXCITING: "high-engagement story",
    Lens.DEEP_DIVE: "in-depth read",
    Lens.NEW: "fresh post",
    Lens.TOP: "top-rated discussion",
    Lens.AI_RECOMMENDED: "picked for you",
    Lens.RISING: "gaining momentum",
    Lens.EXPERT_PICKS: "expert pick",
}


# -----------------------------
# Sinais de relevância por lente (funções puras)
# -----------------------------
def _num(payload: Mapping[str, Any], key: str) -> float:
    v = payload.get(key)
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return 0.0
    return float(v)


def _recency(payload: Mapping[str, Any], now_ts: float, horizon_days: float = 7.0) -> float:
    ts = created_at_ts(payload)
    if ts is None:
        return 0.0
    age_days = max(0.0, (now_ts - ts) / 86400.0)
    return max(0.0, 1.0 - age_days / horizon_days)


def trending_signal(payload: Mapping[str, Any], now_ts: float) -> float:
    return (
        _num(payload, "trendingScore") * 0.5
        + (0.3 if payload.get("isHot") else 0.0)
        + min(_num(payload, "viewCount") / 1000.0, 0.2)
    )


def exciting_signal(payload: Mapping[str, Any], now_ts: float) -> float:
    engagement = _num(payload, "commentCount") + _num(payload, "voteCount")
    return (
        (0.4 if payload.get("isHot") else 0.0)
        + min(engagement / 200.0, 0.3)
        + _num(payload, "trendingScore") * 0.3
    )


def deep_dive_signal(payload: Mapping[str, Any], now_ts: float) -> float:
    length = _num(payload, "contentLength") or float(len(str(payload.get("content") or "")))
    return min(length / 2000.0, 0.4) + min(_num(payload, "commentCount") / 100.0, 0.3)


def new_signal(payload: Mapping[str, Any], now_ts: float, horizon_days: float = 7.0) -> float:
    return 0.7 * _recency(payload, now_ts, horizon_days)


def top_signal(payload: Mapping[str, Any], now_ts: float) -> float:
    return min(_num(payload, "voteCount") / 100.0, 0.5) + min(_num(payload, "viewCount") / 2000.0, 0.3)


def rising_signal(payload: Mapping[str, Any], now_ts: float, horizon_days: float = 3.0) -> float:
    return (
        _num(payload, "trendingScore") * 0.4
        + 0.3 * _recency(payload, now_ts, horizon_days)
        + min(_num(payload, "commentCount") / 50.0, 0.3)
    )


def expert_signal(payload: Mapping[str, Any], now_ts: float) -> float:
    return min(_num(payload, "contentLength") / 3000.0, 0.3) + min(_num(payload, "voteCount") / 50.0, 0.4)


def neutral_signal(payload: Mapping[str, Any], now_ts: float) -> float:
    return 0.0


LensSignal = Callable[[Mapping[str, Any], float], float]

LENS_SIGNALS: Dict[Lens, LensSignal] = {
    Lens.TRENDING: trending_signal,
    Lens.EXCITING: exciting_signal,
    Lens.DEEP_DIVE: deep_dive_signal,
    Lens.NEW: new_signal,
    Lens.TOP: top_signal,
    Lens.AI_RECOMMENDED: neutral_signal,
    Lens.RISING: rising_signal,
    Lens.EXPERT_PICKS: expert_signal,
}


# -----------------------------
# Ajustes sobrescrevíveis pela config
# -----------------------------
@dataclass(frozen=True)
class LensSettings:
    thresholds: Mapping[Lens, float] = field(default_factory=lambda: dict(SCORE_THRESHOLDS))
    default_threshold: float = 0.7
    new_horizon_days: float = 7.0
    rising_horizon_days: float = 3.0

    @classmethod
    def from_config(cls, cfg) -> "LensSettings":
        thresholds: Dict[Lens, float] = dict(SCORE_THRESHOLDS)
        for key, value in (getattr(cfg, "LENS_SCORE_THRESHOLDS", None) or {}).items():
            thresholds[parse_lens(key)] = float(value)
        return cls(
            thresholds=thresholds,
            default_threshold=getattr(cfg, "DEFAULT_SCORE_THRESHOLD", 0.7),
            new_horizon_days=getattr(cfg, "NEW_RECENCY_HORIZON_DAYS", 7.0),
            rising_horizon_days=getattr(cfg, "RISING_RECENCY_HORIZON_DAYS", 3.0),
        )

    def threshold(self, lens: Lens) -> float:
        return self.thresholds.get(lens, self.default_threshold)

    def signal(self, lens: Lens) -> LensSignal:
        if lens == Lens.NEW:
            return partial(new_signal, horizon_days=self.new_horizon_days)
        if lens == Lens.RISING:
            return partial(rising_signal, horizon_days=self.rising_horizon_days)
        return LENS_SIGNALS[lens]


# -----------------------------
# Perfil de lente
# -----------------------------
@dataclass(frozen=True)
class LensProfile:
    lens: Lens
    template: str
    score_threshold: float
    fragment: FilterSpec = field(default_factory=FilterSpec)
    signal: LensSignal = neutral_signal
    phrase: str = ""

    def rewrite(self, query: str) -> str:
        return self.template.format(query=query.strip())


def parse_lens(value: Union[str, Lens]) -> Lens:
    if isinstance(value, Lens):
        return value
    try:
        return Lens(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(lens.value for lens in Lens)
        raise InvalidQuery(f"unsupported lens {value!r} (expected one of: {allowed})") from None


def lens_fragment(lens: Lens, cfg=None) -> FilterSpec:
    if lens == Lens.EXCITING:
        return FilterSpec(must=[match("isHot", True)])
    if lens == Lens.DEEP_DIVE:
        return FilterSpec(must=[in_range("contentLength", gte=getattr(cfg, "DEEP_DIVE_MIN_CONTENT_LENGTH", 300))])
    if lens == Lens.TRENDING:
        return FilterSpec(must=[in_range("trendingScore", gte=getattr(cfg, "TRENDING_MIN_SCORE", 0.5))])
    return FilterSpec()


def lens_profile(lens: Union[str, Lens], cfg=None) -> LensProfile:
    lens = parse_lens(lens)
    settings = LensSettings.from_config(cfg)
    return LensProfile(
        lens=lens,
        template=TEMPLATES[lens],
        score_threshold=settings.threshold(lens),
        fragment=lens_fragment(lens, cfg),
        signal=settings.signal(lens),
        phrase=PHRASES[lens],
    )


# -----------------------------
# Relevância (transparência para o chamador)
# -----------------------------
def _field_hit_ratio(terms: set, text: Any) -> float:
    if not terms or not text:
        return 0.0
    tokens = set(tokenize(str(text)))
    return len(terms & tokens) / len(terms)


def keyword_overlap(query: str, payload: Mapping[str, Any]) -> float:
    """Sobreposição de termos da consulta: título 0.4, conteúdo 0.3, categoria 0.2, autor 0.1."""
    terms = set(query_terms(query))
    if not terms:
        return 0.0
    author = payload.get("userName") or payload.get("username")
    score = (
        0.4 * _field_hit_ratio(terms, payload.get("title") or payload.get("name"))
        + 0.3 * _field_hit_ratio(terms, payload.get("content") or payload.get("description"))
        + 0.2 * _field_hit_ratio(terms, payload.get("categoryName"))
        + 0.1 * _field_hit_ratio(terms, author)
    )
    return min(score, 1.0)


def relevance_score(
    query: str,
    payload: Mapping[str, Any],
    lens: Lens,
    *,
    keyword_weight: float = 0.6,
    signal_weight: float = 0.4,
    now_ts: Optional[float] = None,
    signal: Optional[LensSignal] = None,
) -> float:
    now = time.time() if now_ts is None else now_ts
    lens_signal = signal or LENS_SIGNALS[lens]
    value = keyword_weight * keyword_overlap(query, payload) + signal_weight * min(lens_signal(payload, now), 1.0)
    return round(max(0.0, min(value, 1.0)), 4)
