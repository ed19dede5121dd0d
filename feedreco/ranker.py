# feedreco/ranker.py
"""
Re-ranking com Diversidade - FeedReco

Pós-processa uma lista de candidatos já pontuada e ordenada por score:
- Decaimento temporal opcional (score *= fator ^ idade_em_dias) antes das decisões
  de diversidade, para que elas usem scores ajustados pela recência.
- Filtro de diversidade: o primeiro colocado entra sempre; os demais somam bônus por
  categoria nova, autor novo e tópicos pouco sobrepostos. Entra quem disparou algum
  sinal, ou enquanto a lista não atingiu o piso mínimo.
- Serendipidade: candidatos abaixo da mediana com diversidade alta ganham bônus e
  são marcados (o chamador explica "por que você está vendo isto").
- Re-rank final: score += 0.1·diversidade + 0.05·serendipidade.
- Deduplicação por entity_id depois de todos os ajustes, mantendo o maior score.

Todas as funções são puras: nunca alteram os candidatos recebidos.
"""

from __future__ import annotations

import math
import statistics
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from schemas.payloads import created_at_ts, payload_topics

SECONDS_PER_DAY = 86400.0


@dataclass
class ScoredCandidate:
    entity_id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    algorithm: str = "content"
    diversity: float = 0.0
    serendipity: Optional[float] = None
    is_serendipitous: bool = False
    applied_boosts: List[str] = field(default_factory=list)
    # Campos extras (debug/observabilidade)
    raw_score: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def category_id(self) -> Optional[str]:
        cid = self.payload.get("categoryId")
        return str(cid) if cid is not None else None

    @property
    def author_id(self) -> Optional[str]:
        uid = self.payload.get("userId")
        return str(uid) if uid is not None else None

    @property
    def topics(self) -> List[str]:
        return payload_topics(self.payload)


@dataclass(frozen=True)
class DiversitySettings:
    category_bonus: float = 0.4
    author_bonus: float = 0.3
    topic_bonus: float = 0.3
    topic_threshold: float = 0.3
    min_results: int = 3
    serendipity_min_diversity: float = 0.7
    serendipity_factor: float = 0.1
    diversity_weight: float = 0.1
    serendipity_weight: float = 0.05

    @classmethod
    def from_config(
        cls,
        cfg,
        *,
        diversity_threshold: Optional[float] = None,
        serendipity_factor: Optional[float] = None,
    ) -> "DiversitySettings":
        return cls(
            category_bonus=getattr(cfg, "CATEGORY_DIVERSITY_BONUS", 0.4),
            author_bonus=getattr(cfg, "AUTHOR_DIVERSITY_BONUS", 0.3),
            topic_bonus=getattr(cfg, "TOPIC_DIVERSITY_BONUS", 0.3),
            topic_threshold=(
                diversity_threshold if diversity_threshold is not None
                else getattr(cfg, "DIVERSITY_THRESHOLD", 0.3)
            ),
            min_results=getattr(cfg, "MIN_DIVERSE_RESULTS", 3),
            serendipity_min_diversity=getattr(cfg, "SERENDIPITY_MIN_DIVERSITY", 0.7),
            serendipity_factor=(
                serendipity_factor if serendipity_factor is not None
                else getattr(cfg, "SERENDIPITY_FACTOR", 0.1)
            ),
            diversity_weight=getattr(cfg, "DIVERSITY_RERANK_WEIGHT", 0.1),
            serendipity_weight=getattr(cfg, "SERENDIPITY_RERANK_WEIGHT", 0.05),
        )


# -----------------------------
# Decaimento temporal
# -----------------------------
def apply_time_decay(
    candidates: Sequence[ScoredCandidate],
    decay_factor: float = 0.95,
    now_ts: Optional[float] = None,
    default_age_days: float = 1.0,
) -> List[ScoredCandidate]:
    now = time.time() if now_ts is None else float(now_ts)
    out: List[ScoredCandidate] = []
    for c in candidates:
        ts = created_at_ts(c.payload)
        age_days = max(0.0, (now - ts) / SECONDS_PER_DAY) if ts is not None else default_age_days
        decay = decay_factor ** age_days
        out.append(
            replace(
                c,
                score=c.score * decay,
                raw_score=c.raw_score if c.raw_score is not None else c.score,
                metadata={**c.metadata, "timeDecay": decay, "ageDays": age_days},
            )
        )
    return out


# -----------------------------
# Filtro de diversidade
# -----------------------------
def _topic_diversity(topics: Sequence[str], seen: Set[str]) -> Optional[float]:
    if not topics:
        return None
    overlap = sum(1 for t in topics if t in seen)
    return 1.0 - overlap / len(topics)


def diversify(
    candidates: Sequence[ScoredCandidate],
    limit: Optional[int] = None,
    settings: DiversitySettings = DiversitySettings(),
) -> List[ScoredCandidate]:
    """
    Filtra/reordena uma lista já ordenada por score. A saída é sempre um subconjunto
    da entrada (nenhum item novo é introduzido).
    """
    if not candidates:
        return []
    cap = len(candidates) if limit is None else max(0, limit)
    if cap == 0:
        return []

    median = statistics.median(c.score for c in candidates)
    first = candidates[0]
    out: List[ScoredCandidate] = [replace(first, applied_boosts=list(first.applied_boosts))]

    seen_categories: Set[str] = {first.category_id} if first.category_id else set()
    seen_authors: Set[str] = {first.author_id} if first.author_id else set()
    seen_topics: Set[str] = set(first.topics)

    for cand in candidates[1:]:
        if len(out) >= cap:
            break

        diversity = 0.0
        boosts: List[str] = []
        if cand.category_id and cand.category_id not in seen_categories:
            diversity += settings.category_bonus
            boosts.append("new_category")
        if cand.author_id and cand.author_id not in seen_authors:
            diversity += settings.author_bonus
            boosts.append("new_author")
        topics = cand.topics
        topic_div = _topic_diversity(topics, seen_topics)
        if topic_div is not None and topic_div > settings.topic_threshold:
            diversity += settings.topic_bonus
            boosts.append("new_topics")

        if not boosts and len(out) >= settings.min_results:
            continue

        serendipity = cand.serendipity
        is_serendipitous = cand.is_serendipitous
        if cand.score < median and diversity >= settings.serendipity_min_diversity:
            serendipity = diversity + settings.serendipity_factor
            is_serendipitous = True
            boosts.append("serendipity")

        out.append(
            replace(
                cand,
                diversity=diversity,
                serendipity=serendipity,
                is_serendipitous=is_serendipitous,
                applied_boosts=[*cand.applied_boosts, *boosts],
            )
        )
        if cand.category_id:
            seen_categories.add(cand.category_id)
        if cand.author_id:
            seen_authors.add(cand.author_id)
        seen_topics.update(topics)

    return out


# -----------------------------
# Re-rank e deduplicação
# -----------------------------
def dedupe_keep_best(candidates: Iterable[ScoredCandidate]) -> List[ScoredCandidate]:
    """Uma entrada por entity_id (a de maior score), preservando a ordem da primeira aparição."""
    items = list(candidates)
    best: Dict[str, ScoredCandidate] = {}
    for c in items:
        current = best.get(c.entity_id)
        if current is None or c.score > current.score:
            best[c.entity_id] = c
    order = dict.fromkeys(c.entity_id for c in items)
    return [best[k] for k in order if k in best]


def rerank_and_dedupe(
    candidates: Sequence[ScoredCandidate],
    settings: DiversitySettings = DiversitySettings(),
) -> List[ScoredCandidate]:
    adjusted = [
        replace(
            c,
            score=c.score
            + settings.diversity_weight * c.diversity
            + settings.serendipity_weight * (c.serendipity or 0.0),
        )
        for c in candidates
        if math.isfinite(c.score)
    ]
    unique = dedupe_keep_best(adjusted)
    return sorted(unique, key=lambda c: c.score, reverse=True)
