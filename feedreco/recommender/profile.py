# feedreco/recommender/profile.py
"""
Perfil de interação do usuário - FeedReco

Deriva do histórico recente (posts, comentários, votos, bookmarks) os sinais usados
pelos ramos da recomendação:
- interações tipadas (view/like/comment/bookmark) com peso
- preferências por categoria (normalizadas pelo máximo)
- interesses (palavras-chave conhecidas no texto produzido pelo usuário)
- marcadores de perfil (content_creator, active_commenter, detailed_writer)
- nível de atividade (low/medium/high)
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from feedreco.store import UserActivity
from feedreco.text import tokenize
from schemas.payloads import related_id, to_timestamp

SECONDS_PER_DAY = 86400.0

INTERACTION_TYPES = ("view", "like", "comment", "bookmark")

DEFAULT_INTERACTION_WEIGHTS = {"view": 0.1, "like": 0.5, "comment": 0.8, "bookmark": 1.0}


@dataclass(frozen=True)
class Interaction:
    post_id: str
    type: str
    weight: float = 1.0
    timestamp: Optional[int] = None
    category_id: Optional[str] = None


@dataclass
class UserInteractionProfile:
    user_id: str
    interactions: List[Interaction] = field(default_factory=list)
    category_preferences: Dict[str, float] = field(default_factory=dict)
    interests: List[str] = field(default_factory=list)
    expertise: List[str] = field(default_factory=list)
    activity_level: str = "low"
    authored_post_ids: Set[str] = field(default_factory=set)
    interaction_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_INTERACTION_WEIGHTS))

    @property
    def seen_post_ids(self) -> Set[str]:
        return {i.post_id for i in self.interactions} | self.authored_post_ids

    def weighted(self, interaction: Interaction) -> float:
        return interaction.weight * self.interaction_weights.get(interaction.type, 0.0)

    def top_categories(self, n: int) -> List[str]:
        ranked = sorted(self.category_preferences.items(), key=lambda kv: (-kv[1], kv[0]))
        return [cid for cid, _ in ranked[: max(0, n)]]

    def ratings(self, now_ts: Optional[float] = None, decay_factor: float = 0.95) -> Dict[str, float]:
        """post_id -> soma das interações ponderadas e decaídas pela idade (dias)."""
        now = time.time() if now_ts is None else now_ts
        out: Dict[str, float] = defaultdict(float)
        for it in self.interactions:
            age_days = max(0.0, (now - it.timestamp) / SECONDS_PER_DAY) if it.timestamp is not None else 0.0
            out[it.post_id] += self.weighted(it) * (decay_factor ** age_days)
        return dict(out)


def _vote_interaction(vote: Dict) -> Optional[Interaction]:
    post_id = vote.get("postId")
    if post_id is None:
        return None
    try:
        value = float(vote.get("value", 1))
    except (TypeError, ValueError):
        value = 1.0
    return Interaction(
        post_id=str(post_id),
        type="like" if value > 0 else "view",
        weight=abs(value),
        timestamp=to_timestamp(vote.get("createdAt")),
        category_id=_str_or_none(vote.get("categoryId")),
    )


def _str_or_none(value) -> Optional[str]:
    return str(value) if value is not None else None


def _activity_level(total: int, high: int, medium: int) -> str:
    if total > high:
        return "high"
    if total > medium:
        return "medium"
    return "low"


def build_interaction_profile(activity: UserActivity, cfg=None) -> UserInteractionProfile:
    weights = getattr(cfg, "INTERACTION_WEIGHTS", None) or dict(DEFAULT_INTERACTION_WEIGHTS)
    keywords = tuple(getattr(cfg, "INTEREST_KEYWORDS", (
        "technology", "ai", "programming", "design", "science", "business", "health",
    )))

    interactions: List[Interaction] = []
    for c in activity.comments:
        if c.get("postId") is None:
            continue
        interactions.append(
            Interaction(
                post_id=str(c["postId"]),
                type="comment",
                timestamp=to_timestamp(c.get("createdAt")),
                category_id=_str_or_none(c.get("categoryId")),
            )
        )
    for v in activity.votes:
        it = _vote_interaction(v)
        if it is not None:
            interactions.append(it)
    for b in activity.bookmarks:
        if b.get("postId") is None:
            continue
        interactions.append(
            Interaction(
                post_id=str(b["postId"]),
                type="bookmark",
                timestamp=to_timestamp(b.get("createdAt")),
                category_id=_str_or_none(b.get("categoryId")),
            )
        )

    # Preferência por categoria: posts próprios contam 1.0; interações pelo peso do tipo
    prefs: Dict[str, float] = defaultdict(float)
    for p in activity.posts:
        cid = related_id(p, "categoryId", "category")
        if cid is not None:
            prefs[cid] += 1.0
    for it in interactions:
        if it.category_id is not None:
            prefs[it.category_id] += it.weight * weights.get(it.type, 0.0)
    top = max(prefs.values(), default=0.0)
    category_preferences = {k: v / top for k, v in prefs.items()} if top > 0 else {}

    texts = [f"{p.get('title') or ''} {p.get('content') or ''}" for p in activity.posts]
    texts += [str(c.get("content") or "") for c in activity.comments]
    bio = activity.user.get("bio")
    if bio:
        texts.append(str(bio))
    tokens = set()
    for t in texts:
        tokens.update(tokenize(t))
    interests = [k for k in keywords if k in tokens]

    expertise: List[str] = []
    if len(activity.posts) > getattr(cfg, "CONTENT_CREATOR_MIN_POSTS", 10):
        expertise.append("content_creator")
    if len(activity.comments) > getattr(cfg, "ACTIVE_COMMENTER_MIN_COMMENTS", 50):
        expertise.append("active_commenter")
    min_chars = getattr(cfg, "DETAILED_WRITER_MIN_CHARS", 1000)
    if any(len(str(p.get("content") or "")) > min_chars for p in activity.posts):
        expertise.append("detailed_writer")

    total = len(activity.posts) + len(activity.comments) + len(activity.votes) + len(activity.bookmarks)
    level = _activity_level(
        total,
        getattr(cfg, "ACTIVITY_HIGH_THRESHOLD", 50),
        getattr(cfg, "ACTIVITY_MEDIUM_THRESHOLD", 20),
    )

    return UserInteractionProfile(
        user_id=activity.user_id,
        interactions=interactions,
        category_preferences=category_preferences,
        interests=interests,
        expertise=expertise,
        activity_level=level,
        authored_post_ids={str(p["id"]) for p in activity.posts if p.get("id") is not None},
        interaction_weights=dict(weights),
    )
