# feedreco/recommender/engine.py
"""
Motor de Recomendação - FeedReco

Pipeline por requisição:
1) Carrega o histórico recente do usuário (sem histórico -> fallback)
2) Ramos em paralelo, cada um isolado (falha = contribui com nada):
   - colaborativo: vetor esparso de ratings -> usuários parecidos -> listas pré-computadas
   - conteúdo: pseudo-documento de interesses/perfil/categorias -> busca densa
   - fatoração heurística (só no modo híbrido): vetor de preferências codificadas
3) Decaimento temporal -> ordenação -> diversidade -> re-rank + dedup
4) Injeção de serendipidade em posições espaçadas
5) Ordenação final (itens injetados mantêm a posição) e truncamento

Se nenhum ramo devolve candidatos, cai para "posts recentes que não são do usuário".
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

import numpy as np

from feedreco.embeddings.embedding_chain import EmbeddingProviderChain
from feedreco.errors import InvalidQuery
from feedreco.explainer import recommendation_reason
from feedreco.index.collections import RATINGS
from feedreco.index.filters import FilterSpec, any_of, match
from feedreco.index.sparse import ratings_sparse_vector
from feedreco.index.vector_store import VectorStoreAdapter
from feedreco.ranker import (
    DiversitySettings,
    ScoredCandidate,
    apply_time_decay,
    diversify,
    rerank_and_dedupe,
)
from feedreco.recommender.profile import INTERACTION_TYPES, UserInteractionProfile, build_interaction_profile
from feedreco.store import EntityFilter, RelationalStore
from feedreco.text import positive_hash
from feedreco.vectors import l2_normalize
from schemas.payloads import PostPayload
from schemas.results import RecommendationMetadata, RecommendationResponse, RecommendationResult
from schemas.search_input import RecommendationOptions, parse_options
from validators.result_checks import apply_result_checks

logger = logging.getLogger(__name__)

FALLBACK_REASON = "Recent popular content"


class RecommendationEngine:
    def __init__(
        self,
        *,
        vector_store: VectorStoreAdapter,
        embedder: EmbeddingProviderChain,
        store: RelationalStore,
        cfg=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._vs = vector_store
        self._embedder = embedder
        self._store = store
        self._cfg = cfg
        self._clock = clock

        self._posts = getattr(cfg, "COLLECTION_POSTS", "posts")
        self._recommendations = getattr(cfg, "COLLECTION_RECOMMENDATIONS", "user_recommendations")
        self._embed_dim = getattr(cfg, "EMBED_DIM", 1024)
        self._sparse_dim = getattr(cfg, "SPARSE_DIM", 30000)

    @classmethod
    def from_config(
        cls,
        cfg,
        *,
        store: RelationalStore,
        vector_store: Optional[VectorStoreAdapter] = None,
        embedder: Optional[EmbeddingProviderChain] = None,
    ) -> "RecommendationEngine":
        return cls(
            vector_store=vector_store or VectorStoreAdapter.from_config(cfg),
            embedder=embedder or EmbeddingProviderChain.from_config(cfg),
            store=store,
            cfg=cfg,
        )

    def _c(self, name: str, default: Any) -> Any:
        return getattr(self._cfg, name, default)

    # -----------------------------
    # Entrada pública
    # -----------------------------
    async def recommend(
        self,
        user_id: str,
        options: Union[None, RecommendationOptions, Mapping[str, Any]] = None,
    ) -> RecommendationResponse:
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidQuery("user_id must be a non-empty string")
        user_id = user_id.strip()
        opts = parse_options(RecommendationOptions, options)
        started = time.perf_counter()
        now = self._clock()

        try:
            activity = await self._store.get_user_profile(user_id)
        except Exception as e:
            logger.error(f"Failed to load profile for user '{user_id}': {e}")
            activity = None

        if activity is None or not activity.has_history:
            return await self._fallback(user_id, opts, started, "no_history")

        if not await self._vs.is_ready():
            logger.warning("Vector store not ready; serving fallback recommendations")
            return await self._fallback(user_id, opts, started, "vector_store_unavailable")

        profile = build_interaction_profile(activity, self._cfg)
        excluded = profile.seen_post_ids | {str(i) for i in opts.exclude_ids}

        branches: Dict[str, Awaitable[List[ScoredCandidate]]] = {}
        if opts.algorithm in ("collaborative", "hybrid"):
            branches["collaborative"] = self._collaborative(profile, opts.limit, excluded, now)
        if opts.algorithm in ("content", "hybrid"):
            branches["content"] = self._content_based(profile, opts.limit, excluded)
        if opts.algorithm == "hybrid":
            branches["matrix_factorization"] = self._factorization(profile, opts.limit, excluded)

        outputs = await asyncio.gather(*(self._guard(name, coro) for name, coro in branches.items()))
        algorithms_used = [name for name, out in zip(branches, outputs) if out]
        candidates = [c for out in outputs for c in out if c.entity_id not in excluded]

        if not candidates:
            return await self._fallback(user_id, opts, started, "no_candidates")

        settings = DiversitySettings.from_config(
            self._cfg,
            diversity_threshold=opts.diversity_threshold,
            serendipity_factor=opts.serendipity_factor,
        )
        if opts.time_decay:
            decay = opts.decay_factor if opts.decay_factor is not None else self._c("TIME_DECAY_FACTOR", 0.95)
            candidates = apply_time_decay(candidates, decay, now, self._c("DEFAULT_AGE_DAYS", 1.0))
        candidates.sort(key=lambda c: c.score, reverse=True)
        if opts.diversity_enabled:
            candidates = diversify(candidates, settings=settings)
        ranked = rerank_and_dedupe(candidates, settings)[: opts.limit]

        pinned: Set[str] = set()
        if opts.serendipity_enabled:
            ranked, pinned = await self._inject_serendipity(
                profile, ranked, excluded, settings.serendipity_factor
            )
            if pinned:
                algorithms_used.append("serendipity")

        final = self._final_order(ranked, pinned)[: opts.limit]
        results = apply_result_checks([self._to_result(c) for c in final], opts.limit)

        return RecommendationResponse(
            recommendations=results,
            metadata=RecommendationMetadata(
                total_processing_time_ms=self._elapsed_ms(started),
                algorithms_used=algorithms_used,
                diversity_applied=opts.diversity_enabled,
                personalized_for_user=True,
            ),
        )

    async def recommend_popular(self, limit: int = 6) -> RecommendationResponse:
        """Feed não personalizado (visitante anônimo): posts mais recentes, sem consultar vetores."""
        if limit <= 0:
            raise InvalidQuery("limit must be > 0")
        opts = parse_options(RecommendationOptions, {"limit": limit})
        return await self._fallback(None, opts, time.perf_counter(), "not_personalized")

    # -----------------------------
    # Ramos
    # -----------------------------
    async def _guard(self, name: str, branch: Awaitable[List[ScoredCandidate]]) -> List[ScoredCandidate]:
        try:
            return await branch
        except Exception as e:
            logger.warning(f"Recommendation branch '{name}' failed: {type(e).__name__}: {e}")
            return []

    async def _collaborative(
        self,
        profile: UserInteractionProfile,
        limit: int,
        excluded: Set[str],
        now: float,
    ) -> List[ScoredCandidate]:
        if len(profile.interactions) < self._c("MIN_COLLABORATIVE_INTERACTIONS", 3):
            return []

        ratings = profile.ratings(now, self._c("TIME_DECAY_FACTOR", 0.95))
        sparse = ratings_sparse_vector(ratings, self._sparse_dim)
        neighbours = await self._vs.search_sparse(
            self._recommendations,
            sparse,
            limit=self._c("COLLABORATIVE_NEIGHBORS", 50),
            filter=FilterSpec(must_not=[match("userId", profile.user_id)]),
            using=RATINGS,
        )

        scores: Dict[str, float] = {}
        for hit in neighbours:
            if str(hit.payload.get("userId")) == profile.user_id:
                continue
            for rank, post_id in enumerate(hit.payload.get("recommendedPosts") or []):
                pid = str(post_id)
                if pid in excluded:
                    continue
                scores[pid] = scores.get(pid, 0.0) + hit.score * (1.0 / (rank + 1))

        n = math.ceil(self._c("COLLABORATIVE_SHARE", 0.6) * limit)
        top = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)[:n]
        if not top:
            return []
        payloads = await self._vs.retrieve_payloads(self._posts, [pid for pid, _ in top])
        return [
            ScoredCandidate(
                entity_id=pid,
                score=score,
                payload=payloads.get(pid, {"id": pid}),
                algorithm="collaborative",
                raw_score=score,
            )
            for pid, score in top
        ]

    async def _content_based(
        self,
        profile: UserInteractionProfile,
        limit: int,
        excluded: Set[str],
    ) -> List[ScoredCandidate]:
        preferred = profile.top_categories(self._c("PREFERRED_CATEGORY_LIMIT", 5))
        doc = " ".join(
            [*profile.interests, *profile.expertise, *(f"category_preference_{cid}" for cid in preferred)]
        )
        if not doc:
            return []

        vector = await self._embedder.embed(doc, kind="query")
        n = math.ceil(self._c("CONTENT_SHARE", 0.4) * limit)
        threshold = self._c("RECOMMENDATION_SCORE_THRESHOLD", 0.3)
        base = self._post_filter(profile.user_id)

        searches = [self._vs.search_dense(self._posts, vector, n * 2, threshold, base)]
        if preferred:
            restricted = base.merge(FilterSpec(must=[any_of("categoryId", preferred)]))
            searches.append(self._vs.search_dense(self._posts, vector, n * 2, threshold, restricted))
        general, *restricted_hits = await asyncio.gather(*searches)

        # preferência "should" como bônus: categorias preferidas ganham um pequeno boost
        boost = self._c("PREFERRED_CATEGORY_BOOST", 0.05)
        best: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        for h in general:
            best[h.entity_id] = (h.score, h.payload)
        for hits in restricted_hits:
            for h in hits:
                boosted = h.score + boost
                if h.entity_id not in best or boosted > best[h.entity_id][0]:
                    best[h.entity_id] = (boosted, h.payload)

        ranked = sorted(
            ((eid, s, p) for eid, (s, p) in best.items() if eid not in excluded),
            key=lambda t: t[1],
            reverse=True,
        )
        return [
            ScoredCandidate(entity_id=eid, score=score, payload=payload, algorithm="content", raw_score=score)
            for eid, score, payload in ranked[:n]
        ]

    def factorization_vector(self, profile: UserInteractionProfile) -> np.ndarray:
        """
        Vetor sem treino que imita fatores latentes:
        - fatia [0, CATEGORY_SLOTS): preferência por categoria em hash(categoryId) % slots
        - fatia seguinte: peso de cada interação em slots + (i % interaction_slots) + tipo * stride
        Escalado pelo multiplicador do nível de atividade e normalizado (L2).
        """
        dim = self._embed_dim
        vec = np.zeros(dim, dtype=np.float32)
        category_slots = self._c("FACTORIZATION_CATEGORY_SLOTS", 100)
        interaction_slots = self._c("FACTORIZATION_INTERACTION_SLOTS", 200)
        stride = self._c("FACTORIZATION_TYPE_STRIDE", 50)

        for cid, pref in profile.category_preferences.items():
            vec[positive_hash(cid) % category_slots % dim] += pref
        for i, it in enumerate(profile.interactions):
            type_index = INTERACTION_TYPES.index(it.type) if it.type in INTERACTION_TYPES else 0
            idx = (category_slots + (i % interaction_slots) + type_index * stride) % dim
            vec[idx] += profile.weighted(it)

        multipliers = self._c("ACTIVITY_MULTIPLIERS", None) or {"low": 0.5, "medium": 1.0, "high": 1.5}
        vec *= multipliers.get(profile.activity_level, 1.0)
        if not np.any(vec):
            return vec
        return l2_normalize(vec)

    async def _factorization(
        self,
        profile: UserInteractionProfile,
        limit: int,
        excluded: Set[str],
    ) -> List[ScoredCandidate]:
        vector = self.factorization_vector(profile)
        if not np.any(vector):
            return []
        n = math.ceil(self._c("FACTORIZATION_SHARE", 0.3) * limit)
        penalty = self._c("FACTORIZATION_PENALTY", 0.8)
        hits = await self._vs.search_dense(self._posts, vector, n * 2, None, self._post_filter(profile.user_id))
        out = [
            ScoredCandidate(
                entity_id=h.entity_id,
                score=h.score * penalty,
                payload=h.payload,
                algorithm="matrix_factorization",
                raw_score=h.score,
            )
            for h in hits
            if h.entity_id not in excluded
        ]
        return out[:n]

    # -----------------------------
    # Serendipidade
    # -----------------------------
    async def _inject_serendipity(
        self,
        profile: UserInteractionProfile,
        ranked: List[ScoredCandidate],
        excluded: Set[str],
        factor: float,
    ) -> Tuple[List[ScoredCandidate], Set[str]]:
        try:
            picks = await self._serendipity_candidates(profile, excluded, factor)
        except Exception as e:
            logger.warning(f"Serendipity injection skipped: {type(e).__name__}: {e}")
            return ranked, set()

        present = {c.entity_id for c in ranked}
        out = list(ranked)
        pinned: Set[str] = set()
        interval = self._c("SERENDIPITY_INTERVAL", 3)
        for pick in picks:
            if pick.entity_id in present:
                continue
            pos = min((len(pinned) + 1) * interval, len(out))
            out.insert(pos, pick)
            present.add(pick.entity_id)
            pinned.add(pick.entity_id)
        return out, pinned

    async def _serendipity_candidates(
        self,
        profile: UserInteractionProfile,
        excluded: Set[str],
        factor: float,
    ) -> List[ScoredCandidate]:
        categories = await self._store.query_entities("category", None, None, 100)
        unexplored = [
            str(c["id"]) for c in categories
            if c.get("id") is not None and str(c["id"]) not in profile.category_preferences
        ][: self._c("SERENDIPITY_MAX_CATEGORIES", 5)]
        if not unexplored:
            return []

        query = self._c("SERENDIPITY_QUERY", "high quality interesting discussions")
        vector = await self._embedder.embed(query, kind="query")
        count = self._c("SERENDIPITY_INJECT_COUNT", 3)
        flt = self._post_filter(profile.user_id).merge(FilterSpec(must=[any_of("categoryId", unexplored)]))
        hits = await self._vs.search_dense(self._posts, vector, count * 2, None, flt)
        picks: List[ScoredCandidate] = []
        for h in hits:
            if h.entity_id in excluded:
                continue
            picks.append(
                ScoredCandidate(
                    entity_id=h.entity_id,
                    score=h.score * factor,
                    payload=h.payload,
                    algorithm="serendipity",
                    serendipity=h.score,
                    is_serendipitous=True,
                    raw_score=h.score,
                )
            )
            if len(picks) >= count:
                break
        return picks

    @staticmethod
    def _final_order(ranked: List[ScoredCandidate], pinned: Set[str]) -> List[ScoredCandidate]:
        """Itens injetados ficam na posição em que entraram; o resto é ordenado por score."""
        slots = {i: c for i, c in enumerate(ranked) if c.entity_id in pinned}
        rest = iter(sorted((c for c in ranked if c.entity_id not in pinned), key=lambda c: c.score, reverse=True))
        return [slots[i] if i in slots else next(rest) for i in range(len(ranked))]

    # -----------------------------
    # Fallback
    # -----------------------------
    async def _fallback(
        self,
        user_id: Optional[str],
        opts: RecommendationOptions,
        started: float,
        reason: str,
    ) -> RecommendationResponse:
        try:
            rows = await self._store.query_entities(
                "post",
                EntityFilter(exclude_user_id=user_id, exclude_ids=list(opts.exclude_ids)),
                "createdAt desc",
                opts.limit,
            )
        except Exception as e:
            logger.error(f"Fallback recommendation query failed: {e}")
            rows = []

        base = self._c("FALLBACK_BASE_SCORE", 0.5)
        step = self._c("FALLBACK_SCORE_STEP", 0.01)
        results = []
        for i, row in enumerate(rows):
            payload = PostPayload.from_source(row)
            results.append(
                RecommendationResult(
                    entity_id=payload.id,
                    score=round(max(0.0, base - step * i), 4),
                    reason=FALLBACK_REASON,
                    algorithm="fallback",
                    metadata=self._result_metadata(payload.to_payload()),
                )
            )
        logger.info(f"Fallback recommendations for '{user_id or '*'}' ({reason}): {len(results)} item(s)")
        return RecommendationResponse(
            recommendations=apply_result_checks(results, opts.limit),
            metadata=RecommendationMetadata(
                total_processing_time_ms=self._elapsed_ms(started),
                algorithms_used=["fallback"],
                diversity_applied=False,
                personalized_for_user=False,
                fallback_reason=reason,
            ),
        )

    # --------- Internos ---------
    @staticmethod
    def _post_filter(user_id: str) -> FilterSpec:
        return FilterSpec(must=[match("type", "post")], must_not=[match("userId", user_id)])

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000.0, 2)

    @staticmethod
    def _result_metadata(payload: Mapping[str, Any]) -> Dict[str, Any]:
        keys = ("title", "categoryId", "categoryName", "userId", "createdAt", "createdAtTs")
        return {k: payload[k] for k in keys if payload.get(k) is not None}

    def _to_result(self, cand: ScoredCandidate) -> RecommendationResult:
        metadata = self._result_metadata(cand.payload)
        if cand.applied_boosts:
            metadata["appliedBoosts"] = list(cand.applied_boosts)
        if "timeDecay" in cand.metadata:
            metadata["timeDecay"] = round(cand.metadata["timeDecay"], 4)
        return RecommendationResult(
            entity_id=cand.entity_id,
            score=cand.score,
            reason=recommendation_reason(cand),
            algorithm=cand.algorithm,
            diversity_score=cand.diversity,
            serendipity_score=cand.serendipity,
            metadata=metadata,
        )
