# feedreco/retriever/semantic_search.py
"""
Serviço de Busca Semântica - FeedReco

Operações expostas à camada de rotas:
- semantic_search: busca guiada por lente (reescrita → embedding → filtro combinado →
  busca densa com over-fetch → diversidade/re-rank → truncamento → relevanceScore)
- hybrid_search: densa + esparsa fundidas (RRF/DBSF), em paralelo por coleção
- multi_stage_search: vetor grosso sobre muitos candidatos, re-score com o vetor completo
- cross_modal_search: texto ou bytes de imagem contra a coleção multimodal
- multi_vector_search: um prefetch por vetor nomeado da coleção multimodal, fundidos (RRF/DBSF)
- vector_search_with_filters: fan-out por tipo de entidade com ordenação configurável
- find_similar_posts / recommend_posts_for_category: vizinhança de um post / de uma categoria
- is_store_ready: health check do armazenamento vetorial

Degradação graciosa: armazenamento fora do ar, nenhum provedor configurado ou falha da
busca vetorial levam ao fallback por palavras-chave no banco relacional. Erros de entrada
do chamador (InvalidQuery/MalformedFilter) são propagados.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from feedreco.embeddings.embedding_chain import EmbeddingProviderChain
from feedreco.errors import InvalidQuery, ProviderUnavailable
from feedreco.explainer import make_reason
from feedreco.index.filters import FilterSpec, match, time_range_condition, time_range_lower_bound_ms
from feedreco.index.fusion import reciprocal_rank_fusion
from feedreco.index.sparse import query_sparse_vector
from feedreco.index.vector_store import VectorHit, VectorStoreAdapter
from feedreco.ranker import (
    DiversitySettings,
    ScoredCandidate,
    apply_time_decay,
    diversify,
    rerank_and_dedupe,
)
from feedreco.retriever.lenses import (
    Lens,
    LensProfile,
    LensSettings,
    keyword_overlap,
    lens_profile,
    relevance_score,
)
from feedreco.store import EntityFilter, RelationalStore
from feedreco.vectors import truncate_and_normalize
from schemas.payloads import CategoryPayload, PostPayload, created_at_ts
from schemas.results import RankedResult, SearchProvenance
from schemas.search_input import (
    CrossModalSearchOptions,
    FilteredSearchOptions,
    HybridSearchOptions,
    MultiStageSearchOptions,
    MultiVectorSearchOptions,
    SemanticSearchOptions,
    parse_options,
)
from validators.result_checks import apply_result_checks

logger = logging.getLogger(__name__)

KEYWORD_FALLBACK_REASON = "Keyword match"
MODALITIES = ("text", "image", "document")


def _require_query(query: Any) -> str:
    if not isinstance(query, str) or not query.strip():
        raise InvalidQuery("query must be a non-empty string")
    return query.strip()


class SemanticSearchService:
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

        self._collections: Dict[str, str] = {
            "post": getattr(cfg, "COLLECTION_POSTS", "posts"),
            "comment": getattr(cfg, "COLLECTION_COMMENTS", "comments"),
            "category": getattr(cfg, "COLLECTION_CATEGORIES", "categories"),
            "user": getattr(cfg, "COLLECTION_USERS", "users"),
        }
        self._multimodal = getattr(cfg, "COLLECTION_MULTIMODAL", "multimodal_content")
        self._sparse_dim = getattr(cfg, "SPARSE_DIM", 30000)
        self._multimodal_dim = getattr(cfg, "MULTIMODAL_DIM", 768)
        self._overfetch = max(1, int(getattr(cfg, "SEARCH_OVERFETCH_FACTOR", 2)))
        self._stage_factor = max(1, int(getattr(cfg, "MULTI_STAGE_CANDIDATE_FACTOR", 5)))
        self._rrf_k = getattr(cfg, "RRF_K", 60)
        self._keyword_weight = getattr(cfg, "KEYWORD_WEIGHT", 0.6)
        self._signal_weight = getattr(cfg, "LENS_SIGNAL_WEIGHT", 0.4)
        self._decay_factor = getattr(cfg, "TIME_DECAY_FACTOR", 0.95)
        self._default_age_days = getattr(cfg, "DEFAULT_AGE_DAYS", 1.0)
        self._debug = bool(getattr(cfg, "LOG_RETRIEVAL_DEBUG", False))
        self._diversity = DiversitySettings.from_config(cfg)
        self._lens_settings = LensSettings.from_config(cfg)

    @classmethod
    def from_config(
        cls,
        cfg,
        *,
        store: RelationalStore,
        vector_store: Optional[VectorStoreAdapter] = None,
        embedder: Optional[EmbeddingProviderChain] = None,
    ) -> "SemanticSearchService":
        return cls(
            vector_store=vector_store or VectorStoreAdapter.from_config(cfg),
            embedder=embedder or EmbeddingProviderChain.from_config(cfg),
            store=store,
            cfg=cfg,
        )

    # -----------------------------
    # Health
    # -----------------------------
    async def is_store_ready(self) -> bool:
        return await self._vs.is_ready()

    async def _vector_path_available(self) -> bool:
        if not self._embedder.has_providers:
            logger.warning("No embedding provider configured; using keyword fallback")
            return False
        if not await self._vs.is_ready():
            logger.warning("Vector store not ready; using keyword fallback")
            return False
        return True

    # -----------------------------
    # Busca por lente
    # -----------------------------
    async def semantic_search(
        self,
        query: str,
        lens: Union[str, Lens] = Lens.AI_RECOMMENDED,
        options: Union[None, SemanticSearchOptions, Mapping[str, Any]] = None,
    ) -> List[RankedResult]:
        q = _require_query(query)
        profile = lens_profile(lens, self._cfg)
        opts = parse_options(SemanticSearchOptions, options)
        caller_filter = FilterSpec.from_mapping(opts.filters)
        now = self._clock()

        if not await self._vector_path_available():
            return await self._keyword_fallback(
                q, opts.limit, category_id=opts.category_id, lens=profile.lens, time_range=opts.time_range
            )

        rewritten = profile.rewrite(q)
        vector = await self._embedder.embed(rewritten, kind="query")

        flt = self._base_filter("post", category_id=opts.category_id, time_range=opts.time_range, now=now)
        flt = flt.merge(profile.fragment).merge(caller_filter)
        threshold = opts.score_threshold if opts.score_threshold is not None else profile.score_threshold
        if self._debug:
            logger.debug(f"semantic_search lens={profile.lens.value} threshold={threshold} filter={flt}")

        try:
            hits = await self._vs.search_dense(
                self._collections["post"],
                vector,
                limit=opts.limit * self._overfetch,
                score_threshold=threshold,
                filter=flt,
            )
        except ProviderUnavailable as e:
            logger.warning(f"Dense search failed ({e}); using keyword fallback")
            return await self._keyword_fallback(
                q, opts.limit, category_id=opts.category_id, lens=profile.lens, time_range=opts.time_range
            )

        candidates = self._to_candidates(hits)
        if opts.apply_time_decay:
            candidates = apply_time_decay(candidates, self._decay_factor, now, self._default_age_days)
            candidates.sort(key=lambda c: c.score, reverse=True)
        ranked = rerank_and_dedupe(diversify(candidates, settings=self._diversity), self._diversity)
        results = [self._to_result(c, q, "semantic", profile=profile, now=now) for c in ranked[: opts.limit]]
        return apply_result_checks(results, opts.limit)

    # -----------------------------
    # Híbrida (densa + esparsa)
    # -----------------------------
    async def hybrid_search(
        self,
        query: str,
        options: Union[None, HybridSearchOptions, Mapping[str, Any]] = None,
    ) -> List[RankedResult]:
        q = _require_query(query)
        opts = parse_options(HybridSearchOptions, options)
        caller_filter = FilterSpec.from_mapping(opts.filters)
        collections = [self._resolve_collection(c) for c in opts.collections]

        if not await self._vector_path_available():
            return await self._keyword_fallback(q, opts.limit)

        dense = await self._embedder.embed(q, kind="query")
        sparse = query_sparse_vector(q, self._sparse_dim)
        weights = (opts.dense_weight, opts.sparse_weight)

        async def one(collection: str) -> List[VectorHit]:
            try:
                return await self._vs.search_hybrid(
                    collection,
                    dense,
                    sparse,
                    limit=opts.limit,
                    fusion=opts.fusion_method,
                    filter=caller_filter if not caller_filter.is_empty else None,
                    score_threshold=opts.score_threshold,
                    weights=weights,
                )
            except ProviderUnavailable as e:
                logger.warning(f"Hybrid search on '{collection}' failed: {e}")
                return []

        per_collection = await asyncio.gather(*(one(c) for c in collections))
        if not any(per_collection):
            if not await self._vs.is_ready():
                return await self._keyword_fallback(q, opts.limit)
            return []

        if len(per_collection) == 1:
            merged = [(h, h.score) for h in per_collection[0]]
        else:
            by_key: Dict[Tuple[str, str], VectorHit] = {}
            lists = []
            for collection, hits in zip(collections, per_collection):
                lists.append([((collection, h.entity_id), h.score) for h in hits])
                for h in hits:
                    by_key.setdefault((collection, h.entity_id), h)
            fused = reciprocal_rank_fusion(lists, k=self._rrf_k)
            merged = [(by_key[key], score) for key, score in fused]

        results = [
            self._to_result(
                ScoredCandidate(entity_id=h.entity_id, score=score, payload=h.payload),
                q,
                "hybrid",
            )
            for h, score in merged[: opts.limit]
        ]
        return apply_result_checks(results, opts.limit)

    # -----------------------------
    # Multi-estágio
    # -----------------------------
    async def multi_stage_search(
        self,
        query: str,
        options: Union[None, MultiStageSearchOptions, Mapping[str, Any]] = None,
    ) -> List[RankedResult]:
        q = _require_query(query)
        opts = parse_options(MultiStageSearchOptions, options)
        caller_filter = FilterSpec.from_mapping(opts.filters)

        if not await self._vector_path_available():
            return await self._keyword_fallback(q, opts.limit)

        vector = await self._embedder.embed(q, kind="query")
        candidate_limit = opts.candidate_limit or opts.limit * self._stage_factor
        flt = FilterSpec(must=[match("type", "post")]).merge(caller_filter)
        try:
            hits = await self._vs.multi_stage_search(
                self._collections["post"],
                vector,
                candidate_limit=candidate_limit,
                final_limit=opts.limit,
                filter=flt,
                score_threshold=opts.score_threshold,
            )
        except ProviderUnavailable as e:
            logger.warning(f"Multi-stage search failed ({e}); using keyword fallback")
            return await self._keyword_fallback(q, opts.limit)

        results = [self._to_result(c, q, "multi_stage") for c in self._to_candidates(hits)]
        return apply_result_checks(results, opts.limit)

    # -----------------------------
    # Cross-modal
    # -----------------------------
    async def cross_modal_search(
        self,
        query: Union[str, bytes],
        target_modality: str = "text",
        options: Union[None, CrossModalSearchOptions, Mapping[str, Any]] = None,
    ) -> List[RankedResult]:
        if target_modality not in MODALITIES:
            raise InvalidQuery(f"unsupported modality {target_modality!r} (expected one of: {', '.join(MODALITIES)})")
        opts = parse_options(CrossModalSearchOptions, options)
        caller_filter = FilterSpec.from_mapping(opts.filters)

        is_bytes = isinstance(query, (bytes, bytearray))
        if is_bytes:
            if not query:
                raise InvalidQuery("image query must not be empty")
            text = ""
        else:
            text = _require_query(query)

        if not await self._vs.is_ready():
            logger.warning("Vector store not ready; cross-modal search degraded")
            return [] if is_bytes else await self._keyword_fallback(text, opts.limit)

        if is_bytes:
            vector = await self._embedder.embed_image(bytes(query), self._multimodal_dim)
        else:
            vector = truncate_and_normalize(await self._embedder.embed(text, kind="query"), self._multimodal_dim)

        try:
            hits = await self._vs.search_dense(
                self._multimodal,
                vector,
                limit=opts.limit,
                score_threshold=opts.score_threshold,
                filter=caller_filter if not caller_filter.is_empty else None,
                using=target_modality,
            )
        except ProviderUnavailable as e:
            logger.warning(f"Cross-modal search failed: {e}")
            return [] if is_bytes else await self._keyword_fallback(text, opts.limit)

        results = [self._to_result(c, text, "cross_modal") for c in self._to_candidates(hits)]
        return apply_result_checks(results, opts.limit)

    # -----------------------------
    # Multi-vetor (coleção multimodal)
    # -----------------------------
    async def multi_vector_search(
        self,
        query: str,
        options: Union[None, MultiVectorSearchOptions, Mapping[str, Any]] = None,
    ) -> List[RankedResult]:
        """Mesma consulta contra vários vetores nomeados (text, document, image), fundidos por RRF/DBSF."""
        q = _require_query(query)
        opts = parse_options(MultiVectorSearchOptions, options)
        caller_filter = FilterSpec.from_mapping(opts.filters)

        if not await self._vector_path_available():
            return await self._keyword_fallback(q, opts.limit)

        vector = truncate_and_normalize(await self._embedder.embed(q, kind="query"), self._multimodal_dim)
        vectors = {name: vector for name in dict.fromkeys(opts.vectors)}
        try:
            hits = await self._vs.multi_vector_search(
                self._multimodal,
                vectors,
                limit=opts.limit,
                fusion=opts.fusion_method,
                filter=caller_filter if not caller_filter.is_empty else None,
                score_threshold=opts.score_threshold,
            )
        except ProviderUnavailable as e:
            logger.warning(f"Multi-vector search failed ({e}); using keyword fallback")
            return await self._keyword_fallback(q, opts.limit)

        results = [self._to_result(c, q, "multi_vector") for c in self._to_candidates(hits)]
        return apply_result_checks(results, opts.limit)

    # -----------------------------
    # Busca filtrada multi-coleção
    # -----------------------------
    async def vector_search_with_filters(
        self,
        query: str,
        options: Union[None, FilteredSearchOptions, Mapping[str, Any]] = None,
    ) -> List[RankedResult]:
        q = _require_query(query)
        opts = parse_options(FilteredSearchOptions, options)
        now = self._clock()

        if not await self._vector_path_available():
            return await self._keyword_fallback(q, opts.limit, category_id=opts.category_id, time_range=opts.time_range)

        vector = await self._embedder.embed(q, kind="query")
        types = list(dict.fromkeys(opts.types))

        async def one(entity_type: str) -> List[VectorHit]:
            category = opts.category_id if entity_type in ("post", "comment") else None
            flt = self._base_filter(entity_type, category_id=category, time_range=opts.time_range, now=now)
            try:
                return await self._vs.search_dense(
                    self._collections[entity_type],
                    vector,
                    limit=opts.limit,
                    score_threshold=opts.score_threshold,
                    filter=flt,
                )
            except ProviderUnavailable as e:
                logger.warning(f"Filtered search on '{entity_type}' failed: {e}")
                return []

        per_type = await asyncio.gather(*(one(t) for t in types))

        best: Dict[str, VectorHit] = {}
        for entity_type, hits in zip(types, per_type):
            for h in hits:
                key = f"{h.payload.get('type', entity_type)}:{h.entity_id}"
                if key not in best or h.score > best[key].score:
                    best[key] = h

        hits = list(best.values())
        if opts.sort_by == "new":
            hits.sort(key=lambda h: created_at_ts(h.payload) or 0, reverse=True)
        elif opts.sort_by == "top":
            hits.sort(key=lambda h: (h.payload.get("voteCount") or 0, h.score), reverse=True)
        else:
            hits.sort(key=lambda h: h.score, reverse=True)

        results = [self._to_result(c, q, "filtered") for c in self._to_candidates(hits[: opts.limit])]
        return apply_result_checks(results, opts.limit)

    # -----------------------------
    # Vizinhança de post / categoria
    # -----------------------------
    async def find_similar_posts(self, post_id: str, limit: int = 4) -> List[RankedResult]:
        if limit <= 0:
            raise InvalidQuery("limit must be > 0")
        post = await self._store.get_entity("post", str(post_id))
        if post is None:
            logger.info(f"Post '{post_id}' not found; no similar posts")
            return []
        source = PostPayload.from_source(post)

        if await self._vector_path_available():
            vector = await self._embedder.embed(source.index_text(), kind="query")
            flt = FilterSpec(must=[match("type", "post")], must_not=[match("id", str(post_id))])
            try:
                hits = await self._vs.search_dense(self._collections["post"], vector, limit=limit, filter=flt)
            except ProviderUnavailable as e:
                logger.warning(f"Similar-posts search failed: {e}")
            else:
                hits = [h for h in hits if h.entity_id != str(post_id)]
                if hits:
                    results = [self._to_result(c, source.title, "similar") for c in self._to_candidates(hits)]
                    return apply_result_checks(results, limit)

        rows = await self._safe_query(
            EntityFilter(category_id=source.categoryId, exclude_ids=[str(post_id)]),
            limit,
        )
        return self._rows_to_results(rows, source.title, reason="Latest in the same category")

    async def recommend_posts_for_category(self, slug: str, limit: int = 6) -> List[RankedResult]:
        if not slug or not str(slug).strip():
            raise InvalidQuery("category slug must not be empty")
        if limit <= 0:
            raise InvalidQuery("limit must be > 0")
        rows = await self._store.query_entities("category", EntityFilter(slug=str(slug).strip()), None, 1)
        if not rows:
            logger.info(f"Category '{slug}' not found")
            return []
        category = CategoryPayload.from_source(rows[0])

        if await self._vector_path_available():
            vector = await self._embedder.embed(category.index_text() or category.name, kind="query")
            flt = FilterSpec(must=[match("type", "post"), match("categoryId", category.id)])
            try:
                hits = await self._vs.search_dense(self._collections["post"], vector, limit=limit, filter=flt)
            except ProviderUnavailable as e:
                logger.warning(f"Category recommendation search failed: {e}")
            else:
                if hits:
                    results = [self._to_result(c, category.name, "similar") for c in self._to_candidates(hits)]
                    return apply_result_checks(results, limit)

        posts = await self._safe_query(EntityFilter(category_id=category.id), limit)
        return self._rows_to_results(posts, category.name, reason=f"Latest in {category.name}")

    # -----------------------------
    # Fallback por palavras-chave
    # -----------------------------
    async def _keyword_fallback(
        self,
        query: str,
        limit: int,
        *,
        category_id: Optional[str] = None,
        lens: Optional[Lens] = None,
        time_range: Optional[str] = None,
    ) -> List[RankedResult]:
        lower_ms = time_range_lower_bound_ms(time_range, int(self._clock() * 1000))
        flt = EntityFilter(
            text_contains=query,
            category_id=category_id,
            created_after_ts=lower_ms // 1000 if lower_ms is not None else None,
        )
        rows = await self._safe_query(flt, limit)
        return self._rows_to_results(rows, query, reason=KEYWORD_FALLBACK_REASON, lens=lens)

    async def _safe_query(self, flt: EntityFilter, limit: int) -> List[Dict[str, Any]]:
        try:
            return await self._store.query_entities("post", flt, "createdAt desc", limit)
        except Exception as e:
            logger.error(f"Relational fallback query failed: {e}")
            return []

    def _rows_to_results(
        self,
        rows: Sequence[Mapping[str, Any]],
        query: str,
        *,
        reason: str,
        lens: Optional[Lens] = None,
    ) -> List[RankedResult]:
        now = self._clock()
        base = getattr(self._cfg, "FALLBACK_BASE_SCORE", 0.5)
        step = getattr(self._cfg, "FALLBACK_SCORE_STEP", 0.01)
        out: List[RankedResult] = []
        for i, row in enumerate(rows):
            payload = PostPayload.from_source(row).to_payload()
            if lens is not None:
                relevance = relevance_score(
                    query, payload, lens,
                    keyword_weight=self._keyword_weight, signal_weight=self._signal_weight, now_ts=now,
                    signal=self._lens_settings.signal(lens),
                )
            else:
                relevance = round(keyword_overlap(query, payload), 4)
            out.append(
                RankedResult(
                    entity_id=str(payload["id"]),
                    score=round(max(0.0, base - step * i), 4),
                    payload=payload,
                    reason=reason,
                    search_type="fallback",
                    relevance_score=relevance,
                )
            )
        return apply_result_checks(out, len(out))

    # --------- Internos ---------
    def _resolve_collection(self, name: str) -> str:
        known = {**{f"{k}s": v for k, v in self._collections.items()}, **self._collections}
        known.update({v: v for v in self._collections.values()})
        if name not in known:
            raise InvalidQuery(f"unknown collection {name!r}")
        return known[name]

    def _base_filter(
        self,
        entity_type: str,
        *,
        category_id: Optional[str],
        time_range: Optional[str],
        now: float,
    ) -> FilterSpec:
        must = [match("type", entity_type)]
        if category_id:
            must.append(match("categoryId", str(category_id)))
        window = time_range_condition(time_range, int(now * 1000))
        if window is not None:
            must.append(window)
        return FilterSpec(must=must)

    @staticmethod
    def _to_candidates(hits: Sequence[VectorHit]) -> List[ScoredCandidate]:
        return [
            ScoredCandidate(entity_id=h.entity_id, score=h.score, payload=dict(h.payload), raw_score=h.score)
            for h in hits
        ]

    def _to_result(
        self,
        cand: ScoredCandidate,
        query: str,
        search_type: SearchProvenance,
        *,
        profile: Optional[LensProfile] = None,
        now: Optional[float] = None,
    ) -> RankedResult:
        if profile is not None:
            relevance = relevance_score(
                query, cand.payload, profile.lens,
                keyword_weight=self._keyword_weight, signal_weight=self._signal_weight,
                now_ts=self._clock() if now is None else now,
                signal=profile.signal,
            )
        else:
            relevance = round(keyword_overlap(query, cand.payload), 4) if query else None
        return RankedResult(
            entity_id=cand.entity_id,
            score=cand.score,
            payload=cand.payload,
            reason=make_reason(cand, query, profile.phrase if profile else None),
            search_type=search_type,
            relevance_score=relevance,
            is_serendipitous=cand.is_serendipitous,
        )
