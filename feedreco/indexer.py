# feedreco/indexer.py
"""
Content Indexer - mantém as coleções do Qdrant sincronizadas com o conteúdo do fórum.

Responsável por:
- Indexar posts, comentários, categorias e usuários (payload tipado + vetor denso + esparso)
- Indexação em lote de posts via embed_batch, pulando conteúdo que não mudou (hash)
- Indexação multimodal (texto, imagem, documento)
- Remoção de documentos
- Snapshot colaborativo por usuário (vetor esparso de ratings + posts recomendados)
- Atualização em lote dos snapshots, contando falhas sem interromper o lote
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from feedreco.embeddings.embedding_chain import EmbeddingProviderChain
from feedreco.errors import InvalidQuery
from feedreco.index.collections import DENSE, RATINGS, SPARSE
from feedreco.index.sparse import document_sparse_vector, ratings_sparse_vector
from feedreco.index.vector_store import VectorStoreAdapter
from feedreco.recommender.profile import build_interaction_profile
from feedreco.store import EntityFilter, RelationalStore
from feedreco.vectors import truncate_and_normalize
from schemas.payloads import BasePayload, CategoryPayload, CommentPayload, PostPayload, UserPayload

logger = logging.getLogger(__name__)

USER_PROFILE_TYPE = "user_profile"


class ContentIndexer:
    def __init__(
        self,
        *,
        vector_store: VectorStoreAdapter,
        embedder: EmbeddingProviderChain,
        store: Optional[RelationalStore] = None,
        cfg=None,
        clock=time.time,
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
            "multimodal": getattr(cfg, "COLLECTION_MULTIMODAL", "multimodal_content"),
            "recommendations": getattr(cfg, "COLLECTION_RECOMMENDATIONS", "user_recommendations"),
        }
        self._sparse_dim = getattr(cfg, "SPARSE_DIM", 30000)
        self._multimodal_dim = getattr(cfg, "MULTIMODAL_DIM", 768)

        # Cache para evitar re-embedding de conteúdo inalterado
        self._content_hashes: Dict[str, str] = {}

    @classmethod
    def from_config(
        cls,
        cfg,
        *,
        store: Optional[RelationalStore] = None,
        vector_store: Optional[VectorStoreAdapter] = None,
        embedder: Optional[EmbeddingProviderChain] = None,
    ) -> "ContentIndexer":
        return cls(
            vector_store=vector_store or VectorStoreAdapter.from_config(cfg),
            embedder=embedder or EmbeddingProviderChain.from_config(cfg),
            store=store,
            cfg=cfg,
        )

    # -----------------------------
    # Entidades individuais
    # -----------------------------
    async def index_post(self, post: Mapping[str, Any]) -> bool:
        return await self._index_one("post", PostPayload.from_source(post))

    async def index_comment(self, comment: Mapping[str, Any]) -> bool:
        return await self._index_one("comment", CommentPayload.from_source(comment))

    async def index_category(self, category: Mapping[str, Any]) -> bool:
        return await self._index_one("category", CategoryPayload.from_source(category))

    async def index_user(self, user: Mapping[str, Any]) -> bool:
        return await self._index_one("user", UserPayload.from_source(user))

    async def _index_one(self, entity_type: str, payload: BasePayload) -> bool:
        text = payload.index_text()
        dense = await self._embedder.embed(text, kind="passage")
        ok = await self._vs.upsert(
            self._collections[entity_type],
            payload.id,
            {DENSE: dense, SPARSE: document_sparse_vector(text, self._sparse_dim)},
            payload.to_payload(),
        )
        if ok:
            self._content_hashes[f"{entity_type}:{payload.id}"] = self._hash(text)
            logger.debug(f"Indexed {entity_type} '{payload.id}'")
        return ok

    # -----------------------------
    # Lote
    # -----------------------------
    async def index_posts(self, posts: Iterable[Mapping[str, Any]], force: bool = False) -> Dict[str, int]:
        """
        Indexa posts em lote (um embed_batch + um upsert por lote de embedding).

        Returns:
            Dict com estatísticas: total_processed, indexed, skipped, errors
        """
        stats = {"total_processed": 0, "indexed": 0, "skipped": 0, "errors": 0}
        pending: List[PostPayload] = []
        for raw in posts:
            stats["total_processed"] += 1
            try:
                payload = PostPayload.from_source(raw)
            except (KeyError, ValueError) as e:
                logger.error(f"Invalid post record {raw.get('id')!r}: {e}")
                stats["errors"] += 1
                continue
            key = f"post:{payload.id}"
            if not force and self._content_hashes.get(key) == self._hash(payload.index_text()):
                stats["skipped"] += 1
                continue
            pending.append(payload)

        if not pending:
            logger.info(f"Post indexing: nothing to do ({stats})")
            return stats

        texts = [p.index_text() for p in pending]
        vectors = await self._embedder.embed_batch(texts, kind="passage")
        collection = self._collections["post"]
        points = [
            self._vs.build_point(
                collection,
                p.id,
                {DENSE: vec, SPARSE: document_sparse_vector(text, self._sparse_dim)},
                p.to_payload(),
            )
            for p, text, vec in zip(pending, texts, vectors)
        ]
        if await self._vs.upsert_points(collection, points):
            stats["indexed"] += len(points)
            for p, text in zip(pending, texts):
                self._content_hashes[f"post:{p.id}"] = self._hash(text)
        else:
            stats["errors"] += len(points)

        logger.info(f"Post indexing completed: {stats}")
        return stats

    # -----------------------------
    # Multimodal
    # -----------------------------
    async def index_multimodal_content(
        self,
        entity_id: str,
        text: Optional[str] = None,
        image: Optional[bytes] = None,
        document: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        if not text and not image and not document:
            raise InvalidQuery("multimodal indexing needs at least one of text, image or document")

        vectors: Dict[str, Any] = {}
        if text:
            vectors["text"] = truncate_and_normalize(await self._embedder.embed(text, kind="passage"),
                                                     self._multimodal_dim)
        if image:
            vectors["image"] = await self._embedder.embed_image(image, self._multimodal_dim)
        if document:
            vectors["document"] = truncate_and_normalize(await self._embedder.embed(document, kind="passage"),
                                                         self._multimodal_dim)

        body = dict(payload or {})
        body["modalities"] = sorted(vectors)
        body.setdefault("createdAtTs", int(self._clock()))
        return await self._vs.upsert(self._collections["multimodal"], entity_id, vectors, body)

    # -----------------------------
    # Remoção
    # -----------------------------
    async def delete_document(self, entity_id: str, entity_type: str) -> bool:
        if entity_type not in self._collections:
            raise InvalidQuery(f"unknown entity type {entity_type!r}")
        ok = await self._vs.delete(self._collections[entity_type], entity_id)
        if ok:
            self._content_hashes.pop(f"{entity_type}:{entity_id}", None)
        return ok

    # -----------------------------
    # Snapshot colaborativo
    # -----------------------------
    async def index_user_interactions(self, user_id: str) -> bool:
        """
        Grava no `user_recommendations` o vetor esparso de ratings do usuário e a lista
        de posts recomendados (top posts das suas categorias preferidas), consumida pelo
        ramo colaborativo de outros usuários.
        """
        if self._store is None:
            raise RuntimeError("index_user_interactions requires a relational store")
        activity = await self._store.get_user_profile(user_id)
        if activity is None or not activity.has_history:
            logger.info(f"User '{user_id}' has no history; snapshot skipped")
            return False

        profile = build_interaction_profile(activity, self._cfg)
        ratings = profile.ratings(self._clock(), getattr(self._cfg, "TIME_DECAY_FACTOR", 0.95))
        sparse = ratings_sparse_vector(ratings, self._sparse_dim)
        if sparse.is_empty:
            logger.info(f"User '{user_id}' has no rated interactions; snapshot skipped")
            return False

        top = profile.top_categories(getattr(self._cfg, "SNAPSHOT_TOP_CATEGORIES", 3))
        recommended: List[str] = []
        if top:
            rows = await self._store.query_entities(
                "post",
                EntityFilter(category_ids=top, exclude_user_id=user_id, exclude_ids=sorted(profile.seen_post_ids)),
                "votes desc",
                getattr(self._cfg, "SNAPSHOT_MAX_POSTS", 50),
            )
            recommended = [str(r["id"]) for r in rows if r.get("id") is not None]

        payload = {
            "type": USER_PROFILE_TYPE,
            "userId": str(user_id),
            "recommendedPosts": recommended,
            "topCategories": top,
            "interests": profile.interests,
            "activityLevel": profile.activity_level,
            "updatedAtTs": int(self._clock()),
        }
        return await self._vs.upsert(self._collections["recommendations"], user_id, {RATINGS: sparse}, payload)

    async def batch_update_recommendations(
        self,
        user_ids: Sequence[str],
        concurrency: int = 8,
    ) -> Dict[str, int]:
        stats = {"total_processed": len(user_ids), "updated": 0, "skipped": 0, "errors": 0}
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def one(uid: str) -> None:
            async with semaphore:
                try:
                    updated = await self.index_user_interactions(uid)
                except Exception as e:
                    logger.error(f"Error updating snapshot for user {uid}: {e}")
                    stats["errors"] += 1
                    return
            stats["updated" if updated else "skipped"] += 1

        await asyncio.gather(*(one(uid) for uid in user_ids))
        logger.info(f"Recommendation snapshots updated: {stats}")
        return stats

    @staticmethod
    def _hash(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()
