# feedreco/index/vector_store.py
"""
VectorStoreAdapter — adaptador assíncrono sobre o Qdrant (qdrant-client).

Responsável por:
- Checagem de prontidão (/readyz) com timeout agressivo: decide se os serviços
  devem cair para a busca por palavras-chave no banco relacional.
- Ciclo de vida das coleções: cria as ausentes, valida as existentes
  (registra divergências, nunca recria nem migra).
- Upsert de pontos com correção de dimensão (pad/truncate + warning) e
  derivação automática do vetor grosso (dense_coarse) usado no multi-estágio.
- Primitivas de busca: densa, esparsa, híbrida (RRF/DBSF), multi-vetor e multi-estágio.

Política de erro:
- Falhas de busca viram ProviderUnavailable (quem chama decide o fallback).
- A busca híbrida que falha cai para densa na mesma coleção.
- Falhas de escrita são registradas e retornam False.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import httpx
import numpy as np
from qdrant_client import AsyncQdrantClient, models

from feedreco.errors import ErrorKind, ProviderUnavailable
from feedreco.index.collections import (
    DENSE,
    DENSE_COARSE,
    SPARSE,
    CollectionDefinition,
    PointId,
    PointIdRegistry,
    default_collections,
)
from feedreco.index.filters import FilterSpec
from feedreco.index.fusion import FusionMethod, fuse
from feedreco.index.sparse import SparseVector
from feedreco.vectors import fit_dimension, truncate_and_normalize

logger = logging.getLogger(__name__)

VectorInput = Union[np.ndarray, Sequence[float], SparseVector]

_DISTANCES = {
    "cosine": models.Distance.COSINE,
    "dot": models.Distance.DOT,
    "euclid": models.Distance.EUCLID,
}


@dataclass
class VectorHit:
    entity_id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)
    point_id: Optional[PointId] = None


@dataclass
class CollectionStatus:
    name: str
    exists: bool
    points_count: Optional[int] = None
    problems: List[str] = field(default_factory=list)


class VectorStoreAdapter:
    def __init__(
        self,
        client: AsyncQdrantClient,
        *,
        url: str,
        definitions: Sequence[CollectionDefinition],
        id_registry: Optional[PointIdRegistry] = None,
        readiness_timeout: float = 0.5,
        http_client: Optional[httpx.AsyncClient] = None,
        fusion_location: str = "server",
        rrf_k: int = 60,
        prefetch_factor: int = 2,
        strict_dimensions: bool = False,
    ) -> None:
        self._client = client
        self._url = url.rstrip("/")
        self._definitions = {d.name: d for d in definitions}
        self._ids = id_registry or PointIdRegistry()
        self._readiness_timeout = readiness_timeout
        self._http_client = http_client
        self._fusion_location = fusion_location
        self._rrf_k = rrf_k
        self._prefetch_factor = max(1, int(prefetch_factor))
        self._strict = strict_dimensions

    # --------- Fábrica a partir da FeedRecoConfig ---------
    @classmethod
    def from_config(
        cls,
        cfg,
        *,
        client: Optional[AsyncQdrantClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "VectorStoreAdapter":
        client = client or AsyncQdrantClient(
            url=cfg.QDRANT_URL,
            api_key=getattr(cfg, "QDRANT_API_KEY", None),
            timeout=getattr(cfg, "QDRANT_TIMEOUT", 10),
        )
        return cls(
            client,
            url=cfg.QDRANT_URL,
            definitions=default_collections(cfg),
            id_registry=PointIdRegistry(
                getattr(cfg, "POINT_ID_STRATEGY", "hash"),
                max_entries=getattr(cfg, "POINT_ID_REGISTRY_MAX", 100_000),
            ),
            readiness_timeout=getattr(cfg, "READINESS_TIMEOUT_S", 0.5),
            http_client=http_client,
            fusion_location=getattr(cfg, "HYBRID_FUSION_LOCATION", "server"),
            rrf_k=getattr(cfg, "RRF_K", 60),
            prefetch_factor=getattr(cfg, "PREFETCH_FACTOR", 2),
            strict_dimensions=getattr(cfg, "STRICT_DIMENSIONS", False),
        )

    @property
    def definitions(self) -> List[CollectionDefinition]:
        return list(self._definitions.values())

    @property
    def id_registry(self) -> PointIdRegistry:
        return self._ids

    def definition(self, collection: str) -> Optional[CollectionDefinition]:
        return self._definitions.get(collection)

    async def close(self) -> None:
        await self._client.close()

    # -----------------------------
    # Prontidão e coleções
    # -----------------------------
    async def is_ready(self) -> bool:
        url = f"{self._url}/readyz"
        try:
            if self._http_client is not None:
                resp = await self._http_client.get(url, timeout=self._readiness_timeout)
            else:
                async with httpx.AsyncClient(timeout=self._readiness_timeout) as http:
                    resp = await http.get(url)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.debug(f"Vector store readiness check failed: {type(e).__name__}")
            return False
        return resp.status_code == 200

    async def ensure_collections(self, definitions: Optional[Sequence[CollectionDefinition]] = None) -> bool:
        """
        Cria coleções ausentes e valida as existentes.
        Retorna False se o armazenamento não está pronto (quem chama usa o fallback).
        """
        if not await self.is_ready():
            logger.warning("Vector store not ready; skipping collection initialization")
            return False

        defs = list(definitions) if definitions is not None else self.definitions
        for d in defs:
            self._definitions.setdefault(d.name, d)

        try:
            existing = {c.name for c in (await self._client.get_collections()).collections}
        except Exception as e:
            logger.error(f"Failed to list collections: {e}")
            return False

        for d in defs:
            try:
                if d.name in existing:
                    for problem in await self.validate_collection(d):
                        logger.warning(f"Collection '{d.name}': {problem}")
                else:
                    await self._create_collection(d)
            except Exception as e:
                logger.error(f"Failed to ensure collection '{d.name}': {e}")
        return True

    async def validate_collection(self, definition: CollectionDefinition) -> List[str]:
        """Compara a configuração real com a declarada; devolve a lista de divergências."""
        info = await self._client.get_collection(collection_name=definition.name)
        params = info.config.params
        problems: List[str] = []

        vectors = params.vectors
        if definition.vectors:
            if not isinstance(vectors, Mapping):
                problems.append("expected named vectors, found a single unnamed vector config")
            else:
                for spec in definition.vectors:
                    actual = vectors.get(spec.name)
                    if actual is None:
                        problems.append(f"missing named vector '{spec.name}'")
                    elif actual.size != spec.size:
                        problems.append(f"vector '{spec.name}' has size {actual.size}, expected {spec.size}")

        sparse = params.sparse_vectors or {}
        for name in definition.sparse_vectors:
            if name not in sparse:
                problems.append(f"missing sparse vector '{name}'")
        return problems

    async def collection_status(self) -> List[CollectionStatus]:
        out: List[CollectionStatus] = []
        existing = {c.name for c in (await self._client.get_collections()).collections}
        for d in self.definitions:
            if d.name not in existing:
                out.append(CollectionStatus(name=d.name, exists=False))
                continue
            info = await self._client.get_collection(collection_name=d.name)
            out.append(
                CollectionStatus(
                    name=d.name,
                    exists=True,
                    points_count=info.points_count,
                    problems=await self.validate_collection(d),
                )
            )
        return out

    async def _create_collection(self, d: CollectionDefinition) -> None:
        await self._client.create_collection(
            collection_name=d.name,
            vectors_config={
                v.name: models.VectorParams(size=v.size, distance=_DISTANCES[v.distance]) for v in d.vectors
            },
            sparse_vectors_config={name: models.SparseVectorParams() for name in d.sparse_vectors} or None,
        )
        logger.info(f"Created collection '{d.name}'")

        indexes = [(f, models.PayloadSchemaType.KEYWORD) for f in d.keyword_indexes]
        indexes += [(f, models.PayloadSchemaType.INTEGER) for f in d.integer_indexes]
        for field_name, schema in indexes:
            try:
                await self._client.create_payload_index(
                    collection_name=d.name, field_name=field_name, field_schema=schema
                )
            except Exception as e:
                logger.warning(f"Failed to create payload index '{field_name}' on '{d.name}': {e}")

    # -----------------------------
    # Escrita
    # -----------------------------
    def build_point(
        self,
        collection: str,
        entity_id: Union[str, int],
        vectors: Mapping[str, VectorInput],
        payload: Optional[Mapping[str, Any]] = None,
    ) -> models.PointStruct:
        definition = self.definition(collection)
        struct: Dict[str, Any] = {}

        for name, vec in vectors.items():
            if isinstance(vec, SparseVector):
                if not vec.is_empty:
                    struct[name] = vec.to_qdrant()
                continue
            spec = definition.vector(name) if definition else None
            if spec is not None:
                arr = fit_dimension(vec, spec.size, context=f"{collection}.{name}", strict=self._strict)
            else:
                arr = np.asarray(vec, dtype=np.float32).reshape(-1)
            struct[name] = arr.tolist()

        coarse = definition.vector(DENSE_COARSE) if definition else None
        if coarse is not None and DENSE in struct and DENSE_COARSE not in struct:
            struct[DENSE_COARSE] = truncate_and_normalize(struct[DENSE], coarse.size).tolist()

        body = dict(payload or {})
        body["id"] = str(entity_id)
        return models.PointStruct(
            id=self._ids.point_id(entity_id, collection),
            vector=struct,
            payload=body,
        )

    async def upsert(
        self,
        collection: str,
        entity_id: Union[str, int],
        vectors: Mapping[str, VectorInput],
        payload: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        point = self.build_point(collection, entity_id, vectors, payload)
        return await self.upsert_points(collection, [point])

    async def upsert_points(self, collection: str, points: Sequence[models.PointStruct]) -> bool:
        if not points:
            return True
        try:
            await self._client.upsert(collection_name=collection, points=list(points), wait=True)
        except Exception as e:
            logger.error(f"Upsert of {len(points)} point(s) into '{collection}' failed: {e}")
            return False
        return True

    async def delete(self, collection: str, entity_id: Union[str, int]) -> bool:
        pid = self._ids.point_id(entity_id, collection)
        try:
            await self._client.delete(
                collection_name=collection,
                points_selector=models.PointIdsList(points=[pid]),
                wait=True,
            )
        except Exception as e:
            logger.error(f"Delete of '{entity_id}' from '{collection}' failed: {e}")
            return False
        return True

    async def retrieve_payloads(self, collection: str, entity_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        if not entity_ids:
            return {}
        ids = [self._ids.point_id(e, collection) for e in entity_ids]
        try:
            records = await self._client.retrieve(collection_name=collection, ids=ids, with_payload=True)
        except Exception as e:
            raise ProviderUnavailable(f"retrieve from '{collection}' failed: {e}", provider="qdrant",
                                      kind=ErrorKind.SERVER) from e
        out: Dict[str, Dict[str, Any]] = {}
        for rec in records:
            payload = dict(rec.payload or {})
            out[self._entity_id(rec.id, payload, collection)] = payload
        return out

    # -----------------------------
    # Busca
    # -----------------------------
    async def search_dense(
        self,
        collection: str,
        vector: Union[np.ndarray, Sequence[float]],
        limit: int,
        score_threshold: Optional[float] = None,
        filter: Optional[FilterSpec] = None,
        using: str = DENSE,
    ) -> List[VectorHit]:
        query = self._dense_query(collection, vector, using)
        points = await self._query(
            collection,
            query=query,
            using=using,
            limit=limit,
            score_threshold=score_threshold,
            query_filter=filter.to_qdrant() if filter else None,
            with_payload=True,
        )
        return self._to_hits(points, collection)

    async def search_sparse(
        self,
        collection: str,
        sparse: SparseVector,
        limit: int,
        score_threshold: Optional[float] = None,
        filter: Optional[FilterSpec] = None,
        using: str = SPARSE,
    ) -> List[VectorHit]:
        if sparse.is_empty:
            return []
        points = await self._query(
            collection,
            query=sparse.to_qdrant(),
            using=using,
            limit=limit,
            score_threshold=score_threshold,
            query_filter=filter.to_qdrant() if filter else None,
            with_payload=True,
        )
        return self._to_hits(points, collection)

    async def search_hybrid(
        self,
        collection: str,
        dense: Union[np.ndarray, Sequence[float]],
        sparse: SparseVector,
        limit: int,
        fusion: FusionMethod = "rrf",
        filter: Optional[FilterSpec] = None,
        score_threshold: Optional[float] = None,
        weights: Optional[Tuple[float, float]] = None,
    ) -> List[VectorHit]:
        """
        Uma consulta fundida (prefetch denso + prefetch esparso, cada um com
        over-fetch de PREFETCH_FACTOR x limit). Pesos não uniformes ou
        HYBRID_FUSION_LOCATION="client" usam a fusão local sobre buscas paralelas.
        Qualquer falha cai para a busca densa na mesma coleção.
        """
        if sparse.is_empty:
            return await self.search_dense(collection, dense, limit, score_threshold, filter)

        client_side = self._fusion_location == "client" or (
            weights is not None and not np.isclose(weights[0], weights[1])
        )
        try:
            if client_side:
                return await self._hybrid_client_side(
                    collection, dense, sparse, limit, fusion, filter, score_threshold, weights
                )
            return await self._hybrid_server_side(collection, dense, sparse, limit, fusion, filter, score_threshold)
        except ProviderUnavailable as e:
            logger.warning(f"Hybrid search on '{collection}' failed ({e}); falling back to dense-only")
            return await self.search_dense(collection, dense, limit, score_threshold, filter)

    async def multi_stage_search(
        self,
        collection: str,
        vector: Union[np.ndarray, Sequence[float]],
        candidate_limit: int,
        final_limit: int,
        filter: Optional[FilterSpec] = None,
        score_threshold: Optional[float] = None,
    ) -> List[VectorHit]:
        """
        Estágio 1: vetor truncado (metade da dimensão) sobre um conjunto maior de candidatos.
        Estágio 2: re-score só desses ids com o vetor completo; retorna top final_limit.
        """
        definition = self.definition(collection)
        coarse = definition.vector(DENSE_COARSE) if definition else None
        qfilter = filter.to_qdrant() if filter else None

        if coarse is not None:
            stage1_query = truncate_and_normalize(vector, coarse.size).tolist()
            stage1_using = DENSE_COARSE
        else:
            logger.debug(f"Collection '{collection}' has no coarse vector; stage 1 uses the full vector")
            stage1_query = self._dense_query(collection, vector, DENSE)
            stage1_using = DENSE

        candidates = await self._query(
            collection,
            query=stage1_query,
            using=stage1_using,
            limit=max(candidate_limit, final_limit),
            query_filter=qfilter,
            with_payload=False,
        )
        ids = [p.id for p in candidates]
        if not ids:
            return []

        stage2_filter = models.Filter(
            must=[models.HasIdCondition(has_id=ids), *((qfilter.must or []) if qfilter else [])],
            should=qfilter.should if qfilter else None,
            must_not=qfilter.must_not if qfilter else None,
        )
        points = await self._query(
            collection,
            query=self._dense_query(collection, vector, DENSE),
            using=DENSE,
            limit=final_limit,
            score_threshold=score_threshold,
            query_filter=stage2_filter,
            with_payload=True,
        )
        return self._to_hits(points, collection)

    async def multi_vector_search(
        self,
        collection: str,
        vectors: Mapping[str, Union[np.ndarray, Sequence[float]]],
        limit: int,
        fusion: FusionMethod = "rrf",
        filter: Optional[FilterSpec] = None,
        score_threshold: Optional[float] = None,
    ) -> List[VectorHit]:
        """
        Um prefetch por vetor nomeado (ex.: text + document na coleção multimodal),
        fundidos por RRF/DBSF numa única consulta. Com HYBRID_FUSION_LOCATION="client",
        ou se a consulta fundida falhar, busca cada vetor em paralelo e funde localmente.
        """
        if not vectors:
            return []
        if len(vectors) == 1:
            using, vector = next(iter(vectors.items()))
            return await self.search_dense(collection, vector, limit, score_threshold, filter, using=using)

        if self._fusion_location != "client":
            qfilter = filter.to_qdrant() if filter else None
            prefetch_limit = limit * self._prefetch_factor
            prefetch = [
                models.Prefetch(
                    query=self._dense_query(collection, vector, using),
                    using=using,
                    limit=prefetch_limit,
                    filter=qfilter,
                )
                for using, vector in vectors.items()
            ]
            try:
                points = await self._query(
                    collection,
                    prefetch=prefetch,
                    query=self._fusion_query(fusion),
                    limit=limit,
                    score_threshold=score_threshold,
                    query_filter=qfilter,
                    with_payload=True,
                )
                return self._to_hits(points, collection)
            except ProviderUnavailable as e:
                logger.warning(f"Multi-vector fused query on '{collection}' failed ({e}); fusing on the client")

        prefetch_limit = limit * self._prefetch_factor
        per_vector = await asyncio.gather(
            *(
                self.search_dense(collection, vector, prefetch_limit, score_threshold, filter, using=using)
                for using, vector in vectors.items()
            )
        )
        return self._fuse_hits(per_vector, fusion, limit)

    # --------- Internos ---------
    async def _hybrid_server_side(
        self,
        collection: str,
        dense: Union[np.ndarray, Sequence[float]],
        sparse: SparseVector,
        limit: int,
        fusion: FusionMethod,
        filter: Optional[FilterSpec],
        score_threshold: Optional[float],
    ) -> List[VectorHit]:
        qfilter = filter.to_qdrant() if filter else None
        prefetch_limit = limit * self._prefetch_factor
        prefetch = [
            models.Prefetch(
                query=self._dense_query(collection, dense, DENSE),
                using=DENSE,
                limit=prefetch_limit,
                filter=qfilter,
                score_threshold=score_threshold,
            ),
            models.Prefetch(query=sparse.to_qdrant(), using=SPARSE, limit=prefetch_limit, filter=qfilter),
        ]
        points = await self._query(
            collection,
            prefetch=prefetch,
            query=self._fusion_query(fusion),
            limit=limit,
            query_filter=qfilter,
            with_payload=True,
        )
        return self._to_hits(points, collection)

    async def _hybrid_client_side(
        self,
        collection: str,
        dense: Union[np.ndarray, Sequence[float]],
        sparse: SparseVector,
        limit: int,
        fusion: FusionMethod,
        filter: Optional[FilterSpec],
        score_threshold: Optional[float],
        weights: Optional[Tuple[float, float]],
    ) -> List[VectorHit]:
        prefetch_limit = limit * self._prefetch_factor
        dense_hits, sparse_hits = await asyncio.gather(
            self.search_dense(collection, dense, prefetch_limit, score_threshold, filter),
            self.search_sparse(collection, sparse, prefetch_limit, None, filter),
        )
        return self._fuse_hits([dense_hits, sparse_hits], fusion, limit, weights)

    def _fuse_hits(
        self,
        lists: Sequence[Sequence[VectorHit]],
        fusion: FusionMethod,
        limit: int,
        weights: Optional[Sequence[float]] = None,
    ) -> List[VectorHit]:
        by_id: Dict[str, VectorHit] = {}
        for hits in lists:
            for hit in hits:
                by_id.setdefault(hit.entity_id, hit)

        fused = fuse(
            [[(h.entity_id, h.score) for h in hits] for hits in lists],
            fusion,
            k=self._rrf_k,
            weights=list(weights) if weights is not None else None,
        )
        return [
            VectorHit(entity_id=eid, score=score, payload=by_id[eid].payload, point_id=by_id[eid].point_id)
            for eid, score in fused[:limit]
        ]

    def _fusion_query(self, fusion: FusionMethod) -> Any:
        if fusion == "dbsf":
            return models.FusionQuery(fusion=models.Fusion.DBSF)
        # k configurável só existe nas versões mais novas do cliente
        if self._rrf_k != 60 and hasattr(models, "RrfQuery"):
            return models.RrfQuery(rrf=models.Rrf(k=self._rrf_k))
        return models.FusionQuery(fusion=models.Fusion.RRF)

    def _dense_query(self, collection: str, vector: Union[np.ndarray, Sequence[float]], using: str) -> List[float]:
        definition = self.definition(collection)
        spec = definition.vector(using) if definition else None
        if spec is None:
            return np.asarray(vector, dtype=np.float32).reshape(-1).tolist()
        return fit_dimension(vector, spec.size, context=f"query {collection}.{using}", strict=self._strict).tolist()

    async def _query(self, collection: str, **kwargs: Any) -> List[models.ScoredPoint]:
        try:
            resp = await self._client.query_points(collection_name=collection, **kwargs)
        except Exception as e:
            kind = ErrorKind.NETWORK if isinstance(e, httpx.TransportError) else ErrorKind.SERVER
            raise ProviderUnavailable(f"query on '{collection}' failed: {e}", provider="qdrant", kind=kind) from e
        return list(resp.points)

    def _entity_id(self, point_id: PointId, payload: Mapping[str, Any], collection: str) -> str:
        if payload.get("id") is not None:
            return str(payload["id"])
        return self._ids.external_id(point_id, collection) or str(point_id)

    def _to_hits(self, points: Sequence[models.ScoredPoint], collection: str) -> List[VectorHit]:
        hits: List[VectorHit] = []
        for p in points:
            payload = dict(p.payload or {})
            hits.append(
                VectorHit(
                    entity_id=self._entity_id(p.id, payload, collection),
                    score=float(p.score),
                    payload=payload,
                    point_id=p.id,
                )
            )
        return hits
