# feedreco/index/collections.py
"""
Definições de coleções do Qdrant e mapeamento de ids externos -> ids de pontos.

Cada coleção declara seus vetores nomeados (dimensão + métrica), vetores esparsos e
os campos de payload indexados para filtros (type, categoryId, userId, createdAtTs).
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Literal, Optional, Tuple, Union

from feedreco.text import positive_hash

logger = logging.getLogger(__name__)

PointId = Union[int, str]

DENSE = "dense"
DENSE_COARSE = "dense_coarse"
SPARSE = "sparse"
RATINGS = "ratings"


@dataclass(frozen=True)
class VectorSpec:
    name: str
    size: int
    distance: Literal["cosine", "dot", "euclid"] = "cosine"


@dataclass(frozen=True)
class CollectionDefinition:
    name: str
    vectors: Tuple[VectorSpec, ...] = ()
    sparse_vectors: Tuple[str, ...] = ()
    keyword_indexes: Tuple[str, ...] = ("type", "categoryId", "userId")
    integer_indexes: Tuple[str, ...] = ("createdAtTs",)

    def vector(self, name: str) -> Optional[VectorSpec]:
        for spec in self.vectors:
            if spec.name == name:
                return spec
        return None

    @property
    def vector_names(self) -> List[str]:
        return [v.name for v in self.vectors]


def default_collections(cfg) -> List[CollectionDefinition]:
    dim = getattr(cfg, "EMBED_DIM", 1024)
    mm_dim = getattr(cfg, "MULTIMODAL_DIM", 768)
    coarse = max(1, dim // 2)
    text_vectors = (VectorSpec(DENSE, dim),)
    return [
        CollectionDefinition(
            name=cfg.COLLECTION_POSTS,
            vectors=(VectorSpec(DENSE, dim), VectorSpec(DENSE_COARSE, coarse)),
            sparse_vectors=(SPARSE,),
        ),
        CollectionDefinition(name=cfg.COLLECTION_COMMENTS, vectors=text_vectors, sparse_vectors=(SPARSE,)),
        CollectionDefinition(name=cfg.COLLECTION_CATEGORIES, vectors=text_vectors, sparse_vectors=(SPARSE,)),
        CollectionDefinition(name=cfg.COLLECTION_USERS, vectors=text_vectors, sparse_vectors=(SPARSE,)),
        CollectionDefinition(
            name=cfg.COLLECTION_MULTIMODAL,
            vectors=(VectorSpec("text", mm_dim), VectorSpec("image", mm_dim), VectorSpec("document", mm_dim)),
        ),
        CollectionDefinition(
            name=cfg.COLLECTION_RECOMMENDATIONS,
            sparse_vectors=(RATINGS,),
            keyword_indexes=("type", "userId"),
        ),
    ]


class PointIdRegistry:
    """
    Mapa bidirecional id externo <-> id de ponto.

    Estratégia "hash": strings numéricas viram int; as demais passam pelo hash
    rolante de 32 bits (colisões possíveis, detectadas e registradas em log).
    Estratégia "uuid": uuid5 determinístico (sem colisões práticas).

    O mapa reverso é um LRU limitado a max_entries: colisões só são detectadas
    entre ids ainda presentes, e ids despejados voltam a ser resolvidos pelo payload.
    """

    def __init__(self, strategy: Literal["hash", "uuid"] = "hash", max_entries: int = 100_000) -> None:
        self._strategy = strategy
        self._max_entries = max(1, int(max_entries))
        self._by_point: "OrderedDict[object, str]" = OrderedDict()
        self._lock = threading.Lock()
        self.collisions = 0

    def __len__(self) -> int:
        return len(self._by_point)

    def point_id(self, external_id: Union[str, int], collection: str = "") -> PointId:
        ext = str(external_id)
        pid = self._derive(ext)
        key = (collection, pid) if collection else pid
        with self._lock:
            known = self._by_point.get(key)
            if known is None:
                self._by_point[key] = ext
                while len(self._by_point) > self._max_entries:
                    self._by_point.popitem(last=False)
            else:
                self._by_point.move_to_end(key)
                if known != ext:
                    self.collisions += 1
                    logger.warning(
                        f"Point id collision in '{collection or '*'}': '{ext}' and '{known}' both map to {pid}"
                    )
        return pid

    def external_id(self, point_id: PointId, collection: str = "") -> Optional[str]:
        key = (collection, point_id) if collection else point_id
        with self._lock:
            ext = self._by_point.get(key)
            if ext is not None:
                self._by_point.move_to_end(key)
        return ext

    def _derive(self, ext: str) -> PointId:
        if self._strategy == "uuid":
            return str(uuid.uuid5(uuid.NAMESPACE_URL, f"feedreco:{ext}"))
        if ext.isascii() and ext.isdigit() and int(ext) < 2 ** 63:
            return int(ext)
        return positive_hash(ext)
