"""
FeedReco Test Configuration
===========================

Fixtures compartilhadas: dataset de fórum em memória, armazenamento vetorial falso,
embedder que registra os textos recebidos e relógio fixo.
"""

from typing import Any, Dict, List, Optional, Sequence

import pytest

from feedreco.config import FeedRecoConfig
from feedreco.embeddings.pseudo import pseudo_embedding
from feedreco.errors import ErrorKind, ProviderUnavailable
from feedreco.index.filters import FilterSpec
from feedreco.index.vector_store import VectorHit
from feedreco.store import InMemoryRelationalStore
from schemas.payloads import PostPayload

NOW = 1_700_000_000.0
HOUR = 3600

LONG_QUANTUM_TEXT = (
    "Quantum computing uses qubits, superposition and entanglement to solve problems that "
    "classical machines struggle with. This post walks through gates, circuits, decoherence, "
    "error rates and the hardware roadmap, with references to recent research papers and a "
    "detailed comparison of superconducting and trapped-ion approaches to scaling quantum devices."
)

# Scores devolvidos pela busca densa falsa, por post
POST_SCORES = {
    "p8": 0.95,
    "p9": 0.92,
    "p1": 0.90,
    "p2": 0.85,
    "p3": 0.80,
    "p4": 0.75,
    "p5": 0.70,
    "p10": 0.60,
    "p6": 0.50,
    "p7": 0.45,
}


def _post(pid: str, user: str, category: str, title: str, hours: int, content: str = "") -> Dict[str, Any]:
    names = {"c1": "Quantum", "c2": "Rust", "c3": "Cooking", "c4": "Travel"}
    return {
        "id": pid,
        "title": title,
        "content": content or f"{title}. Short notes from the community.",
        "userId": user,
        "categoryId": category,
        "category": {"id": category, "name": names[category]},
        "createdAt": int(NOW) - hours * HOUR,
    }


def forum_data() -> Dict[str, List[Dict[str, Any]]]:
    return {
        "categories": [
            {"id": "c1", "name": "Quantum", "slug": "quantum", "description": "Quantum computing and physics"},
            {"id": "c2", "name": "Rust", "slug": "rust", "description": "The Rust programming language"},
            {"id": "c3", "name": "Cooking", "slug": "cooking", "description": "Recipes and kitchen tips"},
            {"id": "c4", "name": "Travel", "slug": "travel", "description": "Trips and travel stories"},
        ],
        "users": [
            {"id": "u1", "name": "Ana", "username": "ana", "bio": "I love programming and ai"},
            {"id": "u2", "name": "Bruno", "username": "bruno"},
            {"id": "u3", "name": "Carla", "username": "carla"},
        ],
        "posts": [
            _post("p1", "u2", "c1", "Quantum computing explained", 1, LONG_QUANTUM_TEXT),
            _post("p2", "u3", "c1", "Quantum error correction", 2),
            _post("p3", "u2", "c2", "Rust async runtimes", 3),
            _post("p9", "u3", "c2", "Rust web frameworks", 4),
            _post("p4", "u3", "c2", "Rust ownership deep dive", 5),
            _post("p5", "u1", "c2", "My rust journey with ai programming", 6),
            _post("p6", "u2", "c3", "Sourdough starter tips", 8),
            _post("p7", "u3", "c4", "Backpacking in Patagonia", 10),
            _post("p10", "u2", "c1", "Quantum annealing hardware", 12),
            _post("p8", "u2", "c1", "Quantum networking", 30),
        ],
        "comments": [
            {"id": "cm1", "postId": "p2", "userId": "u1", "content": "great intro to quantum ai",
             "createdAt": int(NOW) - 2 * HOUR},
        ],
        "votes": [
            {"userId": "u1", "postId": "p3", "value": 1, "createdAt": int(NOW) - 3 * HOUR},
            {"userId": "u1", "postId": "p1", "value": 1, "createdAt": int(NOW) - HOUR},
        ],
        "bookmarks": [
            {"userId": "u1", "postId": "p4", "createdAt": int(NOW) - 5 * HOUR},
        ],
    }


def post_hits(data: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> List[VectorHit]:
    data = data or forum_data()
    hits = []
    for raw in data["posts"]:
        payload = PostPayload.from_source(raw).to_payload()
        hits.append(VectorHit(entity_id=raw["id"], score=POST_SCORES[raw["id"]], payload=payload))
    return sorted(hits, key=lambda h: h.score, reverse=True)


class FakeVectorStore:
    """
    Substituto do VectorStoreAdapter: devolve hits pré-carregados por coleção,
    aplicando filtro, threshold e limite, e registra cada chamada.
    """

    def __init__(self, hits: Optional[Dict[str, List[VectorHit]]] = None, ready: bool = True) -> None:
        self.hits = hits or {}
        self.ready = ready
        self.calls: List[Dict[str, Any]] = []
        self.failing: set = set()

    def _fail_if_needed(self, op: str) -> None:
        if op in self.failing:
            raise ProviderUnavailable(f"{op} unavailable", provider="qdrant", kind=ErrorKind.SERVER)

    def _select(self, collection: str, limit: int, score_threshold: Optional[float],
                filter: Optional[FilterSpec]) -> List[VectorHit]:
        out = []
        for h in self.hits.get(collection, []):
            if score_threshold is not None and h.score < score_threshold:
                continue
            if filter is not None and not filter.matches(h.payload):
                continue
            out.append(VectorHit(entity_id=h.entity_id, score=h.score, payload=dict(h.payload)))
        return out[:limit]

    async def is_ready(self) -> bool:
        return self.ready

    async def close(self) -> None:
        return None

    async def search_dense(self, collection, vector, limit, score_threshold=None, filter=None, using="dense"):
        self.calls.append({"op": "dense", "collection": collection, "limit": limit, "vector": vector,
                           "score_threshold": score_threshold, "filter": filter, "using": using})
        self._fail_if_needed("dense")
        return self._select(collection, limit, score_threshold, filter)

    async def search_sparse(self, collection, sparse, limit, score_threshold=None, filter=None, using="sparse"):
        self.calls.append({"op": "sparse", "collection": collection, "limit": limit, "sparse": sparse,
                           "filter": filter, "using": using})
        self._fail_if_needed("sparse")
        return self._select(collection, limit, score_threshold, filter)

    async def search_hybrid(self, collection, dense, sparse, limit, fusion="rrf", filter=None,
                            score_threshold=None, weights=None):
        self.calls.append({"op": "hybrid", "collection": collection, "limit": limit, "fusion": fusion,
                           "filter": filter, "weights": weights, "sparse": sparse})
        self._fail_if_needed("hybrid")
        return self._select(collection, limit, score_threshold, filter)

    async def multi_vector_search(self, collection, vectors, limit, fusion="rrf", filter=None, score_threshold=None):
        self.calls.append({"op": "multi_vector", "collection": collection, "limit": limit, "fusion": fusion,
                           "vectors": dict(vectors), "filter": filter, "score_threshold": score_threshold})
        self._fail_if_needed("multi_vector")
        return self._select(collection, limit, score_threshold, filter)

    async def multi_stage_search(self, collection, vector, candidate_limit, final_limit, filter=None,
                                 score_threshold=None):
        self.calls.append({"op": "multi_stage", "collection": collection, "candidate_limit": candidate_limit,
                           "final_limit": final_limit, "filter": filter})
        self._fail_if_needed("multi_stage")
        return self._select(collection, final_limit, score_threshold, filter)

    async def retrieve_payloads(self, collection: str, entity_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        wanted = {str(e) for e in entity_ids}
        return {h.entity_id: dict(h.payload) for h in self.hits.get(collection, []) if h.entity_id in wanted}

    def ops(self, op: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["op"] == op]


class RecordingEmbedder:
    """Embedder determinístico (pseudo-embedding) que guarda os textos recebidos."""

    def __init__(self, dim: int = 8, has_providers: bool = True) -> None:
        self.dim = dim
        self.has_providers = has_providers
        self.providers: List[Any] = []
        self.texts: List[tuple] = []
        self.images: List[bytes] = []

    async def embed(self, text: str, kind: str = "query"):
        self.texts.append((text, kind))
        return pseudo_embedding(text, self.dim)

    async def embed_batch(self, texts: Sequence[str], kind: str = "passage"):
        return [await self.embed(t, kind) for t in texts]

    async def embed_image(self, data: bytes, dim: int):
        self.images.append(data)
        return pseudo_embedding(f"image:{len(data)}", dim)

    async def aclose(self) -> None:
        return None


# Configuração
@pytest.fixture
def cfg():
    """Config pequena (dimensões reduzidas) para os testes."""
    return FeedRecoConfig(EMBED_DIM=8, MULTIMODAL_DIM=4, SPARSE_DIM=1000)


@pytest.fixture
def clock():
    return lambda: NOW


# Colaboradores
@pytest.fixture
def store():
    """Banco relacional em memória com o dataset de fórum."""
    return InMemoryRelationalStore.from_dict(forum_data())


@pytest.fixture
def vector_store():
    """Armazenamento vetorial falso com os posts indexados."""
    return FakeVectorStore({"posts": post_hits()})


@pytest.fixture
def embedder():
    return RecordingEmbedder()
