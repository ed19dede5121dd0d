# feedreco/index/fusion.py
"""
Fusão de listas ranqueadas (funções puras).

- RRF (reciprocal rank fusion): score = Σ w_i / (k + rank_i), rank começando em 1.
  Invariante à escala dos scores; empates resolvidos pela aparição mais cedo
  (menor posição em qualquer lista, depois a lista de origem).
- DBSF (distribution-based score fusion): cada lista é normalizada por
  média ± 3 desvios (recortado em [0, 1]) antes da soma.

Usadas na fusão do lado do cliente (dense + sparse em paralelo) e ao mesclar
resultados de várias coleções.
"""

from __future__ import annotations

from typing import Dict, Hashable, List, Literal, Optional, Sequence, Tuple, TypeVar

import numpy as np

K = TypeVar("K", bound=Hashable)

RankedList = Sequence[Tuple[K, float]]
FusionMethod = Literal["rrf", "dbsf"]


def _weights(n: int, weights: Optional[Sequence[float]]) -> List[float]:
    if weights is None:
        return [1.0] * n
    if len(weights) != n:
        raise ValueError(f"expected {n} weights, got {len(weights)}")
    return [float(w) for w in weights]


def _sorted(scores: Dict[K, float], first_seen: Dict[K, Tuple[int, int]]) -> List[Tuple[K, float]]:
    return sorted(scores.items(), key=lambda kv: (-kv[1], first_seen[kv[0]]))


def reciprocal_rank_fusion(
    lists: Sequence[RankedList],
    k: int = 60,
    weights: Optional[Sequence[float]] = None,
) -> List[Tuple[K, float]]:
    ws = _weights(len(lists), weights)
    scores: Dict[K, float] = {}
    first_seen: Dict[K, Tuple[int, int]] = {}

    for li, ranked in enumerate(lists):
        seen_here = set()
        for pos, (key, _score) in enumerate(ranked):
            if key in seen_here:
                continue
            seen_here.add(key)
            scores[key] = scores.get(key, 0.0) + ws[li] / (k + pos + 1)
            mark = (pos, li)
            if key not in first_seen or mark < first_seen[key]:
                first_seen[key] = mark

    return _sorted(scores, first_seen)


def _dbsf_normalize(values: np.ndarray) -> np.ndarray:
    if values.size == 0:
        return values
    mean, std = float(values.mean()), float(values.std())
    if std == 0.0:
        return np.full_like(values, 0.5, dtype=np.float64)
    lower, upper = mean - 3 * std, mean + 3 * std
    return np.clip((values - lower) / (upper - lower), 0.0, 1.0)


def distribution_based_fusion(
    lists: Sequence[RankedList],
    weights: Optional[Sequence[float]] = None,
) -> List[Tuple[K, float]]:
    ws = _weights(len(lists), weights)
    scores: Dict[K, float] = {}
    first_seen: Dict[K, Tuple[int, int]] = {}

    for li, ranked in enumerate(lists):
        # Mantém só a primeira ocorrência de cada chave na lista
        dedup: List[Tuple[K, float]] = []
        seen_here = set()
        for key, s in ranked:
            if key not in seen_here:
                seen_here.add(key)
                dedup.append((key, s))
        if not dedup:
            continue
        norm = _dbsf_normalize(np.asarray([s for _, s in dedup], dtype=np.float64))
        for pos, ((key, _), value) in enumerate(zip(dedup, norm)):
            scores[key] = scores.get(key, 0.0) + ws[li] * float(value)
            mark = (pos, li)
            if key not in first_seen or mark < first_seen[key]:
                first_seen[key] = mark

    return _sorted(scores, first_seen)


def fuse(
    lists: Sequence[RankedList],
    method: FusionMethod = "rrf",
    *,
    k: int = 60,
    weights: Optional[Sequence[float]] = None,
) -> List[Tuple[K, float]]:
    if method == "rrf":
        return reciprocal_rank_fusion(lists, k=k, weights=weights)
    if method == "dbsf":
        return distribution_based_fusion(lists, weights=weights)
    raise ValueError(f"unsupported fusion method '{method}'")
