# feedreco/index/sparse.py
"""
Construção de vetores esparsos (índice -> peso) sobre um vocabulário fixo de slots.

Índices = hash(termo/id) % SPARSE_DIM; chaves repetidas são somadas, de modo que o
vetor final sempre tem índices únicos (exigência do Qdrant).
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Tuple

import numpy as np
from qdrant_client import models

from feedreco.text import positive_hash, query_terms, tokenize


@dataclass(frozen=True)
class SparseVector:
    indices: Tuple[int, ...]
    values: Tuple[float, ...]

    @property
    def is_empty(self) -> bool:
        return not self.indices

    def to_qdrant(self) -> models.SparseVector:
        return models.SparseVector(indices=list(self.indices), values=list(self.values))

    def as_dict(self) -> Dict[int, float]:
        return dict(zip(self.indices, self.values))


def slot(key: str, sparse_dim: int) -> int:
    key = str(key)
    if key.isascii() and key.isdigit():
        return int(key) % sparse_dim
    return positive_hash(key) % sparse_dim


def from_weights(weights: Iterable[Tuple[str, float]], sparse_dim: int) -> SparseVector:
    acc: Dict[int, float] = {}
    for key, w in weights:
        if not w or not math.isfinite(w):
            continue
        idx = slot(key, sparse_dim)
        acc[idx] = acc.get(idx, 0.0) + float(w)
    items = sorted((i, v) for i, v in acc.items() if v != 0.0)
    return SparseVector(tuple(i for i, _ in items), tuple(v for _, v in items))


def query_sparse_vector(text: str, sparse_dim: int) -> SparseVector:
    """Termos da consulta (>2 chars) com peso decrescente 1/(posição+1)."""
    terms = query_terms(text)
    return from_weights(((t, 1.0 / (i + 1)) for i, t in enumerate(terms)), sparse_dim)


def document_sparse_vector(text: str, sparse_dim: int) -> SparseVector:
    """Frequência de termos sublinear (1 + log tf) para documentos indexados."""
    counts = Counter(t for t in tokenize(text) if len(t) > 2)
    return from_weights(((t, 1.0 + math.log(c)) for t, c in counts.items()), sparse_dim)


def ratings_sparse_vector(ratings: Mapping[str, float], sparse_dim: int) -> SparseVector:
    """
    Vetor colaborativo do usuário: ratings z-normalizados por post.
    Com um único rating (ou variância nula) mantém apenas o sinal.
    """
    if not ratings:
        return SparseVector((), ())
    keys = list(ratings)
    vals = np.asarray([ratings[k] for k in keys], dtype=np.float64)
    std = float(vals.std())
    if std > 0:
        norm = (vals - vals.mean()) / std
    else:
        norm = np.sign(vals)
    return from_weights(zip(keys, (float(v) for v in norm)), sparse_dim)
