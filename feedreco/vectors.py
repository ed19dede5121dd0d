# feedreco/vectors.py
"""
Operações numéricas sobre vetores densos (numpy, float32).
"""

from __future__ import annotations

import logging
from typing import Sequence, Union

import numpy as np

from feedreco.errors import DimensionMismatch

logger = logging.getLogger(__name__)

VectorLike = Union[np.ndarray, Sequence[float]]


def l2_normalize(mat: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """Normaliza L2 linha a linha (cada vetor), retornando float32."""
    if mat.ndim == 1:
        denom = np.linalg.norm(mat) + eps
        return (mat / denom).astype(np.float32)
    norms = np.linalg.norm(mat, axis=1, keepdims=True) + eps
    return (mat / norms).astype(np.float32)


def fit_dimension(vector: VectorLike, dim: int, *, context: str = "", strict: bool = False) -> np.ndarray:
    """
    Garante len(vector) == dim: trunca o excesso ou completa com zeros.

    A correção é registrada como warning (indica configuração divergente que deve ser
    corrigida na origem). Com strict=True lança DimensionMismatch.
    """
    arr = np.asarray(vector, dtype=np.float32).reshape(-1)
    n = int(arr.shape[0])
    if n == dim:
        return arr
    if strict:
        raise DimensionMismatch(n, dim, context)
    logger.warning(f"Dimension mismatch{f' ({context})' if context else ''}: got {n}, expected {dim}; "
                   f"{'truncating' if n > dim else 'padding with zeros'}")
    if n > dim:
        return arr[:dim].copy()
    out = np.zeros(dim, dtype=np.float32)
    out[:n] = arr
    return out


def truncate_and_normalize(vector: VectorLike, dim: int) -> np.ndarray:
    """Prefixo de `dim` posições re-normalizado (vetor grosso do primeiro estágio)."""
    arr = np.asarray(vector, dtype=np.float32).reshape(-1)[:dim]
    return l2_normalize(arr)
