# feedreco/embeddings/local_provider.py
"""
LocalModelProvider — provedor local via sentence-transformers (extra opcional "local").

Responsável por:
- Carregar o modelo de forma preguiçosa (lazy), no dispositivo configurado.
- Gerar embeddings em batch numa thread de trabalho (não bloqueia o event loop).

Dependências:
- sentence-transformers
- torch

Observações:
- Só é importado pela cadeia quando ENABLE_LOCAL_EMBEDDINGS=true.
- Fica por último na cadeia, antes do pseudo-embedding.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence

import numpy as np

from feedreco.embeddings.providers import EmbedKind, EmbedResult, EmbeddingProvider
from feedreco.errors import ErrorKind

try:
    import torch
    from sentence_transformers import SentenceTransformer
except Exception as e:
    # Mantemos a exceção explícita para facilitar diagnóstico em ambientes sem deps.
    raise ImportError(
        "Faltam dependências para o provedor local. Instale o extra: pip install 'feedreco[local]'"
    ) from e


class LocalModelProvider(EmbeddingProvider):
    name = "local"

    def __init__(self, model_name: str, device: Optional[str] = None, batch_size: int = 64) -> None:
        self._model_name = model_name
        self.batch_size = max(1, int(batch_size))
        self._resolved_device = self._resolve_device(device)
        self._model: Optional[SentenceTransformer] = None

    # --------- Fábrica a partir da config ---------
    @classmethod
    def from_config(cls, cfg) -> "LocalModelProvider":
        return cls(
            model_name=getattr(cfg, "LOCAL_EMBEDDING_MODEL", "intfloat/e5-large-v2"),
            device=getattr(cfg, "EMBEDDING_DEVICE", None),
            batch_size=getattr(cfg, "LOCAL_BATCH_SIZE", 64),
        )

    # --------- API pública ---------
    @property
    def enabled(self) -> bool:
        return True

    async def try_embed(self, texts: Sequence[str], kind: EmbedKind = "passage") -> EmbedResult:
        prefix = "query: " if kind == "query" else "passage: "
        try:
            embs = await asyncio.to_thread(self._encode, [prefix + t for t in texts])
        except (RuntimeError, ValueError, OSError) as e:
            return EmbedResult(error=ErrorKind.UNKNOWN, message=f"local: {e}")
        return EmbedResult(vectors=[np.asarray(row, dtype=np.float32) for row in embs])

    # --------- Internos ---------
    def _encode(self, texts: List[str]) -> np.ndarray:
        model = self._get_model()
        return model.encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            normalize_embeddings=False,  # normalizamos na cadeia
            device=self._resolved_device,
            show_progress_bar=False,
        )

    def _get_model(self) -> SentenceTransformer:
        if self._model is None:
            self._model = SentenceTransformer(self._model_name, device=self._resolved_device)
        return self._model

    @staticmethod
    def _resolve_device(pref: Optional[str]) -> str:
        if pref in ("cpu", "cuda"):
            return pref
        return "cuda" if torch.cuda.is_available() else "cpu"
