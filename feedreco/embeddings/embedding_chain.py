# feedreco/embeddings/embedding_chain.py
"""
EmbeddingProviderChain — cadeia de provedores com rotação, backoff e fallback.

Responsável por:
- Produzir vetores densos unitários de dimensão fixa (EMBED_DIM) para consultas e documentos.
- Percorrer os provedores em ordem de prioridade com um combinador genérico
  "primeiro sucesso vence" (first_success), pulando provedores em backoff.
- Registrar 429 no RateLimiterState (backoff só daquele provedor) e seguir para o próximo.
- Garantir a dimensão (pad/truncate com warning) e a normalização L2 de toda saída.
- Cair no pseudo-embedding determinístico quando tudo falha ou o orçamento da
  requisição (EMBED_REQUEST_BUDGET_S) se esgota.

Uso típico:
    chain = EmbeddingProviderChain.from_config(cfg)
    vec = await chain.embed("quantum computing", kind="query")
    vecs = await chain.embed_batch(docs, kind="passage")
    await chain.aclose()
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

import httpx
import numpy as np

from feedreco.embeddings.providers import (
    EmbedKind,
    EmbedResult,
    EmbeddingProvider,
    HuggingFaceImageProvider,
    build_remote_providers,
    build_timeout,
)
from feedreco.embeddings.pseudo import EMPTY_TEXT_SEED, pseudo_embedding
from feedreco.embeddings.rate_limiter import RateLimiterState
from feedreco.errors import ErrorKind, PartialBatchFailure
from feedreco.vectors import fit_dimension, l2_normalize

logger = logging.getLogger(__name__)

P = TypeVar("P")


async def first_success(
    items: Iterable[P],
    attempt: Callable[[P], Awaitable[EmbedResult]],
    *,
    skip: Optional[Callable[[P], Awaitable[bool]]] = None,
    on_success: Optional[Callable[[P, EmbedResult], Awaitable[None]]] = None,
    on_failure: Optional[Callable[[P, EmbedResult], Awaitable[None]]] = None,
) -> Tuple[Optional[P], Optional[EmbedResult]]:
    """
    Tenta cada item em ordem e devolve o primeiro (item, resultado) bem-sucedido.
    Retorna (None, None) quando nenhum funciona.
    """
    for item in items:
        if skip is not None and await skip(item):
            continue
        result = await attempt(item)
        if result.ok:
            if on_success is not None:
                await on_success(item, result)
            return item, result
        if on_failure is not None:
            await on_failure(item, result)
    return None, None


class EmbeddingProviderChain:
    def __init__(
        self,
        providers: Sequence[EmbeddingProvider],
        *,
        dim: int = 1024,
        rate_limiter: Optional[RateLimiterState] = None,
        request_budget_s: float = 15.0,
        strict_dimensions: bool = False,
        image_provider: Optional[HuggingFaceImageProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._providers = list(providers)
        self._dim = dim
        self._rate_limiter = rate_limiter or RateLimiterState()
        self._budget = float(request_budget_s)
        self._strict = strict_dimensions
        self._image_provider = image_provider
        self._http_client = http_client  # só fechado aqui se foi criado pela fábrica

    # --------- Fábrica a partir da FeedRecoConfig ---------
    @classmethod
    def from_config(
        cls,
        cfg,
        *,
        rate_limiter: Optional[RateLimiterState] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "EmbeddingProviderChain":
        owned = http_client is None
        client = http_client or httpx.AsyncClient(timeout=build_timeout(cfg))
        providers: List[EmbeddingProvider] = build_remote_providers(cfg, client)

        if getattr(cfg, "ENABLE_LOCAL_EMBEDDINGS", False):
            from feedreco.embeddings.local_provider import LocalModelProvider

            providers.append(LocalModelProvider.from_config(cfg))

        image_provider = HuggingFaceImageProvider(
            endpoint=cfg.HF_ENDPOINT,
            api_key=cfg.HF_API_KEY,
            model=getattr(cfg, "HF_IMAGE_MODEL", "openai/clip-vit-base-patch32"),
            client=client,
        )
        return cls(
            providers,
            dim=getattr(cfg, "EMBED_DIM", 1024),
            rate_limiter=rate_limiter or RateLimiterState.from_config(cfg),
            request_budget_s=getattr(cfg, "EMBED_REQUEST_BUDGET_S", 15.0),
            strict_dimensions=getattr(cfg, "STRICT_DIMENSIONS", False),
            image_provider=image_provider,
            http_client=client if owned else None,
        )

    # --------- API pública ---------
    @property
    def dim(self) -> int:
        return self._dim

    @property
    def providers(self) -> List[EmbeddingProvider]:
        return list(self._providers)

    @property
    def rate_limiter(self) -> RateLimiterState:
        return self._rate_limiter

    @property
    def has_providers(self) -> bool:
        """True se ao menos um provedor real está configurado."""
        return any(p.enabled for p in self._providers)

    async def embed(self, text: str, kind: EmbedKind = "query") -> np.ndarray:
        if not text or not text.strip():
            return pseudo_embedding(EMPTY_TEXT_SEED, self._dim)

        try:
            vectors = await asyncio.wait_for(self._attempt([text], kind), timeout=self._budget)
        except asyncio.TimeoutError:
            logger.warning(f"Embedding budget of {self._budget:.1f}s exceeded; using pseudo-embedding")
            vectors = None

        if vectors:
            return vectors[0]
        logger.warning("All embedding providers failed; using deterministic pseudo-embedding")
        return pseudo_embedding(text, self._dim)

    async def embed_batch(self, texts: Sequence[str], kind: EmbedKind = "passage") -> List[np.ndarray]:
        """
        Embeddings em lote. Itens vazios recebem o vetor-semente sem ir à rede; os demais
        são agrupados pelo batch_size do provedor. Um lote que falha cai no fallback
        item a item (embed), então um item ruim nunca derruba os vizinhos.
        """
        out: List[Optional[np.ndarray]] = [None] * len(texts)
        pending: List[int] = []
        for i, t in enumerate(texts):
            if not t or not str(t).strip():
                out[i] = pseudo_embedding(EMPTY_TEXT_SEED, self._dim)
            else:
                pending.append(i)

        batch_size = self._batch_size()
        for start in range(0, len(pending), batch_size):
            idxs = pending[start:start + batch_size]
            chunk = [texts[i] for i in idxs]
            try:
                vectors = await self._embed_chunk(chunk, kind, idxs)
            except PartialBatchFailure as e:
                logger.warning(f"{e}; falling back per item for {len(e.failed_indices)} text(s)")
                vectors = list(await asyncio.gather(*(self.embed(t, kind) for t in chunk)))
            for i, vec in zip(idxs, vectors):
                out[i] = vec

        return [v for v in out if v is not None]

    async def embed_image(self, data: bytes, dim: int) -> np.ndarray:
        """Embedding de imagem para a coleção multimodal; fallback determinístico pelo digest."""
        vector: Optional[np.ndarray] = None
        if self._image_provider is not None and self._image_provider.enabled:
            result = await self._image_provider.try_embed_image(data)
            if result.ok and result.vectors:
                vector = result.vectors[0]
            else:
                logger.warning(f"Image embedding failed ({result.error}): {result.message}")
        if vector is None:
            digest = hashlib.sha256(data).hexdigest()
            return pseudo_embedding(f"image_content:{digest}", dim)
        return l2_normalize(fit_dimension(vector, dim, context="image embedding", strict=self._strict))

    async def aclose(self) -> None:
        for p in self._providers:
            await p.aclose()
        if self._http_client is not None:
            await self._http_client.aclose()

    # --------- Internos ---------
    def _batch_size(self) -> int:
        sizes = [p.batch_size for p in self._providers if p.enabled]
        return min(sizes) if sizes else 32

    async def _embed_chunk(self, chunk: List[str], kind: EmbedKind, idxs: List[int]) -> List[np.ndarray]:
        try:
            vectors = await asyncio.wait_for(self._attempt(chunk, kind), timeout=self._budget)
        except asyncio.TimeoutError:
            vectors = None
        if vectors is None:
            raise PartialBatchFailure(f"Batch of {len(chunk)} text(s) could not be embedded", idxs)
        return vectors

    async def _attempt(self, texts: List[str], kind: EmbedKind) -> Optional[List[np.ndarray]]:
        expected = len(texts)

        async def attempt(provider: EmbeddingProvider) -> EmbedResult:
            if not await self._rate_limiter.acquire(provider.name):
                return EmbedResult(error=ErrorKind.RATE_LIMIT, message=f"{provider.name}: local quota exhausted")
            result = await provider.try_embed(texts, kind)
            if result.ok and len(result.vectors or []) != expected:
                return EmbedResult(
                    error=ErrorKind.UNKNOWN,
                    message=f"{provider.name}: expected {expected} vectors, got {len(result.vectors or [])}",
                )
            return result

        provider, result = await first_success(
            self._providers,
            attempt,
            skip=self._should_skip,
            on_success=self._on_success,
            on_failure=self._on_failure,
        )
        if provider is None or result is None or result.vectors is None:
            return None
        return [self._finalize(v, provider.name) for v in result.vectors]

    async def _should_skip(self, provider: EmbeddingProvider) -> bool:
        if not provider.enabled:
            return True
        if await self._rate_limiter.should_skip(provider.name):
            logger.debug(f"Skipping provider '{provider.name}' (backoff/quota active)")
            return True
        return False

    async def _on_success(self, provider: EmbeddingProvider, result: EmbedResult) -> None:
        await self._rate_limiter.record_success(provider.name)

    async def _on_failure(self, provider: EmbeddingProvider, result: EmbedResult) -> None:
        if result.error == ErrorKind.RATE_LIMIT:
            await self._rate_limiter.record_rate_limit(provider.name, result.retry_after)
        else:
            logger.warning(f"Embedding provider '{provider.name}' failed ({result.error.value if result.error else 'unknown'}): {result.message}")

    def _finalize(self, vector: np.ndarray, provider_name: str) -> np.ndarray:
        fitted = fit_dimension(vector, self._dim, context=f"provider {provider_name}", strict=self._strict)
        return l2_normalize(fitted)
