# feedreco/embeddings/providers.py
"""
Provedores de embeddings remotos (HTTP) — HuggingFace, OpenAI e Mistral.

Responsável por:
- Uma interface única `EmbeddingProvider.try_embed(texts, kind) -> EmbedResult`
  (vetores OU um ErrorKind), sem lançar exceções para a cadeia.
- Timeouts granulares por tentativa (httpx.Timeout).
- Retry com backoff exponencial + jitter para 502/503/504 e erros de rede,
  respeitando Retry-After quando presente.
- 429 encerra a tentativa do provedor imediatamente: quem decide o backoff e a
  rotação é a cadeia (EmbeddingProviderChain) via RateLimiterState.

Observações:
- O modelo do HF (e5-large-v2) espera prefixos "query: " / "passage: ".
- A saída token-a-token do feature-extraction é agregada por média (mean pooling).
"""

from __future__ import annotations

import abc
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence

import httpx
import numpy as np

from feedreco.errors import ErrorKind, ProviderUnavailable, RateLimited

logger = logging.getLogger(__name__)

EmbedKind = Literal["query", "passage"]

RETRYABLE_STATUSES = (502, 503, 504)


@dataclass
class EmbedResult:
    vectors: Optional[List[np.ndarray]] = None
    error: Optional[ErrorKind] = None
    message: str = ""
    retry_after: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.vectors is not None


# -----------------------------
# Helpers internos
# -----------------------------
def build_timeout(cfg) -> httpx.Timeout:
    """Monta timeouts granulares (por tentativa) a partir da config."""
    return httpx.Timeout(
        connect=getattr(cfg, "HTTP_TIMEOUT_CONNECT", 3.0),
        read=getattr(cfg, "HTTP_TIMEOUT_READ", 20.0),
        write=getattr(cfg, "HTTP_TIMEOUT_WRITE", 5.0),
        pool=getattr(cfg, "HTTP_TIMEOUT_POOL", 3.0),
    )


def _retry_delay(attempt_idx: int, base: float, cap: float, retry_after: Optional[float]) -> float:
    """
    Calcula o delay de retry:
    - Se houver Retry-After (segundos), prioriza.
    - Senão: backoff exponencial com jitter (±20%), limitado por `cap`.
    """
    if retry_after is not None and retry_after > 0:
        return min(float(retry_after), cap)
    delay = min(base * (2 ** attempt_idx), cap)
    jitter = delay * random.uniform(-0.2, 0.2)
    return max(0.0, delay + jitter)


def _should_retry(status_code: Optional[int], exc: Optional[BaseException]) -> bool:
    if exc is not None:
        return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError))
    return status_code in RETRYABLE_STATUSES


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_error(status_code: Optional[int], exc: Optional[BaseException] = None) -> ErrorKind:
    if exc is not None:
        if isinstance(exc, httpx.TransportError):
            return ErrorKind.NETWORK
        return ErrorKind.UNKNOWN
    if status_code is None:
        return ErrorKind.UNKNOWN
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if 500 <= status_code <= 599:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


def _mean_pool(item: Any) -> np.ndarray:
    arr = np.asarray(item, dtype=np.float32)
    while arr.ndim > 2:
        arr = arr[0]
    if arr.ndim == 2:
        arr = arr.mean(axis=0)
    if arr.ndim != 1 or arr.size == 0:
        raise ValueError(f"unexpected embedding shape {arr.shape}")
    return arr


# -----------------------------
# Interface
# -----------------------------
class EmbeddingProvider(abc.ABC):
    name: str = "provider"
    batch_size: int = 32

    @property
    @abc.abstractmethod
    def enabled(self) -> bool:
        ...

    @abc.abstractmethod
    async def try_embed(self, texts: Sequence[str], kind: EmbedKind = "passage") -> EmbedResult:
        ...

    async def aclose(self) -> None:
        return None


class HttpEmbeddingProvider(EmbeddingProvider):
    """
    Base dos provedores HTTP: POST JSON + retry/backoff.
    Subclasses só definem payload e parsing da resposta.
    """

    def __init__(
        self,
        *,
        name: str,
        endpoint: str,
        api_key: Optional[str],
        model: str,
        dim: int,
        batch_size: int,
        client: httpx.AsyncClient,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_cap: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.batch_size = max(1, int(batch_size))
        self._endpoint = endpoint
        self._api_key = api_key
        self._model = model
        self._dim = dim
        self._client = client
        self._max_attempts = max(1, int(max_attempts))
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    @property
    def url(self) -> str:
        return self._endpoint

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @abc.abstractmethod
    def _build_payload(self, texts: Sequence[str], kind: EmbedKind) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    def _parse_response(self, data: Any, expected: int) -> List[np.ndarray]:
        ...

    # --------- API pública ---------
    async def try_embed(self, texts: Sequence[str], kind: EmbedKind = "passage") -> EmbedResult:
        if not self.enabled:
            return EmbedResult(error=ErrorKind.AUTH, message=f"{self.name}: API key not configured")
        try:
            resp = await self._post_with_retry(self._build_payload(texts, kind))
        except RateLimited as e:
            return EmbedResult(error=ErrorKind.RATE_LIMIT, message=str(e), retry_after=e.retry_after)
        except ProviderUnavailable as e:
            return EmbedResult(error=e.kind, message=str(e))

        try:
            vectors = self._parse_response(resp.json(), len(texts))
        except (ValueError, KeyError, TypeError, IndexError) as e:
            return EmbedResult(error=ErrorKind.UNKNOWN, message=f"{self.name}: invalid response ({e})")
        return EmbedResult(vectors=vectors)

    # --------- Baixo nível (request + retry) ---------
    async def _post_with_retry(self, payload: Dict[str, Any]) -> httpx.Response:
        last_exc: Optional[BaseException] = None

        for i in range(self._max_attempts):
            last_attempt = i >= self._max_attempts - 1
            try:
                resp = await self._client.post(self.url, json=payload, headers=self._headers())
            except httpx.TransportError as e:
                last_exc = e
                if _should_retry(None, e) and not last_attempt:
                    await self._sleep(_retry_delay(i, self._backoff_base, self._backoff_cap, None))
                    continue
                raise ProviderUnavailable(
                    f"{self.name}: transport error ({type(e).__name__})",
                    provider=self.name,
                    kind=ErrorKind.NETWORK,
                ) from e

            status = resp.status_code
            if status == 429:
                raise RateLimited(
                    f"{self.name}: HTTP 429",
                    provider=self.name,
                    retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
                )
            if _should_retry(status, None) and not last_attempt:
                retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
                logger.debug(f"{self.name}: HTTP {status}, retrying (attempt {i + 1}/{self._max_attempts})")
                await self._sleep(_retry_delay(i, self._backoff_base, self._backoff_cap, retry_after))
                continue
            if status >= 400:
                raise ProviderUnavailable(
                    f"{self.name}: HTTP {status}",
                    provider=self.name,
                    kind=classify_error(status),
                )
            return resp

        raise ProviderUnavailable(
            f"{self.name}: attempts exhausted", provider=self.name, kind=classify_error(None, last_exc)
        )


class HuggingFaceProvider(HttpEmbeddingProvider):
    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("name", "huggingface")
        super().__init__(**kwargs)

    @property
    def url(self) -> str:
        return f"{self._endpoint.rstrip('/')}/{self._model}"

    def _build_payload(self, texts: Sequence[str], kind: EmbedKind) -> Dict[str, Any]:
        prefix = "query: " if kind == "query" else "passage: "
        return {"inputs": [prefix + t for t in texts], "options": {"wait_for_model": True}}

    def _parse_response(self, data: Any, expected: int) -> List[np.ndarray]:
        if not isinstance(data, list):
            raise ValueError("expected a JSON list")
        # Entrada única pode voltar sem a dimensão do lote
        if expected == 1 and data and not isinstance(data[0], list):
            data = [data]
        if len(data) != expected:
            raise ValueError(f"expected {expected} embeddings, got {len(data)}")
        return [_mean_pool(item) for item in data]


class OpenAIProvider(HttpEmbeddingProvider):
    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("name", "openai")
        super().__init__(**kwargs)

    def _build_payload(self, texts: Sequence[str], kind: EmbedKind) -> Dict[str, Any]:
        return {"model": self._model, "input": list(texts), "dimensions": self._dim}

    def _parse_response(self, data: Any, expected: int) -> List[np.ndarray]:
        items = sorted(data["data"], key=lambda d: d.get("index", 0))
        if len(items) != expected:
            raise ValueError(f"expected {expected} embeddings, got {len(items)}")
        return [np.asarray(d["embedding"], dtype=np.float32) for d in items]


class MistralProvider(OpenAIProvider):
    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("name", "mistral")
        super().__init__(**kwargs)

    def _build_payload(self, texts: Sequence[str], kind: EmbedKind) -> Dict[str, Any]:
        return {"model": self._model, "input": list(texts)}


class HuggingFaceImageProvider:
    """
    Embeddings de imagem (CLIP via feature-extraction) para a busca cross-modal.
    Envia os bytes crus; mesma política de erro dos provedores de texto.
    """

    name = "huggingface-image"

    def __init__(self, *, endpoint: str, api_key: Optional[str], model: str, client: httpx.AsyncClient) -> None:
        self._endpoint = endpoint
        self._api_key = api_key
        self._model = model
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    async def try_embed_image(self, data: bytes) -> EmbedResult:
        if not self.enabled:
            return EmbedResult(error=ErrorKind.AUTH, message=f"{self.name}: API key not configured")
        try:
            resp = await self._client.post(
                f"{self._endpoint.rstrip('/')}/{self._model}",
                content=data,
                headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/octet-stream"},
            )
        except httpx.TransportError as e:
            return EmbedResult(error=ErrorKind.NETWORK, message=f"{self.name}: {type(e).__name__}")
        if resp.status_code >= 400:
            return EmbedResult(
                error=classify_error(resp.status_code),
                message=f"{self.name}: HTTP {resp.status_code}",
                retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
            )
        try:
            return EmbedResult(vectors=[_mean_pool(resp.json())])
        except ValueError as e:
            return EmbedResult(error=ErrorKind.UNKNOWN, message=f"{self.name}: invalid response ({e})")


def build_remote_providers(cfg, client: httpx.AsyncClient) -> List[EmbeddingProvider]:
    """
    Monta a lista ordenada de provedores remotos.
    Padrão: HF -> OpenAI -> Mistral; PREFER_MISTRAL_OVER_HF coloca Mistral à frente.
    """
    common = dict(
        dim=getattr(cfg, "EMBED_DIM", 1024),
        client=client,
        max_attempts=getattr(cfg, "EMBED_MAX_ATTEMPTS", 5),
        backoff_base=getattr(cfg, "EMBED_BACKOFF_BASE", 0.5),
        backoff_cap=getattr(cfg, "EMBED_BACKOFF_CAP", 30.0),
    )
    hf = HuggingFaceProvider(
        endpoint=cfg.HF_ENDPOINT,
        api_key=cfg.HF_API_KEY,
        model=cfg.HF_EMBEDDING_MODEL,
        batch_size=getattr(cfg, "HF_BATCH_SIZE", 32),
        **common,
    )
    openai = OpenAIProvider(
        endpoint=cfg.OPENAI_ENDPOINT,
        api_key=cfg.OPENAI_API_KEY,
        model=cfg.OPENAI_EMBEDDING_MODEL,
        batch_size=getattr(cfg, "OPENAI_BATCH_SIZE", 100),
        **common,
    )
    mistral = MistralProvider(
        endpoint=cfg.MISTRAL_ENDPOINT,
        api_key=cfg.MISTRAL_API_KEY,
        model=cfg.MISTRAL_EMBEDDING_MODEL,
        batch_size=getattr(cfg, "MISTRAL_BATCH_SIZE", 50),
        **common,
    )
    if getattr(cfg, "PREFER_MISTRAL_OVER_HF", False):
        return [mistral, hf, openai]
    return [hf, openai, mistral]
