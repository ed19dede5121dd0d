# feedreco/embeddings/rate_limiter.py
"""
RateLimiterState — estado de cota/backoff dos provedores de embeddings.

Único estado mutável compartilhado entre requisições concorrentes. É um objeto explícito
(com ciclo de vida init/teardown) injetado na cadeia de provedores, e não um global de
módulo, o que permite isolamento por teste e uso multi-tenant.

Seção crítica mínima: o lock protege apenas incremento de contadores e o
compare-and-reset da janela; nunca é mantido durante chamadas de rede.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProviderWindow:
    requests_in_window: int = 0
    window_reset_at: float = 0.0
    backoff_until: float = 0.0
    consecutive_rate_limits: int = 0


class RateLimiterState:
    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests_per_window: int = 0,
        backoff_base: float = 1.0,
        backoff_cap: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window_seconds = float(window_seconds)
        self._max_requests = int(max_requests_per_window)
        self._backoff_base = float(backoff_base)
        self._backoff_cap = float(backoff_cap)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._windows: Dict[str, ProviderWindow] = {}
        self._active = False

    @classmethod
    def from_config(cls, cfg) -> "RateLimiterState":
        return cls(
            window_seconds=getattr(cfg, "RATE_LIMIT_WINDOW_S", 60.0),
            max_requests_per_window=getattr(cfg, "RATE_LIMIT_MAX_REQUESTS", 0),
            backoff_base=getattr(cfg, "RATE_LIMIT_BACKOFF_BASE", 1.0),
            backoff_cap=getattr(cfg, "RATE_LIMIT_BACKOFF_CAP", 60.0),
        )

    # --------- Ciclo de vida ---------
    async def init(self) -> None:
        async with self._lock:
            self._windows.clear()
            self._active = True

    async def teardown(self) -> None:
        async with self._lock:
            self._windows.clear()
            self._active = False

    @property
    def active(self) -> bool:
        return self._active

    # --------- API pública ---------
    async def should_skip(self, provider: str) -> bool:
        """True se o provedor está em backoff ou estourou a cota da janela atual."""
        now = self._clock()
        async with self._lock:
            w = self._window(provider, now)
            if w.backoff_until > now:
                return True
            return self._max_requests > 0 and w.requests_in_window >= self._max_requests

    async def acquire(self, provider: str) -> bool:
        """Conta uma requisição na janela; False se a cota local já foi atingida."""
        now = self._clock()
        async with self._lock:
            w = self._window(provider, now)
            if self._max_requests > 0 and w.requests_in_window >= self._max_requests:
                return False
            w.requests_in_window += 1
            return True

    async def record_rate_limit(self, provider: str, retry_after: Optional[float] = None) -> float:
        """
        Abre uma janela de backoff apenas para `provider`.
        Usa Retry-After quando disponível; senão base * 2^n com teto.
        Retorna a duração do backoff em segundos.
        """
        now = self._clock()
        async with self._lock:
            w = self._window(provider, now)
            if retry_after is not None and retry_after > 0:
                delay = min(float(retry_after), self._backoff_cap)
            else:
                delay = min(self._backoff_base * (2 ** w.consecutive_rate_limits), self._backoff_cap)
            w.consecutive_rate_limits += 1
            w.backoff_until = max(w.backoff_until, now + delay)
        logger.warning(f"Provider '{provider}' rate limited; backing off for {delay:.1f}s")
        return delay

    async def record_success(self, provider: str) -> None:
        async with self._lock:
            w = self._windows.get(provider)
            if w is not None:
                w.consecutive_rate_limits = 0

    def snapshot(self, provider: str) -> ProviderWindow:
        """Cópia do estado atual (leitura sem lock; apenas para inspeção/diagnóstico)."""
        w = self._windows.get(provider) or ProviderWindow()
        return ProviderWindow(
            requests_in_window=w.requests_in_window,
            window_reset_at=w.window_reset_at,
            backoff_until=w.backoff_until,
            consecutive_rate_limits=w.consecutive_rate_limits,
        )

    # --------- Internos ---------
    def _window(self, provider: str, now: float) -> ProviderWindow:
        # Chamado sempre com o lock adquirido
        w = self._windows.get(provider)
        if w is None:
            w = ProviderWindow(window_reset_at=now + self._window_seconds)
            self._windows[provider] = w
        elif now >= w.window_reset_at:
            w.requests_in_window = 0
            w.window_reset_at = now + self._window_seconds
        return w
