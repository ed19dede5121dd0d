# feedreco/errors.py
"""
Taxonomia de erros do núcleo.

- Erros de infraestrutura (provedores de embeddings, Qdrant) são lançados pelos
  adaptadores e absorvidos pelos serviços, que degradam para o próximo fallback.
- Erros de entrada do chamador (InvalidQuery / MalformedFilter) sobem até o
  chamador: são bugs de quem chamou, não condições transitórias.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    NETWORK = "network"
    SERVER = "server"
    UNKNOWN = "unknown"


class FeedRecoError(Exception):
    """Base de todos os erros do pacote."""


class ProviderUnavailable(FeedRecoError):
    """Backend de embeddings ou armazenamento vetorial inacessível/mal configurado."""

    def __init__(self, message: str, *, provider: str = "unknown", kind: ErrorKind = ErrorKind.UNKNOWN) -> None:
        super().__init__(message)
        self.provider = provider
        self.kind = kind


class RateLimited(ProviderUnavailable):
    def __init__(self, message: str, *, provider: str = "unknown", retry_after: Optional[float] = None) -> None:
        super().__init__(message, provider=provider, kind=ErrorKind.RATE_LIMIT)
        self.retry_after = retry_after


class DimensionMismatch(FeedRecoError):
    def __init__(self, actual: int, expected: int, context: str = "") -> None:
        super().__init__(f"Vector dimension {actual} != expected {expected}" + (f" ({context})" if context else ""))
        self.actual = actual
        self.expected = expected
        self.context = context


class InvalidQuery(FeedRecoError, ValueError):
    """Entrada inválida do chamador: lente desconhecida, consulta vazia, limit <= 0."""


class MalformedFilter(InvalidQuery):
    pass


class PartialBatchFailure(FeedRecoError):
    """Um lote de embeddings voltou incompleto; os itens afetados caem no fallback individual."""

    def __init__(self, message: str, failed_indices: Sequence[int] = ()) -> None:
        super().__init__(message)
        self.failed_indices = list(failed_indices)
