# feedreco/embeddings/__init__.py
"""
Embeddings module for the retrieval core.

Provides the provider chain (remote providers, optional local model, deterministic
pseudo-embedding fallback) and the shared rate-limiter state.
"""

from .embedding_chain import EmbeddingProviderChain, first_success
from .providers import EmbeddingProvider, EmbedResult, HttpEmbeddingProvider
from .pseudo import pseudo_embedding
from .rate_limiter import RateLimiterState

__all__ = [
    "EmbeddingProviderChain",
    "first_success",
    "EmbeddingProvider",
    "EmbedResult",
    "HttpEmbeddingProvider",
    "pseudo_embedding",
    "RateLimiterState",
]
