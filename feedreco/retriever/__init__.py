# feedreco/retriever/__init__.py
"""
Retrieval module: lens-steered semantic search, hybrid and multi-stage search.
"""

from .lenses import Lens, lens_profile
from .semantic_search import SemanticSearchService

__all__ = [
    "Lens",
    "lens_profile",
    "SemanticSearchService",
]
