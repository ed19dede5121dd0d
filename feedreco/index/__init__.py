# feedreco/index/__init__.py
"""
Vector index module.

Provides the Qdrant adapter, collection definitions, filters, sparse vectors and fusion.
"""

from .collections import CollectionDefinition, PointIdRegistry, default_collections
from .filters import FilterSpec
from .fusion import fuse, reciprocal_rank_fusion
from .sparse import SparseVector
from .vector_store import VectorHit, VectorStoreAdapter

__all__ = [
    "CollectionDefinition",
    "PointIdRegistry",
    "default_collections",
    "FilterSpec",
    "fuse",
    "reciprocal_rank_fusion",
    "SparseVector",
    "VectorHit",
    "VectorStoreAdapter",
]
