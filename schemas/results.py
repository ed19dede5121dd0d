# schemas/results.py
"""
Schemas de Saída - FeedReco

Estruturas devolvidas ao chamador. O núcleo devolve ids + scores + payload de
passagem + motivo; a camada de rotas hidrata os registros completos e decide o
formato HTTP/JSON final.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SearchProvenance = Literal[
    "semantic", "hybrid", "multi_stage", "multi_vector", "cross_modal", "filtered", "similar", "fallback"
]
AlgorithmTag = Literal["collaborative", "content", "matrix_factorization", "serendipity", "fallback"]


class _Out(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RankedResult(_Out):
    """Um resultado de busca: id da entidade, score, payload e proveniência."""

    entity_id: str = Field(..., min_length=1)
    score: float
    payload: Dict[str, Any] = Field(default_factory=dict, description="Metadados de passagem (payload do Qdrant ou registro relacional).")
    reason: Optional[str] = Field(default=None, max_length=200)
    search_type: SearchProvenance = "semantic"
    relevance_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    is_serendipitous: bool = False


class RecommendationResult(_Out):
    entity_id: str = Field(..., min_length=1)
    score: float
    reason: str
    algorithm: AlgorithmTag
    diversity_score: float = 0.0
    serendipity_score: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RecommendationMetadata(_Out):
    total_processing_time_ms: float = 0.0
    algorithms_used: List[str] = Field(default_factory=list)
    diversity_applied: bool = False
    personalized_for_user: bool = False
    fallback_reason: Optional[str] = None


class RecommendationResponse(_Out):
    recommendations: List[RecommendationResult] = Field(default_factory=list)
    metadata: RecommendationMetadata = Field(default_factory=RecommendationMetadata)
