# schemas/search_input.py
"""
Schemas de Entrada da Busca e da Recomendação - FeedReco

Opções aceitas pelas operações expostas ao chamador (camada de rotas/CLI).
Erros de validação aqui são bugs de quem chamou: os serviços os convertem em
InvalidQuery em vez de corrigir os valores silenciosamente.
"""

from typing import Any, Dict, List, Literal, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from feedreco.errors import InvalidQuery

TimeRange = Literal["day", "week", "month", "year", "all"]
FusionName = Literal["rrf", "dbsf"]
Modality = Literal["text", "image", "document"]
SearchType = Literal["post", "comment", "category", "user"]


class _Options(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True, extra="forbid")


class SemanticSearchOptions(_Options):
    limit: int = Field(default=15, gt=0, le=100, description="Número máximo de resultados.")
    score_threshold: Optional[float] = Field(
        default=None,
        alias="scoreThreshold",
        ge=0.0,
        le=1.0,
        description="Score mínimo; quando ausente, usa o threshold da lente.",
    )
    time_range: TimeRange = Field(default="week", alias="timeRange")
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    filters: Optional[Dict[str, Any]] = Field(default=None, description="Filtro estruturado extra (must/should/must_not).")
    apply_time_decay: bool = Field(default=False, alias="applyTimeDecay")


class HybridSearchOptions(_Options):
    limit: int = Field(default=10, gt=0, le=100)
    dense_weight: float = Field(default=0.7, alias="denseWeight", ge=0.0)
    sparse_weight: float = Field(default=0.3, alias="sparseWeight", ge=0.0)
    fusion_method: FusionName = Field(default="rrf", alias="fusionMethod")
    filters: Optional[Dict[str, Any]] = None
    collections: List[str] = Field(default_factory=lambda: ["posts"], min_length=1)
    score_threshold: Optional[float] = Field(default=None, alias="scoreThreshold", ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _weights_not_both_zero(self):
        if self.dense_weight == 0 and self.sparse_weight == 0:
            raise ValueError("denseWeight and sparseWeight cannot both be zero")
        return self


class MultiStageSearchOptions(_Options):
    limit: int = Field(default=10, gt=0, le=100)
    candidate_limit: Optional[int] = Field(default=None, alias="candidateLimit", gt=0, le=1000)
    filters: Optional[Dict[str, Any]] = None
    score_threshold: Optional[float] = Field(default=None, alias="scoreThreshold", ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _candidates_cover_limit(self):
        if self.candidate_limit is not None and self.candidate_limit < self.limit:
            raise ValueError("candidateLimit must be >= limit")
        return self


class CrossModalSearchOptions(_Options):
    limit: int = Field(default=10, gt=0, le=100)
    score_threshold: Optional[float] = Field(default=0.7, alias="scoreThreshold", ge=0.0, le=1.0)
    filters: Optional[Dict[str, Any]] = None


class MultiVectorSearchOptions(_Options):
    """Busca na coleção multimodal fundindo um prefetch por vetor nomeado."""

    limit: int = Field(default=10, gt=0, le=100)
    vectors: List[Modality] = Field(default_factory=lambda: ["text", "document"], min_length=1)
    fusion_method: FusionName = Field(default="rrf", alias="fusionMethod")
    score_threshold: Optional[float] = Field(default=0.6, alias="scoreThreshold", ge=0.0, le=1.0)
    filters: Optional[Dict[str, Any]] = None


class FilteredSearchOptions(_Options):
    """Busca em várias coleções (posts/comments/categories/users) com filtros."""

    limit: int = Field(default=20, gt=0, le=100)
    types: List[SearchType] = Field(default_factory=lambda: ["post", "comment", "category"], min_length=1)
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    time_range: TimeRange = Field(default="all", alias="timeRange")
    sort_by: Literal["relevance", "new", "top"] = Field(default="relevance", alias="sortBy")
    score_threshold: Optional[float] = Field(default=0.5, alias="scoreThreshold", ge=0.0, le=1.0)


class RecommendationOptions(_Options):
    limit: int = Field(default=20, gt=0, le=100)
    algorithm: Literal["collaborative", "content", "hybrid"] = "hybrid"
    diversity_enabled: bool = Field(default=True, alias="diversityEnabled")
    diversity_threshold: Optional[float] = Field(default=None, alias="diversityThreshold", ge=0.0, le=1.0)
    serendipity_enabled: bool = Field(default=True, alias="serendipityEnabled")
    serendipity_factor: Optional[float] = Field(default=None, alias="serendipityFactor", ge=0.0, le=1.0)
    time_decay: bool = Field(default=True, alias="timeDecay")
    decay_factor: Optional[float] = Field(default=None, alias="decayFactor", gt=0.0, le=1.0)
    exclude_ids: List[str] = Field(default_factory=list, alias="excludeIds")


O = TypeVar("O", bound=BaseModel)


def parse_options(model: Type[O], options: Union[None, O, Mapping[str, Any]]) -> O:
    """Aceita None, a própria instância ou um dict; erros de validação viram InvalidQuery."""
    if options is None:
        return model()
    if isinstance(options, model):
        return options
    try:
        return model.model_validate(dict(options))
    except ValidationError as e:
        raise InvalidQuery(f"invalid options: {e.errors(include_url=False)}") from e
    except TypeError as e:
        raise InvalidQuery(f"options must be an object: {e}") from e
