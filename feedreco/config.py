# feedreco/config.py
"""
Configuração Central do Motor de Busca Semântica e Recomendação - FeedReco

Este módulo centraliza todas as configurações do núcleo de recuperação do fórum,
que transforma consultas livres e comportamento implícito dos usuários em conteúdo
ranqueado usando busca vetorial, busca híbrida (densa + esparsa), re-ranking em
múltiplos estágios e recomendações com diversidade.

Arquitetura do Sistema:
- Cadeia de provedores de embeddings (HuggingFace, OpenAI, Mistral, local) com
  backoff por provedor e fallback determinístico (pseudo-embedding)
- Armazenamento vetorial em Qdrant (coleções por tipo de entidade)
- Busca guiada por "lentes" (trending, deep-dive, expert-picks, ...)
- Re-ranking com diversidade, serendipidade e decaimento temporal
- Recomendação híbrida: colaborativa + conteúdo + fatoração heurística

Todas as constantes calibradas manualmente ficam aqui como valores padrão nomeados
e sobrescrevíveis (nada de literais espalhados pelo código).
"""

from dataclasses import dataclass
from typing import Dict, Literal, Optional, Tuple
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class FeedRecoConfig:
    # -----------------------------
    # Dimensões dos Vetores
    # -----------------------------
    EMBED_DIM: int = int(os.getenv("EMBED_DIM", "1024"))  # Dimensão dos vetores densos de texto
    MULTIMODAL_DIM: int = int(os.getenv("MULTIMODAL_DIM", "768"))  # Dimensão dos vetores multimodais
    SPARSE_DIM: int = int(os.getenv("SPARSE_DIM", "30000"))  # Tamanho do vocabulário esparso (slots)
    STRICT_DIMENSIONS: bool = False  # True = DimensionMismatch é lançado em vez de corrigido

    # -----------------------------
    # Provedores de Embeddings
    # -----------------------------
    HF_API_KEY: Optional[str] = os.getenv("HUGGINGFACE_API_KEY")
    HF_ENDPOINT: str = os.getenv("HF_ENDPOINT", "https://api-inference.huggingface.co/pipeline/feature-extraction")
    HF_EMBEDDING_MODEL: str = os.getenv("HF_EMBEDDING_MODEL", "intfloat/e5-large-v2")
    HF_BATCH_SIZE: int = 32  # Textos por chamada ao HuggingFace

    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    OPENAI_ENDPOINT: str = os.getenv("OPENAI_ENDPOINT", "https://api.openai.com/v1/embeddings")
    OPENAI_EMBEDDING_MODEL: str = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
    OPENAI_BATCH_SIZE: int = 100

    MISTRAL_API_KEY: Optional[str] = os.getenv("MISTRAL_API_KEY")
    MISTRAL_ENDPOINT: str = os.getenv("MISTRAL_ENDPOINT", "https://api.mistral.ai/v1/embeddings")
    MISTRAL_EMBEDDING_MODEL: str = os.getenv("MISTRAL_EMBEDDING_MODEL", "mistral-embed")
    MISTRAL_BATCH_SIZE: int = 50

    # Ordem: HF -> OpenAI -> Mistral; com a flag, Mistral vai para o início
    PREFER_MISTRAL_OVER_HF: bool = _env_bool("PREFER_MISTRAL_OVER_HF", "false")

    # Provedor local (sentence-transformers, extra opcional "local")
    ENABLE_LOCAL_EMBEDDINGS: bool = _env_bool("ENABLE_LOCAL_EMBEDDINGS", "false")
    LOCAL_EMBEDDING_MODEL: str = os.getenv("LOCAL_EMBEDDING_MODEL", "intfloat/e5-large-v2")
    EMBEDDING_DEVICE: Optional[str] = os.getenv("EMBEDDING_DEVICE")  # "cpu" | "cuda" | None (auto)
    LOCAL_BATCH_SIZE: int = 64

    # Provedor de imagens para busca cross-modal (feature-extraction no HF)
    HF_IMAGE_MODEL: str = os.getenv("HF_IMAGE_MODEL", "openai/clip-vit-base-patch32")

    # -----------------------------
    # Retry, Backoff e Limites de Taxa
    # -----------------------------
    HTTP_TIMEOUT_CONNECT: float = 3.0  # Timeout para conexão
    HTTP_TIMEOUT_READ: float = 20.0  # Timeout de leitura (por tentativa)
    HTTP_TIMEOUT_WRITE: float = 5.0  # Timeout para escrita de requisição
    HTTP_TIMEOUT_POOL: float = 3.0  # Timeout para pool de conexões

    EMBED_MAX_ATTEMPTS: int = 5  # Tentativas por provedor (502/503/504 e erros de rede)
    EMBED_BACKOFF_BASE: float = 0.5  # Base do backoff exponencial (segundos)
    EMBED_BACKOFF_CAP: float = 30.0  # Teto do backoff (segundos)
    EMBED_REQUEST_BUDGET_S: float = float(os.getenv("EMBED_REQUEST_BUDGET_S", "15"))  # Orçamento total por embed()

    RATE_LIMIT_WINDOW_S: float = 60.0  # Janela de contagem de requisições
    RATE_LIMIT_MAX_REQUESTS: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "0"))  # 0 = sem cota local
    RATE_LIMIT_BACKOFF_BASE: float = 1.0  # Backoff após 429 sem Retry-After
    RATE_LIMIT_BACKOFF_CAP: float = 60.0

    # -----------------------------
    # Qdrant (armazenamento vetorial)
    # -----------------------------
    QDRANT_URL: str = os.getenv("QDRANT_URL", "http://localhost:6333")
    QDRANT_API_KEY: Optional[str] = os.getenv("QDRANT_API_KEY")
    QDRANT_TIMEOUT: int = int(os.getenv("QDRANT_TIMEOUT", "10"))
    READINESS_TIMEOUT_S: float = 0.5  # Checagem /readyz agressiva: decide o fallback

    COLLECTION_POSTS: str = "posts"
    COLLECTION_COMMENTS: str = "comments"
    COLLECTION_CATEGORIES: str = "categories"
    COLLECTION_USERS: str = "users"
    COLLECTION_MULTIMODAL: str = "multimodal_content"
    COLLECTION_RECOMMENDATIONS: str = "user_recommendations"

    POINT_ID_STRATEGY: Literal["hash", "uuid"] = os.getenv("POINT_ID_STRATEGY", "hash")
    POINT_ID_REGISTRY_MAX: int = 100_000  # Entradas do mapa reverso ponto -> id externo (LRU)

    # Fusão híbrida: "server" = query_points com Prefetch; "client" = fusão local
    HYBRID_FUSION_LOCATION: Literal["server", "client"] = os.getenv("HYBRID_FUSION_LOCATION", "server")
    FUSION_METHOD: Literal["rrf", "dbsf"] = "rrf"
    RRF_K: int = 60
    PREFETCH_FACTOR: int = 2  # Over-fetch de cada prefetch em relação ao limite final

    # -----------------------------
    # Busca Semântica e Lentes
    # -----------------------------
    DEFAULT_SEARCH_LIMIT: int = 15
    MAX_SEARCH_LIMIT: int = 100
    DEFAULT_SCORE_THRESHOLD: float = 0.7
    SEARCH_OVERFETCH_FACTOR: int = 2  # Busca densa traz 2x o limite antes da diversidade
    DEFAULT_TIME_RANGE: Literal["day", "week", "month", "year", "all"] = "week"
    MULTI_STAGE_CANDIDATE_FACTOR: int = 5  # candidate_limit padrão = limit * fator
    KEYWORD_WEIGHT: float = 0.6  # Peso da sobreposição de palavras no relevanceScore
    LENS_SIGNAL_WEIGHT: float = 0.4  # Peso do sinal específico da lente
    DEEP_DIVE_MIN_CONTENT_LENGTH: int = 300
    TRENDING_MIN_SCORE: float = 0.5
    LENS_SCORE_THRESHOLDS: Optional[Dict[str, float]] = None  # Por lente (ex.: {"top": 0.8}); sobrepõe os padrões
    NEW_RECENCY_HORIZON_DAYS: float = 7.0  # Idade em que o sinal da lente "new" zera
    RISING_RECENCY_HORIZON_DAYS: float = 3.0  # Idem para a lente "rising"

    # -----------------------------
    # Diversidade, Serendipidade e Decaimento Temporal
    # -----------------------------
    CATEGORY_DIVERSITY_BONUS: float = 0.4  # Categoria ainda não vista
    AUTHOR_DIVERSITY_BONUS: float = 0.3  # Autor ainda não visto
    TOPIC_DIVERSITY_BONUS: float = 0.3  # Tópicos pouco sobrepostos
    DIVERSITY_THRESHOLD: float = 0.3  # Diversidade mínima de tópicos para o bônus
    MIN_DIVERSE_RESULTS: int = 3  # Piso: abaixo disso, inclui mesmo sem diversidade
    SERENDIPITY_MIN_DIVERSITY: float = 0.7  # Diversidade acumulada p/ marcar serendipidade
    SERENDIPITY_FACTOR: float = 0.1
    DIVERSITY_RERANK_WEIGHT: float = 0.1  # score += 0.1 * diversity
    SERENDIPITY_RERANK_WEIGHT: float = 0.05  # score += 0.05 * serendipity
    TIME_DECAY_FACTOR: float = 0.95  # score *= fator ^ idade_em_dias
    DEFAULT_AGE_DAYS: float = 1.0  # Idade assumida quando não há data

    # -----------------------------
    # Motor de Recomendação
    # -----------------------------
    DEFAULT_RECOMMENDATION_LIMIT: int = 20
    MIN_COLLABORATIVE_INTERACTIONS: int = 3
    COLLABORATIVE_NEIGHBORS: int = 50  # Perfis similares buscados
    COLLABORATIVE_SHARE: float = 0.6  # Fração do limite para o ramo colaborativo
    CONTENT_SHARE: float = 0.4
    FACTORIZATION_SHARE: float = 0.3
    FACTORIZATION_PENALTY: float = 0.8  # Confiança menor no ramo heurístico
    FACTORIZATION_CATEGORY_SLOTS: int = 100
    FACTORIZATION_INTERACTION_SLOTS: int = 200
    FACTORIZATION_TYPE_STRIDE: int = 50
    PREFERRED_CATEGORY_LIMIT: int = 5  # Top categorias no filtro "should"
    PREFERRED_CATEGORY_BOOST: float = 0.05
    RECOMMENDATION_SCORE_THRESHOLD: float = 0.3
    SERENDIPITY_INJECT_COUNT: int = 3
    SERENDIPITY_INTERVAL: int = 3  # Posições min((i+1)*3, len)
    SERENDIPITY_MAX_CATEGORIES: int = 5
    SERENDIPITY_QUERY: str = "high quality popular trending content"
    FALLBACK_BASE_SCORE: float = 0.5
    FALLBACK_SCORE_STEP: float = 0.01
    SNAPSHOT_TOP_CATEGORIES: int = 3
    SNAPSHOT_MAX_POSTS: int = 50

    INTERACTION_WEIGHTS: Optional[Dict[str, float]] = None  # Definido em __post_init__
    ACTIVITY_MULTIPLIERS: Optional[Dict[str, float]] = None  # Definido em __post_init__
    ACTIVITY_HIGH_THRESHOLD: int = 50
    ACTIVITY_MEDIUM_THRESHOLD: int = 20
    CONTENT_CREATOR_MIN_POSTS: int = 10
    ACTIVE_COMMENTER_MIN_COMMENTS: int = 50
    DETAILED_WRITER_MIN_CHARS: int = 1000
    INTEREST_KEYWORDS: Tuple[str, ...] = (
        "technology", "ai", "programming", "design", "science", "business", "health",
    )

    # -----------------------------
    # Observabilidade
    # -----------------------------
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_RETRIEVAL_DEBUG: bool = _env_bool("LOG_RETRIEVAL_DEBUG", "false")

    # -----------------------------
    # Configurações Derivadas e Pós-inicialização
    # -----------------------------
    def __post_init__(self):
        # Pesos por tipo de interação (view < like < comment < bookmark)
        if object.__getattribute__(self, "INTERACTION_WEIGHTS") is None:
            object.__setattr__(
                self,
                "INTERACTION_WEIGHTS",
                {"view": 0.1, "like": 0.5, "comment": 0.8, "bookmark": 1.0},
            )

        # Multiplicador do vetor de fatoração por nível de atividade
        if object.__getattribute__(self, "ACTIVITY_MULTIPLIERS") is None:
            object.__setattr__(
                self,
                "ACTIVITY_MULTIPLIERS",
                {"low": 0.5, "medium": 1.0, "high": 1.5},
            )

    @property
    def coarse_dim(self) -> int:
        return max(1, self.EMBED_DIM // 2)
