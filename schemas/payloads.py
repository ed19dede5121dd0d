# schemas/payloads.py
"""
Payloads das Entidades Indexadas - FeedReco

Conjunto fechado de variantes etiquetadas por tipo de entidade (post, comment,
category, user) sobre uma base comum de campos filtráveis (type, id, createdAtTs,
categoryId, userId). Campos extras por tipo continuam aceitos (extra="allow").

Os nomes dos campos seguem o formato camelCase gravado no Qdrant, para que os
filtros (feedreco.index.filters) e os payloads usem exatamente as mesmas chaves.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from feedreco.text import tokenize

EntityType = Literal["post", "comment", "category", "user"]

# Campos com índice de payload no Qdrant
FILTERABLE_FIELDS = ("type", "categoryId", "userId", "createdAtTs")


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def nested_record(value: Any) -> Mapping[str, Any]:
    """Relação aninhada ({"id": ..., "name": ...}) ou só o id (str/int) -> dict."""
    if isinstance(value, Mapping):
        return value
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return {"id": value}
    return {}


def related_id(raw: Mapping[str, Any], flat_key: str, nested_key: str) -> Optional[str]:
    """Id de uma relação: campo achatado (categoryId) ou aninhado (category.id / category)."""
    value = raw.get(flat_key)
    if value is None or value == "":
        value = nested_record(raw.get(nested_key)).get("id")
    return _clean_str(value)


def to_timestamp(value: Any) -> Optional[int]:
    """Converte ISO-8601 / datetime / epoch (s ou ms) para unix em segundos."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        v = float(value)
        return int(v / 1000) if v > 1e11 else int(v)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _iso(value: Any) -> Optional[str]:
    ts = to_timestamp(value)
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class BasePayload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="allow")

    type: EntityType
    id: str = Field(..., min_length=1, description="Id externo estável da entidade.")
    createdAt: Optional[str] = Field(default=None, description="Data de criação (ISO-8601).")
    createdAtTs: Optional[int] = Field(default=None, description="Data de criação em unix (segundos).")
    categoryId: Optional[str] = None
    userId: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class PostPayload(BasePayload):
    type: Literal["post"] = "post"
    title: str = ""
    content: str = ""
    username: Optional[str] = None
    userName: Optional[str] = None
    categoryName: Optional[str] = None
    contentLength: int = Field(default=0, ge=0)
    isHot: bool = False
    trendingScore: float = Field(default=0.0, ge=0.0)
    viewCount: int = Field(default=0, ge=0)
    commentCount: int = Field(default=0, ge=0)
    voteCount: int = 0
    topics: List[str] = Field(default_factory=list, description="Tópicos/tags normalizados.")

    @classmethod
    def from_source(cls, raw: Mapping[str, Any]) -> "PostPayload":
        """
        Normaliza um registro de post do banco relacional.
        Aceita autor/categoria aninhados ({"user": {...}, "category": {...}}) ou achatados.
        """
        user = nested_record(raw.get("user"))
        category = nested_record(raw.get("category"))
        content = str(raw.get("content") or "")
        counts = raw.get("_count") or {}
        topics = raw.get("topics") or raw.get("tags") or []
        return cls(
            id=str(raw["id"]),
            title=_clean_str(raw.get("title")) or "",
            content=content,
            createdAt=_iso(raw.get("createdAt")),
            createdAtTs=to_timestamp(raw.get("createdAt")),
            categoryId=_clean_str(raw.get("categoryId") or category.get("id")),
            categoryName=_clean_str(raw.get("categoryName") or category.get("name")),
            userId=_clean_str(raw.get("userId") or user.get("id")),
            username=_clean_str(raw.get("username") or user.get("username")),
            userName=_clean_str(raw.get("userName") or user.get("name")),
            contentLength=len(content),
            isHot=bool(raw.get("isHot", False)),
            trendingScore=float(raw.get("trendingScore") or 0.0),
            viewCount=int(raw.get("viewCount") or raw.get("views") or 0),
            commentCount=int(raw.get("commentCount") or counts.get("comments") or 0),
            voteCount=int(raw.get("voteCount") or counts.get("votes") or 0),
            topics=[t for t in (_clean_str(x) for x in topics) if t],
        )

    def index_text(self) -> str:
        return " ".join(p for p in (self.title, self.content, self.username or "", self.categoryName or "") if p)


class CommentPayload(BasePayload):
    type: Literal["comment"] = "comment"
    content: str = ""
    postId: Optional[str] = None
    postTitle: Optional[str] = None
    username: Optional[str] = None

    @classmethod
    def from_source(cls, raw: Mapping[str, Any]) -> "CommentPayload":
        user = nested_record(raw.get("user"))
        post = nested_record(raw.get("post"))
        return cls(
            id=str(raw["id"]),
            content=str(raw.get("content") or ""),
            createdAt=_iso(raw.get("createdAt")),
            createdAtTs=to_timestamp(raw.get("createdAt")),
            postId=_clean_str(raw.get("postId") or post.get("id")),
            postTitle=_clean_str(raw.get("postTitle") or post.get("title")),
            categoryId=_clean_str(raw.get("categoryId") or post.get("categoryId")),
            userId=_clean_str(raw.get("userId") or user.get("id")),
            username=_clean_str(raw.get("username") or user.get("username")),
        )

    def index_text(self) -> str:
        return " ".join(p for p in (self.content, self.postTitle or "", self.username or "") if p)


class CategoryPayload(BasePayload):
    type: Literal["category"] = "category"
    name: str = ""
    slug: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_source(cls, raw: Mapping[str, Any]) -> "CategoryPayload":
        cid = str(raw["id"])
        return cls(
            id=cid,
            name=_clean_str(raw.get("name")) or "",
            slug=_clean_str(raw.get("slug")),
            description=_clean_str(raw.get("description")),
            categoryId=cid,
            createdAt=_iso(raw.get("createdAt")),
            createdAtTs=to_timestamp(raw.get("createdAt")),
        )

    def index_text(self) -> str:
        return " ".join(p for p in (self.name, self.description or "") if p)


class UserPayload(BasePayload):
    type: Literal["user"] = "user"
    name: Optional[str] = None
    username: Optional[str] = None
    bio: Optional[str] = None
    postCount: int = 0
    commentCount: int = 0

    @classmethod
    def from_source(cls, raw: Mapping[str, Any]) -> "UserPayload":
        uid = str(raw["id"])
        counts = raw.get("_count") or {}
        return cls(
            id=uid,
            userId=uid,
            name=_clean_str(raw.get("name")),
            username=_clean_str(raw.get("username")),
            bio=_clean_str(raw.get("bio")),
            postCount=int(raw.get("postCount") or counts.get("posts") or 0),
            commentCount=int(raw.get("commentCount") or counts.get("comments") or 0),
            createdAt=_iso(raw.get("createdAt")),
            createdAtTs=to_timestamp(raw.get("createdAt")),
        )

    def index_text(self) -> str:
        return " ".join(p for p in (self.name or "", self.username or "", self.bio or "") if p)


AnyPayload = Union[PostPayload, CommentPayload, CategoryPayload, UserPayload]

_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(
    Annotated[Union[PostPayload, CommentPayload, CategoryPayload, UserPayload], Field(discriminator="type")]
)


def parse_payload(data: Mapping[str, Any]) -> AnyPayload:
    """Valida um payload vindo do Qdrant na variante correta (discriminada por `type`)."""
    return _PAYLOAD_ADAPTER.validate_python(dict(data))


def payload_topics(payload: Mapping[str, Any]) -> List[str]:
    """Tópicos declarados ou, na falta deles, palavras relevantes do título."""
    topics = payload.get("topics")
    if isinstance(topics, list) and topics:
        return [str(t).lower() for t in topics]
    return [t for t in tokenize(str(payload.get("title") or "")) if len(t) > 3][:5]


def created_at_ts(payload: Mapping[str, Any]) -> Optional[int]:
    ts = payload.get("createdAtTs")
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        return int(ts)
    return to_timestamp(payload.get("createdAt"))
