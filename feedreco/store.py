# feedreco/store.py
"""
Capacidade do banco relacional (colaborador externo).

O núcleo só depende do protocolo `RelationalStore`:
- get_entity(type, id) -> registro | None
- query_entities(type, filter, order_by, limit) -> registros (fallback por palavras-chave
  e hidratação de ids)
- get_user_profile(user_id) -> histórico recente limitado (posts, comments, votes, bookmarks)

`InMemoryRelationalStore` implementa o protocolo sobre listas de dicts carregadas de um
arquivo JSON (CLI, ferramenta de operação e testes). Em produção a camada de aplicação
injeta o adaptador do ORM.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from schemas.payloads import related_id, to_timestamp

ENTITY_TYPES = ("post", "comment", "category", "user")

_TEXT_FIELDS: Dict[str, Sequence[str]] = {
    "post": ("title", "content"),
    "comment": ("content",),
    "category": ("name", "description"),
    "user": ("name", "username", "bio"),
}


@dataclass
class EntityFilter:
    text_contains: Optional[str] = None
    category_id: Optional[str] = None
    category_ids: Optional[Sequence[str]] = None
    user_id: Optional[str] = None
    exclude_user_id: Optional[str] = None
    exclude_ids: Sequence[str] = ()
    slug: Optional[str] = None
    created_after_ts: Optional[int] = None


@dataclass
class UserActivity:
    """Histórico recente de um usuário (cada voto/bookmark já traz o categoryId do post)."""

    user_id: str
    user: Dict[str, Any] = field(default_factory=dict)
    posts: List[Dict[str, Any]] = field(default_factory=list)
    comments: List[Dict[str, Any]] = field(default_factory=list)
    votes: List[Dict[str, Any]] = field(default_factory=list)
    bookmarks: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def has_history(self) -> bool:
        return bool(self.posts or self.comments or self.votes or self.bookmarks)


class RelationalStore(Protocol):
    async def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def query_entities(
        self,
        entity_type: str,
        filter: Optional[EntityFilter] = None,
        order_by: Optional[str] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        ...

    async def get_user_profile(self, user_id: str) -> Optional[UserActivity]:
        ...


def _created_ts(record: Mapping[str, Any]) -> int:
    return to_timestamp(record.get("createdAt")) or 0


def _author_id(record: Mapping[str, Any]) -> Optional[str]:
    return related_id(record, "userId", "user")


def _category_id(record: Mapping[str, Any]) -> Optional[str]:
    return related_id(record, "categoryId", "category")


def _vote_count(record: Mapping[str, Any]) -> int:
    return int(record.get("voteCount") or (record.get("_count") or {}).get("votes") or 0)


def _view_count(record: Mapping[str, Any]) -> int:
    return int(record.get("viewCount") or record.get("views") or 0)


class InMemoryRelationalStore:
    def __init__(
        self,
        *,
        posts: Iterable[Mapping[str, Any]] = (),
        comments: Iterable[Mapping[str, Any]] = (),
        categories: Iterable[Mapping[str, Any]] = (),
        users: Iterable[Mapping[str, Any]] = (),
        votes: Iterable[Mapping[str, Any]] = (),
        bookmarks: Iterable[Mapping[str, Any]] = (),
        history_limit: int = 100,
    ) -> None:
        self._tables: Dict[str, List[Dict[str, Any]]] = {
            "post": [dict(r) for r in posts],
            "comment": [dict(r) for r in comments],
            "category": [dict(r) for r in categories],
            "user": [dict(r) for r in users],
        }
        self._votes = [dict(v) for v in votes]
        self._bookmarks = [dict(b) for b in bookmarks]
        self._history_limit = history_limit

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InMemoryRelationalStore":
        for key in ("posts", "comments", "categories", "users", "votes", "bookmarks"):
            value = data.get(key, [])
            if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
                raise ValueError(f"'{key}' deve ser uma lista de objetos JSON")
        return cls(
            posts=data.get("posts", []),
            comments=data.get("comments", []),
            categories=data.get("categories", []),
            users=data.get("users", []),
            votes=data.get("votes", []),
            bookmarks=data.get("bookmarks", []),
        )

    @property
    def posts(self) -> List[Dict[str, Any]]:
        return list(self._tables["post"])

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        """Cópia das tabelas de entidades (usada na indexação em lote)."""
        return {name: [dict(r) for r in rows] for name, rows in self._tables.items()}

    # --------- Protocolo RelationalStore ---------
    async def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        for record in self._table(entity_type):
            if str(record.get("id")) == str(entity_id):
                return dict(record)
        return None

    async def query_entities(
        self,
        entity_type: str,
        filter: Optional[EntityFilter] = None,
        order_by: Optional[str] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        rows = [r for r in self._table(entity_type) if self._matches(entity_type, r, filter)]
        rows = self._order(rows, order_by)
        return [dict(r) for r in rows[: max(0, limit)]]

    async def get_user_profile(self, user_id: str) -> Optional[UserActivity]:
        user = await self.get_entity("user", user_id)
        if user is None:
            return None

        posts_by_id = {str(p.get("id")): p for p in self._tables["post"]}

        def newest(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
            return sorted(rows, key=_created_ts, reverse=True)[: self._history_limit]

        posts = newest(r for r in self._tables["post"] if _author_id(r) == str(user_id))
        comments = []
        for c in newest(r for r in self._tables["comment"] if _author_id(r) == str(user_id)):
            post = posts_by_id.get(str(c.get("postId")), {})
            comments.append({**c, "categoryId": c.get("categoryId") or _category_id(post)})
        votes = []
        for v in newest(r for r in self._votes if str(r.get("userId")) == str(user_id)):
            post = posts_by_id.get(str(v.get("postId")), {})
            votes.append({**v, "categoryId": v.get("categoryId") or _category_id(post)})
        bookmarks = []
        for b in newest(r for r in self._bookmarks if str(r.get("userId")) == str(user_id)):
            post = posts_by_id.get(str(b.get("postId")), {})
            bookmarks.append({**b, "categoryId": b.get("categoryId") or _category_id(post)})

        return UserActivity(
            user_id=str(user_id),
            user=user,
            posts=[dict(p) for p in posts],
            comments=comments,
            votes=votes,
            bookmarks=bookmarks,
        )

    # --------- Internos ---------
    def _table(self, entity_type: str) -> List[Dict[str, Any]]:
        if entity_type not in self._tables:
            raise ValueError(f"tipo de entidade desconhecido: {entity_type!r}")
        return self._tables[entity_type]

    def _matches(self, entity_type: str, record: Mapping[str, Any], f: Optional[EntityFilter]) -> bool:
        if f is None:
            return True
        if f.text_contains:
            needle = f.text_contains.casefold()
            hay = " ".join(str(record.get(k) or "") for k in _TEXT_FIELDS[entity_type]).casefold()
            if needle not in hay:
                return False
        cid = _category_id(record) if entity_type != "category" else str(record.get("id"))
        if f.category_id is not None and cid != str(f.category_id):
            return False
        if f.category_ids is not None and cid not in {str(c) for c in f.category_ids}:
            return False
        author = _author_id(record) if entity_type != "user" else str(record.get("id"))
        if f.user_id is not None and author != str(f.user_id):
            return False
        if f.exclude_user_id is not None and author == str(f.exclude_user_id):
            return False
        if f.exclude_ids and str(record.get("id")) in {str(i) for i in f.exclude_ids}:
            return False
        if f.slug is not None and record.get("slug") != f.slug:
            return False
        if f.created_after_ts is not None and _created_ts(record) < f.created_after_ts:
            return False
        return True

    @staticmethod
    def _order(rows: List[Dict[str, Any]], order_by: Optional[str]) -> List[Dict[str, Any]]:
        if not order_by:
            return rows
        field_name, _, direction = order_by.partition(" ")
        reverse = direction.strip().lower() != "asc"
        if field_name == "createdAt":
            key = _created_ts
        elif field_name == "votes":
            key = _vote_count
        elif field_name == "views":
            key = _view_count
        else:
            raise ValueError(f"ordenação não suportada: {order_by!r}")
        return sorted(rows, key=key, reverse=reverse)


def _read_json(path: str | Path) -> Any:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Arquivo não encontrado: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"JSON inválido em {p}: {e}") from e


def load_store_from_file(path: str | Path) -> InMemoryRelationalStore:
    """
    Lê um dataset JSON com as chaves posts/comments/categories/users/votes/bookmarks.
    Chaves ausentes viram listas vazias.
    """
    data = _read_json(path)
    if not isinstance(data, dict):
        raise ValueError(f"O dataset deve ser um objeto JSON (dict). Arquivo: {path}")
    return InMemoryRelationalStore.from_dict(data)
