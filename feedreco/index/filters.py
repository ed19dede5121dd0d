# feedreco/index/filters.py
"""
Filtros estruturados sobre payload (must / should / must_not).

- Condições: igualdade exata, "qualquer um de" e faixa numérica.
- Conversão para qdrant_client.models.Filter.
- Parsing de filtros em formato JSON vindos do chamador (formato inválido -> MalformedFilter).
- Avaliação local (`matches`) para caminhos sem Qdrant (fallbacks, testes).
- Filtro de janela temporal (day/week/month/year/all).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from qdrant_client import models

from feedreco.errors import MalformedFilter

DAY_MS = 24 * 60 * 60 * 1000

TIME_RANGES_MS: Dict[str, Optional[int]] = {
    "day": DAY_MS,
    "week": 7 * DAY_MS,
    "month": 30 * DAY_MS,
    "year": 365 * DAY_MS,
    "all": None,
}

_RANGE_OPS = ("gte", "gt", "lte", "lt")


@dataclass(frozen=True)
class Condition:
    key: str
    value: Any = None
    any: Optional[Tuple[Any, ...]] = None
    gte: Optional[float] = None
    gt: Optional[float] = None
    lte: Optional[float] = None
    lt: Optional[float] = None

    @property
    def is_range(self) -> bool:
        return any(getattr(self, op) is not None for op in _RANGE_OPS)

    def to_qdrant(self) -> models.FieldCondition:
        if self.is_range:
            return models.FieldCondition(
                key=self.key,
                range=models.Range(gte=self.gte, gt=self.gt, lte=self.lte, lt=self.lt),
            )
        if self.any is not None:
            return models.FieldCondition(key=self.key, match=models.MatchAny(any=list(self.any)))
        return models.FieldCondition(key=self.key, match=models.MatchValue(value=self.value))

    def matches(self, payload: Mapping[str, Any]) -> bool:
        actual = payload.get(self.key)
        if self.is_range:
            if not isinstance(actual, (int, float)) or isinstance(actual, bool):
                return False
            if self.gte is not None and not actual >= self.gte:
                return False
            if self.gt is not None and not actual > self.gt:
                return False
            if self.lte is not None and not actual <= self.lte:
                return False
            if self.lt is not None and not actual < self.lt:
                return False
            return True
        if self.any is not None:
            if isinstance(actual, list):
                return any(a in self.any for a in actual)
            return actual in self.any
        if isinstance(actual, list):
            return self.value in actual
        return actual == self.value


def match(key: str, value: Any) -> Condition:
    return Condition(key=key, value=value)


def any_of(key: str, values: Iterable[Any]) -> Condition:
    return Condition(key=key, any=tuple(values))


def in_range(key: str, *, gte: Optional[float] = None, gt: Optional[float] = None,
             lte: Optional[float] = None, lt: Optional[float] = None) -> Condition:
    return Condition(key=key, gte=gte, gt=gt, lte=lte, lt=lt)


@dataclass
class FilterSpec:
    must: List[Condition] = field(default_factory=list)
    should: List[Condition] = field(default_factory=list)
    must_not: List[Condition] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.must or self.should or self.must_not)

    def merge(self, other: Optional["FilterSpec"]) -> "FilterSpec":
        """Novo FilterSpec com as condições de ambos (não altera os originais)."""
        if other is None:
            return FilterSpec(list(self.must), list(self.should), list(self.must_not))
        return FilterSpec(
            must=[*self.must, *other.must],
            should=[*self.should, *other.should],
            must_not=[*self.must_not, *other.must_not],
        )

    def to_qdrant(self) -> Optional[models.Filter]:
        if self.is_empty:
            return None
        return models.Filter(
            must=[c.to_qdrant() for c in self.must] or None,
            should=[c.to_qdrant() for c in self.should] or None,
            must_not=[c.to_qdrant() for c in self.must_not] or None,
        )

    def matches(self, payload: Mapping[str, Any]) -> bool:
        if not all(c.matches(payload) for c in self.must):
            return False
        if self.should and not any(c.matches(payload) for c in self.should):
            return False
        return not any(c.matches(payload) for c in self.must_not)

    # --------- Parsing de filtros do chamador ---------
    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "FilterSpec":
        """
        Aceita o formato estruturado
            {"must": [{"key": "categoryId", "match": {"value": "c1"}}], "must_not": [...]}
        ou o atalho plano {"categoryId": "c1", "userId": ["u1", "u2"]} (tudo em must).
        """
        if not data:
            return cls()
        if not isinstance(data, Mapping):
            raise MalformedFilter(f"filters must be an object, got {type(data).__name__}")

        groups = {"must", "should", "must_not"}
        if set(data) & groups:
            unknown = set(data) - groups
            if unknown:
                raise MalformedFilter(f"unknown filter groups: {sorted(unknown)}")
            return cls(
                must=_parse_group(data.get("must")),
                should=_parse_group(data.get("should")),
                must_not=_parse_group(data.get("must_not")),
            )

        conds: List[Condition] = []
        for key, value in data.items():
            if isinstance(value, (list, tuple)):
                conds.append(any_of(key, value))
            elif isinstance(value, Mapping):
                conds.append(_parse_range(key, value))
            else:
                conds.append(match(key, value))
        return cls(must=conds)


def _parse_group(items: Any) -> List[Condition]:
    if items is None:
        return []
    if not isinstance(items, Sequence) or isinstance(items, (str, bytes)):
        raise MalformedFilter("filter group must be a list of conditions")
    return [_parse_condition(item) for item in items]


def _parse_condition(item: Any) -> Condition:
    if not isinstance(item, Mapping) or not isinstance(item.get("key"), str):
        raise MalformedFilter(f"condition needs a string 'key': {item!r}")
    key = item["key"]
    if "match" in item:
        m = item["match"]
        if isinstance(m, Mapping) and "value" in m:
            return match(key, m["value"])
        if isinstance(m, Mapping) and isinstance(m.get("any"), (list, tuple)):
            return any_of(key, m["any"])
        raise MalformedFilter(f"unsupported match clause for '{key}': {m!r}")
    if "range" in item and isinstance(item["range"], Mapping):
        return _parse_range(key, item["range"])
    raise MalformedFilter(f"condition for '{key}' needs 'match' or 'range'")


def _parse_range(key: str, spec: Mapping[str, Any]) -> Condition:
    bad = set(spec) - set(_RANGE_OPS)
    if bad or not spec:
        raise MalformedFilter(f"unsupported range operators for '{key}': {sorted(bad) or 'empty'}")
    values: Dict[str, float] = {}
    for op, v in spec.items():
        if not isinstance(v, (int, float)) or isinstance(v, bool):
            raise MalformedFilter(f"range bound '{op}' for '{key}' must be numeric")
        values[op] = v
    return in_range(key, **values)


# -----------------------------
# Janela temporal
# -----------------------------
def time_range_lower_bound_ms(time_range: Optional[str], now_ms: int) -> Optional[int]:
    """Limite inferior (ms) = agora - duração; "all"/None -> sem limite."""
    if time_range is None:
        return None
    if time_range not in TIME_RANGES_MS:
        raise MalformedFilter(f"unsupported time range '{time_range}'")
    duration = TIME_RANGES_MS[time_range]
    if duration is None:
        return None
    return int(now_ms) - duration


def time_range_condition(time_range: Optional[str], now_ms: int, key: str = "createdAtTs") -> Optional[Condition]:
    # createdAtTs é gravado em segundos (unix)
    lower_ms = time_range_lower_bound_ms(time_range, now_ms)
    if lower_ms is None:
        return None
    return in_range(key, gte=lower_ms // 1000)
