# feedreco/explainer.py
"""
Gerador de Explicações - FeedReco

Monta o `reason` curto de cada resultado (≈ até 180 caracteres) a partir de sinais
identificáveis:
- palavra-âncora da consulta encontrada no título/categoria/conteúdo (acento-insensível)
- frase da lente usada na busca
- pistas do payload (post em alta, discussão ativa, leitura longa)
- algoritmo de origem, para recomendações
- marca de serendipidade ("algo diferente")
"""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional

from feedreco.ranker import ScoredCandidate
from feedreco.text import _WORD_RE, strip_accents, tokenize

MAX_REASON_CHARS = 180

_ALGORITHM_REASONS = {
    "collaborative": "Popular with readers who share your interests",
    "content": "Matches topics you engage with",
    "matrix_factorization": "Fits your recent activity pattern",
    "serendipity": "Something different to explore",
    "fallback": "Recent popular content",
}


def _anchor_keyword(payload: Mapping[str, Any], query_tokens: Iterable[str]) -> Optional[str]:
    """
    Primeira palavra da consulta (priorizando as mais longas) presente no título,
    categoria ou conteúdo. Devolve a grafia original quando possível.
    """
    tokens = sorted({t for t in query_tokens if len(t) > 2}, key=len, reverse=True)
    if not tokens:
        return None
    hay_raw = " | ".join(
        str(payload.get(k) or "") for k in ("title", "name", "categoryName", "content", "description")
    )
    hay_tokens = set(tokenize(hay_raw))
    for tok in tokens:
        if tok in hay_tokens:
            for m in _WORD_RE.finditer(hay_raw):
                w = m.group(0)
                if strip_accents(w).casefold() == tok:
                    return w
            return tok
    return None


def _payload_cues(payload: Mapping[str, Any]) -> List[str]:
    cues: List[str] = []
    if payload.get("isHot"):
        cues.append("hot right now")
    comments = payload.get("commentCount")
    if isinstance(comments, (int, float)) and comments >= 20:
        cues.append("active discussion")
    length = payload.get("contentLength")
    if isinstance(length, (int, float)) and length >= 1500:
        cues.append("long read")
    return cues[:2]


def _cap(reason: str) -> str:
    if len(reason) > MAX_REASON_CHARS:
        return reason[: MAX_REASON_CHARS - 3].rstrip() + "..."
    return reason


def make_reason(candidate: ScoredCandidate, query_text: str, lens_phrase: Optional[str] = None) -> str:
    """
    Ex.: "Mentions Quantum in the title, in-depth read · active discussion".
    """
    payload = candidate.payload
    key = _anchor_keyword(payload, tokenize(query_text))

    if key:
        head = f"Mentions {key}"
        category = payload.get("categoryName")
        if category and key.casefold() in strip_accents(str(category)).casefold():
            head += " in its category"
    elif payload.get("categoryName"):
        head = f"Related to {payload['categoryName']}"
    else:
        head = "Semantically close to your search"

    if lens_phrase:
        head = f"{head}, {lens_phrase}"

    cues = _payload_cues(payload)
    if candidate.is_serendipitous:
        cues.insert(0, "something different")
    reason = head + (" · " + ", ".join(cues) if cues else "")
    return _cap(reason)


def recommendation_reason(candidate: ScoredCandidate) -> str:
    base = _ALGORITHM_REASONS.get(candidate.algorithm, "Recommended for you")
    category = candidate.payload.get("categoryName")
    if candidate.algorithm in ("content", "serendipity") and category:
        base = f"{base}: {category}"
    if candidate.is_serendipitous and candidate.algorithm != "serendipity":
        base += " (something different)"
    return _cap(base)
