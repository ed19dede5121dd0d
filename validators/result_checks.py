# validators/result_checks.py
"""
Regras de saída aplicadas às listas de resultados antes de devolvê-las ao chamador.

Uso no fluxo:
1) O serviço monta a lista já ordenada (RankedResult ou RecommendationResult)
2) Chama apply_result_checks(results, limit) como último passo

Regras:
- Descarta scores não finitos (NaN/inf).
- Dedup por entity_id mantendo o de maior score, na posição em que ele aparece.
- Preenche `reason` vazio com um texto padrão.
- Cap pelo limite pedido.
A ordem relativa da entrada é preservada (a recomendação fixa posições de serendipidade).
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, TypeVar, Union

from schemas.results import RankedResult, RecommendationResult

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Related to what you are looking for"

R = TypeVar("R", RankedResult, RecommendationResult)


def _finite(results: Sequence[R]) -> List[R]:
    kept = [r for r in results if math.isfinite(float(r.score))]
    dropped = len(results) - len(kept)
    if dropped:
        logger.warning(f"Dropped {dropped} result(s) with non-finite score")
    return kept


def _dedupe_keep_best(results: Sequence[R]) -> List[R]:
    best: Dict[str, int] = {}
    for i, r in enumerate(results):
        j = best.get(r.entity_id)
        if j is None or r.score > results[j].score:
            best[r.entity_id] = i
    keep = sorted(best.values())
    if len(keep) < len(results):
        logger.debug(f"Removed {len(results) - len(keep)} duplicate result(s)")
    return [results[i] for i in keep]


def _fill_reason(r: R) -> R:
    if r.reason and r.reason.strip():
        return r
    return r.model_copy(update={"reason": DEFAULT_REASON})


def apply_result_checks(
    results: Sequence[Union[RankedResult, RecommendationResult]],
    limit: Optional[int] = None,
) -> List[Union[RankedResult, RecommendationResult]]:
    items = _dedupe_keep_best(_finite(list(results)))
    items = [_fill_reason(r) for r in items]
    if limit is not None:
        items = items[: max(0, int(limit))]
    return items
