# cli/main_search.py
"""
CLI de Busca e Recomendação - FeedReco

Interface de linha de comando sobre o núcleo de recuperação do fórum. O banco relacional
é um dataset JSON local (posts/comments/categories/users/votes/bookmarks); o Qdrant e os
provedores de embedding vêm da configuração (.env).

Subcomandos:
- search      busca guiada por lente (trending, deep-dive, expert-picks, ...)
- hybrid      busca híbrida densa + esparsa (RRF/DBSF)
- multistage  busca em dois estágios (vetor grosso -> vetor completo)
- recommend   recomendações personalizadas para um usuário
- similar     posts parecidos com um post
- health      prontidão do armazenamento vetorial e provedores configurados

Exemplos de uso:
- python -m cli.main_search --data files/forum.json search -q "quantum computing" --lens deep-dive
- python -m cli.main_search --data files/forum.json hybrid -q "rust async runtime" --json
- python -m cli.main_search --data files/forum.json recommend --user-id u1 --limit 5
- python -m cli.main_search --data files/forum.json health
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, List, Optional, Sequence

from feedreco.config import FeedRecoConfig
from feedreco.embeddings.embedding_chain import EmbeddingProviderChain
from feedreco.errors import InvalidQuery
from feedreco.index.vector_store import VectorStoreAdapter
from feedreco.recommender.engine import RecommendationEngine
from feedreco.retriever.lenses import Lens
from feedreco.retriever.semantic_search import SemanticSearchService
from feedreco.store import InMemoryRelationalStore, load_store_from_file
from schemas.results import RankedResult, RecommendationResponse


# --------- Argumentos --------- #
def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="feedreco",
        description="Busca semântica e recomendação do fórum (CLI).",
    )
    parser.add_argument(
        "--data",
        required=True,
        help="Dataset JSON usado como banco relacional (posts, comments, categories, users, votes, bookmarks).",
    )
    parser.add_argument("--json", action="store_true", help="Imprime o resultado completo em JSON.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Logs em nível DEBUG.")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("search", help="Busca guiada por lente.")
    p.add_argument("-q", "--query", required=True, help="Consulta em texto livre.")
    p.add_argument("--lens", choices=[lens.value for lens in Lens], default=Lens.AI_RECOMMENDED.value)
    p.add_argument("--limit", type=int, default=15)
    p.add_argument("--time-range", choices=["day", "week", "month", "year", "all"], default="week")
    p.add_argument("--category-id", default=None)
    p.add_argument("--threshold", type=float, default=None, help="Score mínimo (default: o da lente).")
    p.add_argument("--time-decay", action="store_true", help="Aplica decaimento temporal antes da diversidade.")

    p = sub.add_parser("hybrid", help="Busca híbrida densa + esparsa.")
    p.add_argument("-q", "--query", required=True)
    p.add_argument("--limit", type=int, default=10)
    p.add_argument("--dense-weight", type=float, default=0.7)
    p.add_argument("--sparse-weight", type=float, default=0.3)
    p.add_argument("--fusion", choices=["rrf", "dbsf"], default="rrf")
    p.add_argument("--collections", nargs="+", default=["posts"])

    p = sub.add_parser("multistage", help="Busca em dois estágios.")
    p.add_argument("-q", "--query", required=True)
    p.add_argument("--limit", type=int, default=10)
    p.add_argument("--candidate-limit", type=int, default=None)

    p = sub.add_parser("recommend", help="Recomendações para um usuário.")
    p.add_argument("--user-id", required=True)
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--algorithm", choices=["collaborative", "content", "hybrid"], default="hybrid")
    p.add_argument("--no-diversity", action="store_true")
    p.add_argument("--no-serendipity", action="store_true")
    p.add_argument("--no-time-decay", action="store_true")

    p = sub.add_parser("similar", help="Posts parecidos com um post.")
    p.add_argument("--post-id", required=True)
    p.add_argument("--limit", type=int, default=4)

    sub.add_parser("health", help="Prontidão do armazenamento vetorial.")

    return parser.parse_args(argv)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# --------- Saída "amigável" --------- #
def _print_results(results: Sequence[RankedResult]) -> None:
    if not results:
        print("\nNenhum resultado encontrado.")
        return
    print(f"\n{len(results)} resultado(s)")
    for i, r in enumerate(results, start=1):
        title = r.payload.get("title") or r.payload.get("name") or r.entity_id
        print(f"\n#{i} — {title}")
        print(f"  id: {r.entity_id} | score: {r.score:.3f} | origem: {r.search_type}")
        if r.relevance_score is not None:
            print(f"  relevância: {r.relevance_score:.2f}")
        if r.reason:
            print(f"  por que: {r.reason}")


def _print_recommendations(response: RecommendationResponse) -> None:
    meta = response.metadata
    print(
        f"\nAlgoritmos: {', '.join(meta.algorithms_used) or '-'} | "
        f"personalizado: {'sim' if meta.personalized_for_user else 'não'} | "
        f"{meta.total_processing_time_ms:.1f}ms"
    )
    for i, r in enumerate(response.recommendations, start=1):
        title = r.metadata.get("title") or r.entity_id
        print(f"#{i} — {title} [{r.algorithm}] score={r.score:.3f}")
        print(f"  {r.reason}")


def _dump_json(value: Any) -> str:
    if hasattr(value, "model_dump_json"):
        return value.model_dump_json(indent=2, by_alias=True)
    return json.dumps(
        [v.model_dump(mode="json", by_alias=True) for v in value],
        ensure_ascii=False,
        indent=2,
    )


# --------- Execução --------- #
async def _run(args: argparse.Namespace, cfg: FeedRecoConfig, store: InMemoryRelationalStore) -> Any:
    vector_store = VectorStoreAdapter.from_config(cfg)
    embedder = EmbeddingProviderChain.from_config(cfg)
    try:
        if args.command == "health":
            ready = await vector_store.is_ready()
            return {
                "vectorStoreReady": ready,
                "embeddingProviders": [p.name for p in embedder.providers if p.enabled],
                "qdrantUrl": cfg.QDRANT_URL,
            }

        if args.command == "recommend":
            engine = RecommendationEngine(vector_store=vector_store, embedder=embedder, store=store, cfg=cfg)
            return await engine.recommend(
                args.user_id,
                {
                    "limit": args.limit,
                    "algorithm": args.algorithm,
                    "diversity_enabled": not args.no_diversity,
                    "serendipity_enabled": not args.no_serendipity,
                    "time_decay": not args.no_time_decay,
                },
            )

        service = SemanticSearchService(vector_store=vector_store, embedder=embedder, store=store, cfg=cfg)
        if args.command == "search":
            return await service.semantic_search(
                args.query,
                args.lens,
                {
                    "limit": args.limit,
                    "time_range": args.time_range,
                    "category_id": args.category_id,
                    "score_threshold": args.threshold,
                    "apply_time_decay": args.time_decay,
                },
            )
        if args.command == "hybrid":
            return await service.hybrid_search(
                args.query,
                {
                    "limit": args.limit,
                    "dense_weight": args.dense_weight,
                    "sparse_weight": args.sparse_weight,
                    "fusion_method": args.fusion,
                    "collections": args.collections,
                },
            )
        if args.command == "multistage":
            return await service.multi_stage_search(
                args.query,
                {"limit": args.limit, "candidate_limit": args.candidate_limit},
            )
        if args.command == "similar":
            return await service.find_similar_posts(args.post_id, limit=args.limit)
        raise InvalidQuery(f"unknown command {args.command!r}")
    finally:
        await embedder.aclose()
        await vector_store.close()


# --------- Main --------- #
def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging(args.verbose)

    try:
        store = load_store_from_file(args.data)
    except (FileNotFoundError, ValueError) as e:
        print(f"[ERRO] Dataset inválido: {e}", file=sys.stderr)
        return 2

    cfg = FeedRecoConfig()
    try:
        output = asyncio.run(_run(args, cfg, store))
    except InvalidQuery as e:
        print(f"[ERRO] Entrada inválida: {e}", file=sys.stderr)
        return 2
    except Exception as e:
        print(f"[ERRO] Falha ao executar a consulta: {e}", file=sys.stderr)
        print(f"[DEBUG] Tipo do erro: {type(e).__name__}", file=sys.stderr)
        return 1

    if args.json:
        if isinstance(output, dict):
            print(json.dumps(output, ensure_ascii=False, indent=2))
        else:
            print(_dump_json(output))
    elif isinstance(output, RecommendationResponse):
        _print_recommendations(output)
    elif isinstance(output, dict):
        for key, value in output.items():
            print(f"{key}: {value}")
    else:
        _print_results(output)

    if args.command == "health" and not output["vectorStoreReady"]:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
