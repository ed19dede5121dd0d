#!/usr/bin/env python3
"""
Ferramenta de operação das coleções do Qdrant.

Uso:
    python -m helpers.manage_collections init
    python -m helpers.manage_collections status
    python -m helpers.manage_collections index files/forum.json --batch-size 64
    python -m helpers.manage_collections refresh-users files/forum.json --user-id u1 --user-id u2
"""

import asyncio
import logging
import sys
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from feedreco.config import FeedRecoConfig
from feedreco.embeddings.embedding_chain import EmbeddingProviderChain
from feedreco.index.vector_store import CollectionStatus, VectorStoreAdapter
from feedreco.indexer import ContentIndexer
from feedreco.store import InMemoryRelationalStore, load_store_from_file

app = typer.Typer(help="Manage FeedReco vector collections")
console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def print_status(statuses: List[CollectionStatus]):
    table = Table(title="Collections")

    table.add_column("Collection", style="cyan")
    table.add_column("Exists", style="green")
    table.add_column("Points", style="green")
    table.add_column("Problems", style="yellow")

    for s in statuses:
        table.add_row(
            s.name,
            "yes" if s.exists else "no",
            str(s.points_count) if s.points_count is not None else "-",
            "; ".join(s.problems) or "-",
        )
    console.print(table)


def print_stats(title: str, stats: Dict[str, int]):
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    for key, value in stats.items():
        table.add_row(key, str(value))
    console.print(table)


def _load_store(path: str) -> InMemoryRelationalStore:
    try:
        return load_store_from_file(path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid dataset: {e}[/red]")
        sys.exit(2)


@app.command()
def init(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
):
    """Create missing collections and validate the existing ones."""
    setup_logging(verbose)
    cfg = FeedRecoConfig()

    async def run() -> bool:
        vector_store = VectorStoreAdapter.from_config(cfg)
        try:
            return await vector_store.ensure_collections()
        finally:
            await vector_store.close()

    console.print(f"[bold blue]Initializing collections at {cfg.QDRANT_URL}[/bold blue]")
    if not asyncio.run(run()):
        console.print("[red]Vector store not ready; nothing was created[/red]")
        sys.exit(1)
    console.print("[green]Collections are ready![/green]")


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
):
    """Show existence, point counts and configuration drift of each collection."""
    setup_logging(verbose)
    cfg = FeedRecoConfig()

    async def run() -> Optional[List[CollectionStatus]]:
        vector_store = VectorStoreAdapter.from_config(cfg)
        try:
            if not await vector_store.is_ready():
                return None
            return await vector_store.collection_status()
        finally:
            await vector_store.close()

    try:
        statuses = asyncio.run(run())
    except Exception as e:
        console.print(f"[red]Status check failed: {e}[/red]")
        sys.exit(1)

    if statuses is None:
        console.print(f"[red]Vector store at {cfg.QDRANT_URL} is not ready[/red]")
        sys.exit(1)
    print_status(statuses)
    if any(s.problems or not s.exists for s in statuses):
        sys.exit(1)


@app.command()
def index(
    dataset: str = typer.Argument(..., help="Path to the forum dataset JSON file"),
    batch_size: int = typer.Option(64, "--batch-size", help="Posts per indexing batch"),
    force: bool = typer.Option(False, "--force", help="Re-embed posts even when unchanged"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
):
    """Bulk index posts, comments, categories and users from a dataset."""
    setup_logging(verbose)
    cfg = FeedRecoConfig()
    store = _load_store(dataset)
    data = store.snapshot()

    async def run() -> Dict[str, int]:
        vector_store = VectorStoreAdapter.from_config(cfg)
        embedder = EmbeddingProviderChain.from_config(cfg)
        indexer = ContentIndexer(vector_store=vector_store, embedder=embedder, store=store, cfg=cfg)
        totals = {"posts_indexed": 0, "posts_skipped": 0, "other_indexed": 0, "errors": 0}
        try:
            await vector_store.ensure_collections()
            posts = data["post"]
            others = [(t, r) for t in ("comment", "category", "user") for r in data[t]]
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.completed}/{task.total}"),
                console=console,
            ) as progress:
                task = progress.add_task("Indexing posts...", total=len(posts))
                for start in range(0, len(posts), max(1, batch_size)):
                    chunk = posts[start:start + batch_size]
                    stats = await indexer.index_posts(chunk, force=force)
                    totals["posts_indexed"] += stats["indexed"]
                    totals["posts_skipped"] += stats["skipped"]
                    totals["errors"] += stats["errors"]
                    progress.advance(task, len(chunk))

                task = progress.add_task("Indexing comments, categories and users...", total=len(others))
                handlers = {
                    "comment": indexer.index_comment,
                    "category": indexer.index_category,
                    "user": indexer.index_user,
                }
                for entity_type, record in others:
                    try:
                        ok = await handlers[entity_type](record)
                    except (KeyError, ValueError) as e:
                        logging.getLogger(__name__).error(f"Invalid {entity_type} record: {e}")
                        ok = False
                    totals["other_indexed" if ok else "errors"] += 1
                    progress.advance(task)
        finally:
            await embedder.aclose()
            await vector_store.close()
        return totals

    console.print(f"[bold blue]Indexing dataset: {dataset}[/bold blue]")
    try:
        totals = asyncio.run(run())
    except Exception as e:
        console.print(f"[red]Indexing failed: {e}[/red]")
        sys.exit(1)

    print_stats("Indexing Statistics", totals)
    if totals["errors"] > 0:
        console.print(f"[red]Warning: {totals['errors']} record(s) failed to index[/red]")
        sys.exit(1)
    console.print("[green]Indexing completed successfully![/green]")


@app.command("refresh-users")
def refresh_users(
    dataset: str = typer.Argument(..., help="Path to the forum dataset JSON file"),
    user_id: Optional[List[str]] = typer.Option(None, "--user-id", help="Users to refresh (default: all)"),
    concurrency: int = typer.Option(8, "--concurrency", help="Users refreshed in parallel"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
):
    """Rebuild the collaborative snapshots (ratings vector + recommended posts) of users."""
    setup_logging(verbose)
    cfg = FeedRecoConfig()
    store = _load_store(dataset)
    ids = list(user_id) if user_id else [str(u["id"]) for u in store.snapshot()["user"] if u.get("id") is not None]

    async def run() -> Dict[str, int]:
        vector_store = VectorStoreAdapter.from_config(cfg)
        embedder = EmbeddingProviderChain.from_config(cfg)
        indexer = ContentIndexer(vector_store=vector_store, embedder=embedder, store=store, cfg=cfg)
        try:
            return await indexer.batch_update_recommendations(ids, concurrency=concurrency)
        finally:
            await embedder.aclose()
            await vector_store.close()

    console.print(f"[bold blue]Refreshing {len(ids)} user snapshot(s)[/bold blue]")
    try:
        stats = asyncio.run(run())
    except Exception as e:
        console.print(f"[red]Refresh failed: {e}[/red]")
        sys.exit(1)

    print_stats("Snapshot Statistics", stats)
    if stats["errors"] > 0:
        sys.exit(1)


if __name__ == "__main__":
    app()
