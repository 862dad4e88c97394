"""
ragcore - CLI Entry Point
--------------------------
Exposes Typer commands for each stage of the retrieval core.

Usage:
    ragcore create data/store --provider hashing     # New store
    ragcore ingest data/store docs/ --build          # Chunk + embed + store (+ index)
    ragcore build-index data/store                   # (Re)build VSS + BM25 index
    ragcore query data/store "yaml front matter"     # Single-shot retrieval
    ragcore inspect data/store --no-repeat           # Interactive retrieval loop
    ragcore status data/store                        # Store metadata and counts
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ragcore.config import RagConfig, load_config
from ragcore.embedding.embedder import embedder_from_config
from ragcore.errors import RagCoreError
from ragcore.ingest import run_ingest
from ragcore.retrieval.filters import exclude_ids
from ragcore.schemas import QueryResult
from ragcore.store.store import Store
from ragcore.utils.helpers import truncate_text
from ragcore.utils.logger import setup_logger

app = typer.Typer(
    name="ragcore",
    help="Markdown retrieval core - chunk, embed, index and search documents",
    add_completion=False,
)
console = Console()

_METHODS = ("hybrid", "vss", "bm25")


# --- Helpers ------------------------------------------------------------------

def _setup(config_path: str) -> RagConfig:
    cfg = load_config(config_path)
    setup_logger(cfg.logging.level, cfg.logging.file)
    return cfg


def _open(location: str, cfg: RagConfig, read_only: bool = False) -> Store:
    try:
        return Store.connect(
            location,
            read_only=read_only,
            embedding_config=cfg.embedding,
            index_config=cfg.index,
            retrieval_config=cfg.retrieval,
        )
    except (FileNotFoundError, RagCoreError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)


def _fail(exc: Exception) -> None:
    logger.debug(f"[CLI] {type(exc).__name__}: {exc}")
    console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
    raise typer.Exit(1)


def _print_result(result: QueryResult) -> None:
    """Render a QueryResult to the terminal using Rich."""
    if not result.results:
        console.print("[yellow]No results.[/yellow]")
        return

    table = Table(
        "Id", "Score", "Origin", "Section", "Span", "Excerpt",
        box=box.SIMPLE,
        show_header=True,
        header_style="bold dim",
    )
    for r in result:
        table.add_row(
            str(r.chunk_id),
            f"{r.score:.4f}",
            truncate_text(r.origin, 40),
            truncate_text(" > ".join(r.heading_path), 40),
            f"{r.start_offset}-{r.end_offset}",
            truncate_text(" ".join(r.text.split()), 80),
        )
    console.print(table)


def _run_query(store: Store, query: str, method: str, top_k: Optional[int], exclude: Optional[list[int]] = None) -> QueryResult:
    filter = exclude_ids(exclude) if exclude else None
    return store.inspect(query, top_k=top_k, filter=filter, method=method)


# --- Commands -----------------------------------------------------------------

@app.command()
def create(
    location: str = typer.Argument(..., help="Store directory"),
    config: str = typer.Option(
        "config/config.yaml", "--config", "-c", help="Path to config YAML"
    ),
    provider: Optional[str] = typer.Option(
        None, "--provider", help="Embedding provider: openai | ollama | hashing"
    ),
    model: Optional[str] = typer.Option(None, "--model", help="Embedding model name"),
    overwrite: bool = typer.Option(
        False, "--overwrite", help="Replace an existing store at LOCATION"
    ),
) -> None:
    """Create a new, empty store bound to one embedding provider."""
    cfg = _setup(config)
    emb = cfg.embedding
    try:
        embedder = embedder_from_config(provider or emb.provider, model or emb.model, emb.dimensions)
        store = Store.create(
            location,
            embedder,
            overwrite=overwrite,
            chunker_config=cfg.chunking,
            embedding_config=cfg.embedding,
            index_config=cfg.index,
            retrieval_config=cfg.retrieval,
        )
    except (FileExistsError, ValueError, RagCoreError) as exc:
        _fail(exc)
    with store:
        console.print(f"[green][OK] Store created[/green] at {location} | embedder={store.embedder_spec}")


@app.command()
def ingest(
    location: str = typer.Argument(..., help="Store directory"),
    paths: list[Path] = typer.Argument(..., help="Files or directories (.md .markdown .qmd .txt)"),
    config: str = typer.Option(
        "config/config.yaml", "--config", "-c", help="Path to config YAML"
    ),
    replace: bool = typer.Option(
        False, "--replace", help="Supersede earlier documents with the same origin"
    ),
    build: bool = typer.Option(False, "--build", help="Rebuild the index afterwards"),
) -> None:
    """Chunk, embed and store documents. Malformed documents are skipped and reported."""
    cfg = _setup(config)
    with _open(location, cfg) as store:
        try:
            report = run_ingest(store, paths, replace=replace, build=build)
        except (FileNotFoundError, RagCoreError) as exc:
            _fail(exc)

    console.print(
        f"[green][OK] {report.documents_inserted} inserted[/green] | "
        f"{report.documents_skipped} skipped | {report.chunks_inserted} chunk(s)"
    )
    for failure in report.failures:
        console.print(f"  [yellow]skipped[/yellow] {failure.origin}: {failure.error}", soft_wrap=True)
    if build:
        console.print("[green][OK] Index rebuilt[/green]")


@app.command("build-index")
def build_index(
    location: str = typer.Argument(..., help="Store directory"),
    config: str = typer.Option(
        "config/config.yaml", "--config", "-c", help="Path to config YAML"
    ),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Build timeout in seconds"),
    embed_pending: bool = typer.Option(
        True, "--embed-pending/--no-embed-pending", help="Embed pending chunks before building"
    ),
) -> None:
    """(Re)build the VSS + BM25 index from the current chunk set."""
    cfg = _setup(config)
    with _open(location, cfg) as store:
        try:
            if embed_pending and store.embedder is not None:
                store.embed_pending()
            with console.status("[cyan]Building VSS + BM25 index...[/cyan]"):
                snap = store.build_index(timeout=timeout)
        except RagCoreError as exc:
            _fail(exc)
    console.print(
        f"[green][OK] Index generation {snap.generation} built[/green] | "
        f"{len(snap.records):,} chunks | vector mode={snap.vector.mode}"
    )


@app.command()
def query(
    location: str = typer.Argument(..., help="Store directory"),
    text: str = typer.Argument(..., help="Query text"),
    config: str = typer.Option(
        "config/config.yaml", "--config", "-c", help="Path to config YAML"
    ),
    method: str = typer.Option("hybrid", "--method", "-m", help="hybrid | vss | bm25"),
    top_k: Optional[int] = typer.Option(None, "--top-k", "-k", help="Maximum results"),
    exclude: Optional[list[int]] = typer.Option(
        None, "--exclude", "-x", help="Chunk id to leave out (repeatable)"
    ),
    json_out: bool = typer.Option(False, "--json", help="Print result as JSON"),
) -> None:
    """Single-shot retrieval against the live index."""
    if method not in _METHODS:
        console.print(f"[red]Unknown method {method!r}; choose one of {', '.join(_METHODS)}[/red]")
        raise typer.Exit(2)
    cfg = _setup(config)
    with _open(location, cfg, read_only=True) as store:
        try:
            result = _run_query(store, text, method, top_k, exclude)
        except (ValueError, RagCoreError) as exc:
            _fail(exc)

    if json_out:
        typer.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_result(result)


@app.command()
def inspect(
    location: str = typer.Argument(..., help="Store directory"),
    config: str = typer.Option(
        "config/config.yaml", "--config", "-c", help="Path to config YAML"
    ),
    method: str = typer.Option("hybrid", "--method", "-m", help="hybrid | vss | bm25"),
    top_k: Optional[int] = typer.Option(None, "--top-k", "-k", help="Maximum results"),
    no_repeat: bool = typer.Option(
        False, "--no-repeat", help="Never show the same chunk twice in this session"
    ),
) -> None:
    """Interactive retrieval loop for checking what the index returns."""
    if method not in _METHODS:
        console.print(f"[red]Unknown method {method!r}; choose one of {', '.join(_METHODS)}[/red]")
        raise typer.Exit(2)
    cfg = _setup(config)
    store = _open(location, cfg, read_only=True)

    console.print()
    console.print(
        Panel(
            "[bold cyan]ragcore[/bold cyan]\n"
            f"[white]Interactive {method} retrieval[/white]",
            box=box.DOUBLE_EDGE,
            expand=False,
        )
    )
    console.print("[dim]Type 'exit', 'quit', or press Ctrl+C to quit.[/dim]\n")

    seen: set[int] = set()
    with store:
        while True:
            try:
                raw = console.input("[bold cyan]Query[/bold cyan] > ").strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye.[/dim]")
                break

            if not raw:
                continue
            if raw.lower() in {"exit", "quit", "q"}:
                console.print("[dim]Goodbye.[/dim]")
                break

            try:
                result = _run_query(store, raw, method, top_k, sorted(seen) if no_repeat else None)
            except (ValueError, RagCoreError) as exc:
                console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
                continue
            _print_result(result)
            if no_repeat:
                seen.update(result.chunk_ids)


@app.command()
def status(
    location: str = typer.Argument(..., help="Store directory"),
    config: str = typer.Option(
        "config/config.yaml", "--config", "-c", help="Path to config YAML"
    ),
) -> None:
    """Show store metadata, counts and index state."""
    cfg = _setup(config)
    with _open(location, cfg, read_only=True) as store:
        s = store.stats()

    console.print()
    console.print(f"[bold]Store[/bold] {s['location']}")
    console.print(f"  Format     : v{s['format_version']}  (created {s['created_at']})")
    console.print(f"  Embedder   : {s['embedder']}  dim={s['embedding_dim']}")
    console.print(f"  Documents  : [green]{s['documents']}[/green]")
    console.print(f"  Chunks     : [green]{s['chunks']}[/green]  pending=[yellow]{s['pending_chunks']}[/yellow]")
    if s["index_generation"] is None:
        console.print("  Index      : [yellow]not built[/yellow]  Run: [bold]ragcore build-index[/bold]")
    else:
        console.print(
            f"  Index      : generation {s['index_generation']} | {s['indexed_chunks']} chunks | "
            f"{s['vector_mode']} | built {s['index_built_at']}"
        )
    console.print()


if __name__ == "__main__":
    app()
