"""
Ingest Pipeline - Read, Chunk, Embed, Store
---------------------------------------------
Reads markdown/text documents from disk, chunks them with the store's
chunker configuration, embeds and persists them, and optionally rebuilds
the index.

A malformed document (e.g. an unterminated code fence) is skipped and
reported in the IngestReport; it never aborts the batch. Provider failures
and timeouts do abort, leaving already-written chunks pending so a later
`embed_pending()` can finish the job.
"""
from __future__ import annotations

from pathlib import Path
from typing import Iterable

from loguru import logger
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from ragcore.errors import ChunkingError
from ragcore.schemas import Document, IngestFailure, IngestReport
from ragcore.store.store import Store

SUPPORTED_SUFFIXES = (".md", ".markdown", ".qmd", ".txt")

console = Console()


def read_documents(paths: Iterable[str | Path]) -> list[Document]:
    """
    Load documents from files and directories (searched recursively).

    The origin of each document is its path as given / discovered. Files with
    unsupported suffixes inside directories are ignored; an explicitly named
    file is always read.
    """
    files: list[Path] = []
    for raw in paths:
        p = Path(raw)
        if p.is_dir():
            files.extend(
                sorted(f for f in p.rglob("*") if f.is_file() and f.suffix.lower() in SUPPORTED_SUFFIXES)
            )
        elif p.is_file():
            files.append(p)
        else:
            raise FileNotFoundError(f"No such file or directory: {p}")

    docs: list[Document] = []
    for f in files:
        try:
            text = f.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            logger.warning(f"[Ingest] Skipping {f}: not UTF-8 text ({exc})")
            continue
        docs.append(Document(origin=str(f), full_text=text))

    logger.info(f"[Ingest] Loaded {len(docs)} document(s) from {len(files)} file(s)")
    return docs


def ingest_documents(
    store: Store,
    docs: list[Document],
    replace: bool = False,
    build: bool = False,
    show_progress: bool = True,
) -> IngestReport:
    """
    Insert documents one by one, collecting per-document chunking failures.

    Returns:
        IngestReport with inserted / skipped counts and failures.
    """
    report = IngestReport()

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
        disable=not show_progress,
    ) as progress:
        task = progress.add_task("[cyan]Ingesting documents...[/cyan]", total=len(docs))
        for doc in docs:
            unchanged = store.contains(doc)
            try:
                stored = store.insert(doc, replace=replace)
            except ChunkingError as exc:
                logger.warning(f"[Ingest] Skipping document: {exc}")
                report.failures.append(
                    IngestFailure(origin=doc.origin, error=str(exc), offset=exc.offset)
                )
                report.documents_skipped += 1
            else:
                if unchanged:
                    report.documents_skipped += 1
                else:
                    report.documents_inserted += 1
                    report.chunks_inserted += len(store.get_chunks(doc_id=stored.doc_id))
            progress.advance(task)

    logger.info(
        f"[Ingest] {report.documents_inserted} inserted | {report.documents_skipped} skipped | "
        f"{report.chunks_inserted} chunk(s) | {len(report.failures)} failure(s)"
    )

    if build:
        store.build_index()
    return report


def run_ingest(
    store: Store,
    paths: Iterable[str | Path],
    replace: bool = False,
    build: bool = False,
    show_progress: bool = True,
) -> IngestReport:
    """read_documents() + ingest_documents()."""
    return ingest_documents(
        store, read_documents(paths), replace=replace, build=build, show_progress=show_progress
    )

