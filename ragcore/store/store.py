"""
Chunk Store
------------
Durable, versioned persistence for documents, chunks and their embeddings,
plus the index snapshot built from them.

Lifecycle:
    store = Store.create("data/store", HashingEmbedder())
    store.insert(Document(origin="guide.md", full_text=text))
    store.build_index()
    store.inspect("how do I configure YAML front matter?")

Phases:
  - open/insert  documents and chunks are added; each chunk is written with
                 a NULL embedding first (pending) and filled in batch by batch
  - indexed      build_index() snapshots every embedded chunk into a new
                 VectorIndex + KeywordIndex pair and swaps it in atomically

Concurrency:
  - one SQLite connection, every statement under a re-entrant write lock
    (single writer, transactional)
  - queries read the immutable in-memory snapshot and never take the lock
  - builds are serialised; a build that times out is never published
"""
from __future__ import annotations

import re
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

import numpy as np
from loguru import logger

from ragcore.chunking.chunker import MarkdownChunker
from ragcore.config import ChunkerConfig, EmbeddingConfig, IndexConfig, RetrievalConfig
from ragcore.embedding.batcher import EmbeddingBatcher
from ragcore.embedding.embedder import EmbeddingProvider, embedder_from_spec
from ragcore.errors import (
    ChunkingError,
    EmbedderNotConfiguredError,
    IndexNotBuiltError,
    OperationTimeoutError,
    StoreConfigError,
    StoreReadOnlyError,
    UnsupportedStoreVersionError,
)
from ragcore.index.keyword_index import KeywordIndex, Tokenizer
from ragcore.index.vector_index import VectorIndex
from ragcore.retrieval.filters import FilterSpec
from ragcore.schemas import Chunk, Document, QueryResult, RetrievalMethod
from ragcore.store import tables
from ragcore.utils.helpers import ensure_dirs, load_json, save_json

_GEN_RE = re.compile(r"^gen-(\d+)$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class IndexSnapshot:
    """Everything a query needs, frozen at build time."""

    generation: int
    built_at: str
    vector: VectorIndex
    keyword: KeywordIndex
    records: dict[int, Chunk]           # chunk_id -> chunk (no embedding)

    @property
    def complete(self) -> bool:
        """False when indexed chunks were deleted before this snapshot was loaded."""
        return len(self.records) == len(self.keyword)


class Store:
    """
    A persistent document/chunk store with a VSS + BM25 index snapshot.

    Use Store.create() for a new store and Store.connect() to reopen one.
    """

    def __init__(
        self,
        location: Path,
        conn,
        meta: dict[str, Any],
        embedder: Optional[EmbeddingProvider],
        embedding_config: Optional[EmbeddingConfig] = None,
        index_config: Optional[IndexConfig] = None,
        retrieval_config: Optional[RetrievalConfig] = None,
        read_only: bool = False,
    ) -> None:
        self.location = location
        self._conn = conn
        self._meta = meta
        self.embedder = embedder
        self.embedding_config = embedding_config or EmbeddingConfig()
        self.index_config = index_config or IndexConfig()
        self.retrieval_config = retrieval_config or RetrievalConfig()
        self.read_only = read_only
        self.chunker_config = ChunkerConfig(**(meta.get("chunker") or {}))
        self.chunker = MarkdownChunker(self.chunker_config)

        self._write_lock = threading.RLock()
        self._build_lock = threading.Lock()
        self._snapshot: Optional[IndexSnapshot] = None
        self._next_generation = 1

    # --- Construction -----------------------------------------------------------

    @classmethod
    def create(
        cls,
        location: str | Path,
        embedder: Optional[EmbeddingProvider],
        overwrite: bool = False,
        chunker_config: Optional[ChunkerConfig] = None,
        embedding_config: Optional[EmbeddingConfig] = None,
        index_config: Optional[IndexConfig] = None,
        retrieval_config: Optional[RetrievalConfig] = None,
    ) -> "Store":
        """
        Initialise a new store at `location`.

        The embedder's spec and the chunker configuration are recorded as
        immutable metadata. `embedder=None` creates a keyword-only store that
        cannot accept inserts.
        """
        location = Path(location)
        db_path = location / tables.DB_FILE
        if db_path.exists():
            if not overwrite:
                raise FileExistsError(f"A store already exists at {location} (pass overwrite=True)")
            logger.warning(f"[Store] Overwriting existing store at {location}")
            for suffix in ("", "-wal", "-shm"):
                Path(f"{db_path}{suffix}").unlink(missing_ok=True)
            shutil.rmtree(location / tables.INDEX_DIR, ignore_errors=True)

        ensure_dirs(location)
        conn = tables.connect_db(db_path)
        chunker_config = chunker_config or ChunkerConfig()
        spec = embedder.spec() if embedder is not None else None
        with conn:
            conn.executescript(tables.SCHEMA)
            tables.write_meta(conn, "format_version", tables.STORE_FORMAT_VERSION)
            tables.write_meta(conn, "created_at", _now())
            tables.write_meta(conn, "embedder", spec)
            tables.write_meta(conn, "embedding_dim", embedder.dimensions if embedder else None)
            tables.write_meta(conn, "chunker", chunker_config.model_dump(mode="json"))
            tables.write_meta(conn, "index_generation", 0)
        meta = tables.read_meta(conn, location)

        logger.info(f"[Store] Created store at {location} | embedder={spec}")
        return cls(
            location,
            conn,
            meta,
            embedder,
            embedding_config=embedding_config,
            index_config=index_config,
            retrieval_config=retrieval_config,
        )

    @classmethod
    def connect(
        cls,
        location: str | Path,
        embedder: Optional[EmbeddingProvider] = None,
        read_only: bool = False,
        embedding_config: Optional[EmbeddingConfig] = None,
        index_config: Optional[IndexConfig] = None,
        retrieval_config: Optional[RetrievalConfig] = None,
    ) -> "Store":
        """
        Open an existing store and load its last built index, if any.

        Raises:
            FileNotFoundError:            no store at `location`.
            UnsupportedStoreVersionError: incompatible on-disk layout.
            StoreConfigError:             `embedder` differs from the recorded one.
        """
        location = Path(location)
        db_path = location / tables.DB_FILE
        if not db_path.exists():
            raise FileNotFoundError(f"No store found at {location}")

        conn = tables.connect_db(db_path, read_only=read_only)
        meta = tables.read_meta(conn, location)
        tables.check_version(meta, location)

        stored_spec = meta.get("embedder")
        if embedder is not None:
            if embedder.spec() != stored_spec:
                conn.close()
                raise StoreConfigError(
                    f"Store {location} was created with embedder {stored_spec}, "
                    f"got {embedder.spec()}"
                )
        elif stored_spec is not None:
            try:
                embedder = embedder_from_spec(stored_spec)
            except ValueError as exc:
                conn.close()
                raise StoreConfigError(str(exc)) from exc

        store = cls(
            location,
            conn,
            meta,
            embedder,
            embedding_config=embedding_config,
            index_config=index_config,
            retrieval_config=retrieval_config,
            read_only=read_only,
        )
        store._load_snapshot()
        return store

    def close(self) -> None:
        with self._write_lock:
            self._conn.close()

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Store({str(self.location)!r}, embedder={self.embedder!r})"

    # --- Metadata ---------------------------------------------------------------

    @property
    def embedding_dim(self) -> Optional[int]:
        return self._meta.get("embedding_dim")

    @property
    def embedder_spec(self) -> Optional[dict[str, Any]]:
        return self._meta.get("embedder")

    def _set_meta(self, key: str, value: Any) -> None:
        with self._write_lock, self._conn:
            tables.write_meta(self._conn, key, value)
        self._meta[key] = value

    def _require_writable(self) -> None:
        if self.read_only:
            raise StoreReadOnlyError(f"Store {self.location} was opened read-only")

    def _require_embedder(self, operation: str) -> EmbeddingProvider:
        if self.embedder is None:
            raise EmbedderNotConfiguredError(
                f"{operation} needs an embedding provider, but store {self.location} "
                "was created without one"
            )
        return self.embedder

    def batcher(self) -> EmbeddingBatcher:
        """A fresh EmbeddingBatcher bound to this store's provider and dimension."""
        embedder = self._require_embedder("Embedding")
        return EmbeddingBatcher(embedder, self.embedding_config, dimension=self.embedding_dim)

    # --- Insert -----------------------------------------------------------------

    def insert(
        self,
        document: Document,
        chunks: Optional[Sequence[Chunk]] = None,
        replace: bool = False,
        timeout: Optional[float] = None,
    ) -> Document:
        """
        Persist a document and its chunks, then embed the pending chunks.

        Args:
            document: The source document.
            chunks:   Pre-computed chunks; chunked with the store's chunker
                      configuration when omitted.
            replace:  Delete earlier documents with the same origin first.
            timeout:  Embedding timeout (defaults to the embedding config).

        Returns:
            The document with its assigned doc_id.

        Raises:
            EmbedderNotConfiguredError: the store has no embedding provider.
            ChunkingError:              the document or the chunks are malformed.
            EmbeddingProviderError:     embedding failed after the retry budget;
                                        the rows stay in the store as pending.
            OperationTimeoutError:      embedding exceeded the timeout.
        """
        self._require_writable()
        self._require_embedder("insert()")

        if chunks is None:
            chunks = self.chunker.chunk_document(document)
        self._validate_chunks(document, chunks)

        with self._write_lock:
            existing = self._conn.execute(
                "SELECT doc_id, checksum FROM documents WHERE origin = ? ORDER BY doc_id",
                (document.origin,),
            ).fetchall()
            for doc_id, checksum in existing:
                if checksum == document.checksum and (not replace or len(existing) == 1):
                    logger.debug(f"[Store] {document.origin} unchanged (doc_id={doc_id}); skipping")
                    return document.model_copy(update={"doc_id": doc_id})
            if existing and not replace:
                logger.warning(
                    f"[Store] {document.origin} already stored with different text; "
                    "inserting a second document (pass replace=True to supersede)"
                )

            with self._conn:
                if replace and existing:
                    self._conn.execute("DELETE FROM documents WHERE origin = ?", (document.origin,))
                    logger.info(f"[Store] Replaced {len(existing)} earlier version(s) of {document.origin}")
                cur = self._conn.execute(
                    "INSERT INTO documents(origin, full_text, checksum, created_at) VALUES (?, ?, ?, ?)",
                    (document.origin, document.full_text, document.checksum, _now()),
                )
                doc_id = cur.lastrowid
                pending: list[tuple[int, str]] = []
                for c in chunks:
                    cur = self._conn.execute(
                        "INSERT INTO chunks(doc_id, text, start_offset, end_offset, heading_path, "
                        "exceeds_target, embedding) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (
                            doc_id,
                            c.text,
                            c.start_offset,
                            c.end_offset,
                            tables.encode_path(c.heading_path),
                            int(c.exceeds_target),
                            tables.encode_vector(c.embedding) if c.embedding is not None else None,
                        ),
                    )
                    if c.embedding is None:
                        pending.append((cur.lastrowid, c.text))

        logger.info(
            f"[Store] Inserted {document.origin} (doc_id={doc_id}) | "
            f"{len(chunks)} chunk(s), {len(pending)} to embed"
        )
        self._embed_chunks(pending, timeout=timeout)
        return document.model_copy(update={"doc_id": doc_id})

    def _validate_chunks(self, document: Document, chunks: Sequence[Chunk]) -> None:
        text = document.full_text
        for c in chunks:
            if (
                not 0 <= c.start_offset < c.end_offset <= len(text)
                or text[c.start_offset: c.end_offset] != c.text
            ):
                raise ChunkingError(
                    "Chunk text does not match its span of the document",
                    origin=document.origin,
                    offset=c.start_offset,
                    end_offset=c.end_offset,
                )
            if c.embedding is not None:
                dim = self.embedding_dim
                if dim is not None and len(c.embedding) != dim:
                    raise ChunkingError(
                        f"Chunk embedding has dimension {len(c.embedding)}, store expects {dim}",
                        origin=document.origin,
                        offset=c.start_offset,
                        end_offset=c.end_offset,
                    )
                if dim is None:
                    self._set_meta("embedding_dim", len(c.embedding))

    def _embed_chunks(self, pending: list[tuple[int, str]], timeout: Optional[float] = None) -> int:
        if not pending:
            return 0
        batcher = self.batcher()
        ids = [cid for cid, _ in pending]

        def persist(start: int, vectors: np.ndarray) -> None:
            rows = [
                (tables.encode_vector(vec), ids[start + i]) for i, vec in enumerate(vectors)
            ]
            with self._write_lock, self._conn:
                self._conn.executemany("UPDATE chunks SET embedding = ? WHERE chunk_id = ?", rows)
            if self.embedding_dim is None:
                self._set_meta("embedding_dim", int(vectors.shape[1]))

        batcher.embed([text for _, text in pending], on_batch=persist, timeout=timeout)
        logger.debug(f"[Store] Embedded {len(pending)} chunk(s) in {batcher.total_api_calls} call(s)")
        return len(pending)

    def embed_pending(self, timeout: Optional[float] = None) -> int:
        """Embed every chunk still lacking an embedding. Returns how many were embedded."""
        self._require_writable()
        self._require_embedder("embed_pending()")
        with self._write_lock:
            pending = self._conn.execute(
                "SELECT chunk_id, text FROM chunks WHERE embedding IS NULL ORDER BY chunk_id"
            ).fetchall()
        if pending:
            logger.info(f"[Store] Embedding {len(pending)} pending chunk(s)")
        return self._embed_chunks([(cid, text) for cid, text in pending], timeout=timeout)

    def delete_document(self, origin: str) -> int:
        """Delete every document with this origin (and its chunks). Returns the count."""
        self._require_writable()
        with self._write_lock, self._conn:
            cur = self._conn.execute("DELETE FROM documents WHERE origin = ?", (origin,))
        logger.info(f"[Store] Deleted {cur.rowcount} document(s) with origin {origin}")
        return cur.rowcount

    # --- Reads ------------------------------------------------------------------

    def contains(self, document: Document) -> bool:
        """True if a document with this origin and identical text is stored."""
        with self._write_lock:
            row = self._conn.execute(
                "SELECT 1 FROM documents WHERE origin = ? AND checksum = ? LIMIT 1",
                (document.origin, document.checksum),
            ).fetchone()
        return row is not None

    def get_document(self, doc_id: int) -> Optional[Document]:
        with self._write_lock:
            row = self._conn.execute(
                "SELECT doc_id, origin, full_text FROM documents WHERE doc_id = ?", (doc_id,)
            ).fetchone()
        if row is None:
            return None
        return Document(doc_id=row[0], origin=row[1], full_text=row[2])

    def get_chunks(
        self, doc_id: Optional[int] = None, include_embeddings: bool = False
    ) -> list[Chunk]:
        """Stored chunks in chunk_id order, optionally for one document only."""
        sql = (
            f"SELECT {tables.CHUNK_COLUMNS}, c.embedding FROM chunks c "
            "JOIN documents d ON d.doc_id = c.doc_id"
        )
        params: tuple = ()
        if doc_id is not None:
            sql += " WHERE c.doc_id = ?"
            params = (doc_id,)
        sql += " ORDER BY c.chunk_id"
        with self._write_lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            tables.row_to_chunk(row[:-1], row[-1] if include_embeddings else None)
            for row in rows
        ]

    def stats(self) -> dict[str, Any]:
        with self._write_lock:
            n_docs = self._conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
            n_chunks = self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            n_pending = self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE embedding IS NULL"
            ).fetchone()[0]
        snap = self._snapshot
        return {
            "location": str(self.location),
            "format_version": self._meta.get("format_version"),
            "created_at": self._meta.get("created_at"),
            "embedder": self.embedder_spec,
            "embedding_dim": self.embedding_dim,
            "documents": n_docs,
            "chunks": n_chunks,
            "pending_chunks": n_pending,
            "index_generation": snap.generation if snap else None,
            "index_built_at": snap.built_at if snap else None,
            "indexed_chunks": len(snap.records) if snap else 0,
            "vector_mode": snap.vector.mode if snap else None,
        }

    # --- Index ------------------------------------------------------------------

    def snapshot(self) -> IndexSnapshot:
        """The live index snapshot. Raises IndexNotBuiltError before the first build."""
        snap = self._snapshot
        if snap is None:
            raise IndexNotBuiltError(self.location)
        return snap

    @property
    def is_indexed(self) -> bool:
        return self._snapshot is not None

    def build_index(self, timeout: Optional[float] = None) -> IndexSnapshot:
        """
        (Re)build the VectorIndex and KeywordIndex from the current chunk set.

        Chunks still pending an embedding are left out (and logged). The new
        snapshot is written to a fresh generation directory and only swapped
        in once complete, so concurrent queries see either the old index or
        the new one. Safe to call repeatedly.

        Raises:
            OperationTimeoutError: the build exceeded `timeout` (defaults to
                                   index_config.build_timeout); the previous
                                   index stays live.
        """
        self._require_writable()
        timeout = timeout if timeout is not None else self.index_config.build_timeout
        with self._build_lock:
            generation = self._allocate_generation()
            if timeout is None:
                snap = self._build_snapshot(generation)
            else:
                executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ragcore-build")
                try:
                    future = executor.submit(self._build_snapshot, generation)
                    snap = future.result(timeout=timeout)
                except FuturesTimeoutError:
                    logger.error(f"[Store] Index build generation {generation} timed out")
                    raise OperationTimeoutError("Index build", timeout) from None
                finally:
                    executor.shutdown(wait=False)
            self._publish(snap)
        return snap

    def _allocate_generation(self) -> int:
        index_root = self.location / tables.INDEX_DIR
        on_disk = [
            int(m.group(1))
            for p in (index_root.iterdir() if index_root.exists() else [])
            if (m := _GEN_RE.match(p.name))
        ]
        generation = max([self._next_generation, self._meta.get("index_generation", 0) + 1, *[g + 1 for g in on_disk]])
        self._next_generation = generation + 1
        return generation

    def _build_snapshot(self, generation: int) -> IndexSnapshot:
        with self._write_lock:
            rows = self._conn.execute(
                f"SELECT {tables.CHUNK_COLUMNS}, c.embedding FROM chunks c "
                "JOIN documents d ON d.doc_id = c.doc_id ORDER BY c.chunk_id"
            ).fetchall()

        records: dict[int, Chunk] = {}
        vectors: list[np.ndarray] = []
        pending = 0
        for row in rows:
            blob = row[-1]
            if blob is None:
                pending += 1
                continue
            chunk = tables.row_to_chunk(row[:-1])
            records[chunk.chunk_id] = chunk
            vectors.append(tables.decode_vector(blob))
        if pending:
            logger.warning(
                f"[Store] {pending} chunk(s) still pending an embedding are not indexed; "
                "run embed_pending() and rebuild"
            )

        cfg = self.index_config
        ids = list(records)
        dim = self.embedding_dim or 0
        matrix = np.vstack(vectors) if vectors else np.zeros((0, dim), dtype=np.float32)
        vector = VectorIndex.build(
            ids,
            matrix,
            mode=cfg.vector_mode,
            exact_threshold=cfg.exact_threshold,
            hnsw_m=cfg.hnsw_m,
            ef_construction=cfg.hnsw_ef_construction,
            ef_search=cfg.hnsw_ef_search,
        )
        tokenizer = Tokenizer(stopwords=cfg.stopwords, stem=cfg.stem)
        keyword = KeywordIndex.build(
            ids, [records[cid].text for cid in ids], tokenizer=tokenizer, k1=cfg.bm25_k1, b=cfg.bm25_b
        )

        built_at = _now()
        gen_dir = self.location / tables.INDEX_DIR / f"gen-{generation:06d}"
        if gen_dir.exists():
            shutil.rmtree(gen_dir)
        gen_dir.mkdir(parents=True)
        vector.save(gen_dir)
        keyword.save(gen_dir)
        save_json(
            {
                "format_version": tables.INDEX_FORMAT_VERSION,
                "generation": generation,
                "built_at": built_at,
                "total_chunks": len(ids),
                "pending_excluded": pending,
                "dimensions": vector.dimension,
                "vector_mode": vector.mode,
                "hnsw_ef_search": cfg.hnsw_ef_search,
                "bm25_k1": cfg.bm25_k1,
                "bm25_b": cfg.bm25_b,
                "stem": cfg.stem,
                "stopwords": sorted(tokenizer.stopwords),
            },
            gen_dir / tables.MANIFEST_FILE,
        )
        logger.info(
            f"[Store] Built index generation {generation} | {len(ids)} chunks | -> {gen_dir}"
        )
        return IndexSnapshot(generation, built_at, vector, keyword, records)

    def _publish(self, snap: IndexSnapshot) -> None:
        with self._write_lock, self._conn:
            tables.write_meta(self._conn, "index_generation", snap.generation)
            tables.write_meta(self._conn, "index_built_at", snap.built_at)
        self._meta["index_generation"] = snap.generation
        self._meta["index_built_at"] = snap.built_at
        self._snapshot = snap

        index_root = self.location / tables.INDEX_DIR
        for p in index_root.iterdir():
            m = _GEN_RE.match(p.name)
            if m and int(m.group(1)) < snap.generation:
                try:
                    shutil.rmtree(p)
                except OSError as exc:
                    logger.warning(f"[Store] Could not remove old index {p}: {exc}")

    def _load_snapshot(self) -> None:
        generation = self._meta.get("index_generation") or 0
        if generation <= 0:
            logger.debug(f"[Store] {self.location} has no built index yet")
            return
        gen_dir = self.location / tables.INDEX_DIR / f"gen-{generation:06d}"
        manifest_path = gen_dir / tables.MANIFEST_FILE
        if not manifest_path.exists():
            logger.warning(f"[Store] Index generation {generation} is missing at {gen_dir}")
            return
        manifest = load_json(manifest_path)
        if manifest.get("format_version") != tables.INDEX_FORMAT_VERSION:
            raise UnsupportedStoreVersionError(
                gen_dir, manifest.get("format_version"), tables.INDEX_FORMAT_VERSION
            )

        vector = VectorIndex.load(
            gen_dir, mode=manifest["vector_mode"], ef_search=manifest.get("hnsw_ef_search", 128)
        )
        tokenizer = Tokenizer(stopwords=manifest.get("stopwords"), stem=manifest.get("stem", True))
        keyword = KeywordIndex.load(
            gen_dir, tokenizer=tokenizer, k1=manifest["bm25_k1"], b=manifest["bm25_b"]
        )

        records: dict[int, Chunk] = {}
        ids = keyword.chunk_ids
        with self._write_lock:
            for i in range(0, len(ids), 500):
                part = ids[i: i + 500]
                marks = ",".join("?" * len(part))
                for row in self._conn.execute(
                    f"SELECT {tables.CHUNK_COLUMNS} FROM chunks c "
                    f"JOIN documents d ON d.doc_id = c.doc_id WHERE c.chunk_id IN ({marks})",
                    part,
                ):
                    chunk = tables.row_to_chunk(row)
                    records[chunk.chunk_id] = chunk
        if len(records) != len(ids):
            logger.warning(
                f"[Store] {len(ids) - len(records)} indexed chunk(s) were deleted since "
                f"generation {generation}; they will not be returned"
            )

        self._snapshot = IndexSnapshot(generation, manifest["built_at"], vector, keyword, records)
        self._next_generation = generation + 1
        logger.info(f"[Store] Loaded index generation {generation} | {len(records)} chunks")

    # --- Retrieval passthrough --------------------------------------------------

    def inspect(
        self,
        query: str,
        top_k: Optional[int] = None,
        filter: FilterSpec = None,
        method: RetrievalMethod = "hybrid",
    ) -> QueryResult:
        """Diagnostic passthrough to retrieval; same contract as HybridRetriever."""
        from ragcore.retrieval.retriever import HybridRetriever

        retriever = HybridRetriever(self, self.retrieval_config)
        if method == "vss":
            return retriever.retrieve_vss(query, top_k=top_k, filter=filter)
        if method == "bm25":
            return retriever.retrieve_bm25(query, top_k=top_k, filter=filter)
        return retriever.retrieve(query, top_k=top_k, filter=filter)


