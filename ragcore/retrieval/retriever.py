"""
Hybrid Retriever
-----------------
Embeds the user query and performs hybrid (dense + sparse) search over the
store's live index snapshot.

    filter -> allowed chunk ids          (before either index is searched)
    VectorIndex.query  -> fan_out * top_k candidates
    KeywordIndex.query -> fan_out * top_k candidates
    fusion (RRF by default) -> top_k RetrievedChunk

The retriever is stateless per query -- call retrieve() as many times as you
like from the same instance. Each call reads one snapshot reference, so a
concurrent build_index() never mixes two index generations in one result.
"""
from __future__ import annotations

import time
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np
from langsmith import traceable
from loguru import logger

from ragcore.config import RetrievalConfig
from ragcore.errors import EmbedderNotConfiguredError
from ragcore.retrieval.filters import FilterSpec, apply_filter, compile_filter
from ragcore.retrieval.fusion import rrf_merge, weighted_merge
from ragcore.schemas import QueryResult, RetrievedChunk

if TYPE_CHECKING:
    from ragcore.store.store import IndexSnapshot, Store


class HybridRetriever:
    """
    Query-time front-end over a Store.

    Dense path  : VectorIndex (cosine similarity on L2-normalised vectors)
    Sparse path : KeywordIndex (BM25)
    Fusion      : weighted Reciprocal Rank Fusion, or min-max weighted sum
    """

    def __init__(self, store: "Store", config: Optional[RetrievalConfig] = None) -> None:
        self.store = store
        self.config = config or store.retrieval_config

    # --- Public API -------------------------------------------------------------

    @traceable(name="retrieve", run_type="retriever")
    def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        filter: FilterSpec = None,
    ) -> QueryResult:
        """
        Hybrid search: embed the query, search both indexes, fuse.

        Args:
            query:  Raw user query string.
            top_k:  Maximum number of results (defaults to config.top_k).
            filter: Metadata expression or predicate; excluded chunks never
                    count against top_k.

        Returns:
            QueryResult with at most top_k chunks, fused score descending.

        Raises:
            IndexNotBuiltError:  build_index() has never completed.
            InvalidFilterError:  the filter is malformed.
        """
        top_k = self._top_k(top_k)
        began = time.perf_counter()
        snap = self.store.snapshot()
        allowed = self._allowed(snap, filter)
        fetch = top_k * self.config.fan_out

        bm25_hits = snap.keyword.query(query, fetch, allowed=allowed)
        if self.store.embedder is None:
            logger.warning("[Retriever] Store has no embedder; hybrid search uses BM25 only")
            vss_hits: list[tuple[int, float]] = []
        else:
            vss_hits = self._vss_hits(snap, self._embed(query), fetch, allowed)

        cfg = self.config
        if cfg.fusion == "weighted":
            fused = weighted_merge(vss_hits, bm25_hits, cfg.vss_weight, cfg.bm25_weight)
        else:
            fused = rrf_merge(vss_hits, bm25_hits, cfg.vss_weight, cfg.bm25_weight, k=cfg.rrf_k)

        result = self._assemble(
            snap, query, "hybrid", top_k, fused, dict(vss_hits), dict(bm25_hits)
        )
        logger.info(
            f"[Retriever] hybrid | {len(vss_hits)} dense + {len(bm25_hits)} sparse candidates "
            f"-> {len(result)} result(s) | {(time.perf_counter() - began) * 1000:.0f}ms"
        )
        return result

    @traceable(name="retrieve_vss", run_type="retriever")
    def retrieve_vss(
        self,
        query: str | Sequence[float] | np.ndarray,
        top_k: Optional[int] = None,
        filter: FilterSpec = None,
    ) -> QueryResult:
        """
        Vector-only search. `query` is either text (embedded with the store's
        provider) or a ready-made query vector.
        """
        top_k = self._top_k(top_k)
        snap = self.store.snapshot()
        allowed = self._allowed(snap, filter)

        if isinstance(query, str):
            text = query
            vector = self._embed(query)
        else:
            text = ""
            vector = np.asarray(query, dtype=np.float32)

        hits = self._vss_hits(snap, vector, top_k, allowed)
        result = self._assemble(snap, text, "vss", top_k, hits, dict(hits), {})
        logger.debug(f"[Retriever] vss -> {len(result)} result(s)")
        return result

    @traceable(name="retrieve_bm25", run_type="retriever")
    def retrieve_bm25(
        self,
        query: str,
        top_k: Optional[int] = None,
        filter: FilterSpec = None,
    ) -> QueryResult:
        """Keyword-only search. Chunks sharing no term with the query are not returned."""
        top_k = self._top_k(top_k)
        snap = self.store.snapshot()
        allowed = self._allowed(snap, filter)

        hits = snap.keyword.query(query, top_k, allowed=allowed)
        result = self._assemble(snap, query, "bm25", top_k, hits, {}, dict(hits))
        logger.debug(f"[Retriever] bm25 -> {len(result)} result(s)")
        return result

    # --- Internals --------------------------------------------------------------

    def _top_k(self, top_k: Optional[int]) -> int:
        top_k = self.config.top_k if top_k is None else top_k
        if top_k <= 0:
            raise ValueError(f"top_k must be positive, got {top_k}")
        return top_k

    def _embed(self, query: str) -> np.ndarray:
        if self.store.embedder is None:
            raise EmbedderNotConfiguredError(
                f"Vector search needs an embedding provider, but store "
                f"{self.store.location} has none"
            )
        return self.store.batcher().embed_query(query)

    @staticmethod
    def _allowed(snap: "IndexSnapshot", filter: FilterSpec) -> Optional[set[int]]:
        predicate = compile_filter(filter)
        if predicate is None:
            # Chunks deleted since the snapshot was loaded must still drop out
            return None if snap.complete else set(snap.records)
        allowed = apply_filter(predicate, (c.metadata() for c in snap.records.values()))
        logger.debug(f"[Retriever] Filter admits {len(allowed)}/{len(snap.records)} chunks")
        return allowed

    @staticmethod
    def _vss_hits(
        snap: "IndexSnapshot",
        vector: np.ndarray,
        k: int,
        allowed: Optional[set[int]],
    ) -> list[tuple[int, float]]:
        if len(snap.vector) == 0:
            return []
        return snap.vector.query(vector, k, allowed=allowed)

    @staticmethod
    def _assemble(
        snap: "IndexSnapshot",
        query: str,
        method: str,
        top_k: int,
        ranked: list[tuple[int, float]],
        vss_scores: dict[int, float],
        bm25_scores: dict[int, float],
    ) -> QueryResult:
        results: list[RetrievedChunk] = []
        for cid, score in ranked:
            chunk = snap.records.get(cid)
            if chunk is None:
                continue
            results.append(
                RetrievedChunk(
                    chunk_id=cid,
                    score=float(score),
                    text=chunk.text,
                    heading_path=list(chunk.heading_path),
                    origin=chunk.origin,
                    doc_id=chunk.doc_id,
                    start_offset=chunk.start_offset,
                    end_offset=chunk.end_offset,
                    vss_score=vss_scores.get(cid),
                    bm25_score=bm25_scores.get(cid),
                )
            )
            if len(results) == top_k:
                break
        return QueryResult(query=query, method=method, top_k=top_k, results=results)


# --- Functional API ---------------------------------------------------------------

def retrieve(store: "Store", query: str, top_k: Optional[int] = None, filter: FilterSpec = None) -> QueryResult:
    return HybridRetriever(store).retrieve(query, top_k=top_k, filter=filter)


def retrieve_vss(
    store: "Store",
    query: str | Sequence[float] | np.ndarray,
    top_k: Optional[int] = None,
    filter: FilterSpec = None,
) -> QueryResult:
    return HybridRetriever(store).retrieve_vss(query, top_k=top_k, filter=filter)


def retrieve_bm25(store: "Store", query: str, top_k: Optional[int] = None, filter: FilterSpec = None) -> QueryResult:
    return HybridRetriever(store).retrieve_bm25(query, top_k=top_k, filter=filter)
