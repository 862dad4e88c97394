"""
Vector Index
-------------
Cosine-similarity search over chunk embeddings.

Rows are L2-normalised at build time (and the query at search time), so the
inner product equals cosine similarity. Two search paths share one index:

  - exact   brute-force numpy matrix product over every row. The reference
            mode for correctness testing, and the default for small stores.
  - hnsw    faiss.IndexHNSWFlat (inner-product metric), approximate.

Results are ordered by similarity descending, ties by chunk_id ascending.

Persistence:
  - vectors.npy    normalised float32 matrix (always)
  - chunk_ids.npy  int64 row -> chunk_id map
  - faiss.index    HNSW graph (hnsw mode only)
"""
from __future__ import annotations

from pathlib import Path
from typing import Collection, Optional, Sequence

import faiss
import numpy as np
from loguru import logger

VECTORS_FILE = "vectors.npy"
IDS_FILE = "chunk_ids.npy"
FAISS_FILE = "faiss.index"


def l2_normalise(matrix: np.ndarray) -> np.ndarray:
    """Row-normalise; zero rows stay zero."""
    matrix = np.asarray(matrix, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=-1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
    return (matrix / norms).astype(np.float32)


def _rank(ids: np.ndarray, sims: np.ndarray, k: int) -> list[tuple[int, float]]:
    """Top-k by similarity desc, chunk_id asc; deterministic under ties."""
    if k <= 0 or len(ids) == 0:
        return []
    if k < len(sims):
        # Keep every row tied with the k-th best so the id tie-break is exact
        kth = np.partition(-sims, k - 1)[k - 1]
        keep = np.nonzero(-sims <= kth)[0]
        ids, sims = ids[keep], sims[keep]
    order = np.lexsort((ids, -sims))[:k]
    return [(int(ids[i]), float(sims[i])) for i in order]


class VectorIndex:
    """
    Build with VectorIndex.build(); query with query().

    `mode` is the resolved search path ("exact" or "hnsw"); exact search is
    available on every index via query(..., exact=True).
    """

    def __init__(
        self,
        chunk_ids: np.ndarray,
        vectors: np.ndarray,
        mode: str = "exact",
        faiss_index: Optional[faiss.Index] = None,
        ef_search: int = 128,
    ) -> None:
        self.chunk_ids = np.asarray(chunk_ids, dtype=np.int64)
        self.vectors = np.ascontiguousarray(vectors, dtype=np.float32)
        self.mode = mode
        self.faiss_index = faiss_index
        self.ef_search = ef_search

    # --- Build ----------------------------------------------------------------

    @classmethod
    def build(
        cls,
        chunk_ids: Sequence[int],
        embeddings: np.ndarray,
        mode: str = "auto",
        exact_threshold: int = 20_000,
        hnsw_m: int = 32,
        ef_construction: int = 200,
        ef_search: int = 128,
    ) -> "VectorIndex":
        """
        Args:
            chunk_ids:  One id per embedding row.
            embeddings: Float array of shape (len(chunk_ids), dim).
            mode:       "exact", "hnsw", or "auto" (exact below exact_threshold).
        """
        ids = np.asarray(list(chunk_ids), dtype=np.int64)
        matrix = np.asarray(embeddings, dtype=np.float32)
        if matrix.size == 0:
            matrix = matrix.reshape(0, matrix.shape[-1] if matrix.ndim == 2 else 0)
        elif matrix.ndim != 2:
            matrix = matrix.reshape(len(ids), -1)
        if len(ids) != len(matrix):
            raise ValueError(f"Mismatch: {len(ids)} chunk ids vs {len(matrix)} embeddings")

        vectors = l2_normalise(matrix)
        resolved = mode
        if mode == "auto":
            resolved = "exact" if len(ids) < exact_threshold else "hnsw"

        index = None
        if resolved == "hnsw" and len(ids) > 0:
            index = faiss.IndexHNSWFlat(vectors.shape[1], hnsw_m, faiss.METRIC_INNER_PRODUCT)
            index.hnsw.efConstruction = ef_construction
            index.add(vectors)
        elif resolved not in ("exact", "hnsw"):
            raise ValueError(f"Unknown vector index mode: {mode!r}")

        logger.info(
            f"[VectorIndex] Built {resolved} index | {len(ids)} vectors | "
            f"dim={vectors.shape[1] if vectors.size else 0}"
        )
        return cls(ids, vectors, mode=resolved, faiss_index=index, ef_search=ef_search)

    def __len__(self) -> int:
        return len(self.chunk_ids)

    @property
    def dimension(self) -> int:
        return int(self.vectors.shape[1]) if self.vectors.ndim == 2 else 0

    # --- Search ---------------------------------------------------------------

    def query(
        self,
        vector: Sequence[float] | np.ndarray,
        k: int,
        allowed: Optional[Collection[int]] = None,
        exact: Optional[bool] = None,
    ) -> list[tuple[int, float]]:
        """
        Return up to k (chunk_id, cosine_similarity) pairs.

        Args:
            allowed: Restrict results to these chunk ids (None = no restriction).
                     Excluded rows never consume the k budget.
            exact:   Force (True) or forbid (False) brute-force search.
        """
        if k <= 0 or len(self) == 0:
            return []
        q = l2_normalise(np.asarray(vector, dtype=np.float32).reshape(1, -1))[0]
        if q.shape[0] != self.dimension:
            raise ValueError(
                f"Query vector has dimension {q.shape[0]}, index expects {self.dimension}"
            )

        use_exact = self.mode == "exact" if exact is None else exact
        if use_exact or self.faiss_index is None:
            return self._search_exact(q, k, allowed)
        return self._search_hnsw(q, k, allowed)

    def _search_exact(
        self, q: np.ndarray, k: int, allowed: Optional[Collection[int]]
    ) -> list[tuple[int, float]]:
        ids, vectors = self.chunk_ids, self.vectors
        if allowed is not None:
            mask = np.isin(ids, np.fromiter(allowed, dtype=np.int64, count=len(allowed)))
            ids, vectors = ids[mask], vectors[mask]
        sims = vectors @ q
        return _rank(ids, sims, k)

    def _search_hnsw(
        self, q: np.ndarray, k: int, allowed: Optional[Collection[int]]
    ) -> list[tuple[int, float]]:
        assert self.faiss_index is not None
        allowed_set = set(allowed) if allowed is not None else None
        n = len(self)
        want = min(k, n) if allowed_set is None else min(k, len(allowed_set))
        if want == 0:
            return []

        self.faiss_index.hnsw.efSearch = max(self.ef_search, k)
        qv = np.ascontiguousarray(q.reshape(1, -1), dtype=np.float32)
        fetch = want
        while True:
            # Widen the search until enough rows survive the filter
            scores, rows = self.faiss_index.search(qv, fetch)
            hits: list[tuple[int, float]] = []
            for score, row in zip(scores[0], rows[0]):
                if row < 0:
                    continue
                cid = int(self.chunk_ids[row])
                if allowed_set is None or cid in allowed_set:
                    hits.append((cid, float(score)))
            if len(hits) >= want or fetch >= n:
                break
            fetch = min(n, fetch * 4)
            self.faiss_index.hnsw.efSearch = max(self.ef_search, fetch)

        hits.sort(key=lambda h: (-h[1], h[0]))
        return hits[:k]

    # --- Persistence ----------------------------------------------------------

    def save(self, index_dir: Path) -> None:
        index_dir.mkdir(parents=True, exist_ok=True)
        np.save(index_dir / VECTORS_FILE, self.vectors)
        np.save(index_dir / IDS_FILE, self.chunk_ids)
        if self.faiss_index is not None:
            faiss.write_index(self.faiss_index, str(index_dir / FAISS_FILE))
        logger.debug(f"[VectorIndex] Saved {len(self)} vectors -> {index_dir}")

    @classmethod
    def load(cls, index_dir: Path, mode: str, ef_search: int = 128) -> "VectorIndex":
        vectors = np.load(index_dir / VECTORS_FILE)
        chunk_ids = np.load(index_dir / IDS_FILE)
        faiss_index = None
        if mode == "hnsw" and (index_dir / FAISS_FILE).exists():
            faiss_index = faiss.read_index(str(index_dir / FAISS_FILE))
        logger.debug(f"[VectorIndex] Loaded {len(chunk_ids)} vectors <- {index_dir}")
        return cls(chunk_ids, vectors, mode=mode, faiss_index=faiss_index, ef_search=ef_search)
