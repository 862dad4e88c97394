"""
Score fusion for hybrid retrieval.

Both rules are deterministic: the output is sorted by fused score descending
with ties broken by chunk_id ascending.

rrf       score = w_vss / (k + rank_vss) + w_bm25 / (k + rank_bm25), ranks
          1-based. Robust to the scale mismatch between cosine similarity
          and BM25. A chunk found by only one index keeps only that term.
weighted  each list is min-max normalised to [0, 1] (a list whose scores are
          all equal maps to 1.0), then score = w_vss * s_vss + w_bm25 * s_bm25.
"""
from __future__ import annotations

Hits = list[tuple[int, float]]


def _sorted(scores: dict[int, float]) -> Hits:
    return sorted(scores.items(), key=lambda x: (-x[1], x[0]))


def rrf_merge(
    vss_hits: Hits,
    bm25_hits: Hits,
    vss_weight: float = 0.7,
    bm25_weight: float = 0.3,
    k: int = 60,
) -> Hits:
    scores: dict[int, float] = {}
    for rank, (cid, _) in enumerate(vss_hits, start=1):
        scores[cid] = scores.get(cid, 0.0) + vss_weight / (k + rank)
    for rank, (cid, _) in enumerate(bm25_hits, start=1):
        scores[cid] = scores.get(cid, 0.0) + bm25_weight / (k + rank)
    return _sorted(scores)


def min_max(hits: Hits) -> dict[int, float]:
    if not hits:
        return {}
    values = [s for _, s in hits]
    lo, hi = min(values), max(values)
    if hi == lo:
        return {cid: 1.0 for cid, _ in hits}
    return {cid: (s - lo) / (hi - lo) for cid, s in hits}


def weighted_merge(
    vss_hits: Hits,
    bm25_hits: Hits,
    vss_weight: float = 0.7,
    bm25_weight: float = 0.3,
) -> Hits:
    scores: dict[int, float] = {}
    for cid, s in min_max(vss_hits).items():
        scores[cid] = scores.get(cid, 0.0) + vss_weight * s
    for cid, s in min_max(bm25_hits).items():
        scores[cid] = scores.get(cid, 0.0) + bm25_weight * s
    return _sorted(scores)
