import numpy as np
import pytest

from ragcore.embedding.embedder import HashingEmbedder
from ragcore.index.vector_index import VectorIndex


def _random_vectors(n, dim=32, seed=0):
    rng = np.random.default_rng(seed)
    return rng.normal(size=(n, dim)).astype(np.float32)


def test_exact_match_ranks_first():
    vectors = _random_vectors(50)
    ids = list(range(100, 150))
    index = VectorIndex.build(ids, vectors, mode="exact")
    for row in (0, 17, 49):
        hits = index.query(vectors[row], k=3)
        assert hits[0][0] == ids[row]
        assert hits[0][1] == pytest.approx(1.0, abs=1e-5)


def test_similarities_are_cosine_and_sorted():
    index = VectorIndex.build([1, 2, 3], np.array([[1, 0], [0, 1], [1, 1]], dtype=np.float32), mode="exact")
    hits = index.query([2.0, 0.0], k=3)
    assert [cid for cid, _ in hits] == [1, 3, 2]
    assert hits[1][1] == pytest.approx(np.sqrt(0.5), abs=1e-6)
    assert hits[2][1] == pytest.approx(0.0, abs=1e-6)


def test_ties_are_broken_by_chunk_id():
    same = np.ones((4, 8), dtype=np.float32)
    index = VectorIndex.build([9, 4, 7, 1], same, mode="exact")
    assert [cid for cid, _ in index.query(np.ones(8), k=2)] == [1, 4]
    assert [cid for cid, _ in index.query(np.ones(8), k=4)] == [1, 4, 7, 9]


def test_k_larger_than_index():
    index = VectorIndex.build([1, 2], _random_vectors(2), mode="exact")
    assert len(index.query(_random_vectors(1)[0], k=10)) == 2
    assert index.query(_random_vectors(1)[0], k=0) == []


def test_allowed_rows_do_not_consume_k():
    vectors = _random_vectors(20)
    ids = list(range(20))
    index = VectorIndex.build(ids, vectors, mode="exact")
    hits = index.query(vectors[0], k=3, allowed={5, 6, 7, 8})
    assert len(hits) == 3
    assert {cid for cid, _ in hits} <= {5, 6, 7, 8}
    assert index.query(vectors[0], k=3, allowed=set()) == []


def test_dimension_mismatch_is_rejected():
    index = VectorIndex.build([1], _random_vectors(1, dim=16), mode="exact")
    with pytest.raises(ValueError):
        index.query(np.ones(8), k=1)


def test_empty_index_returns_nothing():
    index = VectorIndex.build([], np.zeros((0, 16), dtype=np.float32), mode="auto")
    assert len(index) == 0
    assert index.query(np.ones(16), k=5) == []


def test_auto_mode_picks_by_size():
    vectors = _random_vectors(30)
    assert VectorIndex.build(range(30), vectors, mode="auto", exact_threshold=100).mode == "exact"
    assert VectorIndex.build(range(30), vectors, mode="auto", exact_threshold=10).mode == "hnsw"


def test_hnsw_agrees_with_exact_on_small_data():
    emb = HashingEmbedder(64)
    texts = [f"topic {i} about {word}" for i, word in enumerate(
        ["cats", "dogs", "birds", "fish", "trees", "rivers", "mountains", "cities", "roads", "boats"] * 3
    )]
    vectors = np.asarray(emb.embed(texts), dtype=np.float32)
    index = VectorIndex.build(range(len(texts)), vectors, mode="hnsw", hnsw_m=16)
    assert index.faiss_index is not None

    query = vectors[4]
    approx = index.query(query, k=1)
    exact = index.query(query, k=1, exact=True)
    assert approx[0][1] == pytest.approx(exact[0][1], abs=1e-5)
    assert approx[0][1] == pytest.approx(1.0, abs=1e-5)


def test_hnsw_with_filter_widens_search():
    vectors = _random_vectors(200, seed=3)
    index = VectorIndex.build(range(200), vectors, mode="hnsw", hnsw_m=16)
    hits = index.query(vectors[0], k=5, allowed={150, 151, 152})
    assert sorted(cid for cid, _ in hits) == [150, 151, 152]


def test_save_and_load(tmp_path):
    vectors = _random_vectors(12)
    index = VectorIndex.build(range(12), vectors, mode="hnsw", hnsw_m=8)
    index.save(tmp_path)
    loaded = VectorIndex.load(tmp_path, mode="hnsw")
    assert loaded.faiss_index is not None
    assert loaded.query(vectors[3], k=1, exact=True) == index.query(vectors[3], k=1, exact=True)
