import pytest

from ragcore.retrieval.fusion import min_max, rrf_merge, weighted_merge


def test_rrf_rewards_agreement():
    vss = [(1, 0.9), (2, 0.8), (3, 0.7)]
    bm25 = [(2, 12.0), (4, 9.0)]
    fused = rrf_merge(vss, bm25, vss_weight=0.5, bm25_weight=0.5, k=60)
    assert fused[0][0] == 2
    assert fused[0][1] == pytest.approx(0.5 / 62 + 0.5 / 61)
    assert {cid for cid, _ in fused} == {1, 2, 3, 4}


def test_rrf_single_list_keeps_order():
    fused = rrf_merge([(5, 0.3), (2, 0.2)], [], vss_weight=0.7, bm25_weight=0.3)
    assert [cid for cid, _ in fused] == [5, 2]


def test_rrf_ties_break_by_chunk_id():
    fused = rrf_merge([(9, 1.0)], [(4, 3.0)], vss_weight=0.5, bm25_weight=0.5)
    assert [cid for cid, _ in fused] == [4, 9]


def test_min_max_normalisation():
    assert min_max([(1, 2.0), (2, 4.0), (3, 3.0)]) == {1: 0.0, 2: 1.0, 3: 0.5}
    assert min_max([(1, 7.0), (2, 7.0)]) == {1: 1.0, 2: 1.0}
    assert min_max([]) == {}


def test_weighted_merge():
    vss = [(1, 0.9), (2, 0.1)]
    bm25 = [(2, 10.0), (3, 5.0)]
    fused = dict(weighted_merge(vss, bm25, vss_weight=0.7, bm25_weight=0.3))
    assert fused == pytest.approx({1: 0.7, 2: 0.3, 3: 0.0})
