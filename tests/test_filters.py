import pytest

from ragcore.errors import InvalidFilterError
from ragcore.retrieval.filters import apply_filter, compile_filter, exclude_ids

RECORDS = [
    {"chunk_id": 1, "doc_id": 1, "origin": "guide/intro.md", "heading_path": ["Intro"],
     "start_offset": 0, "end_offset": 120, "text": "Welcome to the guide."},
    {"chunk_id": 2, "doc_id": 1, "origin": "guide/intro.md", "heading_path": ["Intro", "Setup"],
     "start_offset": 100, "end_offset": 300, "text": "Install the package."},
    {"chunk_id": 3, "doc_id": 2, "origin": "notes/appendix.md", "heading_path": ["Appendix"],
     "start_offset": 0, "end_offset": 80, "text": "Extra material."},
]


def _ids(spec):
    return apply_filter(compile_filter(spec), RECORDS)


def test_no_filter_compiles_to_none():
    assert compile_filter(None) is None


def test_equality_and_membership():
    assert _ids({"doc_id": 1}) == {1, 2}
    assert _ids({"doc_id": {"$ne": 1}}) == {3}
    assert _ids({"chunk_id": {"$in": [1, 3]}}) == {1, 3}
    assert _ids({"chunk_id": {"$nin": [1, 3]}}) == {2}


def test_ordering_and_text_operators():
    assert _ids({"start_offset": {"$gte": 100}}) == {2}
    assert _ids({"end_offset": {"$gt": 80, "$lt": 300}}) == {1}
    assert _ids({"origin": {"$contains": "guide/"}}) == {1, 2}
    assert _ids({"text": {"$regex": r"^Install"}}) == {2}


def test_heading_path_operators():
    assert _ids({"heading_path": {"$contains": "Setup"}}) == {2}
    assert _ids({"heading_path": ["Appendix"]}) == {3}
    assert _ids({"heading_path": {"$regex": "^App"}}) == {3}


def test_logical_combinators():
    assert _ids({"$and": [{"doc_id": 1}, {"start_offset": 0}]}) == {1}
    assert _ids({"$or": [{"chunk_id": 3}, {"start_offset": 100}]}) == {2, 3}
    assert _ids({"$not": {"doc_id": 1}}) == {3}


def test_callable_predicates():
    assert _ids(lambda m: m["end_offset"] - m["start_offset"] > 100) == {1, 2}


def test_exclusion_filter_from_seen_ids():
    spec = exclude_ids({3, 1})
    assert spec == {"chunk_id": {"$nin": [1, 3]}}
    assert _ids(spec) == {2}


@pytest.mark.parametrize("spec", [
    {"colour": "red"},
    {"doc_id": {"$near": 1}},
    {"chunk_id": {"$in": 3}},
    {"$and": []},
    {"$xor": [{"doc_id": 1}]},
    {"text": {"$regex": "("}},
    {"heading_path": {"$gt": "A"}},
    ["not", "a", "mapping"],
])
def test_malformed_filters_raise(spec):
    with pytest.raises(InvalidFilterError):
        compile_filter(spec)


def test_failing_predicate_is_reported():
    with pytest.raises(InvalidFilterError):
        _ids(lambda m: m["missing"])
    with pytest.raises(InvalidFilterError):
        _ids({"origin": {"$gt": 5}})
