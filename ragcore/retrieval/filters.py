"""
Retrieval filters
------------------
A filter is either a callable predicate over chunk metadata or a small
``where``-style expression:

    {"chunk_id": {"$nin": [3, 7]}}
    {"$and": [{"origin": {"$contains": "guide"}}, {"start_offset": {"$lt": 5000}}]}
    {"$not": {"heading_path": {"$contains": "Appendix"}}}

Fields: chunk_id, doc_id, origin, heading_path, start_offset, end_offset, text.
Operators: $eq $ne $in $nin $gt $gte $lt $lte $contains $regex, combined
with $and / $or / $not. A bare value means $eq. On heading_path (a list),
$contains tests membership and $eq compares the whole list.

Expressions are compiled up front, so unknown fields, unknown operators and
malformed operands raise InvalidFilterError before any search runs.
"""
from __future__ import annotations

import re
from typing import Any, Callable, Iterable, Mapping, Union

from ragcore.errors import InvalidFilterError

Metadata = Mapping[str, Any]
Predicate = Callable[[Metadata], bool]
FilterSpec = Union[Mapping[str, Any], Predicate, None]

FIELDS = frozenset(
    {"chunk_id", "doc_id", "origin", "heading_path", "start_offset", "end_offset", "text"}
)
_LIST_OPERAND_OPS = {"$in", "$nin"}
_ORDER_OPS = {"$gt", "$gte", "$lt", "$lte"}


def _compile_op(field: str, op: str, cond: Any, expr: Any) -> Predicate:
    if op == "$eq":
        return lambda m: m.get(field) == cond
    if op == "$ne":
        return lambda m: m.get(field) != cond
    if op in _LIST_OPERAND_OPS:
        if not isinstance(cond, (list, tuple, set, frozenset)):
            raise InvalidFilterError(f"{op} on {field!r} needs a list operand", expr)
        try:
            values = frozenset(cond)
        except TypeError as exc:
            raise InvalidFilterError(f"{op} operand is not hashable ({exc})", expr) from exc
        if op == "$in":
            return lambda m: m.get(field) in values
        return lambda m: m.get(field) not in values
    if op in _ORDER_OPS:
        if field == "heading_path" or not isinstance(cond, (int, float, str)) or isinstance(cond, bool):
            raise InvalidFilterError(f"{op} on {field!r} needs a number or string operand", expr)
        compare = {
            "$gt": lambda a, b: a > b,
            "$gte": lambda a, b: a >= b,
            "$lt": lambda a, b: a < b,
            "$lte": lambda a, b: a <= b,
        }[op]

        def ordered(m: Metadata) -> bool:
            value = m.get(field)
            try:
                return compare(value, cond)
            except TypeError as exc:
                raise InvalidFilterError(
                    f"{op} cannot compare {field}={value!r} with {cond!r}", expr
                ) from exc

        return ordered
    if op == "$contains":
        if field == "heading_path":
            return lambda m: cond in (m.get(field) or [])
        if not isinstance(cond, str):
            raise InvalidFilterError(f"$contains on {field!r} needs a string operand", expr)
        return lambda m: cond in str(m.get(field) or "")
    if op == "$regex":
        if not isinstance(cond, str):
            raise InvalidFilterError("$regex needs a string pattern", expr)
        try:
            pattern = re.compile(cond)
        except re.error as exc:
            raise InvalidFilterError(f"Invalid regex ({exc})", expr) from exc
        if field == "heading_path":
            return lambda m: any(pattern.search(h) for h in (m.get(field) or []))
        return lambda m: pattern.search(str(m.get(field) or "")) is not None
    raise InvalidFilterError(f"Unknown operator {op!r}", expr)


def _compile_field(field: str, expr: Any) -> Predicate:
    if field not in FIELDS:
        raise InvalidFilterError(f"Unknown filter field {field!r}", expr)
    if isinstance(expr, Mapping):
        if not expr:
            raise InvalidFilterError(f"Empty condition for field {field!r}", expr)
        tests = []
        for op, cond in expr.items():
            if not isinstance(op, str) or not op.startswith("$"):
                raise InvalidFilterError(f"Expected an operator for field {field!r}, got {op!r}", expr)
            tests.append(_compile_op(field, op, cond, expr))
        return lambda m: all(t(m) for t in tests)
    return _compile_op(field, "$eq", expr, expr)


def _compile(where: Any) -> Predicate:
    if not isinstance(where, Mapping):
        raise InvalidFilterError("Filter expression must be a mapping", where)

    tests: list[Predicate] = []
    for key, value in where.items():
        if key in ("$and", "$or"):
            if not isinstance(value, (list, tuple)) or not value:
                raise InvalidFilterError(f"{key} needs a non-empty list of expressions", where)
            preds = [_compile(w) for w in value]
            if key == "$and":
                tests.append(lambda m, preds=preds: all(p(m) for p in preds))
            else:
                tests.append(lambda m, preds=preds: any(p(m) for p in preds))
        elif key == "$not":
            inner = _compile(value)
            tests.append(lambda m, inner=inner: not inner(m))
        elif isinstance(key, str) and key.startswith("$"):
            raise InvalidFilterError(f"Unknown logical operator {key!r}", where)
        else:
            tests.append(_compile_field(key, value))

    return lambda m: all(t(m) for t in tests)


def compile_filter(spec: FilterSpec) -> Predicate | None:
    """
    Turn a filter spec into a predicate over chunk metadata.

    Returns None for "no filter". Raises InvalidFilterError for anything that
    is neither a callable nor a well-formed expression.
    """
    if spec is None:
        return None
    if callable(spec):
        return spec  # type: ignore[return-value]
    return _compile(spec)


def apply_filter(predicate: Predicate, records: Iterable[Metadata]) -> set[int]:
    """Chunk ids of the records the predicate accepts."""
    allowed: set[int] = set()
    for m in records:
        try:
            keep = predicate(m)
        except InvalidFilterError:
            raise
        except Exception as exc:
            raise InvalidFilterError(f"Filter predicate failed: {type(exc).__name__}: {exc}") from exc
        if keep:
            allowed.add(m["chunk_id"])
    return allowed


def exclude_ids(chunk_ids: Iterable[int]) -> dict[str, Any]:
    """
    Exclusion filter for chunks the caller has already seen.

    The caller owns the set and threads it through successive retrieve()
    calls, e.g. to avoid showing the same excerpt twice in one conversation.
    """
    return {"chunk_id": {"$nin": sorted(set(chunk_ids))}}
