"""Query matching and update operators for JSON documents."""

from __future__ import annotations

import operator
from typing import Any, Callable

_MISSING = object()

_COMPARISONS: dict[str, Callable[[Any, Any], bool]] = {
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}

UPDATE_OPERATORS = frozenset({"$set", "$unset", "$inc", "$push"})


def is_operator_set(value: Any) -> bool:
    return isinstance(value, dict) and bool(value)


def values_equal(a: Any, b: Any) -> bool:
    """JSON equality: booleans never equal numbers, containers compare element-wise."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    return a == b


def match_query(doc: dict[str, Any], query: dict[str, Any] | None) -> bool:
    """True when ``doc`` satisfies every condition in ``query``.

    A plain value is an exact match. A mapping is a set of operators
    (``$gt $gte $lt $lte $ne $in $nin $exists``); any other key inside it
    compares one level into a nested mapping field.
    """
    if not query:
        return True
    for field, cond in query.items():
        value = doc.get(field, _MISSING)
        if is_operator_set(cond):
            if not _match_operators(value, cond):
                return False
        elif value is _MISSING or not values_equal(value, cond):
            return False
    return True


def _match_operators(value: Any, ops: dict[str, Any]) -> bool:
    for op, operand in ops.items():
        if op in _COMPARISONS:
            if value is _MISSING or value is None:
                return False
            if isinstance(value, bool) != isinstance(operand, bool):
                return False
            try:
                if not _COMPARISONS[op](value, operand):
                    return False
            except TypeError:
                return False
        elif op == "$ne":
            if value is not _MISSING and values_equal(value, operand):
                return False
        elif op in ("$in", "$nin"):
            candidates = _as_list(op, operand)
            found = value is not _MISSING and _contains(candidates, value)
            if found != (op == "$in"):
                return False
        elif op == "$exists":
            if (value is not _MISSING) != bool(operand):
                return False
        else:
            nested = value.get(op, _MISSING) if isinstance(value, dict) else _MISSING
            if nested is _MISSING or not values_equal(nested, operand):
                return False
    return True


def _as_list(op: str, operand: Any) -> list[Any]:
    if isinstance(operand, (list, tuple, set, frozenset)):
        return list(operand)
    raise ValueError(f"{op} needs a list operand, got {type(operand).__name__}")


def _contains(candidates: list[Any], value: Any) -> bool:
    return any(values_equal(value, c) for c in candidates)


def literal_fields(query: dict[str, Any] | None) -> dict[str, Any]:
    """Plain-value conditions of ``query``, used to seed an upserted document."""
    return {k: v for k, v in (query or {}).items() if not is_operator_set(v)}


def apply_update(doc: dict[str, Any], ops: dict[str, Any]) -> dict[str, Any]:
    """Apply ``$set $unset $inc $push`` and direct field assignments in place."""
    for key, value in ops.items():
        if key == "$set":
            doc.update(value)
        elif key == "$unset":
            for field in value:
                doc.pop(field, None)
        elif key == "$inc":
            for field, amount in value.items():
                doc[field] = (doc.get(field) or 0) + amount
        elif key == "$push":
            for field, item in value.items():
                current = doc.get(field)
                if not isinstance(current, list):
                    current = []
                    doc[field] = current
                current.append(item)
        elif key.startswith("$"):
            raise ValueError(f"Unsupported update operator: {key}")
        else:
            doc[key] = value
    return doc
