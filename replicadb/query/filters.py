"""
Field filter predicates.

matches(value, spec, kind, is_list) decides whether one field value passes a
filter spec. Filter specs follow the query language:

    "abc"                              direct equality
    None                               field is null
    {"equals": ..., "not": ...}        equality / negation (not may nest a spec)
    {"in": [...], "not_in": [...]}     membership
    {"lt": .., "lte": .., "gt": .., "gte": ..}
    {"contains": .., "starts_with": .., "ends_with": .., "mode": "insensitive"}
    {"has": .., "has_some": [..], "has_every": [..], "is_empty": bool}  (lists)

Invariants:
    - A None spec means "is null"; an absent key means "no constraint"
    - Date filters accept ISO strings and compare as aware UTC datetimes
    - Unknown operators raise QueryError instead of being ignored
"""

from __future__ import annotations

import operator
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List

from ..errors import QueryError
from ..schema.types import FieldKind
from ..schema.validate import as_utc

_RELATIONAL: Dict[str, Callable[[Any, Any], bool]] = {
    "lt": operator.lt,
    "lte": operator.le,
    "gt": operator.gt,
    "gte": operator.ge,
}

_EQUALITY_OPS = {"equals", "not", "in", "not_in"}
_ORDERED_OPS = _EQUALITY_OPS | set(_RELATIONAL)
_TEXT_OPS = _ORDERED_OPS | {"contains", "starts_with", "ends_with", "mode"}
_LIST_OPS = {"equals", "has", "has_some", "has_every", "is_empty"}

_ALLOWED: Dict[FieldKind, set] = {
    FieldKind.STRING: _TEXT_OPS,
    FieldKind.INT: _ORDERED_OPS,
    FieldKind.FLOAT: _ORDERED_OPS,
    FieldKind.DATETIME: _ORDERED_OPS,
    FieldKind.BOOLEAN: {"equals", "not"},
    FieldKind.BYTES: _EQUALITY_OPS,
    FieldKind.ENUM: _EQUALITY_OPS,
    FieldKind.JSON: {"equals", "not"},
}


def to_datetime(value: Any) -> Any:
    """Normalize an ISO 8601 string (including a trailing Z) to an aware UTC datetime."""
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            raise QueryError(f"Invalid datetime value '{value}'") from None
    if isinstance(value, datetime):
        return as_utc(value)
    return value


def normalize(value: Any, kind: FieldKind) -> Any:
    if kind == FieldKind.DATETIME:
        if isinstance(value, (list, tuple)):
            return [to_datetime(v) for v in value]
        return to_datetime(value)
    return value


def _is_operator_spec(spec: Any, kind: FieldKind) -> bool:
    if not isinstance(spec, dict):
        return False
    if kind == FieldKind.JSON:
        return bool(spec) and set(spec) <= _ALLOWED[FieldKind.JSON]
    return True


def matches(value: Any, spec: Any, kind: FieldKind, is_list: bool = False) -> bool:
    """Evaluate one field filter.

    Args:
        value: The record's field value
        spec: Filter spec (see module docstring)
        kind: Field kind, selecting the filter family
        is_list: Whether the field holds a list

    Returns:
        True if the value satisfies the filter

    Raises:
        QueryError: If the spec uses operators unknown to the field kind
    """
    if spec is None:
        return value is None
    if is_list:
        return list_matches(value, spec, kind)
    if not _is_operator_spec(spec, kind):
        return _equal(value, normalize(spec, kind), kind, insensitive=False)

    unknown = set(spec) - _ALLOWED[kind]
    if unknown:
        raise QueryError(f"Unsupported {kind.value} filter operators: {sorted(unknown)}")

    mode = spec.get("mode")
    if mode not in (None, "default", "insensitive"):
        raise QueryError(f"Unsupported filter mode '{mode}'")
    insensitive = mode == "insensitive"

    for op, argument in spec.items():
        if op == "mode":
            continue
        if op == "not":
            if _is_operator_spec(argument, kind):
                nested = dict(argument)
                if insensitive:
                    nested.setdefault("mode", "insensitive")
                if matches(value, nested, kind):
                    return False
            elif argument is None:
                if value is None:
                    return False
            elif value is not None and _equal(value, normalize(argument, kind), kind, insensitive):
                return False
            continue
        if op == "equals":
            if argument is None:
                if value is not None:
                    return False
            elif not _equal(value, normalize(argument, kind), kind, insensitive):
                return False
            continue
        if op == "not_in":
            if value is not None and any(
                _equal(value, candidate, kind, insensitive) for candidate in _normalized(argument, kind)
            ):
                return False
            continue
        if value is None:
            return False
        if op == "in":
            if not any(_equal(value, candidate, kind, insensitive) for candidate in _normalized(argument, kind)):
                return False
        elif op in _RELATIONAL:
            left, right = _fold(value, insensitive), _fold(normalize(argument, kind), insensitive)
            try:
                if not _RELATIONAL[op](left, right):
                    return False
            except TypeError:
                raise QueryError(f"Cannot compare {value!r} with {argument!r}") from None
        elif op == "contains":
            if _fold(argument, insensitive) not in _fold(value, insensitive):
                return False
        elif op == "starts_with":
            if not _fold(value, insensitive).startswith(_fold(argument, insensitive)):
                return False
        elif op == "ends_with":
            if not _fold(value, insensitive).endswith(_fold(argument, insensitive)):
                return False
    return True


def list_matches(value: Any, spec: Any, kind: FieldKind) -> bool:
    """Evaluate a scalar-list filter (equals, has, has_some, has_every, is_empty)."""
    if not isinstance(spec, dict):
        return value is not None and list(value) == _normalized(spec, kind)
    unknown = set(spec) - _LIST_OPS
    if unknown:
        raise QueryError(f"Unsupported list filter operators: {sorted(unknown)}")
    if value is None:
        return not spec
    items = list(value)
    for op, argument in spec.items():
        if op == "equals":
            if argument is None or items != _normalized(argument, kind):
                return False
        elif op == "has":
            if argument is None or normalize(argument, kind) not in items:
                return False
        elif op == "has_some":
            if not any(candidate in items for candidate in _normalized(argument, kind)):
                return False
        elif op == "has_every":
            if not all(candidate in items for candidate in _normalized(argument, kind)):
                return False
        elif op == "is_empty":
            if bool(argument) != (len(items) == 0):
                return False
    return True


def _normalized(values: Iterable[Any], kind: FieldKind) -> List[Any]:
    if values is None:
        return []
    return [normalize(v, kind) for v in values]


def _fold(value: Any, insensitive: bool) -> Any:
    if insensitive and isinstance(value, str):
        return value.casefold()
    return value


def _equal(value: Any, expected: Any, kind: FieldKind, insensitive: bool) -> bool:
    if value is None or expected is None:
        return value is None and expected is None
    if kind == FieldKind.BOOLEAN or isinstance(value, bool) or isinstance(expected, bool):
        return type(value) is type(expected) and value == expected
    return _fold(value, insensitive) == _fold(expected, insensitive)
