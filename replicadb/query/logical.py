"""
AND / OR / NOT combinators over candidate record sets.

Sub-filters are evaluated by a caller-supplied coroutine (the model engine),
because they may contain relation filters that need related records loaded
inside the caller's transaction. Results are combined by primary key:

    AND: intersection, in candidate order
    OR:  de-duplicated union, first occurrence wins
    NOT: candidates minus the union of the sub-filter results
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Iterable, List, Sequence

from .where import Where

Record = Dict[str, Any]
KeyOf = Callable[[Record], tuple]
Evaluate = Callable[[List[Record], Where], Awaitable[List[Record]]]


def intersect_by_key(candidates: Sequence[Record], groups: Iterable[Sequence[Record]], key_of: KeyOf) -> List[Record]:
    keys = None
    for group in groups:
        group_keys = {key_of(r) for r in group}
        keys = group_keys if keys is None else keys & group_keys
    if keys is None:
        return list(candidates)
    return [r for r in candidates if key_of(r) in keys]


def union_by_key(groups: Iterable[Sequence[Record]], key_of: KeyOf) -> List[Record]:
    seen = set()
    result = []
    for group in groups:
        for record in group:
            key = key_of(record)
            if key not in seen:
                seen.add(key)
                result.append(record)
    return result


def exclude_by_key(candidates: Sequence[Record], excluded: Iterable[Record], key_of: KeyOf) -> List[Record]:
    keys = {key_of(r) for r in excluded}
    return [r for r in candidates if key_of(r) not in keys]


async def apply_logical_filters(
    records: List[Record],
    where: Where,
    key_of: KeyOf,
    evaluate: Evaluate,
) -> List[Record]:
    """Apply the AND, OR and NOT parts of `where` to `records`.

    Flat field and relation conditions of `where` itself are left to the
    caller.
    """
    if where.and_:
        results = [await evaluate(records, sub) for sub in where.and_]
        records = intersect_by_key(records, results, key_of)
    if where.or_ is not None:
        results = [await evaluate(records, sub) for sub in where.or_]
        records = union_by_key(results, key_of)
    if where.not_:
        results = [await evaluate(records, sub) for sub in where.not_]
        records = exclude_by_key(records, union_by_key(results, key_of), key_of)
    return records
