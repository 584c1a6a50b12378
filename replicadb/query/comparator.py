"""
Generic ordering comparator.

compare(a, b, order) returns a negative, zero or positive int like a
classic cmp function, for use with functools.cmp_to_key.

Order specs:
    "asc" | "desc"
    {"sort": "asc" | "desc", "nulls": "first" | "last"}

Null placement is independent of direction. Without an explicit `nulls`,
null sorts as the smallest value: first for asc, last for desc.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from ..errors import QueryError


@dataclass(frozen=True)
class SortOrder:
    """Parsed order spec."""

    direction: str = "asc"
    nulls: Optional[str] = None

    @classmethod
    def parse(cls, spec: Any) -> SortOrder:
        if isinstance(spec, SortOrder):
            return spec
        if isinstance(spec, str):
            direction, nulls = spec, None
        elif isinstance(spec, dict) and "sort" in spec and set(spec) <= {"sort", "nulls"}:
            direction, nulls = spec["sort"], spec.get("nulls")
        else:
            raise QueryError(f"Invalid sort order {spec!r}")
        if direction not in ("asc", "desc"):
            raise QueryError(f"Invalid sort direction {direction!r}")
        if nulls not in (None, "first", "last"):
            raise QueryError(f"Invalid nulls placement {nulls!r}")
        return cls(direction=direction, nulls=nulls)

    @property
    def effective_nulls(self) -> str:
        if self.nulls is not None:
            return self.nulls
        return "first" if self.direction == "asc" else "last"


def compare(a: Any, b: Any, order: Any = "asc") -> int:
    """Compare two field values under an order spec.

    Raises:
        QueryError: If the values are of kinds that cannot be ordered together
    """
    order = SortOrder.parse(order)
    if a is None or b is None:
        if a is None and b is None:
            return 0
        nulls_first = order.effective_nulls == "first"
        return -1 if (a is None) == nulls_first else 1
    result = compare_values(a, b)
    return result if order.direction == "asc" else -result


def compare_values(a: Any, b: Any) -> int:
    """Ascending comparison of two non-null values."""
    if isinstance(a, bool) or isinstance(b, bool):
        if isinstance(a, bool) and isinstance(b, bool):
            return int(a) - int(b)
    elif isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return (a > b) - (a < b)
    elif isinstance(a, str) and isinstance(b, str):
        return (a > b) - (a < b)
    elif isinstance(a, datetime) and isinstance(b, datetime):
        return (a > b) - (a < b)
    elif isinstance(a, (bytes, bytearray)) and isinstance(b, (bytes, bytearray)):
        if len(a) != len(b):
            return len(a) - len(b)
        return (a > b) - (a < b)
    raise QueryError(f"Cannot order {type(a).__name__} against {type(b).__name__}")
