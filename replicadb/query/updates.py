"""
Scalar field update operators.

    value                         set
    {"set": value}                set
    {"increment": n} / {"decrement": n} / {"multiply": n} / {"divide": n}   numbers
    {"push": v | [v, ...]}        scalar lists

Numeric operators leave a null value null. Integer division truncates toward
zero. JSON fields always take the raw value unless it is exactly {"set": v}.
"""

from __future__ import annotations

from typing import Any

from ..errors import QueryError
from ..schema.types import FieldDef, FieldKind
from .filters import normalize

_NUMERIC_OPS = ("increment", "decrement", "multiply", "divide")


def _divide(current: Any, divisor: Any) -> Any:
    if divisor == 0:
        raise QueryError("Division by zero in update")
    if isinstance(current, int) and isinstance(divisor, int):
        quotient = abs(current) // abs(divisor)
        return quotient if (current >= 0) == (divisor >= 0) else -quotient
    return current / divisor


def apply_update(definition: FieldDef, current: Any, operation: Any) -> Any:
    """Return the new value of a field after applying `operation`.

    Raises:
        QueryError: If the operator does not apply to the field kind
    """
    if not isinstance(operation, dict):
        return normalize(operation, definition.kind)
    if definition.kind == FieldKind.JSON and not definition.is_list and set(operation) != {"set"}:
        return operation
    if len(operation) != 1:
        raise QueryError(f"Update of '{definition.name}' needs exactly one operator, got {sorted(operation)}")

    op, argument = next(iter(operation.items()))
    if op == "set":
        return normalize(argument, definition.kind)

    if definition.is_list:
        if op != "push":
            raise QueryError(f"Unsupported list update '{op}' on '{definition.name}'")
        items = argument if isinstance(argument, (list, tuple)) else [argument]
        return list(current or []) + [normalize(v, definition.kind) for v in items]

    if not definition.kind.is_numeric or op not in _NUMERIC_OPS:
        raise QueryError(f"Unsupported update '{op}' on {definition.kind.value} field '{definition.name}'")
    if current is None:
        return None
    if op == "increment":
        return current + argument
    if op == "decrement":
        return current - argument
    if op == "multiply":
        return current * argument
    return _divide(current, argument)
