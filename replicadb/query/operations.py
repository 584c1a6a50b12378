"""
Nested relation write operations.

The set of nested operations is closed. parse_relation_ops() turns a raw
relation payload such as {"create": [...], "connect": {...}} into a list of
(RelationOp, payload) pairs, rejecting operations that do not apply to the
relation's cardinality or to the surrounding mutation.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, FrozenSet, List, Tuple

from ..errors import QueryError
from ..schema.descriptor import RelationView


class RelationOp(Enum):
    """Nested relation write operations."""

    CREATE = "create"
    CREATE_MANY = "create_many"
    CONNECT = "connect"
    CONNECT_OR_CREATE = "connect_or_create"
    UPDATE = "update"
    UPDATE_MANY = "update_many"
    UPSERT = "upsert"
    DELETE = "delete"
    DELETE_MANY = "delete_many"
    SET = "set"
    DISCONNECT = "disconnect"


ON_CREATE: FrozenSet[RelationOp] = frozenset(
    {RelationOp.CREATE, RelationOp.CREATE_MANY, RelationOp.CONNECT, RelationOp.CONNECT_OR_CREATE}
)
TO_MANY_ONLY: FrozenSet[RelationOp] = frozenset(
    {RelationOp.CREATE_MANY, RelationOp.UPDATE_MANY, RelationOp.DELETE_MANY, RelationOp.SET}
)


def parse_relation_ops(
    relation: RelationView,
    payload: Any,
    creating: bool,
) -> List[Tuple[RelationOp, Any]]:
    """Parse a nested relation payload.

    Args:
        relation: The relation being written through
        payload: Raw payload, e.g. {"connect": {"id": 1}}
        creating: Whether the parent record is being created

    Raises:
        QueryError: On unknown or inapplicable operations
    """
    if not isinstance(payload, dict) or not payload:
        raise QueryError(
            f"Relation '{relation.name}' expects a dict of nested operations",
            model=relation.model,
        )
    parsed = []
    for name, argument in payload.items():
        try:
            op = RelationOp(name)
        except ValueError:
            raise QueryError(
                f"Unknown nested operation '{name}' on relation '{relation.name}'",
                model=relation.model,
            ) from None
        if creating and op not in ON_CREATE:
            raise QueryError(
                f"Nested '{name}' is not allowed while creating through '{relation.name}'",
                model=relation.model,
            )
        if op in TO_MANY_ONLY and not relation.to_many:
            raise QueryError(
                f"Nested '{name}' needs a to-many relation, '{relation.name}' is to-one",
                model=relation.model,
            )
        if relation.owner and op == RelationOp.CREATE_MANY:
            raise QueryError(f"Nested 'create_many' is not allowed on '{relation.name}'", model=relation.model)
        parsed.append((op, argument))
    return parsed
