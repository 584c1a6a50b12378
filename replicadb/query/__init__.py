"""
Query evaluation building blocks.

Pure pieces the model engine is assembled from:
- filters: field predicates per kind
- comparator: ordering with null placement
- where: compiled filter algebra
- logical: AND/OR/NOT over candidate sets
- operations: nested relation write variants
- updates: scalar update operators
- planner: transaction scope computation
"""

from .comparator import SortOrder, compare
from .filters import list_matches, matches
from .logical import apply_logical_filters, intersect_by_key, union_by_key
from .operations import RelationOp, parse_relation_ops
from .planner import TransactionScopePlanner
from .updates import apply_update
from .where import FieldCondition, Quantifier, RelationCondition, Where, compile_where

__all__ = [
    "FieldCondition",
    "Quantifier",
    "RelationCondition",
    "RelationOp",
    "SortOrder",
    "TransactionScopePlanner",
    "Where",
    "apply_logical_filters",
    "apply_update",
    "compare",
    "compile_where",
    "intersect_by_key",
    "list_matches",
    "matches",
    "parse_relation_ops",
    "union_by_key",
]
