"""
Typed where-clause algebra.

Raw where dicts from callers are compiled once per call into a small tree:

    Where
      fields:    FieldCondition(field, spec)          flat field filters
      relations: RelationCondition(relation, quantifier, where)
      and_ / or_ / not_: nested Where nodes

Compilation validates every key against the model descriptor, so typos and
unsupported shapes fail fast with QueryError instead of silently matching.

Raw shape reference:
    {"title": {"contains": "x"}}                       field filter
    {"AND": [...], "OR": [...], "NOT": {...}}           combinators (dict or list)
    {"todos": {"some": {...}, "every": {...}, "none": {...}}}   to-many relation
    {"board": {"is": {...}, "is_not": {...}}}           to-one relation
    {"board": {...}} / {"board": None}                  to-one shorthand
    {"user_id_group_id": {"user_id": .., "group_id": ..}}   compound unique key
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..errors import QueryError
from ..schema.descriptor import RelationView
from ..schema.registry import SchemaRegistry
from ..schema.types import FieldDef


class Quantifier(Enum):
    """Relation filter quantifiers."""

    SOME = "some"
    EVERY = "every"
    NONE = "none"
    IS = "is"
    IS_NOT = "is_not"


_TO_MANY = (Quantifier.SOME, Quantifier.EVERY, Quantifier.NONE)
_TO_ONE = (Quantifier.IS, Quantifier.IS_NOT)
LOGICAL_KEYS = ("AND", "OR", "NOT")


@dataclass(frozen=True)
class FieldCondition:
    field: FieldDef
    spec: Any


@dataclass(frozen=True)
class RelationCondition:
    relation: RelationView
    quantifier: Quantifier
    where: Optional[Where]


@dataclass(frozen=True)
class Where:
    """Compiled filter over one model.

    `or_` is None when absent; an empty tuple is an OR with no branches,
    which matches nothing.
    """

    model: str
    fields: Tuple[FieldCondition, ...] = ()
    relations: Tuple[RelationCondition, ...] = ()
    and_: Tuple[Where, ...] = ()
    or_: Optional[Tuple[Where, ...]] = None
    not_: Tuple[Where, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.fields or self.relations or self.and_ or self.not_) and self.or_ is None

    def negated(self) -> Where:
        return Where(model=self.model, not_=(self,))

    def walk(self) -> Iterator[Where]:
        """Yield this node and every nested node, including relation sub-filters."""
        yield self
        for child in (*self.and_, *(self.or_ or ()), *self.not_):
            yield from child.walk()
        for condition in self.relations:
            if condition.where is not None:
                yield from condition.where.walk()


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def compile_where(registry: SchemaRegistry, model: str, raw: Optional[Dict[str, Any]]) -> Where:
    """Compile a raw where dict for `model`.

    Raises:
        QueryError: On unknown fields, relations or quantifiers
    """
    if raw is None:
        return Where(model=model)
    if isinstance(raw, Where):
        return raw
    if not isinstance(raw, dict):
        raise QueryError(f"where must be a dict, got {type(raw).__name__}", model=model)

    descriptor = registry.descriptor(model)
    fields: List[FieldCondition] = []
    relations: List[RelationCondition] = []
    and_: Tuple[Where, ...] = ()
    or_: Optional[Tuple[Where, ...]] = None
    not_: Tuple[Where, ...] = ()

    for key, value in raw.items():
        if key == "AND":
            and_ = tuple(compile_where(registry, model, sub) for sub in _as_list(value))
        elif key == "OR":
            or_ = tuple(compile_where(registry, model, sub) for sub in _as_list(value))
        elif key == "NOT":
            not_ = tuple(compile_where(registry, model, sub) for sub in _as_list(value))
        elif key in descriptor.fields:
            fields.append(FieldCondition(descriptor.fields[key], value))
        elif key in descriptor.relations:
            relations.extend(_compile_relation(registry, descriptor.relations[key], value))
        elif key in descriptor.unique_lookups and isinstance(value, dict):
            for name in descriptor.unique_lookups[key]:
                if name not in value:
                    raise QueryError(f"Compound key '{key}' is missing '{name}'", model=model)
                fields.append(FieldCondition(descriptor.fields[name], {"equals": value[name]}))
        else:
            raise QueryError(f"Unknown field '{key}' in where clause", model=model)

    return Where(
        model=model,
        fields=tuple(fields),
        relations=tuple(relations),
        and_=and_,
        or_=or_,
        not_=not_,
    )


def _compile_relation(registry: SchemaRegistry, relation: RelationView, value: Any) -> List[RelationCondition]:
    target = relation.target
    if relation.to_many:
        if not isinstance(value, dict) or not value or not set(value) <= {q.value for q in _TO_MANY}:
            raise QueryError(
                f"To-many relation '{relation.name}' filters need some/every/none",
                model=relation.model,
            )
        return [
            RelationCondition(relation, Quantifier(q), compile_where(registry, target, sub or {}))
            for q, sub in value.items()
        ]

    if value is None:
        return [RelationCondition(relation, Quantifier.IS, None)]
    if not isinstance(value, dict):
        raise QueryError(f"To-one relation '{relation.name}' filter must be a dict", model=relation.model)
    quantified = set(value) & {q.value for q in _TO_ONE}
    if not quantified:
        return [RelationCondition(relation, Quantifier.IS, compile_where(registry, target, value))]
    if quantified != set(value):
        raise QueryError(
            f"Cannot mix is/is_not with field filters on relation '{relation.name}'",
            model=relation.model,
        )
    return [
        RelationCondition(
            relation,
            Quantifier(q),
            None if sub is None else compile_where(registry, target, sub),
        )
        for q, sub in value.items()
    ]
