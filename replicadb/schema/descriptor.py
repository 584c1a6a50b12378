"""
Per-model dispatch descriptors.

A ModelDescriptor is built once per model when the registry is frozen. It
resolves everything the generic engine would otherwise look up on every
call: field definitions by name, relation views in both directions, unique
lookups, referential actions and validators.

Invariants:
    - Descriptors are immutable after the registry freezes
    - Every relation appears twice: owned on the foreign key model, inverse
      on the referenced model
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .types import FieldDef, ModelDef, ReferentialAction, RelationDef
from .validate import ModelValidator


@dataclass(frozen=True)
class RelationView:
    """One side of a relation, seen from `model`.

    Attributes:
        name: Relation field name on `model`
        model: The model this view belongs to
        target: The related model
        local_fields: Fields of `model` that link to the target
        target_fields: Matching fields on the target
        to_many: Whether the relation yields a list of related records
        owner: True if `local_fields` are the foreign key
        required: True if the foreign key fields are all required
        on_delete: Effective referential action for the foreign key
        definition: The declaring RelationDef
    """

    name: str
    model: str
    target: str
    local_fields: Tuple[str, ...]
    target_fields: Tuple[str, ...]
    to_many: bool
    owner: bool
    required: bool
    on_delete: ReferentialAction
    definition: RelationDef

    def target_where(self, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Equality constraints selecting related records, or None when unlinked."""
        values = [record.get(name) for name in self.local_fields]
        if any(value is None for value in values):
            return None
        return dict(zip(self.target_fields, values))

    def link_values(self, related: Dict[str, Any]) -> Dict[str, Any]:
        """Values to store on `model` so it points at `related` (owner side)."""
        return {local: related[remote] for local, remote in zip(self.local_fields, self.target_fields)}


class ModelDescriptor:
    """Dispatch table for one model.

    Attributes:
        model: The model definition
        fields: Field definitions by name
        relations: Relation views by name (owned and inverse)
        unique_lookups: Lookup name to field tuple (primary key, unique
            fields, compound constraints)
        unique_indexes: Secondary unique indexes kept by the store
        validator: pydantic-backed record/key-path validator
    """

    def __init__(self, model: ModelDef) -> None:
        self.model = model
        self.fields: Dict[str, FieldDef] = {f.name: f for f in model.fields}
        self.relations: Dict[str, RelationView] = {}
        self.validator = ModelValidator(model)

        self.unique_indexes: Dict[str, Tuple[str, ...]] = {}
        for f in model.fields:
            if f.unique and (f.name,) != model.primary_key:
                self.unique_indexes[f.name] = (f.name,)
        for group in model.unique_together:
            self.unique_indexes["_".join(group)] = tuple(group)

        self.unique_lookups: Dict[str, Tuple[str, ...]] = {"_".join(model.primary_key): model.primary_key}
        self.unique_lookups.update(self.unique_indexes)

    @property
    def name(self) -> str:
        return self.model.name

    @property
    def key_path(self) -> Tuple[str, ...]:
        return self.model.primary_key

    @property
    def owned_relations(self) -> Tuple[RelationView, ...]:
        return tuple(r for r in self.relations.values() if r.owner)

    @property
    def inverse_relations(self) -> Tuple[RelationView, ...]:
        return tuple(r for r in self.relations.values() if not r.owner)

    def key_of(self, record: Dict[str, Any]) -> tuple:
        return tuple(record[name] for name in self.key_path)

    def key_where(self, key: tuple) -> Dict[str, Any]:
        return dict(zip(self.key_path, key))

    def is_unique_set(self, names: Tuple[str, ...]) -> bool:
        return set(names) in [set(group) for group in self.unique_lookups.values()]

    def add_relation(self, view: RelationView) -> None:
        if view.name in self.relations or view.name in self.fields:
            raise ValueError(f"Relation name '{view.name}' already used on '{self.name}'")
        self.relations[view.name] = view

    def __repr__(self) -> str:
        return f"ModelDescriptor({self.name!r}, relations={sorted(self.relations)})"
