"""
Transaction-scope planner.

Given a query or mutation argument tree, computes the set of stores one
atomic transaction must span so the operation never touches a store outside
its transaction. Planning is structural only (no I/O) and conservative:
over-including a store is safe, under-including is a bug that surfaces as
TransactionScopeError at run time.

Included:
    - the primary store
    - stores referenced by where filters, recursively
    - stores referenced by select / include / order_by
    - stores referenced by nested relation writes, recursively
    - stores touched by referential actions (delete policies, key renames)
    - the outbox store whenever a written model is tracked

How to change safely:
    - Every new engine code path that touches another store needs a matching
      rule here; the integration tests open exactly the planned scope
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Set

from ..schema.descriptor import ModelDescriptor, RelationView
from ..schema.registry import SchemaRegistry
from .where import LOGICAL_KEYS

Query = Optional[Dict[str, Any]]


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class TransactionScopePlanner:
    """Computes store scopes for engine operations.

    Attributes:
        registry: Frozen schema registry
        outbox_store: Name of the outbox store
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        is_tracked: Callable[[str], bool],
        outbox_store: str,
    ) -> None:
        self.registry = registry
        self.outbox_store = outbox_store
        self._is_tracked = is_tracked

    # Public entry points

    def for_find(self, model: str, query: Query = None) -> Set[str]:
        stores: Set[str] = set()
        self._find(model, query or {}, stores)
        return stores

    def for_create(self, model: str, query: Query = None) -> Set[str]:
        query = query or {}
        stores: Set[str] = set()
        self._create(model, query.get("data") or {}, stores)
        self._projection(model, query, stores)
        return stores

    def for_create_many(self, model: str, query: Query = None) -> Set[str]:
        query = query or {}
        stores: Set[str] = set()
        self._write(model, stores)
        for item in _as_list(query.get("data")):
            self._create(model, item, stores)
        self._projection(model, query, stores)
        return stores

    def for_update(self, model: str, query: Query = None) -> Set[str]:
        stores: Set[str] = set()
        self._update(model, query or {}, stores)
        return stores

    def for_upsert(self, model: str, query: Query = None) -> Set[str]:
        query = query or {}
        stores: Set[str] = set()
        self._create(model, query.get("create") or {}, stores)
        self._update(model, {"where": query.get("where"), "data": query.get("update") or {}}, stores)
        self._projection(model, query, stores)
        return stores

    def for_delete(self, model: str, query: Query = None) -> Set[str]:
        stores: Set[str] = set()
        self._delete(model, query or {}, stores)
        return stores

    def for_all(self) -> Set[str]:
        """Every model store plus the outbox."""
        return {d.name for d in self.registry.descriptors()} | {self.outbox_store}

    # Structural recursion

    def _descriptor(self, model: str) -> ModelDescriptor:
        return self.registry.descriptor(model)

    def _write(self, model: str, stores: Set[str]) -> None:
        stores.add(model)
        if self._is_tracked(model):
            stores.add(self.outbox_store)

    def _find(self, model: str, query: Dict[str, Any], stores: Set[str]) -> None:
        stores.add(model)
        self._where(model, query.get("where"), stores)
        self._order_by(model, query.get("order_by"), stores)
        self._projection(model, query, stores)

    def _where(self, model: str, where: Any, stores: Set[str]) -> None:
        if not isinstance(where, dict):
            return
        descriptor = self._descriptor(model)
        for key, value in where.items():
            if key in LOGICAL_KEYS:
                for sub in _as_list(value):
                    self._where(model, sub, stores)
                continue
            relation = descriptor.relations.get(key)
            if relation is None:
                continue
            stores.add(relation.target)
            if not isinstance(value, dict):
                continue
            quantified = [value[q] for q in ("some", "every", "none", "is", "is_not") if q in value]
            if quantified:
                for sub in quantified:
                    self._where(relation.target, sub, stores)
            else:
                self._where(relation.target, value, stores)

    def _order_by(self, model: str, order_by: Any, stores: Set[str]) -> None:
        descriptor = self._descriptor(model)
        for clause in _as_list(order_by):
            if not isinstance(clause, dict):
                continue
            for key in clause:
                relation = descriptor.relations.get(key)
                if relation is not None:
                    stores.add(relation.target)

    def _projection(self, model: str, query: Dict[str, Any], stores: Set[str]) -> None:
        descriptor = self._descriptor(model)
        for key in ("select", "include"):
            for name, sub in (query.get(key) or {}).items():
                relation = descriptor.relations.get(name)
                if relation is None or not sub:
                    continue
                stores.add(relation.target)
                if isinstance(sub, dict):
                    self._find(relation.target, sub, stores)

    def _create(self, model: str, data: Any, stores: Set[str]) -> None:
        self._write(model, stores)
        if not isinstance(data, dict):
            return
        descriptor = self._descriptor(model)
        for key, value in data.items():
            relation = descriptor.relations.get(key)
            if relation is None:
                for owned in descriptor.owned_relations:
                    if key in owned.local_fields:
                        stores.add(owned.target)
                continue
            stores.add(relation.target)
            if isinstance(value, dict):
                self._nested(relation, value, stores)

    def _update(self, model: str, query: Dict[str, Any], stores: Set[str]) -> None:
        self._find(model, {"where": query.get("where")}, stores)
        self._projection(model, query, stores)
        self._write(model, stores)
        data = query.get("data")
        if not isinstance(data, dict):
            return
        descriptor = self._descriptor(model)
        referenced = {name for r in descriptor.inverse_relations for name in r.local_fields}
        for key, value in data.items():
            relation = descriptor.relations.get(key)
            if relation is not None:
                stores.add(relation.target)
                if isinstance(value, dict):
                    self._nested(relation, value, stores)
                continue
            for owned in descriptor.owned_relations:
                if key in owned.local_fields:
                    stores.add(owned.target)
            if key in referenced:
                self._dependents(model, stores, set())

    def _delete(self, model: str, query: Dict[str, Any], stores: Set[str]) -> None:
        self._find(model, query, stores)
        self._write(model, stores)
        self._dependents(model, stores, set())

    def _dependents(self, model: str, stores: Set[str], visited: Set[str]) -> None:
        if model in visited:
            return
        visited.add(model)
        for relation in self._descriptor(model).inverse_relations:
            self._write(relation.target, stores)
            for owned in self._descriptor(relation.target).owned_relations:
                stores.add(owned.target)
            self._dependents(relation.target, stores, visited)

    def _nested(self, relation: RelationView, operations: Dict[str, Any], stores: Set[str]) -> None:
        target = relation.target
        self._write(target, stores)
        for op, payload in operations.items():
            if op == "create":
                for item in _as_list(payload):
                    self._create(target, item, stores)
            elif op == "create_many":
                data = payload.get("data") if isinstance(payload, dict) else payload
                for item in _as_list(data):
                    self._create(target, item, stores)
            elif op in ("connect", "set", "disconnect"):
                for item in _as_list(payload):
                    self._where(target, item, stores)
            elif op == "connect_or_create":
                for item in _as_list(payload):
                    self._where(target, item.get("where"), stores)
                    self._create(target, item.get("create") or {}, stores)
            elif op in ("update", "update_many"):
                for item in _as_list(payload):
                    if isinstance(item, dict) and "data" in item:
                        self._update(target, item, stores)
                    else:
                        self._update(target, {"data": item}, stores)
            elif op == "upsert":
                for item in _as_list(payload):
                    self._create(target, item.get("create") or {}, stores)
                    self._update(target, {"where": item.get("where"), "data": item.get("update") or {}}, stores)
            elif op in ("delete", "delete_many"):
                for item in _as_list(payload):
                    self._delete(target, {"where": item} if isinstance(item, dict) else {}, stores)
