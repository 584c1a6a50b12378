"""
Generic model query/mutation engine.

One ModelEngine instance serves one model. It is parameterized by the
model's ModelDescriptor, so there is a single executor for every entity
type; nested writes into related models go through the related model's
engine, looked up on the owning LocalDatabase.

Find path:
    load -> where (logical + field + relation filters) -> order_by
    -> distinct -> skip/take -> relations (select/include) -> projection

Mutations:
    - create fills defaults, validates, checks foreign keys, inserts,
      then performs nested writes on inverse relations
    - update applies field operators and nested writes, renames the
      primary key when it changes and rewrites dependent foreign keys
    - delete applies referential actions (restrict, cascade, set null,
      set default) before removing the record

Invariants:
    - Each public operation runs inside exactly one transaction: the one it
      was given (tx=...) or one it opens over the planner-computed scope
    - Any error aborts that transaction wholesale and propagates
    - Outbox capture happens in the mutation's transaction; in-process
      events are published only after commit

How to change safely:
    - Touching a new store from an engine path requires a planner rule
    - Keep public operations thin; the _private methods take a live
      transaction and are what nested writes call
"""

from __future__ import annotations

import copy
import hashlib
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple

from ..errors import (
    InvalidRelationOperationError,
    NotFoundError,
    QueryError,
    ReferentialIntegrityError,
    UniqueConstraintError,
)
from ..query.comparator import SortOrder, compare
from ..query.filters import matches, normalize
from ..query.logical import apply_logical_filters
from ..query.operations import RelationOp, parse_relation_ops
from ..query.updates import apply_update
from ..query.where import Quantifier, RelationCondition, Where, compile_where
from ..schema.descriptor import ModelDescriptor, RelationView
from ..schema.types import DefaultKind, ReferentialAction
from ..store import codec
from ..store.base import Transaction, TransactionMode
from ..sync.types import Operation
from .events import Channel, Created, Deleted, ModelEvent, Updated

if TYPE_CHECKING:
    from .client import LocalDatabase

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Query = Optional[Dict[str, Any]]

_FIND_KEYS = frozenset({"where", "select", "include", "order_by", "distinct", "skip", "take"})
_AGGREGATE_OPS = frozenset({"_count", "_min", "_max", "_sum", "_avg"})


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _freeze(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    return value


def _check_keys(query: Dict[str, Any], allowed: Iterable[str], model: str) -> None:
    unknown = set(query) - set(allowed)
    if unknown:
        raise QueryError(f"Unknown query arguments {sorted(unknown)}", model=model)


class ModelEngine:
    """Query/mutation executor for one model.

    Attributes:
        descriptor: Dispatch descriptor of the model
        name: Model (and store) name
        events: Channel publishing Created/Updated/Deleted after commit

    Example:
        >>> boards = db.model("Board")
        >>> board = await boards.create({"data": {"name": "Home", "user_id": uid}})
        >>> await boards.find_many({"where": {"name": {"starts_with": "Ho"}},
        ...                         "include": {"todos": True}})
    """

    def __init__(self, database: LocalDatabase, descriptor: ModelDescriptor) -> None:
        self._db = database
        self.descriptor = descriptor
        self.name = descriptor.name
        self.events: Channel[ModelEvent] = Channel(descriptor.name)

    def __repr__(self) -> str:
        return f"ModelEngine({self.name!r})"

    # Plumbing

    def _engine(self, model: str) -> ModelEngine:
        return self._db.model(model)

    def _compile(self, where: Any) -> Where:
        return compile_where(self._db.registry, self.name, where)

    @asynccontextmanager
    async def _transaction(
        self,
        tx: Optional[Transaction],
        stores: Set[str],
        mode: TransactionMode,
    ) -> AsyncIterator[Transaction]:
        if tx is not None:
            yield tx
            return
        async with self._db.backend.transaction(stores, mode) as own:
            yield own

    # Reads

    async def find_many(self, query: Query = None, *, tx: Optional[Transaction] = None) -> List[Record]:
        """Return all records matching the query."""
        query = query or {}
        stores = self._db.planner.for_find(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READONLY) as t:
            return await self._find_many(query, t)

    async def find_first(self, query: Query = None, *, tx: Optional[Transaction] = None) -> Optional[Record]:
        """Return the first matching record in query order, or None."""
        query = query or {}
        stores = self._db.planner.for_find(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READONLY) as t:
            records = await self._find_many({**query, "take": 1}, t)
            return records[0] if records else None

    async def find_first_or_raise(self, query: Query = None, *, tx: Optional[Transaction] = None) -> Record:
        """Like find_first, but raise NotFoundError instead of returning None."""
        record = await self.find_first(query, tx=tx)
        if record is None:
            raise NotFoundError(model=self.name, where=(query or {}).get("where"))
        return record

    async def find_unique(self, query: Dict[str, Any], *, tx: Optional[Transaction] = None) -> Optional[Record]:
        """Look up one record by primary key, compound key or unique field.

        Raises:
            QueryError: If `where` names no unique key
        """
        _check_keys(query, ("where", "select", "include"), self.name)
        stores = self._db.planner.for_find(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READONLY) as t:
            record = await self._find_unique_record(query.get("where"), t)
            if record is None:
                return None
            return await self._shape(record, query, t)

    async def find_unique_or_raise(self, query: Dict[str, Any], *, tx: Optional[Transaction] = None) -> Record:
        """Like find_unique, but raise NotFoundError instead of returning None."""
        record = await self.find_unique(query, tx=tx)
        if record is None:
            raise NotFoundError(model=self.name, where=query.get("where"))
        return record

    async def count(self, query: Query = None, *, tx: Optional[Transaction] = None) -> Any:
        """Count matching records.

        With select={"_all": True, "field": True} returns a dict of the total
        and per-field non-null counts instead of an int.
        """
        query = query or {}
        _check_keys(query, ("where", "select", "skip", "take", "order_by"), self.name)
        stores = self._db.planner.for_find(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READONLY) as t:
            records = await t.store(self.name).get_all()
            records = await self._filter(records, self._compile(query.get("where")), t)
            records = self._paginate(records, query.get("skip"), query.get("take"))
        select = query.get("select")
        if not select:
            return len(records)
        return self._count_fields(records, select)

    async def aggregate(self, query: Query = None, *, tx: Optional[Transaction] = None) -> Dict[str, Any]:
        """Compute _count, _min, _max, _sum and _avg over matching records."""
        query = query or {}
        _check_keys(query, {"where", "order_by", "skip", "take"} | _AGGREGATE_OPS, self.name)
        stores = self._db.planner.for_find(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READONLY) as t:
            records = await t.store(self.name).get_all()
            records = await self._filter(records, self._compile(query.get("where")), t)
            records = await self._order(records, query.get("order_by"), t)
            records = self._paginate(records, query.get("skip"), query.get("take"))

        result: Dict[str, Any] = {}
        if "_count" in query:
            spec = query["_count"]
            result["_count"] = self._count_fields(records, spec) if isinstance(spec, dict) else len(records)
        for op in ("_min", "_max"):
            if op not in query:
                continue
            result[op] = {}
            for name in self._selected_fields(query[op]):
                values = [r[name] for r in records if r.get(name) is not None]
                if not values:
                    result[op][name] = None
                    continue
                best = values[0]
                for value in values[1:]:
                    c = compare(value, best)
                    if (op == "_min" and c < 0) or (op == "_max" and c > 0):
                        best = value
                result[op][name] = best
        for op in ("_sum", "_avg"):
            if op not in query:
                continue
            result[op] = {}
            for name in self._selected_fields(query[op]):
                if not self.descriptor.fields[name].kind.is_numeric:
                    raise QueryError(f"{op} needs a numeric field, '{name}' is not", model=self.name)
                values = [r[name] for r in records if r.get(name) is not None]
                if not values:
                    result[op][name] = None
                elif op == "_sum":
                    result[op][name] = sum(values)
                else:
                    result[op][name] = sum(values) / len(values)
        return result

    def _selected_fields(self, spec: Any) -> List[str]:
        if not isinstance(spec, dict):
            raise QueryError("Aggregate selections must be dicts of field names", model=self.name)
        names = [name for name, flag in spec.items() if flag]
        for name in names:
            if name not in self.descriptor.fields:
                raise QueryError(f"Unknown field '{name}' in aggregate", model=self.name)
        return names

    def _count_fields(self, records: List[Record], select: Dict[str, Any]) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for name, flag in select.items():
            if not flag:
                continue
            if name == "_all":
                counts["_all"] = len(records)
            elif name in self.descriptor.fields:
                counts[name] = sum(1 for r in records if r.get(name) is not None)
            else:
                raise QueryError(f"Unknown field '{name}' in count select", model=self.name)
        return counts

    # Find internals

    async def _find_many(self, query: Dict[str, Any], tx: Transaction) -> List[Record]:
        _check_keys(query, _FIND_KEYS, self.name)
        records = await tx.store(self.name).get_all()
        records = await self._filter(records, self._compile(query.get("where")), tx)
        records = await self._order(records, query.get("order_by"), tx)
        records = self._distinct(records, query.get("distinct"))
        records = self._paginate(records, query.get("skip"), query.get("take"))
        return [await self._shape(record, query, tx) for record in records]

    async def _filter(self, records: List[Record], where: Where, tx: Transaction) -> List[Record]:
        if where.is_empty or not records:
            return records

        async def evaluate(candidates: List[Record], sub: Where) -> List[Record]:
            return await self._filter(candidates, sub, tx)

        records = await apply_logical_filters(records, where, self.descriptor.key_of, evaluate)
        for condition in where.fields:
            definition = condition.field
            records = [
                r
                for r in records
                if matches(r.get(definition.name), condition.spec, definition.kind, definition.is_list)
            ]
        for relation_condition in where.relations:
            kept = []
            for record in records:
                if await self._relation_matches(record, relation_condition, tx):
                    kept.append(record)
            records = kept
        return records

    async def _relation_matches(self, record: Record, condition: RelationCondition, tx: Transaction) -> bool:
        relation = condition.relation
        target = self._engine(relation.target)
        related = await target._related(relation.target_where(record), tx)
        quantifier = condition.quantifier

        if relation.to_many:
            if quantifier == Quantifier.EVERY:
                return not await target._filter(related, condition.where.negated(), tx)
            hits = await target._filter(related, condition.where, tx)
            return bool(hits) if quantifier == Quantifier.SOME else not hits

        one = related[0] if related else None
        if condition.where is None:
            return (one is None) == (quantifier == Quantifier.IS)
        hit = one is not None and bool(await target._filter([one], condition.where, tx))
        return hit if quantifier == Quantifier.IS else not hit

    async def _related(self, link: Optional[Dict[str, Any]], tx: Transaction) -> List[Record]:
        """Records of this model whose fields equal `link`."""
        if link is None:
            return []
        store = tx.store(self.name)
        if set(link) == set(self.descriptor.key_path):
            record = await store.get(tuple(link[name] for name in self.descriptor.key_path))
            return [record] if record is not None else []
        return [r for r in await store.get_all() if all(r.get(k) == v for k, v in link.items())]

    async def _order(self, records: List[Record], order_by: Any, tx: Transaction) -> List[Record]:
        plan = self._order_plan(order_by)
        if not plan or len(records) < 2:
            return records
        decorated = []
        for record in records:
            values = [await self._order_value(record, step, tx) for step in plan]
            decorated.append((values, record))

        def cmp(a: Tuple[List[Any], Record], b: Tuple[List[Any], Record]) -> int:
            for index, (_, _, _, order) in enumerate(plan):
                result = compare(a[0][index], b[0][index], order)
                if result:
                    return result
            return 0

        decorated.sort(key=cmp_to_key(cmp))
        return [record for _, record in decorated]

    def _order_plan(self, order_by: Any) -> List[Tuple[str, str, Optional[str], SortOrder]]:
        plan = []
        for clause in _as_list(order_by):
            if not isinstance(clause, dict) or len(clause) != 1:
                raise QueryError("Each order_by clause must have exactly one key", model=self.name)
            name, spec = next(iter(clause.items()))
            if name in self.descriptor.fields:
                plan.append(("field", name, None, SortOrder.parse(spec)))
                continue
            relation = self.descriptor.relations.get(name)
            if relation is None:
                raise QueryError(f"Unknown order_by field '{name}'", model=self.name)
            if not isinstance(spec, dict) or len(spec) != 1:
                raise QueryError(f"order_by on relation '{name}' needs exactly one key", model=self.name)
            sub_name, sub_spec = next(iter(spec.items()))
            if relation.to_many:
                if sub_name != "_count":
                    raise QueryError(f"To-many relation '{name}' can only be ordered by _count", model=self.name)
                plan.append(("count", name, None, SortOrder.parse(sub_spec)))
                continue
            target = self._engine(relation.target).descriptor
            if sub_name not in target.fields:
                raise QueryError(
                    f"Ordering by nested relation '{name}.{sub_name}' is not supported",
                    model=self.name,
                )
            plan.append(("related", name, sub_name, SortOrder.parse(sub_spec)))
        return plan

    async def _order_value(self, record: Record, step: Tuple[str, str, Optional[str], SortOrder], tx: Transaction) -> Any:
        kind, name, sub_name, _ = step
        if kind == "field":
            return record.get(name)
        relation = self.descriptor.relations[name]
        related = await self._engine(relation.target)._related(relation.target_where(record), tx)
        if kind == "count":
            return len(related)
        return related[0].get(sub_name) if related else None

    def _distinct(self, records: List[Record], distinct: Any) -> List[Record]:
        names = _as_list(distinct)
        if not names:
            return records
        for name in names:
            if name not in self.descriptor.fields:
                raise QueryError(f"Unknown distinct field '{name}'", model=self.name)
        seen = set()
        result = []
        for record in records:
            key = tuple(_freeze(record.get(name)) for name in names)
            if key not in seen:
                seen.add(key)
                result.append(record)
        return result

    def _paginate(self, records: List[Record], skip: Any, take: Any) -> List[Record]:
        if skip is not None:
            if not isinstance(skip, int) or skip < 0:
                raise QueryError("skip must be a non-negative int", model=self.name)
            records = records[skip:]
        if take is not None:
            if not isinstance(take, int) or take < 0:
                raise QueryError("take must be a non-negative int", model=self.name)
            records = records[:take]
        return records

    async def _shape(self, record: Record, query: Dict[str, Any], tx: Transaction) -> Record:
        select = query.get("select")
        include = query.get("include")
        if select and include:
            raise QueryError("Use either select or include, not both", model=self.name)
        if not select and not include:
            return record
        if select:
            shaped: Record = {}
            for name, spec in select.items():
                if not spec:
                    continue
                if name in self.descriptor.fields:
                    shaped[name] = record.get(name)
                elif name in self.descriptor.relations:
                    shaped[name] = await self._load_relation(record, self.descriptor.relations[name], spec, tx)
                else:
                    raise QueryError(f"Unknown field '{name}' in select", model=self.name)
            return shaped
        shaped = dict(record)
        for name, spec in include.items():
            if not spec:
                continue
            if name not in self.descriptor.relations:
                raise QueryError(f"Unknown relation '{name}' in include", model=self.name)
            shaped[name] = await self._load_relation(record, self.descriptor.relations[name], spec, tx)
        return shaped

    async def _load_relation(self, record: Record, relation: RelationView, spec: Any, tx: Transaction) -> Any:
        sub = dict(spec) if isinstance(spec, dict) else {}
        target = self._engine(relation.target)
        link = relation.target_where(record)
        if relation.to_many:
            if link is None:
                return []
            sub["where"] = {"AND": [link, sub["where"]]} if sub.get("where") else link
            return await target._find_many(sub, tx)
        _check_keys(sub, ("select", "include"), self.name)
        if link is None:
            return None
        found = await target._find_many({**sub, "where": link}, tx)
        return found[0] if found else None

    async def _find_unique_record(self, where: Any, tx: Transaction) -> Optional[Record]:
        where = where or {}
        record = await self._lookup_unique(where, tx)
        if record is None:
            return None
        matched = await self._filter([record], self._compile(where), tx)
        return matched[0] if matched else None

    async def _find_unique_or_raise(self, where: Any, tx: Transaction) -> Record:
        record = await self._find_unique_record(where, tx)
        if record is None:
            raise NotFoundError(model=self.name, where=where)
        return record

    async def _lookup_unique(self, where: Dict[str, Any], tx: Transaction) -> Optional[Record]:
        if not isinstance(where, dict):
            raise QueryError("where must be a dict", model=self.name)
        store = tx.store(self.name)
        for lookup, names in self.descriptor.unique_lookups.items():
            values = self._unique_values(where, lookup, names)
            if values is None:
                continue
            if names == self.descriptor.key_path:
                return await store.get(values)
            return await store.get_by_index(lookup, values)
        raise QueryError(
            f"Unique lookup on {self.name} needs one of {sorted(self.descriptor.unique_lookups)}, "
            f"got {sorted(where)}",
            model=self.name,
        )

    def _unique_values(self, where: Dict[str, Any], lookup: str, names: Tuple[str, ...]) -> Optional[tuple]:
        source: Dict[str, Any] = where
        if len(names) > 1 and isinstance(where.get(lookup), dict):
            source = where[lookup]
        values = []
        for name in names:
            if name not in source:
                return None
            value = source[name]
            if isinstance(value, dict) and set(value) == {"equals"}:
                value = value["equals"]
            if value is None or isinstance(value, dict):
                return None
            values.append(normalize(value, self.descriptor.fields[name].kind))
        return tuple(values)

    # Writes

    async def create(
        self,
        query: Dict[str, Any],
        *,
        tx: Optional[Transaction] = None,
        silent: bool = False,
        add_to_outbox: bool = True,
    ) -> Record:
        """Create one record, with optional nested relation writes.

        Raises:
            ValidationError: If the record does not match the model
            UniqueConstraintError: If the key or a unique field is taken
            ReferentialIntegrityError: If a foreign key does not resolve
            NotFoundError: If a nested connect target does not exist
        """
        _check_keys(query, ("data", "select", "include"), self.name)
        stores = self._db.planner.for_create(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READWRITE) as t:
            record = await self._create(query.get("data") or {}, t, silent, add_to_outbox)
            return await self._shape(record, query, t)

    async def create_many(
        self,
        query: Dict[str, Any],
        *,
        tx: Optional[Transaction] = None,
        silent: bool = False,
        add_to_outbox: bool = True,
    ) -> Dict[str, int]:
        """Create records from a list of scalar payloads; returns {"count": n}."""
        created = await self._create_many(query, tx, silent, add_to_outbox, shape=False)
        return {"count": len(created)}

    async def create_many_and_return(
        self,
        query: Dict[str, Any],
        *,
        tx: Optional[Transaction] = None,
        silent: bool = False,
        add_to_outbox: bool = True,
    ) -> List[Record]:
        """Like create_many, but return the created records (select/include applied)."""
        return await self._create_many(query, tx, silent, add_to_outbox, shape=True)

    async def _create_many(
        self,
        query: Dict[str, Any],
        tx: Optional[Transaction],
        silent: bool,
        add_to_outbox: bool,
        shape: bool,
    ) -> List[Record]:
        _check_keys(query, ("data", "skip_duplicates", "select", "include"), self.name)
        items = _as_list(query.get("data"))
        for item in items:
            nested = set(item) & set(self.descriptor.relations)
            if nested:
                raise QueryError(f"create_many does not support nested writes {sorted(nested)}", model=self.name)
        skip_duplicates = bool(query.get("skip_duplicates"))
        stores = self._db.planner.for_create_many(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READWRITE) as t:
            created = []
            for item in items:
                try:
                    created.append(await self._create(item, t, silent, add_to_outbox))
                except UniqueConstraintError:
                    if not skip_duplicates:
                        raise
                    logger.debug("Skipped duplicate in create_many", extra={"model": self.name})
            if not shape:
                return created
            return [await self._shape(record, query, t) for record in created]

    async def _create(self, data: Dict[str, Any], tx: Transaction, silent: bool, add_to_outbox: bool) -> Record:
        data = dict(data)
        deferred: List[Tuple[RelationView, List[Tuple[RelationOp, Any]]]] = []
        for name in list(data):
            relation = self.descriptor.relations.get(name)
            if relation is None:
                continue
            operations = parse_relation_ops(relation, data.pop(name), creating=True)
            if relation.owner:
                await self._write_owner_relation(data, relation, operations, tx, silent, add_to_outbox)
            else:
                deferred.append((relation, operations))

        record = self.descriptor.validator.validate_record(await self._fill_defaults(data, tx))
        await self._check_foreign_keys(record, tx)
        key = await tx.store(self.name).add(record)
        for relation, operations in deferred:
            await self._write_inverse_relation(record, relation, operations, tx, silent, add_to_outbox)
        await self._emit(Created(self.name, key, record), tx, silent, add_to_outbox)
        return record

    async def _fill_defaults(self, data: Record, tx: Transaction) -> Record:
        record = dict(data)
        hashed = []
        for definition in self.descriptor.model.fields:
            if definition.name in record:
                continue
            if definition.default_kind == DefaultKind.UUID:
                record[definition.name] = str(uuid.uuid4())
            elif definition.default_kind == DefaultKind.NOW:
                record[definition.name] = datetime.now(timezone.utc)
            elif definition.default_kind == DefaultKind.AUTOINCREMENT:
                record[definition.name] = await self._next_sequence(definition.name, tx)
            elif definition.default_kind == DefaultKind.CONTENT_HASH:
                hashed.append(definition.name)
            elif definition.default is not None:
                record[definition.name] = copy.deepcopy(definition.default)
            elif definition.is_list and definition.required:
                record[definition.name] = []
            elif not definition.required:
                record[definition.name] = None
        if hashed:
            content = {k: v for k, v in record.items() if k not in hashed}
            digest = hashlib.sha256(codec.dumps(content).encode()).hexdigest()
            for name in hashed:
                record[name] = digest
        return record

    async def _next_sequence(self, name: str, tx: Transaction) -> int:
        values = [r.get(name) for r in await tx.store(self.name).get_all()]
        return max((v for v in values if isinstance(v, int)), default=0) + 1

    async def _check_foreign_keys(
        self,
        record: Record,
        tx: Transaction,
        changed: Optional[Set[str]] = None,
    ) -> None:
        for relation in self.descriptor.owned_relations:
            if changed is not None and not changed & set(relation.local_fields):
                continue
            link = relation.target_where(record)
            if link is None:
                continue
            if not await self._engine(relation.target)._related(link, tx):
                raise ReferentialIntegrityError(
                    f"Related record not found for {self.name}.{relation.name} ({link})",
                    model=self.name,
                    relation=relation.name,
                )

    async def update(
        self,
        query: Dict[str, Any],
        *,
        tx: Optional[Transaction] = None,
        silent: bool = False,
        add_to_outbox: bool = True,
    ) -> Record:
        """Update one record found by a unique where.

        Raises:
            NotFoundError: If no record matches
            UniqueConstraintError: If a primary key rename hits an existing key
            InvalidRelationOperationError: On disconnect/set of a required relation
        """
        _check_keys(query, ("where", "data", "select", "include"), self.name)
        stores = self._db.planner.for_update(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READWRITE) as t:
            existing = await self._find_unique_or_raise(query.get("where"), t)
            record = await self._update_record(existing, query.get("data") or {}, t, silent, add_to_outbox)
            return await self._shape(record, query, t)

    async def update_many(
        self,
        query: Dict[str, Any],
        *,
        tx: Optional[Transaction] = None,
        silent: bool = False,
        add_to_outbox: bool = True,
    ) -> Dict[str, int]:
        """Apply scalar updates to every matching record; returns {"count": n}."""
        _check_keys(query, ("where", "data"), self.name)
        data = query.get("data") or {}
        nested = set(data) & set(self.descriptor.relations)
        if nested:
            raise QueryError(f"update_many does not support nested writes {sorted(nested)}", model=self.name)
        stores = self._db.planner.for_update(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READWRITE) as t:
            matched = await self._filter(
                await t.store(self.name).get_all(), self._compile(query.get("where")), t
            )
            count = 0
            for record in matched:
                current = await t.store(self.name).get(self.descriptor.key_of(record))
                if current is None:
                    continue
                await self._update_record(current, data, t, silent, add_to_outbox)
                count += 1
            return {"count": count}

    async def _update_record(
        self,
        existing: Record,
        data: Dict[str, Any],
        tx: Transaction,
        silent: bool,
        add_to_outbox: bool,
    ) -> Record:
        old_key = self.descriptor.key_of(existing)
        record = dict(existing)
        changed: Set[str] = set()
        deferred: List[Tuple[RelationView, List[Tuple[RelationOp, Any]]]] = []

        for name, operation in data.items():
            definition = self.descriptor.fields.get(name)
            if definition is not None:
                record[name] = apply_update(definition, record.get(name), operation)
                changed.add(name)
                continue
            relation = self.descriptor.relations.get(name)
            if relation is None:
                raise QueryError(f"Unknown field '{name}' in update data", model=self.name)
            operations = parse_relation_ops(relation, operation, creating=False)
            if relation.owner:
                await self._write_owner_relation(record, relation, operations, tx, silent, add_to_outbox)
                changed.update(relation.local_fields)
            else:
                deferred.append((relation, operations))

        record = self.descriptor.validator.validate_record(record)
        await self._check_foreign_keys(record, tx, changed)
        new_key = self.descriptor.key_of(record)
        store = tx.store(self.name)
        if new_key != old_key:
            if await store.get(new_key) is not None:
                raise UniqueConstraintError(
                    f"Record with the same key path already exists in '{self.name}'",
                    store=self.name,
                    key=list(new_key),
                )
            await store.delete(old_key)
        await store.put(record)
        await self._emit(Updated(self.name, new_key, old_key, record), tx, silent, add_to_outbox)
        await self._propagate_references(existing, record, tx, silent, add_to_outbox)
        for relation, operations in deferred:
            await self._write_inverse_relation(record, relation, operations, tx, silent, add_to_outbox)
        return record

    async def _propagate_references(
        self,
        before: Record,
        after: Record,
        tx: Transaction,
        silent: bool,
        add_to_outbox: bool,
    ) -> None:
        """Rewrite dependents whose foreign keys pointed at changed referenced values."""
        for relation in self.descriptor.inverse_relations:
            old_link = relation.target_where(before)
            if old_link is None or old_link == relation.target_where(after):
                continue
            child = self._engine(relation.target)
            new_values = {
                fk: after.get(ref) for fk, ref in zip(relation.target_fields, relation.local_fields)
            }
            for dependent in await child._related(old_link, tx):
                await child._update_record(dependent, new_values, tx, silent, add_to_outbox)

    async def upsert(
        self,
        query: Dict[str, Any],
        *,
        tx: Optional[Transaction] = None,
        silent: bool = False,
        add_to_outbox: bool = True,
    ) -> Record:
        """Update the record matching a unique where, or create it."""
        _check_keys(query, ("where", "create", "update", "select", "include"), self.name)
        stores = self._db.planner.for_upsert(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READWRITE) as t:
            existing = await self._find_unique_record(query.get("where"), t)
            if existing is None:
                record = await self._create(query.get("create") or {}, t, silent, add_to_outbox)
            else:
                record = await self._update_record(existing, query.get("update") or {}, t, silent, add_to_outbox)
            return await self._shape(record, query, t)

    async def delete(
        self,
        query: Dict[str, Any],
        *,
        tx: Optional[Transaction] = None,
        silent: bool = False,
        add_to_outbox: bool = True,
    ) -> Record:
        """Delete one record found by a unique where, applying referential actions.

        Returns the record as it was before deletion (select/include applied).

        Raises:
            NotFoundError: If no record matches
            ReferentialIntegrityError: If a restrict policy has dependents
        """
        _check_keys(query, ("where", "select", "include"), self.name)
        stores = self._db.planner.for_delete(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READWRITE) as t:
            existing = await self._find_unique_or_raise(query.get("where"), t)
            shaped = await self._shape(existing, query, t)
            await self._delete_record(existing, t, silent, add_to_outbox)
            return shaped

    async def delete_many(
        self,
        query: Query = None,
        *,
        tx: Optional[Transaction] = None,
        silent: bool = False,
        add_to_outbox: bool = True,
    ) -> Dict[str, int]:
        """Delete every matching record; returns {"count": n}."""
        query = query or {}
        _check_keys(query, ("where",), self.name)
        stores = self._db.planner.for_delete(self.name, query)
        async with self._transaction(tx, stores, TransactionMode.READWRITE) as t:
            matched = await self._filter(
                await t.store(self.name).get_all(), self._compile(query.get("where")), t
            )
            count = 0
            for record in matched:
                current = await t.store(self.name).get(self.descriptor.key_of(record))
                if current is None:
                    continue
                await self._delete_record(current, t, silent, add_to_outbox)
                count += 1
            return {"count": count}

    async def _delete_record(self, record: Record, tx: Transaction, silent: bool, add_to_outbox: bool) -> None:
        pending = []
        for relation in self.descriptor.inverse_relations:
            child = self._engine(relation.target)
            dependents = await child._related(relation.target_where(record), tx)
            if not dependents:
                continue
            if relation.on_delete == ReferentialAction.RESTRICT:
                raise ReferentialIntegrityError(
                    "Cannot delete record, other records depend on it",
                    model=self.name,
                    relation=relation.name,
                )
            pending.append((relation, child, dependents))

        for relation, child, dependents in pending:
            for dependent in dependents:
                current = await tx.store(child.name).get(child.descriptor.key_of(dependent))
                if current is None:
                    continue
                if relation.on_delete == ReferentialAction.CASCADE:
                    await child._delete_record(current, tx, silent, add_to_outbox)
                elif relation.on_delete == ReferentialAction.SET_NULL:
                    await child._update_record(
                        current, {fk: None for fk in relation.target_fields}, tx, silent, add_to_outbox
                    )
                else:
                    defaults = {fk: child.descriptor.fields[fk].default for fk in relation.target_fields}
                    await child._update_record(current, defaults, tx, silent, add_to_outbox)

        key = self.descriptor.key_of(record)
        await tx.store(self.name).delete(key)
        await self._emit(Deleted(self.name, key, record), tx, silent, add_to_outbox)

    # Nested relation writes

    async def _write_owner_relation(
        self,
        record: Record,
        relation: RelationView,
        operations: List[Tuple[RelationOp, Any]],
        tx: Transaction,
        silent: bool,
        add_to_outbox: bool,
    ) -> None:
        """Nested writes through a relation whose foreign key lives on `record`.

        Mutates the foreign key fields of `record` in place.
        """
        target = self._engine(relation.target)

        async def current() -> Optional[Record]:
            related = await target._related(relation.target_where(record), tx)
            return related[0] if related else None

        for op, payload in operations:
            if op == RelationOp.CREATE:
                related = await target._create(payload, tx, silent, add_to_outbox)
                record.update(relation.link_values(related))
            elif op == RelationOp.CONNECT:
                related = await target._find_unique_or_raise(payload, tx)
                record.update(relation.link_values(related))
            elif op == RelationOp.CONNECT_OR_CREATE:
                related = await target._find_unique_record(payload.get("where"), tx)
                if related is None:
                    related = await target._create(payload.get("create") or {}, tx, silent, add_to_outbox)
                record.update(relation.link_values(related))
            elif op == RelationOp.DISCONNECT:
                if relation.required:
                    raise InvalidRelationOperationError(
                        "Cannot disconnect required relation", model=self.name, relation=relation.name
                    )
                if payload:
                    record.update({name: None for name in relation.local_fields})
            elif op == RelationOp.UPDATE:
                related = await current()
                if related is None:
                    raise NotFoundError(model=relation.target)
                data = payload["data"] if isinstance(payload, dict) and "data" in payload else payload
                updated = await target._update_record(related, data, tx, silent, add_to_outbox)
                record.update(relation.link_values(updated))
            elif op == RelationOp.UPSERT:
                related = await current()
                if related is None:
                    related = await target._create(payload.get("create") or {}, tx, silent, add_to_outbox)
                else:
                    related = await target._update_record(
                        related, payload.get("update") or {}, tx, silent, add_to_outbox
                    )
                record.update(relation.link_values(related))
            elif op == RelationOp.DELETE:
                if relation.required:
                    raise InvalidRelationOperationError(
                        "Cannot delete required relation", model=self.name, relation=relation.name
                    )
                if not payload:
                    continue
                related = await current()
                if related is None:
                    raise NotFoundError(model=relation.target)
                record.update({name: None for name in relation.local_fields})
                await target._delete_record(related, tx, silent, add_to_outbox)

    async def _write_inverse_relation(
        self,
        parent: Record,
        relation: RelationView,
        operations: List[Tuple[RelationOp, Any]],
        tx: Transaction,
        silent: bool,
        add_to_outbox: bool,
    ) -> None:
        """Nested writes through a relation whose foreign key lives on the related records."""
        child = self._engine(relation.target)
        link = {fk: parent[ref] for fk, ref in zip(relation.target_fields, relation.local_fields)}
        unlink = {fk: None for fk in relation.target_fields}

        def belongs(record: Record) -> bool:
            return all(record.get(k) == v for k, v in link.items())

        async def owned(where: Any) -> Record:
            if not relation.to_many:
                related = await child._related(link, tx)
                if not related:
                    raise NotFoundError(model=child.name, where=link)
                return related[0]
            record = await child._find_unique_or_raise(where, tx)
            if not belongs(record):
                raise NotFoundError(model=child.name, where=where)
            return record

        for op, payload in operations:
            if op == RelationOp.CREATE:
                for item in _as_list(payload):
                    await child._create({**item, **link}, tx, silent, add_to_outbox)
            elif op == RelationOp.CREATE_MANY:
                data = payload.get("data") if isinstance(payload, dict) else payload
                for item in _as_list(data):
                    await child._create({**item, **link}, tx, silent, add_to_outbox)
            elif op == RelationOp.CONNECT:
                for where in _as_list(payload):
                    target = await child._find_unique_or_raise(where, tx)
                    await child._update_record(target, link, tx, silent, add_to_outbox)
            elif op == RelationOp.CONNECT_OR_CREATE:
                for item in _as_list(payload):
                    target = await child._find_unique_record(item.get("where"), tx)
                    if target is None:
                        await child._create({**(item.get("create") or {}), **link}, tx, silent, add_to_outbox)
                    else:
                        await child._update_record(target, link, tx, silent, add_to_outbox)
            elif op == RelationOp.DISCONNECT:
                if relation.required:
                    raise InvalidRelationOperationError(
                        "Cannot disconnect required relation", model=self.name, relation=relation.name
                    )
                if relation.to_many:
                    targets = [await child._find_unique_record(where, tx) for where in _as_list(payload)]
                elif payload:
                    targets = await child._related(link, tx)
                else:
                    targets = []
                for target in targets:
                    if target is not None and belongs(target):
                        await child._update_record(target, unlink, tx, silent, add_to_outbox)
            elif op == RelationOp.SET:
                wanted = [await child._find_unique_or_raise(where, tx) for where in _as_list(payload)]
                wanted_keys = {child.descriptor.key_of(r) for r in wanted}
                existing = await child._related(link, tx)
                orphaned = [r for r in existing if child.descriptor.key_of(r) not in wanted_keys]
                if relation.required and (not wanted or orphaned):
                    raise InvalidRelationOperationError(
                        "Cannot set required relation", model=self.name, relation=relation.name
                    )
                for record in orphaned:
                    await child._update_record(record, unlink, tx, silent, add_to_outbox)
                for record in wanted:
                    current = await tx.store(child.name).get(child.descriptor.key_of(record))
                    if current is not None and not belongs(current):
                        await child._update_record(current, link, tx, silent, add_to_outbox)
            elif op == RelationOp.UPDATE:
                for item in _as_list(payload):
                    if relation.to_many:
                        target = await owned(item.get("where"))
                        data = item.get("data") or {}
                    else:
                        target = await owned(None)
                        data = item["data"] if "data" in item else item
                    await child._update_record(target, data, tx, silent, add_to_outbox)
            elif op == RelationOp.UPDATE_MANY:
                for item in _as_list(payload):
                    matched = await child._filter(
                        await child._related(link, tx), child._compile(item.get("where")), tx
                    )
                    for record in matched:
                        await child._update_record(record, item.get("data") or {}, tx, silent, add_to_outbox)
            elif op == RelationOp.UPSERT:
                for item in _as_list(payload):
                    if relation.to_many:
                        target = await child._find_unique_record(item.get("where"), tx)
                        if target is not None and not belongs(target):
                            target = None
                    else:
                        related = await child._related(link, tx)
                        target = related[0] if related else None
                    if target is None:
                        await child._create({**(item.get("create") or {}), **link}, tx, silent, add_to_outbox)
                    else:
                        await child._update_record(target, item.get("update") or {}, tx, silent, add_to_outbox)
            elif op == RelationOp.DELETE:
                if relation.to_many:
                    targets = [await owned(where) for where in _as_list(payload)]
                else:
                    targets = [await owned(None)] if payload else []
                for target in targets:
                    await child._delete_record(target, tx, silent, add_to_outbox)
            elif op == RelationOp.DELETE_MANY:
                wheres = _as_list(payload) or [{}]
                for where in wheres:
                    matched = await child._filter(await child._related(link, tx), child._compile(where), tx)
                    for record in matched:
                        if await tx.store(child.name).get(child.descriptor.key_of(record)) is not None:
                            await child._delete_record(record, tx, silent, add_to_outbox)

    # Emission

    async def _emit(self, event: ModelEvent, tx: Transaction, silent: bool, add_to_outbox: bool) -> None:
        if add_to_outbox and self._db.is_tracked(self.name):
            if isinstance(event, Created):
                operation = Operation.CREATE
            elif isinstance(event, Updated):
                operation = Operation.UPDATE
            else:
                operation = Operation.DELETE
            await self._db.outbox.append(
                entity_type=self.name,
                operation=operation,
                key_path=event.key_path,
                payload=event.record,
                old_key_path=event.old_key_path if isinstance(event, Updated) else None,
                tx=tx,
            )
        if not silent:
            tx.add_commit_hook(lambda: self.events.publish(event))
