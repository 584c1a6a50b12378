"""
Object store abstractions for replicadb.

The store is a set of named key-value object stores (one per model plus the
outbox). All access goes through a Transaction opened over an explicit set
of store names:

- readonly transactions read a snapshot of the committed data and never block
- readwrite transactions lock exactly the stores in their scope (acquired in
  sorted name order), stage writes on a private copy and publish them
  atomically on commit

Invariants:
    - Touching a store outside the transaction scope raises TransactionScopeError
    - Values are deep-copied on the way in and out (no shared mutable state)
    - get_all() returns values ordered by primary key
    - A transaction either publishes all of its writes or none of them
    - Unique indexes ignore values where any indexed field is null

How to change safely:
    - Backends implement only _load() and _persist(); staging, locking and
      constraint checks live here so every backend behaves the same
    - Keep key ordering compatible with key_sort_key()
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from ..errors import (
    ReplicaDbError,
    TransactionAbortedError,
    TransactionScopeError,
    UniqueConstraintError,
)

logger = logging.getLogger(__name__)

Key = Tuple[Any, ...]
Record = Dict[str, Any]


class StoreError(ReplicaDbError):
    """Storage-layer failure."""

    def __init__(self, message: str, store: Optional[str] = None) -> None:
        super().__init__(message, code="STORE_ERROR", details={"store": store})
        self.store = store


class TransactionMode(Enum):
    """Transaction isolation modes."""

    READONLY = "readonly"
    READWRITE = "readwrite"


@dataclass(frozen=True)
class StoreSpec:
    """Layout of one object store.

    Attributes:
        name: Store name
        key_path: Fields forming the primary key, in order
        unique_indexes: (index name, fields) pairs enforced on write
    """

    name: str
    key_path: Tuple[str, ...]
    unique_indexes: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()

    def key_of(self, value: Record) -> Key:
        try:
            key = tuple(value[name] for name in self.key_path)
        except KeyError as e:
            raise StoreError(f"Value for '{self.name}' is missing key field {e}", store=self.name) from None
        if any(part is None for part in key):
            raise StoreError(f"Value for '{self.name}' has a null key component", store=self.name)
        return key


@dataclass
class StoreChanges:
    """Writes staged by one transaction on one store."""

    puts: Dict[Key, Record] = field(default_factory=dict)
    deletes: List[Key] = field(default_factory=list)


def _rank(part: Any) -> int:
    if isinstance(part, bool):
        raise StoreError(f"Invalid key component {part!r}")
    if isinstance(part, (int, float)):
        return 0
    if isinstance(part, datetime):
        return 1
    if isinstance(part, str):
        return 2
    if isinstance(part, (bytes, bytearray)):
        return 3
    raise StoreError(f"Invalid key component {part!r}")


def key_sort_key(key: Key) -> Tuple[Tuple[int, Any], ...]:
    """Total order over keys: numbers < dates < strings < bytes, then by value."""
    return tuple((_rank(part), part) for part in key)


def normalize_key(key: Any) -> Key:
    if isinstance(key, tuple):
        return key
    if isinstance(key, list):
        return tuple(key)
    return (key,)


class ObjectStore:
    """Handle on one store inside a transaction.

    Obtained from Transaction.store(); never constructed directly.
    """

    def __init__(self, tx: Transaction, spec: StoreSpec) -> None:
        self._tx = tx
        self.spec = spec

    @property
    def name(self) -> str:
        return self.spec.name

    async def get(self, key: Any) -> Optional[Record]:
        value = self._tx._read_view(self.name).get(normalize_key(key))
        return copy.deepcopy(value) if value is not None else None

    async def get_all(self) -> List[Record]:
        view = self._tx._read_view(self.name)
        return [copy.deepcopy(view[k]) for k in sorted(view, key=key_sort_key)]

    async def get_by_index(self, index_name: str, value: Any) -> Optional[Record]:
        fields = dict(self.spec.unique_indexes).get(index_name)
        if fields is None:
            raise StoreError(f"Unknown index '{index_name}' on '{self.name}'", store=self.name)
        wanted = normalize_key(value)
        for record in self._tx._read_view(self.name).values():
            if tuple(record.get(f) for f in fields) == wanted:
                return copy.deepcopy(record)
        return None

    async def count(self) -> int:
        return len(self._tx._read_view(self.name))

    async def add(self, value: Record) -> Key:
        """Insert a new value.

        Raises:
            UniqueConstraintError: If the key or a unique index value is taken
        """
        key = self.spec.key_of(value)
        view = self._tx._write_view(self.name)
        if key in view:
            raise UniqueConstraintError(
                f"Key {list(key)} already exists in '{self.name}'", store=self.name, key=list(key)
            )
        self._check_unique(view, key, value)
        view[key] = copy.deepcopy(value)
        self._tx._mark_dirty(self.name, key)
        return key

    async def put(self, value: Record) -> Key:
        """Insert or replace a value.

        Raises:
            UniqueConstraintError: If a unique index value is taken by another key
        """
        key = self.spec.key_of(value)
        view = self._tx._write_view(self.name)
        self._check_unique(view, key, value)
        view[key] = copy.deepcopy(value)
        self._tx._mark_dirty(self.name, key)
        return key

    async def delete(self, key: Any) -> None:
        key = normalize_key(key)
        view = self._tx._write_view(self.name)
        if view.pop(key, None) is not None:
            self._tx._mark_dirty(self.name, key)

    async def clear(self) -> None:
        view = self._tx._write_view(self.name)
        for key in list(view):
            del view[key]
            self._tx._mark_dirty(self.name, key)

    def _check_unique(self, view: Dict[Key, Record], key: Key, value: Record) -> None:
        for index_name, fields in self.spec.unique_indexes:
            indexed = tuple(value.get(f) for f in fields)
            if any(part is None for part in indexed):
                continue
            for other_key, other in view.items():
                if other_key != key and tuple(other.get(f) for f in fields) == indexed:
                    raise UniqueConstraintError(
                        f"Unique index '{index_name}' on '{self.name}' already contains {list(indexed)}",
                        store=self.name,
                        key=list(key),
                        index=index_name,
                    )


class Transaction:
    """An atomic unit of work over a fixed set of stores.

    Attributes:
        store_names: Stores this transaction may touch
        mode: readonly or readwrite
    """

    def __init__(self, backend: ObjectStoreBackend, store_names: Iterable[str], mode: TransactionMode) -> None:
        self._backend = backend
        self.store_names: FrozenSet[str] = frozenset(store_names)
        self.mode = mode
        self._state = "pending"
        self._snapshot: Dict[str, Dict[Key, Record]] = {}
        self._working: Dict[str, Dict[Key, Record]] = {}
        self._dirty: Dict[str, Set[Key]] = {}
        self._held: List[asyncio.Lock] = []
        self._commit_hooks: List[Callable[[], None]] = []

    @property
    def active(self) -> bool:
        return self._state == "active"

    @property
    def state(self) -> str:
        return self._state

    async def _begin(self) -> None:
        unknown = self.store_names - set(self._backend.store_names)
        if unknown:
            raise StoreError(f"Unknown stores: {sorted(unknown)}")
        if self.mode == TransactionMode.READWRITE:
            try:
                for name in sorted(self.store_names):
                    lock = self._backend._locks[name]
                    await lock.acquire()
                    self._held.append(lock)
            except BaseException:
                self._release()
                raise
        self._snapshot = {name: self._backend._committed[name] for name in self.store_names}
        self._state = "active"

    def store(self, name: str) -> ObjectStore:
        """Get a handle on a store in this transaction's scope.

        Raises:
            TransactionAbortedError: If the transaction is no longer active
            TransactionScopeError: If the store is outside the scope
        """
        if not self.active:
            raise TransactionAbortedError(
                f"Transaction is {self._state}", stores=sorted(self.store_names)
            )
        if name not in self.store_names:
            raise TransactionScopeError(name, list(self.store_names))
        return ObjectStore(self, self._backend.spec(name))

    def add_commit_hook(self, hook: Callable[[], None]) -> None:
        """Run `hook` once this transaction has committed (dropped on abort)."""
        self._commit_hooks.append(hook)

    def _read_view(self, name: str) -> Dict[Key, Record]:
        working = self._working.get(name)
        return working if working is not None else self._snapshot[name]

    def _write_view(self, name: str) -> Dict[Key, Record]:
        if self.mode != TransactionMode.READWRITE:
            raise StoreError(f"Cannot write to '{name}' in a readonly transaction", store=name)
        if name not in self._working:
            self._working[name] = dict(self._snapshot[name])
            self._dirty[name] = set()
        return self._working[name]

    def _mark_dirty(self, name: str, key: Key) -> None:
        self._dirty[name].add(key)

    async def commit(self) -> None:
        """Publish staged writes and run commit hooks.

        Raises:
            TransactionAbortedError: If the backend fails to persist
        """
        if not self.active:
            raise TransactionAbortedError(f"Transaction is {self._state}", stores=sorted(self.store_names))
        changes: Dict[str, StoreChanges] = {}
        for name, keys in self._dirty.items():
            if not keys:
                continue
            working = self._working[name]
            staged = StoreChanges()
            for key in keys:
                if key in working:
                    staged.puts[key] = working[key]
                else:
                    staged.deletes.append(key)
            changes[name] = staged
        try:
            if changes:
                await self._backend._persist(changes)
                for name in changes:
                    self._backend._committed[name] = self._working[name]
        except Exception as e:
            self._finish("aborted")
            logger.error(
                "Transaction commit failed",
                extra={"stores": sorted(self.store_names)},
                exc_info=True,
            )
            raise TransactionAbortedError(
                f"Commit failed: {e}", stores=sorted(self.store_names)
            ) from e
        hooks = self._commit_hooks
        self._finish("committed")
        for hook in hooks:
            hook()

    async def abort(self) -> None:
        """Discard staged writes. No-op if already finished."""
        if self.active:
            self._finish("aborted")

    def _finish(self, state: str) -> None:
        self._state = state
        self._working = {}
        self._dirty = {}
        self._commit_hooks = []
        self._release()

    def _release(self) -> None:
        while self._held:
            self._held.pop().release()


class ObjectStoreBackend(ABC):
    """Base class for object store backends.

    Subclasses provide durability through _load() and _persist(); this base
    keeps the committed state in memory and implements transactions.

    Example:
        >>> backend = InMemoryBackend()
        >>> await backend.open([StoreSpec("Todo", ("id",))])
        >>> async with backend.transaction(["Todo"], TransactionMode.READWRITE) as tx:
        ...     await tx.store("Todo").add({"id": 1, "title": "x"})
    """

    def __init__(self) -> None:
        self._specs: Dict[str, StoreSpec] = {}
        self._committed: Dict[str, Dict[Key, Record]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def store_names(self) -> List[str]:
        return list(self._specs)

    def spec(self, name: str) -> StoreSpec:
        return self._specs[name]

    async def open(self, specs: Iterable[StoreSpec], fingerprint: Optional[str] = None) -> None:
        """Create or load the given stores.

        Args:
            specs: Store layouts
            fingerprint: Schema fingerprint persisted backends check against
        """
        self._specs = {spec.name: spec for spec in specs}
        self._committed = await self._load(self._specs, fingerprint)
        self._locks = {name: asyncio.Lock() for name in self._specs}
        self._open = True
        logger.debug(f"{type(self).__name__} opened with stores {sorted(self._specs)}")

    async def close(self) -> None:
        self._open = False

    @asynccontextmanager
    async def transaction(
        self,
        store_names: Iterable[str],
        mode: TransactionMode = TransactionMode.READONLY,
    ) -> AsyncIterator[Transaction]:
        """Open a transaction; commit on normal exit, abort on exception."""
        if not self._open:
            raise StoreError("Backend is not open")
        tx = Transaction(self, store_names, mode)
        await tx._begin()
        try:
            yield tx
        except BaseException:
            await tx.abort()
            raise
        if tx.active:
            await tx.commit()

    @abstractmethod
    async def _load(self, specs: Dict[str, StoreSpec], fingerprint: Optional[str]) -> Dict[str, Dict[Key, Record]]:
        """Return the committed contents of every store."""

    @abstractmethod
    async def _persist(self, changes: Dict[str, StoreChanges]) -> None:
        """Durably apply one transaction's writes, all or nothing."""
