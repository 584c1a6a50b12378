"""
Local database handle.

LocalDatabase is the explicit, non-singleton entry point: it owns the
frozen schema registry, the object store backend, one ModelEngine per
model, the outbox and the transaction-scope planner.

Usage:
    registry = SchemaRegistry()
    registry.register_model(User)
    registry.register_model(Todo)

    db = await LocalDatabase.open(registry, tracked_models=["Todo"])
    todo = await db.model("Todo").create({"data": {"title": "x", "user_id": uid}})
    worker = db.create_sync_worker(push_handler, pull_handler)

Invariants:
    - One handle per open backend; nothing is cached at module level
    - Only tracked models write outbox events
"""

from __future__ import annotations

import logging
import uuid
from typing import Dict, FrozenSet, Iterable, Optional

from ..config import ReplicaConfig, StorageBackend, SyncConfig
from ..query.planner import TransactionScopePlanner
from ..schema.registry import SchemaRegistry
from ..store.base import ObjectStoreBackend, StoreSpec
from ..store.memory import InMemoryBackend
from ..store.sqlite import SqliteBackend
from ..sync.outbox import OUTBOX_STORE, OutboxStore
from ..sync.worker import CursorGetter, CursorSetter, PullHandler, PushHandler, SyncWorker
from .events import Channel, ModelEvent
from .model import ModelEngine

logger = logging.getLogger(__name__)


def create_backend(config: ReplicaConfig) -> ObjectStoreBackend:
    """Build the backend selected by config.storage."""
    if config.storage.backend == StorageBackend.SQLITE:
        return SqliteBackend(config.storage.path, busy_timeout_ms=config.storage.busy_timeout_ms)
    return InMemoryBackend()


class LocalDatabase:
    """Handle on an opened local replica.

    Attributes:
        registry: Frozen schema registry
        backend: Opened object store backend
        outbox: Outbox of tracked mutations
        planner: Transaction-scope planner
        origin_id: Identifier stamped on outbox events for echo suppression
        config: Effective configuration
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        backend: ObjectStoreBackend,
        tracked_models: Iterable[str],
        origin_id: str,
        config: ReplicaConfig,
    ) -> None:
        self.registry = registry
        self.backend = backend
        self.origin_id = origin_id
        self.config = config
        self.tracked_models: FrozenSet[str] = frozenset(tracked_models)
        self.outbox = OutboxStore(backend, origin_id=origin_id)
        self.planner = TransactionScopePlanner(registry, self.is_tracked, OUTBOX_STORE)
        self._engines: Dict[str, ModelEngine] = {
            d.name: ModelEngine(self, d) for d in registry.descriptors()
        }

    @classmethod
    async def open(
        cls,
        registry: SchemaRegistry,
        backend: Optional[ObjectStoreBackend] = None,
        *,
        tracked_models: Iterable[str] = (),
        origin_id: Optional[str] = None,
        config: Optional[ReplicaConfig] = None,
    ) -> LocalDatabase:
        """Freeze the registry (if needed), open the backend and return a handle.

        Args:
            registry: Schema registry with every model registered
            backend: Backend to open; chosen from config.storage when omitted
            tracked_models: Models whose mutations are captured in the outbox
            origin_id: Replica identity; a random UUID when omitted
            config: Configuration; defaults when omitted

        Raises:
            ValueError: If a tracked model is unknown or the config is invalid
            SchemaMismatchError: If a persisted store was written by another schema
        """
        config = config or ReplicaConfig()
        config.validate()
        if not registry.frozen:
            registry.freeze()

        tracked = list(tracked_models)
        unknown = [name for name in tracked if registry.get_model(name) is None]
        if unknown:
            raise ValueError(f"Unknown tracked models: {unknown}")

        specs = [
            StoreSpec(
                name=d.name,
                key_path=d.key_path,
                unique_indexes=tuple(d.unique_indexes.items()),
            )
            for d in registry.descriptors()
        ]
        specs.append(StoreSpec(name=OUTBOX_STORE, key_path=("id",)))

        backend = backend or create_backend(config)
        await backend.open(specs, fingerprint=registry.fingerprint)
        db = cls(registry, backend, tracked, origin_id or str(uuid.uuid4()), config)
        logger.info(
            f"Opened local database with {len(specs) - 1} models",
            extra={
                "backend": type(backend).__name__,
                "tracked_models": sorted(db.tracked_models),
                "origin_id": db.origin_id,
            },
        )
        return db

    def model(self, name: str) -> ModelEngine:
        """Engine for one model.

        Raises:
            KeyError: If the model is unknown
        """
        try:
            return self._engines[name]
        except KeyError:
            raise KeyError(f"Unknown model '{name}'") from None

    def __getitem__(self, name: str) -> ModelEngine:
        return self.model(name)

    def events(self, name: str) -> Channel[ModelEvent]:
        """Created/Updated/Deleted channel of one model."""
        return self.model(name).events

    def is_tracked(self, name: str) -> bool:
        return self.config.outbox.enabled and name in self.tracked_models

    def create_sync_worker(
        self,
        push_handler: PushHandler,
        pull_handler: PullHandler,
        get_cursor: Optional[CursorGetter] = None,
        set_cursor: Optional[CursorSetter] = None,
        config: Optional[SyncConfig] = None,
    ) -> SyncWorker:
        """Create a SyncWorker bound to this database (not started)."""
        return SyncWorker(
            self,
            push_handler,
            pull_handler,
            get_cursor=get_cursor,
            set_cursor=set_cursor,
            config=config or self.config.sync,
        )

    async def close(self) -> None:
        await self.backend.close()
        logger.info("Closed local database")
