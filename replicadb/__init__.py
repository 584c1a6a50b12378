"""
replicadb - embedded offline-first replica with a relational query engine.

This package provides a local, transactional object store with a
relational query/mutation API and an outbox-based sync protocol:
- Model definitions (ModelDef, RelationDef, field) and a SchemaRegistry
- LocalDatabase with one ModelEngine per model (find/create/update/delete)
- Outbox capture of tracked mutations, atomic with the data change
- SyncWorker pushing the outbox and pulling remote change logs

Example:
    >>> from replicadb import LocalDatabase, ModelDef, RelationDef, SchemaRegistry, field
    >>>
    >>> Todo = ModelDef(
    ...     name="Todo",
    ...     fields=(
    ...         field("id", "int", default_kind="autoincrement"),
    ...         field("title", "str"),
    ...         field("done", "bool", default=False),
    ...     ),
    ... )
    >>> registry = SchemaRegistry()
    >>> registry.register_model(Todo)
    >>> db = await LocalDatabase.open(registry, tracked_models=["Todo"])
    >>> await db.model("Todo").create({"data": {"title": "Write docs"}})
    >>> worker = db.create_sync_worker(push_handler, pull_handler)
    >>> await worker.start()

Invariants:
    - Every operation runs in one transaction over a planned store scope
    - Outbox events commit or roll back with the mutation that produced them
    - Pulled changes never re-enter the outbox

Version: 0.1.0
"""

__version__ = "0.1.0"

from .config import ReplicaConfig, StorageBackend, SyncConfig
from .engine import (
    Created,
    Deleted,
    LocalDatabase,
    ModelEngine,
    ModelEvent,
    Subscription,
    Updated,
)
from .errors import (
    InvalidRelationOperationError,
    NotFoundError,
    QueryError,
    ReferentialIntegrityError,
    ReplicaDbError,
    SyncHandlerError,
    TransactionAbortedError,
    TransactionScopeError,
    UniqueConstraintError,
    ValidationError,
)
from .observability import setup_logging
from .schema import (
    DefaultKind,
    FieldDef,
    FieldKind,
    ModelDef,
    ReferentialAction,
    RelationDef,
    SchemaRegistry,
    field,
)
from .store import InMemoryBackend, SqliteBackend
from .sync import (
    ChangeLogEntry,
    Operation,
    OutboxEvent,
    PullPage,
    SyncResult,
    SyncStatus,
    SyncWorker,
    apply_pull,
)

__all__ = [
    # Version
    "__version__",
    # Schema
    "DefaultKind",
    "FieldDef",
    "FieldKind",
    "ModelDef",
    "ReferentialAction",
    "RelationDef",
    "SchemaRegistry",
    "field",
    # Database
    "InMemoryBackend",
    "LocalDatabase",
    "ModelEngine",
    "SqliteBackend",
    # Events
    "Created",
    "Deleted",
    "ModelEvent",
    "Subscription",
    "Updated",
    # Sync
    "ChangeLogEntry",
    "Operation",
    "OutboxEvent",
    "PullPage",
    "SyncResult",
    "SyncStatus",
    "SyncWorker",
    "apply_pull",
    # Config
    "ReplicaConfig",
    "StorageBackend",
    "SyncConfig",
    "setup_logging",
    # Errors
    "InvalidRelationOperationError",
    "NotFoundError",
    "QueryError",
    "ReferentialIntegrityError",
    "ReplicaDbError",
    "SyncHandlerError",
    "TransactionAbortedError",
    "TransactionScopeError",
    "UniqueConstraintError",
    "ValidationError",
]
