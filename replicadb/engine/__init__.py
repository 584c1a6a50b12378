"""
Query/mutation engine for replicadb.

- events: typed Created/Updated/Deleted channels with subscription tokens
- model: the generic per-model executor
- client: LocalDatabase, the handle tying schema, store, outbox and sync together
"""

from .events import Channel, Created, Deleted, ModelEvent, Subscription, Updated
from .model import ModelEngine
from .client import LocalDatabase, create_backend

__all__ = [
    "Channel",
    "Created",
    "Deleted",
    "LocalDatabase",
    "ModelEngine",
    "ModelEvent",
    "Subscription",
    "Updated",
    "create_backend",
]
