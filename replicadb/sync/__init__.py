"""
Offline sync protocol for replicadb.

- outbox: persisted log of local mutations awaiting push
- worker: push/pull state machine with retries and abandonment
- apply_pull: atomic application of pulled change-log pages
- merge: write-back of server-merged records after push
"""

from .apply_pull import ApplyPullResult, apply_pull
from .merge import ConflictMergeResolver
from .outbox import OUTBOX_STORE, OutboxStats, OutboxStore
from .types import ChangeLogEntry, Operation, OutboxEvent, PullPage, SyncResult
from .worker import PullSummary, PushSummary, SyncStatus, SyncWorker

__all__ = [
    "OUTBOX_STORE",
    "ApplyPullResult",
    "ChangeLogEntry",
    "ConflictMergeResolver",
    "Operation",
    "OutboxEvent",
    "OutboxStats",
    "OutboxStore",
    "PullPage",
    "PullSummary",
    "PushSummary",
    "SyncResult",
    "SyncStatus",
    "SyncWorker",
    "apply_pull",
]
