"""
Conflict merge resolver.

After a successful push the server may answer with its authoritative
version of the record (merged_record), possibly under a different primary
key. The resolver writes that version into the local replica without
re-capturing it in the outbox and without notifying subscribers.

Invariants:
    - A merge failure never un-syncs the pushed event; it is logged and skipped
    - The record is keyed by the server key path; a record carrying a
      different primary key is rejected
    - Merges run in their own transaction, one per result
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import ReplicaDbError, ValidationError
from ..store.base import TransactionMode
from .apply_pull import write_remote_record
from .types import SyncResult

if TYPE_CHECKING:
    from ..engine.client import LocalDatabase

logger = logging.getLogger(__name__)


class ConflictMergeResolver:
    """Writes server-merged records back into the local replica.

    Example:
        >>> resolver = ConflictMergeResolver(db)
        >>> await resolver.merge("Todo", result)
        True
    """

    def __init__(self, db: LocalDatabase) -> None:
        self._db = db

    async def merge(self, entity_type: str, result: SyncResult) -> bool:
        """Apply `result.merged_record` to `entity_type`.

        Returns:
            True if the record was written, False if there was nothing to
            merge or the merge was rejected
        """
        if result.merged_record is None:
            return False
        engine = self._db.model(entity_type)
        try:
            record = engine.descriptor.validator.validate_record(result.merged_record)
            key = engine.descriptor.validator.validate_key_path(result.entity_key_path)
        except ValidationError as e:
            logger.warning(
                f"Discarding invalid merged {entity_type} record: {'; '.join(e.errors)}",
                extra={"event_id": result.id, "entity_type": entity_type},
            )
            return False

        if engine.descriptor.key_of(record) != key:
            logger.warning(
                f"Discarding merged {entity_type} record whose key {engine.descriptor.key_of(record)} "
                f"disagrees with the server key path {key}",
                extra={"event_id": result.id, "entity_type": entity_type},
            )
            return False

        stores = self._db.planner.for_upsert(entity_type, {"create": record, "update": record})
        try:
            async with self._db.backend.transaction(stores, TransactionMode.READWRITE) as tx:
                await write_remote_record(engine, record, result.old_key_path, tx)
        except ReplicaDbError as e:
            logger.warning(
                f"Failed to merge {entity_type} record from server: {e.message}",
                extra={"event_id": result.id, "entity_type": entity_type, "code": e.code},
            )
            return False
        return True
