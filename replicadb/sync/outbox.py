"""
Persistent outbox of locally captured mutations.

The outbox is an ordinary object store named OutboxEvent. The model engine
appends to it inside the mutation's own transaction, so a change and its
outbox event commit or roll back together. The sync worker consumes it in
capture order.

Invariants:
    - Batches are ordered by (created_at, sequence)
    - Abandoned events never appear in batches again
    - Only synced events are pruned by clear_synced()

How to change safely:
    - OutboxEvent fields are persisted; new fields need defaults so older
      records still load through OutboxEvent.from_record()
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional, Sequence

from ..store.base import ObjectStoreBackend, Transaction, TransactionMode
from .types import Operation, OutboxEvent

logger = logging.getLogger(__name__)

OUTBOX_STORE = "OutboxEvent"


@dataclass(frozen=True)
class OutboxStats:
    """Outbox counters.

    Attributes:
        unsynced: Events still waiting to be pushed (abandoned excluded)
        failed: Events with at least one failed attempt, abandoned included
        abandoned: Events that exhausted their retries
        last_error: Most recent error message across failed events
    """

    unsynced: int
    failed: int
    abandoned: int
    last_error: Optional[str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutboxStore:
    """Access to the OutboxEvent store.

    Example:
        >>> batch = await db.outbox.get_next_batch(10)
        >>> await db.outbox.mark_synced([e.id for e in batch])
    """

    def __init__(self, backend: ObjectStoreBackend, origin_id: Optional[str] = None) -> None:
        self._backend = backend
        self.origin_id = origin_id
        self._sequence: Optional[int] = None

    async def append(
        self,
        entity_type: str,
        operation: Operation,
        key_path: Sequence[Any],
        payload: dict,
        *,
        tx: Transaction,
        old_key_path: Optional[Sequence[Any]] = None,
    ) -> OutboxEvent:
        """Record one mutation inside the caller's transaction."""
        store = tx.store(OUTBOX_STORE)
        if self._sequence is None:
            self._sequence = max((r.get("sequence", 0) for r in await store.get_all()), default=0)
        self._sequence += 1
        event = OutboxEvent(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            entity_key_path=tuple(key_path),
            operation=operation,
            payload=payload,
            created_at=_utcnow(),
            origin_id=self.origin_id,
            old_key_path=tuple(old_key_path) if old_key_path is not None else None,
            sequence=self._sequence,
        )
        await store.add(event.to_record())
        logger.debug(
            f"Outbox captured {operation.value} on {entity_type}",
            extra={"event_id": event.id, "entity_type": entity_type},
        )
        return event

    async def _all(self) -> List[OutboxEvent]:
        async with self._backend.transaction([OUTBOX_STORE]) as tx:
            records = await tx.store(OUTBOX_STORE).get_all()
        return [OutboxEvent.from_record(r) for r in records]

    async def get_next_batch(
        self,
        limit: int = 20,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[OutboxEvent]:
        """Oldest unsynced, non-abandoned events, at most `limit` of them."""
        excluded = set(exclude_ids or ())
        pending = [
            e for e in await self._all() if not e.synced and not e.abandoned and e.id not in excluded
        ]
        pending.sort(key=lambda e: (e.created_at, e.sequence))
        return pending[:limit]

    async def has_any_unsynced(self) -> bool:
        return any(not e.synced and not e.abandoned for e in await self._all())

    async def mark_synced(self, ids: Iterable[str], synced_at: Optional[datetime] = None) -> int:
        """Mark events as acknowledged; returns how many were found."""
        synced_at = synced_at or _utcnow()
        count = 0
        async with self._backend.transaction([OUTBOX_STORE], TransactionMode.READWRITE) as tx:
            store = tx.store(OUTBOX_STORE)
            for event_id in ids:
                record = await store.get(event_id)
                if record is None:
                    continue
                record["synced"] = True
                record["synced_at"] = synced_at
                await store.put(record)
                count += 1
        return count

    async def mark_failed(self, event_id: str, error: str) -> None:
        """Count a failed push attempt against an event."""
        async with self._backend.transaction([OUTBOX_STORE], TransactionMode.READWRITE) as tx:
            store = tx.store(OUTBOX_STORE)
            record = await store.get(event_id)
            if record is None:
                logger.warning(f"Cannot mark unknown outbox event {event_id} failed")
                return
            record["tries"] = record.get("tries", 0) + 1
            record["last_error"] = error
            record["last_attempted_at"] = _utcnow()
            await store.put(record)

    async def mark_abandoned(self, event_id: str, reason: str) -> None:
        """Permanently fail an event; it is never batched again."""
        async with self._backend.transaction([OUTBOX_STORE], TransactionMode.READWRITE) as tx:
            store = tx.store(OUTBOX_STORE)
            record = await store.get(event_id)
            if record is None:
                return
            record["abandoned"] = True
            record["last_error"] = reason
            record["last_attempted_at"] = _utcnow()
            await store.put(record)
        logger.warning(
            f"Outbox event {event_id} abandoned: {reason}",
            extra={"event_id": event_id, "entity_type": record["entity_type"]},
        )

    async def stats(self) -> OutboxStats:
        events = await self._all()
        failed = [e for e in events if not e.synced and (e.tries > 0 or e.abandoned)]
        failed.sort(key=lambda e: e.last_attempted_at or e.created_at)
        return OutboxStats(
            unsynced=sum(1 for e in events if not e.synced and not e.abandoned),
            failed=len(failed),
            abandoned=sum(1 for e in events if e.abandoned),
            last_error=failed[-1].last_error if failed else None,
        )

    async def clear_synced(self, older_than_days: int = 7) -> int:
        """Delete synced events acknowledged more than `older_than_days` ago."""
        cutoff = _utcnow() - timedelta(days=older_than_days)
        removed = 0
        async with self._backend.transaction([OUTBOX_STORE], TransactionMode.READWRITE) as tx:
            store = tx.store(OUTBOX_STORE)
            for record in await store.get_all():
                synced_at = record.get("synced_at")
                if record.get("synced") and synced_at is not None and synced_at <= cutoff:
                    await store.delete(record["id"])
                    removed += 1
        if removed:
            logger.info(f"Pruned {removed} synced outbox events", extra={"older_than_days": older_than_days})
        return removed
