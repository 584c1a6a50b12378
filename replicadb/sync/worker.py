"""
Sync worker: the push/pull state machine.

One cycle drains the push phase, then the pull phase:

    idle -> pushing -> pulling -> idle

Push drain:
    - fetch the oldest unsynced, non-abandoned batch, skipping events
      already attempted in this drain
    - abandon events whose tries reached max_retries
    - call the push handler once per batch; a handler exception fails the
      whole batch and ends the drain
    - per result: error or malformed result -> mark failed; success ->
      merge the server record (if any) and mark synced

Pull drain:
    - start from get_cursor() (None means from the beginning)
    - call the pull handler; an empty page ends the drain
    - apply the page atomically, then set_cursor(next)
    - a None cursor ends the drain

Invariants:
    - No two cycles overlap; sync_once() while processing is a no-op
    - Push completes before pull starts
    - The cursor only advances after its page has been applied
    - Cycle errors are recorded in status.last_error, never raised

How to change safely:
    - Every status transition goes through _set() so subscribers see it
    - Keep handler calls outside store transactions
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from ..config import SyncConfig
from ..engine.events import Channel, Subscription
from ..errors import SyncHandlerError
from .apply_pull import apply_pull
from .merge import ConflictMergeResolver
from .types import OutboxEvent, PullPage, SyncResult

if TYPE_CHECKING:
    from ..engine.client import LocalDatabase

logger = logging.getLogger(__name__)

PushHandler = Callable[[List[OutboxEvent]], Awaitable[List[Union[SyncResult, Dict[str, Any]]]]]
PullHandler = Callable[[Optional[int]], Awaitable[Union[PullPage, Dict[str, Any]]]]
CursorGetter = Callable[[], Any]
CursorSetter = Callable[[Optional[int]], Any]

STATUS_CHANGE = "statuschange"


@dataclass(frozen=True)
class SyncStatus:
    """Point-in-time worker status. Does not update; poll or subscribe."""

    is_running: bool = False
    is_processing: bool = False
    is_pushing: bool = False
    is_pulling: bool = False
    last_sync_time: Optional[datetime] = None
    last_error: Optional[BaseException] = None


@dataclass(frozen=True)
class PushSummary:
    """Counters from the most recent push drain."""

    batches: int = 0
    attempted: int = 0
    synced: int = 0
    failed: int = 0
    abandoned: int = 0
    merged: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class PullSummary:
    """Counters from the most recent pull drain."""

    pages: int = 0
    applied: int = 0
    missing: int = 0
    echoed: int = 0
    rejected: int = 0
    cursor: Optional[int] = None


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    return f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class SyncWorker:
    """Background synchronizer between the local outbox and a server.

    Example:
        >>> worker = db.create_sync_worker(push_handler, pull_handler)
        >>> await worker.start()
        >>> ...
        >>> await worker.stop()
        >>> await worker.wait_until_idle()
    """

    def __init__(
        self,
        db: LocalDatabase,
        push_handler: PushHandler,
        pull_handler: PullHandler,
        get_cursor: Optional[CursorGetter] = None,
        set_cursor: Optional[CursorSetter] = None,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self._db = db
        self._push_handler = push_handler
        self._pull_handler = pull_handler
        self._get_cursor = get_cursor
        self._set_cursor = set_cursor
        self.config = config or SyncConfig()
        self.config.validate()
        self._merger = ConflictMergeResolver(db)

        self._status = SyncStatus()
        self._status_channel: Channel[SyncStatus] = Channel(STATUS_CHANGE)
        self._stop_requested = False
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: Optional[asyncio.Task[None]] = None
        self.last_push_summary = PushSummary()
        self.last_pull_summary = PullSummary()

    # Status

    @property
    def status(self) -> SyncStatus:
        return self._status

    def on(self, event: str, callback: Callable[[SyncStatus], Any]) -> Subscription:
        """Subscribe to status changes. Only "statuschange" is supported."""
        if event != STATUS_CHANGE:
            raise ValueError(f"Unsupported event '{event}', only '{STATUS_CHANGE}' is available")
        return self._status_channel.subscribe(callback)

    def _set(self, **changes: Any) -> None:
        self._status = replace(self._status, **changes)
        self._status_channel.publish(self._status)

    # Lifecycle

    async def start(self) -> None:
        """Run one cycle immediately, then one every interval_ms until stopped."""
        if self._status.is_running:
            logger.warning("Sync worker already running")
            return
        self._stop_requested = False
        self._wakeup.clear()
        self._set(is_running=True)
        logger.info(
            "Starting sync worker",
            extra={
                "interval_ms": self.config.schedule.interval_ms,
                "batch_size": self.config.push.batch_size,
                "max_retries": self.config.schedule.max_retries,
            },
        )
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop scheduling cycles. An in-flight cycle runs to completion."""
        self._stop_requested = True
        self._wakeup.set()
        logger.info("Stopping sync worker")
        if self._task is None and self._status.is_running:
            self._set(is_running=False)

    async def wait_until_idle(self) -> None:
        """Wait for the in-flight cycle, and for the loop to exit if stop was requested."""
        await self._idle.wait()
        if self._stop_requested and self._task is not None:
            await self._task

    async def _run(self) -> None:
        interval = self.config.schedule.interval_ms / 1000
        try:
            while not self._stop_requested:
                await self.sync_once()
                if self._stop_requested:
                    break
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Sync worker cancelled")
            raise
        finally:
            self._task = None
            self._set(is_running=False)
            logger.info("Sync worker stopped")

    # Cycles

    async def sync_once(self) -> None:
        """Run one push-then-pull cycle if running and not already processing."""
        if not self._status.is_running:
            logger.warning("sync_once: worker is not running")
            return
        if self._status.is_processing:
            logger.debug("sync_once: sync already in progress")
            return
        await self._cycle()

    async def force_sync(self) -> None:
        """Run a cycle now while the worker is running; no-op otherwise."""
        if not self._status.is_running:
            logger.warning("force_sync: worker is not running")
            return
        await self.sync_once()

    async def sync_now(self) -> None:
        """Run one cycle without starting the worker. is_running is left untouched."""
        if self._status.is_processing:
            logger.debug("sync_now: sync already in progress")
            return
        if not self._status.is_running:
            self._stop_requested = False
        await self._cycle()

    async def _cycle(self) -> None:
        self._idle.clear()
        self._set(is_processing=True)
        try:
            await self._drain_push()
            await self._drain_pull()
            self._set(last_sync_time=datetime.now(timezone.utc), last_error=None)
        except Exception as e:
            logger.error(f"Sync cycle failed: {e}", exc_info=True)
            self._set(last_error=e)
        finally:
            self._set(is_processing=False, is_pushing=False, is_pulling=False)
            self._idle.set()

    # Push

    async def _drain_push(self) -> None:
        self._set(is_pushing=True)
        attempted: Set[str] = set()
        counters = dict(batches=0, attempted=0, synced=0, failed=0, abandoned=0, merged=0)
        error: Optional[str] = None
        max_retries = self.config.schedule.max_retries
        try:
            while not self._stop_requested:
                batch = await self._db.outbox.get_next_batch(self.config.push.batch_size, exclude_ids=attempted)
                if not batch:
                    break

                retryable = [e for e in batch if e.tries < max_retries]
                for event in batch:
                    if event.tries >= max_retries:
                        await self._db.outbox.mark_abandoned(event.id, f"Abandoned after {max_retries} retries")
                        counters["abandoned"] += 1
                if not retryable:
                    break

                attempted.update(e.id for e in retryable)
                counters["batches"] += 1
                counters["attempted"] += len(retryable)
                error = await self._push_batch(retryable, counters)
                if error is not None:
                    break
        finally:
            self.last_push_summary = PushSummary(error=error, **counters)
            self._set(is_pushing=False)
        logger.debug("Push drain finished", extra=counters)

    async def _push_batch(self, batch: List[OutboxEvent], counters: Dict[str, int]) -> Optional[str]:
        """Push one batch; returns the handler error message if the handler raised."""
        try:
            raw_results = await self._push_handler(batch)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Push handler failed: {message}", extra={"batch_size": len(batch)}, exc_info=True)
            for event in batch:
                await self._db.outbox.mark_failed(event.id, message)
            counters["failed"] += len(batch)
            return message

        by_id = {event.id: event for event in batch}
        synced: List[str] = []
        answered: Set[str] = set()
        try:
            for raw in raw_results or []:
                try:
                    result = raw if isinstance(raw, SyncResult) else SyncResult.model_validate(raw)
                except PydanticValidationError as e:
                    event_id = raw.get("id") if isinstance(raw, dict) else None
                    if not isinstance(event_id, str) or event_id not in by_id or event_id in answered:
                        logger.warning(f"Discarding malformed push result: {_first_error(e)}")
                        continue
                    answered.add(event_id)
                    await self._db.outbox.mark_failed(event_id, f"Invalid push result: {_first_error(e)}")
                    counters["failed"] += 1
                    continue
                event = by_id.get(result.id)
                if event is None:
                    logger.warning(f"Push handler answered unknown event {result.id}")
                    continue
                answered.add(result.id)
                if result.error:
                    await self._db.outbox.mark_failed(result.id, result.error)
                    counters["failed"] += 1
                    continue
                if result.merged_record is not None and await self._merger.merge(event.entity_type, result):
                    counters["merged"] += 1
                synced.append(result.id)

            for event in batch:
                if event.id not in answered:
                    await self._db.outbox.mark_failed(event.id, "No result returned for event")
                    counters["failed"] += 1
        finally:
            # Accepted events stay accepted even if a later result blew up.
            if synced:
                counters["synced"] += await self._db.outbox.mark_synced(synced)
        return None

    # Pull

    async def _drain_pull(self) -> None:
        self._set(is_pulling=True)
        counters = dict(pages=0, applied=0, missing=0, echoed=0, rejected=0)
        cursor: Optional[int] = None
        try:
            if self._get_cursor is not None:
                cursor = await _maybe_await(self._get_cursor())
            while not self._stop_requested:
                try:
                    raw_page = await self._pull_handler(cursor)
                except Exception as e:
                    raise SyncHandlerError(f"Pull handler failed: {e}", phase="pull", cause=e) from e
                page = raw_page if isinstance(raw_page, PullPage) else PullPage.model_validate(raw_page)
                if not page.change_log_entries:
                    break

                result = await apply_pull(self._db, page.change_log_entries)
                counters["pages"] += 1
                counters["applied"] += result.applied
                counters["missing"] += result.missing
                counters["echoed"] += result.echoed
                counters["rejected"] += len(result.validation_errors)

                if self._set_cursor is not None:
                    await _maybe_await(self._set_cursor(page.cursor))
                cursor = page.cursor
                if cursor is None:
                    break
        finally:
            self.last_pull_summary = PullSummary(cursor=cursor, **counters)
            self._set(is_pulling=False)
        logger.debug("Pull drain finished", extra={**counters, "cursor": cursor})
